from fastapi.testclient import TestClient

from app.main import app, health


def test_health_endpoint():
    assert health() == {"status": "ok"}


def test_health_route():
    response = TestClient(app).get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
