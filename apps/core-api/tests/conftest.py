"""Shared fixtures for core-api tests: temp SQLite DB and dependency overrides."""
from __future__ import annotations

import os
import tempfile
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.api.workspaces import (
    get_command_runner,
    get_edit_history,
    get_fix_proposer,
    get_sandbox_dir,
)
from app.db import Base, get_db
from app.main import app
from executor import CommandResult, EditHistory


class StubRunner:
    """CommandRunner stand-in: scripted results per command, exit 0 otherwise."""

    def __init__(self):
        self.results: Dict[str, CommandResult] = {}
        self.commands: List[str] = []

    def run(self, command, cwd, timeout_ms=None, cancel_event=None, env=None) -> CommandResult:
        self.commands.append(command)
        return self.results.get(command, CommandResult(exit_code=0, stdout="ok"))


class StubProposer:
    def __init__(self, steps=None):
        self.steps = list(steps or [])
        self.calls = 0

    def propose_fix_steps(self, context):
        self.calls += 1
        return list(self.steps)


@pytest.fixture
def db_session():
    fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = Session()
    try:
        yield db
    finally:
        db.close()
        engine.dispose()
        try:
            os.unlink(db_path)
        except OSError:
            pass


@pytest.fixture
def runner():
    return StubRunner()


@pytest.fixture
def proposer():
    return StubProposer()


@pytest.fixture
def history():
    return EditHistory()


@pytest.fixture
def client(db_session, runner, proposer, history, tmp_path):
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    overrides = {
        get_db: override_get_db,
        get_command_runner: lambda: runner,
        get_fix_proposer: lambda: proposer,
        get_edit_history: lambda: history,
        get_sandbox_dir: lambda: tmp_path / "sandboxes",
    }
    app.dependency_overrides.update(overrides)
    try:
        yield TestClient(app)
    finally:
        for dep in overrides:
            app.dependency_overrides.pop(dep, None)


@pytest.fixture
def make_workspace(client):
    """Factory: create a workspace, optionally seeded with files; returns its id."""

    def _make(safe_edit: bool = False, files: Optional[Dict[str, str]] = None) -> str:
        r = client.post("/workspaces", json={"name": "demo", "safeEditMode": safe_edit})
        assert r.status_code == 200
        workspace_id = r.json()["id"]
        for path, content in (files or {}).items():
            r = client.put(f"/workspaces/{workspace_id}/files", json={"path": path, "content": content})
            assert r.status_code == 200
        return workspace_id

    return _make
