import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app import config
from app.api.workspaces import router as workspaces_router
from app.db import init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    config.SANDBOX_DIR.mkdir(parents=True, exist_ok=True)
    logger.info(f"{config.APP_NAME} started (sandbox dir: {config.SANDBOX_DIR})")
    yield


app = FastAPI(title=config.APP_NAME, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(workspaces_router, prefix="/workspaces", tags=["workspaces"])


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}
