from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    create_engine,
)
from sqlalchemy.orm import declarative_base, sessionmaker

from app import config

DATABASE_URL = config.DB_URL

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if "sqlite" in DATABASE_URL else {},
    echo=config.DB_ECHO,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(UTC)


class WorkspaceModel(Base):
    """Workspace: a project whose files live in workspace_files"""
    __tablename__ = "workspaces"

    id = Column(String, primary_key=True, index=True)
    name = Column(String, nullable=False)
    safe_edit_mode = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=_utcnow)


class WorkspaceFileModel(Base):
    """Authoritative file content, one row per (workspace, path)"""
    __tablename__ = "workspace_files"

    id = Column(String, primary_key=True)
    workspace_id = Column(String, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True)
    path = Column(String, nullable=False)
    content = Column(Text, nullable=False, default="")
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("idx_workspace_files_workspace_path", "workspace_id", "path", unique=True),
    )


class SandboxRunModel(Base):
    """Outcome of one sandboxed plan execution, kept for analytics"""
    __tablename__ = "sandbox_runs"

    id = Column(String, primary_key=True, index=True)
    workspace_id = Column(String, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, nullable=True)
    source = Column(String, nullable=True)  # agent | composer | debug-from-log
    status = Column(String, nullable=False)
    metadata_json = Column("metadata", JSON, nullable=True)
    files_edited = Column(JSON, nullable=True)
    conflicts = Column(JSON, nullable=True)
    checks = Column(JSON, nullable=True)
    sandbox_checks_passed = Column(Boolean, nullable=True)
    user_rolled_back = Column(Boolean, nullable=False, default=False)
    policy_hash = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    promoted_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_sandbox_runs_workspace_created", "workspace_id", "created_at"),
    )


def init_db() -> None:
    """Create all tables."""
    Base.metadata.create_all(bind=engine)


def get_db():
    """Database session (generator, for dependency injection)."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
