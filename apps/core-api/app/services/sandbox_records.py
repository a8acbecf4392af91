"""Persist SandboxRun outcomes so they outlive the in-process SandboxManager."""
from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from app.db import SandboxRunModel
from executor import SandboxRun

logger = logging.getLogger(__name__)


def save_sandbox_run(db: Session, run: SandboxRun, policy_hash: Optional[str] = None) -> SandboxRunModel:
    """Insert or update the row for a sandbox run."""
    record = db.query(SandboxRunModel).filter(SandboxRunModel.id == run.id).first()
    if record is None:
        record = SandboxRunModel(id=run.id, workspace_id=run.workspace_id, created_at=run.created_at)
        db.add(record)

    record.user_id = run.user_id
    record.source = run.source
    record.status = run.status.value
    record.metadata_json = run.metadata or None
    record.files_edited = list(run.files_edited)
    record.conflicts = [c.to_dict() for c in run.conflicts]
    record.checks = run.checks.to_dict() if run.checks else None
    record.sandbox_checks_passed = run.sandbox_checks_passed
    record.user_rolled_back = run.user_rolled_back
    record.promoted_at = run.promoted_at
    if policy_hash:
        record.policy_hash = policy_hash

    db.commit()
    db.refresh(record)
    logger.info(f"Sandbox run {run.id} saved (status={record.status})")
    return record


def get_sandbox_record(db: Session, run_id: str) -> Optional[SandboxRunModel]:
    return db.query(SandboxRunModel).filter(SandboxRunModel.id == run_id).first()


def list_sandbox_records(db: Session, workspace_id: str, limit: int = 50) -> List[SandboxRunModel]:
    return (
        db.query(SandboxRunModel)
        .filter(SandboxRunModel.workspace_id == workspace_id)
        .order_by(SandboxRunModel.created_at.desc())
        .limit(limit)
        .all()
    )


def mark_record_rolled_back(db: Session, record: SandboxRunModel) -> None:
    record.user_rolled_back = True
    db.commit()


def record_to_dict(record: SandboxRunModel) -> dict:
    return {
        "id": record.id,
        "workspaceId": record.workspace_id,
        "userId": record.user_id,
        "source": record.source,
        "status": record.status,
        "metadata": record.metadata_json,
        "filesEdited": record.files_edited or [],
        "conflicts": record.conflicts or [],
        "checks": record.checks,
        "sandboxChecksPassed": record.sandbox_checks_passed,
        "userRolledBack": bool(record.user_rolled_back),
        "policyHash": record.policy_hash,
        "createdAt": record.created_at.isoformat() if record.created_at else None,
        "promotedAt": record.promoted_at.isoformat() if record.promoted_at else None,
    }
