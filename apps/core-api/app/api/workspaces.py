"""Workspace API: files, plan execution in a sandbox, undo/redo, sandbox runs and stack config."""
from __future__ import annotations

import asyncio
import json
import logging
import threading
import uuid
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from app import config
from app.db import WorkspaceModel, get_db
from app.services.file_store import SqlFileStore
from app.services.sandbox_records import (
    get_sandbox_record,
    list_sandbox_records,
    mark_record_rolled_back,
    record_to_dict,
    save_sandbox_run,
)
from executor import (
    STACK_CONFIG_PATH,
    CommandRunner,
    ConfirmationRequest,
    EditHistory,
    ExecutorError,
    FileApplier,
    FixProposer,
    InvalidPathError,
    NullFixProposer,
    PlanExecutor,
    SandboxManager,
    build_default_config,
    ensure_python_venv_step,
    parse_plan,
    parse_stack_config,
)
from governance import GuardPolicy, load_policy, sanitize_path

logger = logging.getLogger(__name__)

router = APIRouter(tags=["workspaces"])

DISCONNECT_POLL_SECONDS = 0.5


# ==================== Dependencies ====================

@lru_cache(maxsize=1)
def get_policy() -> GuardPolicy:
    return load_policy(config.POLICY_FILE)


@lru_cache(maxsize=1)
def get_command_runner() -> CommandRunner:
    """Process-wide runner; its semaphore bounds concurrent commands across requests."""
    policy = get_policy()
    return CommandRunner(
        timeout_ms=config.COMMAND_TIMEOUT_MS,
        server_timeout_ms=config.SERVER_TIMEOUT_MS,
        max_output_bytes=config.MAX_OUTPUT_BYTES,
        enforce_allowlist=config.ENFORCE_ALLOWLIST,
        allowed_commands=policy.allowed_commands,
        blocked_patterns=policy.blocked_patterns,
    )


_edit_history = EditHistory()


def get_edit_history() -> EditHistory:
    """Undo/redo stacks live for the lifetime of the process."""
    return _edit_history


def get_fix_proposer() -> FixProposer:
    return NullFixProposer()


def get_sandbox_dir() -> Path:
    return config.SANDBOX_DIR


def _build_executor(
    db: Session,
    runner: CommandRunner,
    history: EditHistory,
    proposer: FixProposer,
    policy: GuardPolicy,
    sandbox_dir: Path,
) -> PlanExecutor:
    sandbox = SandboxManager(
        store=SqlFileStore(db),
        runner=runner,
        base_dir=sandbox_dir,
        applier=FileApplier(policy.protected_patterns, policy.over_edit_ratio),
        promote_on_check_failure=config.PROMOTE_ON_CHECK_FAILURE,
        run_check_timeout_ms=config.RUN_CHECK_TIMEOUT_MS,
    )
    return PlanExecutor(
        sandbox=sandbox,
        history=history,
        fix_proposer=proposer,
        safe_edit_max_files=policy.safe_edit_max_files,
        allowed_root_dirs=policy.allowed_root_dirs,
        allowed_root_files=policy.allowed_root_files,
    )


# ==================== Request bodies ====================

class CreateWorkspaceBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1)
    safe_edit_mode: bool = Field(default=False, alias="safeEditMode")


class UpdateWorkspaceBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = None
    safe_edit_mode: bool | None = Field(default=None, alias="safeEditMode")


class PutFileBody(BaseModel):
    path: str
    content: str = ""


class ApplyEditsBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    steps: list[dict[str, Any]]
    confirmed_protected_paths: list[str] = Field(default_factory=list, alias="confirmedProtectedPaths")
    user_id: str | None = Field(default=None, alias="userId")


class ExecutePlanBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan: str | dict[str, Any]
    confirmed_protected_paths: list[str] = Field(default_factory=list, alias="confirmedProtectedPaths")
    user_id: str | None = Field(default=None, alias="userId")


# ==================== Helpers ====================

def _workspace_to_dict(ws: WorkspaceModel) -> dict:
    return {
        "id": ws.id,
        "name": ws.name,
        "safeEditMode": bool(ws.safe_edit_mode),
        "createdAt": ws.created_at.isoformat() if ws.created_at else None,
    }


def _get_workspace_or_404(db: Session, workspace_id: str) -> WorkspaceModel:
    ws = db.query(WorkspaceModel).filter(WorkspaceModel.id == workspace_id).first()
    if ws is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Workspace not found"})
    return ws


async def _run_until_disconnect(request: Request, fn: Callable[[threading.Event], Any]) -> Any:
    """Run fn in the threadpool; a client disconnect sets the cancel event passed to it."""
    cancel_event = threading.Event()

    async def watch() -> None:
        while not cancel_event.is_set():
            if await request.is_disconnected():
                logger.info(f"Client disconnected from {request.url.path}, cancelling execution")
                cancel_event.set()
                return
            await asyncio.sleep(DISCONNECT_POLL_SECONDS)

    watcher = asyncio.create_task(watch())
    try:
        return await run_in_threadpool(fn, cancel_event)
    finally:
        watcher.cancel()


def _execute_plan(
    db: Session,
    executor: PlanExecutor,
    policy: GuardPolicy,
    ws: WorkspaceModel,
    plan,
    confirmed_paths: list[str],
    user_id: str | None,
    source: str,
    cancel_event: threading.Event,
) -> dict:
    try:
        result = executor.execute(
            ws.id,
            plan,
            user_id=user_id,
            safe_edit=bool(ws.safe_edit_mode),
            confirmed_paths=confirmed_paths,
            source=source,
            cancel_event=cancel_event,
        )
    except ExecutorError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_reason())

    if isinstance(result, ConfirmationRequest):
        return result.to_dict()

    save_sandbox_run(db, result.run, policy.snapshot_hash())
    return result.to_dict()


# ==================== Workspaces & files ====================

@router.post("", response_model=dict)
def create_workspace(body: CreateWorkspaceBody, db: Session = Depends(get_db)) -> dict:
    ws = WorkspaceModel(id=str(uuid.uuid4()), name=body.name, safe_edit_mode=body.safe_edit_mode)
    db.add(ws)
    db.commit()
    db.refresh(ws)
    logger.info(f"Workspace {ws.id} created (safe_edit_mode={ws.safe_edit_mode})")
    return _workspace_to_dict(ws)


@router.get("/{workspace_id}", response_model=dict)
def get_workspace(workspace_id: str, db: Session = Depends(get_db)) -> dict:
    return _workspace_to_dict(_get_workspace_or_404(db, workspace_id))


@router.patch("/{workspace_id}", response_model=dict)
def update_workspace(workspace_id: str, body: UpdateWorkspaceBody, db: Session = Depends(get_db)) -> dict:
    ws = _get_workspace_or_404(db, workspace_id)
    if body.name is not None:
        ws.name = body.name
    if body.safe_edit_mode is not None:
        ws.safe_edit_mode = body.safe_edit_mode
    db.commit()
    db.refresh(ws)
    return _workspace_to_dict(ws)


@router.put("/{workspace_id}/files", response_model=dict)
def put_file(workspace_id: str, body: PutFileBody, db: Session = Depends(get_db)) -> dict:
    _get_workspace_or_404(db, workspace_id)
    sanitized = sanitize_path(body.path)
    if not sanitized.ok:
        e = InvalidPathError(sanitized.error or "Invalid path")
        raise HTTPException(status_code=e.http_status, detail=e.to_reason())
    SqlFileStore(db).write_file(workspace_id, sanitized.path, body.content)
    return {"path": sanitized.path, "ok": True}


@router.get("/{workspace_id}/files", response_model=dict)
def list_files(workspace_id: str, db: Session = Depends(get_db)) -> dict:
    _get_workspace_or_404(db, workspace_id)
    return {"paths": SqlFileStore(db).list_paths(workspace_id)}


@router.get("/{workspace_id}/files/{path:path}", response_model=dict)
def get_file(workspace_id: str, path: str, db: Session = Depends(get_db)) -> dict:
    _get_workspace_or_404(db, workspace_id)
    content = SqlFileStore(db).read_file(workspace_id, path)
    if content is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": f"File not found: {path}"})
    return {"path": path, "content": content}


# ==================== Agent execution ====================

@router.post("/{workspace_id}/agent/apply-edits", response_model=dict)
async def apply_edits(
    workspace_id: str,
    body: ApplyEditsBody,
    request: Request,
    db: Session = Depends(get_db),
    runner: CommandRunner = Depends(get_command_runner),
    history: EditHistory = Depends(get_edit_history),
    proposer: FixProposer = Depends(get_fix_proposer),
    policy: GuardPolicy = Depends(get_policy),
    sandbox_dir: Path = Depends(get_sandbox_dir),
) -> dict:
    """
    Apply composer edits through a sandbox.

    Returns the execution report, or {needProtectedConfirmation, protectedPaths}
    with 200 when Safe-Edit Mode needs confirmation.
    """
    ws = _get_workspace_or_404(db, workspace_id)
    try:
        plan = parse_plan({"steps": body.steps})
    except ExecutorError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_reason())

    executor = _build_executor(db, runner, history, proposer, policy, sandbox_dir)
    return await _run_until_disconnect(
        request,
        lambda cancel_event: _execute_plan(
            db, executor, policy, ws, plan, body.confirmed_protected_paths, body.user_id, "composer", cancel_event
        ),
    )


@router.post("/{workspace_id}/agent/execute", response_model=dict)
async def execute_plan(
    workspace_id: str,
    body: ExecutePlanBody,
    request: Request,
    db: Session = Depends(get_db),
    runner: CommandRunner = Depends(get_command_runner),
    history: EditHistory = Depends(get_edit_history),
    proposer: FixProposer = Depends(get_fix_proposer),
    policy: GuardPolicy = Depends(get_policy),
    sandbox_dir: Path = Depends(get_sandbox_dir),
) -> dict:
    """Execute an agent plan (object or raw LLM text) through a sandbox."""
    ws = _get_workspace_or_404(db, workspace_id)
    try:
        plan = ensure_python_venv_step(parse_plan(body.plan))
    except ExecutorError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_reason())

    executor = _build_executor(db, runner, history, proposer, policy, sandbox_dir)
    return await _run_until_disconnect(
        request,
        lambda cancel_event: _execute_plan(
            db, executor, policy, ws, plan, body.confirmed_protected_paths, body.user_id, "agent", cancel_event
        ),
    )


# ==================== Undo / redo ====================

@router.get("/{workspace_id}/undo", response_model=dict)
def get_undo_state(
    workspace_id: str,
    db: Session = Depends(get_db),
    history: EditHistory = Depends(get_edit_history),
) -> dict:
    _get_workspace_or_404(db, workspace_id)
    return {"canUndo": history.can_undo(workspace_id), "canRedo": history.can_redo(workspace_id)}


@router.post("/{workspace_id}/undo")
def undo(
    workspace_id: str,
    db: Session = Depends(get_db),
    history: EditHistory = Depends(get_edit_history),
):
    _get_workspace_or_404(db, workspace_id)
    batch = history.pop_undo(workspace_id)
    if batch is None:
        return JSONResponse(status_code=400, content={"error": "Nothing to undo", "canUndo": False})

    store = SqlFileStore(db)
    reverted = []
    for entry in batch.entries:
        if entry.created:
            store.delete_file(workspace_id, entry.path)
            reverted.append({"path": entry.path, "content": entry.old_content, "deleted": True})
            continue
        store.write_file(workspace_id, entry.path, entry.old_content)
        reverted.append({"path": entry.path, "content": entry.old_content})
    logger.info(f"Workspace {workspace_id}: undo restored {len(reverted)} file(s)")
    return {"reverted": reverted, "canUndo": history.can_undo(workspace_id), "canRedo": True}


@router.get("/{workspace_id}/redo", response_model=dict)
def get_redo_state(
    workspace_id: str,
    db: Session = Depends(get_db),
    history: EditHistory = Depends(get_edit_history),
) -> dict:
    _get_workspace_or_404(db, workspace_id)
    return {"canUndo": history.can_undo(workspace_id), "canRedo": history.can_redo(workspace_id)}


@router.post("/{workspace_id}/redo")
def redo(
    workspace_id: str,
    db: Session = Depends(get_db),
    history: EditHistory = Depends(get_edit_history),
):
    _get_workspace_or_404(db, workspace_id)
    batch = history.pop_redo(workspace_id)
    if batch is None:
        return JSONResponse(status_code=400, content={"error": "Nothing to redo", "canRedo": False})

    store = SqlFileStore(db)
    reverted = []
    for entry in batch.entries:
        store.write_file(workspace_id, entry.path, entry.new_content)
        reverted.append({"path": entry.path, "content": entry.new_content})
    logger.info(f"Workspace {workspace_id}: redo re-applied {len(reverted)} file(s)")
    return {"reverted": reverted, "canUndo": True, "canRedo": history.can_redo(workspace_id)}


# ==================== Sandbox runs ====================

@router.get("/{workspace_id}/sandbox-runs", response_model=dict)
def list_sandbox_runs(workspace_id: str, limit: int = 50, db: Session = Depends(get_db)) -> dict:
    _get_workspace_or_404(db, workspace_id)
    limit = max(1, min(limit, 200))
    return {"items": [record_to_dict(r) for r in list_sandbox_records(db, workspace_id, limit)]}


@router.post("/{workspace_id}/sandbox-runs/{run_id}/rollback")
def rollback_sandbox_run(workspace_id: str, run_id: str, db: Session = Depends(get_db)):
    """Mark a run as rejected by the user. Files are reverted through undo, not here."""
    record = get_sandbox_record(db, run_id)
    if record is None:
        return JSONResponse(status_code=404, content={"error": "Sandbox run not found"})
    if record.workspace_id != workspace_id:
        return JSONResponse(status_code=400, content={"error": "Workspace mismatch"})
    mark_record_rolled_back(db, record)
    logger.info(f"Sandbox run {run_id} marked as rolled back")
    return {"ok": True}


# ==================== Stack config ====================

@router.get("/{workspace_id}/stack-config")
def get_stack_config(workspace_id: str, db: Session = Depends(get_db)):
    _get_workspace_or_404(db, workspace_id)
    store = SqlFileStore(db)
    content = store.read_file(workspace_id, STACK_CONFIG_PATH)
    if content is not None:
        stack_config, errors = parse_stack_config(content)
        if stack_config is None:
            return JSONResponse(status_code=400, content={"source": "file", "errors": errors})
        return {"source": "file", "config": stack_config.to_dict()}
    return {"source": "auto", "config": build_default_config(store.list_paths(workspace_id)).to_dict()}


@router.post("/{workspace_id}/stack-config")
async def create_stack_config(workspace_id: str, request: Request, db: Session = Depends(get_db)):
    """Write the stack config file; refuses to overwrite an existing one."""
    _get_workspace_or_404(db, workspace_id)
    store = SqlFileStore(db)
    if store.read_file(workspace_id, STACK_CONFIG_PATH) is not None:
        return JSONResponse(
            status_code=400,
            content={"error": f"Config file already exists. Edit {STACK_CONFIG_PATH} in your repo."},
        )

    try:
        payload = json.loads(await request.body())
    except (json.JSONDecodeError, UnicodeDecodeError):
        return JSONResponse(status_code=400, content={"error": "Invalid JSON body"})

    if not isinstance(payload, dict):
        return JSONResponse(status_code=400, content={"ok": False, "errors": ["Config must be a JSON object"]})
    stack_config, errors = parse_stack_config(payload)
    if stack_config is None:
        return JSONResponse(status_code=400, content={"ok": False, "errors": errors})

    store.write_file(workspace_id, STACK_CONFIG_PATH, json.dumps(stack_config.to_dict(), indent=2))
    logger.info(f"Workspace {workspace_id}: stack config written")
    return {"ok": True}
