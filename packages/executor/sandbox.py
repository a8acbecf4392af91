"""
Sandbox Lifecycle Manager - staged, disposable working copies of a workspace

State machine:
    created → edits_applied → checks_run → promoted | rejected

Flow:
    1. create: snapshot workspace files into a SandboxRun (in memory)
    2. apply_edits: run the FileApplier over the staged copy
    3. sync_to_disk: mirror staged files to <base_dir>/<run_id>/ for commands
    4. run_checks: lint / tests / run against the mirrored copy
    5. decide_promotion: a failed run check blocks promotion (CRITICAL);
       failed lint/tests promote with warnings when configured to
    6. promote: write changed files back to the FileStore

Safety:
- The store is never touched before promotion
- Staging failures never raise: they become conflicts with an empty path
- Staged directories are removed once a run is promoted or rejected
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .command_runner import CommandResult, CommandRunner, is_server_command
from .errors import SandboxNotFoundError, SandboxStateError
from .file_applier import FileApplier, StepOutcome
from .plan import FileEditStep
from .stack import CheckPlan, StackKind
from .store import FileStore

logger = logging.getLogger(__name__)

RUN_CHECK_TIMEOUT_MS = 15_000
CRITICAL_RUN_MESSAGE = "CRITICAL: Application failed to run. Changes will NOT be applied."
_CHECK_LOG_LIMIT = 500

_RUN_ERROR_MARKERS = (
    "error",
    "failed",
    "cannot find",
    "module not found",
    "cannot resolve",
    "syntax error",
    "unexpected token",
    "eaddrinuse",
    "enotfound",
)
_RUN_SUCCESS_MARKERS = (
    "listening",
    "ready",
    "started",
    "running on",
    "compiled successfully",
    "server running",
    "server started",
)
_PORT_PATTERN = re.compile(r"(?:listening|running|started|on|port).*?[:\s](\d{4,5})", re.IGNORECASE)


class SandboxStatus(str, Enum):
    CREATED = "created"
    EDITS_APPLIED = "edits_applied"
    CHECKS_RUN = "checks_run"
    PROMOTED = "promoted"
    REJECTED = "rejected"


_TERMINAL = {SandboxStatus.PROMOTED, SandboxStatus.REJECTED}


class CheckStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOT_CONFIGURED = "not_configured"


@dataclass
class CheckResult:
    status: CheckStatus
    logs: str = ""
    port: Optional[int] = None

    def to_dict(self) -> dict:
        data = {"status": self.status.value, "logs": self.logs}
        if self.port is not None:
            data["port"] = self.port
        return data


@dataclass
class SandboxChecks:
    lint: CheckResult
    tests: CheckResult
    run: CheckResult

    @property
    def passed(self) -> bool:
        """True when no check failed (skipped / not configured count as passing)."""
        return all(c.status != CheckStatus.FAILED for c in (self.lint, self.tests, self.run))

    def to_dict(self) -> dict:
        return {"lint": self.lint.to_dict(), "tests": self.tests.to_dict(), "run": self.run.to_dict()}


@dataclass
class Conflict:
    """A path the run could not change as planned, or a check warning."""
    path: str
    message: str
    kind: str = "conflict"

    def to_dict(self) -> dict:
        return {"path": self.path, "message": self.message, "kind": self.kind}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SandboxRun:
    """One staged attempt at applying a plan."""
    id: str
    workspace_id: str
    user_id: Optional[str] = None
    source: str = "agent"
    metadata: Dict = field(default_factory=dict)

    # Staged copy (path → content) and the snapshot it started from
    files: Dict[str, str] = field(default_factory=dict)
    original: Dict[str, str] = field(default_factory=dict)

    files_edited: List[str] = field(default_factory=list)
    conflicts: List[Conflict] = field(default_factory=list)
    checks: Optional[SandboxChecks] = None
    promoted: bool = False
    user_rolled_back: bool = False

    status: SandboxStatus = SandboxStatus.CREATED
    created_at: datetime = field(default_factory=_now)
    promoted_at: Optional[datetime] = None
    status_history: List[Dict] = field(default_factory=list)

    def update_status(self, new_status: SandboxStatus, message: str = ""):
        """Update status and record it in history."""
        self.status_history.append({
            "status": new_status.value,
            "message": message,
            "timestamp": _now().isoformat(),
        })
        self.status = new_status

    def add_conflict(self, path: str, message: str, kind: str = "conflict") -> None:
        self.conflicts.append(Conflict(path=path, message=message, kind=kind))

    @property
    def changed_paths(self) -> List[str]:
        """Staged paths whose content differs from the snapshot."""
        return [p for p in self.files_edited if self.files.get(p) != self.original.get(p)]

    @property
    def sandbox_checks_passed(self) -> Optional[bool]:
        return self.checks.passed if self.checks else None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workspaceId": self.workspace_id,
            "userId": self.user_id,
            "source": self.source,
            "metadata": self.metadata,
            "status": self.status.value,
            "filesEdited": list(self.files_edited),
            "conflicts": [c.to_dict() for c in self.conflicts],
            "checks": self.checks.to_dict() if self.checks else None,
            "sandboxChecksPassed": self.sandbox_checks_passed,
            "promoted": self.promoted,
            "userRolledBack": self.user_rolled_back,
            "createdAt": self.created_at.isoformat(),
            "promotedAt": self.promoted_at.isoformat() if self.promoted_at else None,
        }


def _tail(text: str, limit: int = _CHECK_LOG_LIMIT) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class SandboxManager:
    """
    Owns SandboxRuns from creation until promotion or rejection.

    Attributes:
        store: Authoritative file store
        runner: Command runner used for plan commands and checks
        base_dir: Root for on-disk mirrors of staged copies
        applier: FileApplier for edit steps
        promote_on_check_failure: Promote when lint/tests fail but the run check did not
        run_check_timeout_ms: Wall clock granted to a server started by the run check
    """

    def __init__(
        self,
        store: FileStore,
        runner: CommandRunner,
        base_dir: Optional[Path] = None,
        applier: Optional[FileApplier] = None,
        promote_on_check_failure: bool = True,
        run_check_timeout_ms: int = RUN_CHECK_TIMEOUT_MS,
    ):
        self.store = store
        self.runner = runner
        self.base_dir = Path(base_dir) if base_dir else Path(tempfile.gettempdir()) / "patchbay-sandboxes"
        self.applier = applier or FileApplier()
        self.promote_on_check_failure = promote_on_check_failure
        self.run_check_timeout_ms = run_check_timeout_ms
        self._runs: Dict[str, SandboxRun] = {}
        self._lock = threading.Lock()

    # ==================== Lookup ====================

    def get_run(self, run_id: str) -> SandboxRun:
        with self._lock:
            run = self._runs.get(run_id)
        if run is None:
            raise SandboxNotFoundError(f"Sandbox run not found: {run_id}")
        return run

    def sandbox_dir(self, run_id: str) -> Path:
        return self.base_dir / run_id

    def _transition(self, run: SandboxRun, new_status: SandboxStatus, message: str = "") -> None:
        if run.status in _TERMINAL:
            raise SandboxStateError(
                f"Sandbox run {run.id} is {run.status.value}; cannot move to {new_status.value}"
            )
        run.update_status(new_status, message)

    # ==================== Lifecycle ====================

    def create(
        self,
        workspace_id: str,
        user_id: Optional[str] = None,
        source: str = "agent",
        paths: Optional[Sequence[str]] = None,
        metadata: Optional[Dict] = None,
    ) -> SandboxRun:
        """
        Stage a working copy of the workspace (or only `paths`).

        Never raises for store failures; they are recorded as a conflict with
        an empty path and the run starts from an empty copy.
        """
        run = SandboxRun(
            id=str(uuid.uuid4()),
            workspace_id=workspace_id,
            user_id=user_id,
            source=source,
            metadata=dict(metadata or {}),
        )
        run.update_status(SandboxStatus.CREATED, "Sandbox created")

        try:
            files = self.store.read_files(workspace_id, paths)
            run.files = dict(files)
            run.original = dict(files)
        except Exception as e:
            logger.warning(f"Failed to stage sandbox {run.id} for workspace {workspace_id}: {e}")
            run.add_conflict("", f"Failed to stage sandbox: {e}", kind="staging")

        with self._lock:
            self._runs[run.id] = run
        logger.info(f"Sandbox {run.id} created for workspace {workspace_id} ({len(run.files)} files)")
        return run

    def apply_step(self, run: SandboxRun, step: FileEditStep) -> StepOutcome:
        """Apply one edit to the staged copy; drift becomes a conflict."""
        outcome = self.applier.apply_step(step, run.files.get(step.path))
        if outcome.applied:
            run.files[step.path] = outcome.new_content
            if step.path not in run.files_edited:
                run.files_edited.append(step.path)
            if outcome.over_edit:
                run.add_conflict(
                    step.path,
                    f"Over-edit: replaced {outcome.replaced_ratio:.0%} of the file",
                    kind="over_edit",
                )
        else:
            run.add_conflict(step.path, outcome.conflict or "Edit not applied")
        logger.debug(f"Sandbox {run.id}: edit {step.path} applied={outcome.applied}")
        return outcome

    def apply_edits(self, run: SandboxRun, steps: Sequence[FileEditStep]) -> List[StepOutcome]:
        """Apply edits in order; each sees the result of the previous one."""
        outcomes = [self.apply_step(run, step) for step in steps]
        self._transition(run, SandboxStatus.EDITS_APPLIED, f"{len(outcomes)} edit(s) processed")
        return outcomes

    def sync_to_disk(self, run: SandboxRun) -> Optional[Path]:
        """
        Mirror the staged copy to disk.

        Returns:
            The sandbox directory, or None if staging failed (recorded as a conflict)
        """
        root = self.sandbox_dir(run.id)
        try:
            root.mkdir(parents=True, exist_ok=True)
            resolved_root = root.resolve()
            for rel_path, content in run.files.items():
                target = (root / rel_path).resolve()
                if resolved_root not in target.parents:
                    raise ValueError(f"Path escapes sandbox: {rel_path}")
                self._write_atomic(target, content)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to sync sandbox {run.id} to disk: {e}")
            run.add_conflict("", f"Failed to stage sandbox: {e}", kind="staging")
            return None
        return root

    @staticmethod
    def _write_atomic(file_path: Path, content: str) -> None:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(dir=file_path.parent, suffix=".tmp")
        try:
            with open(temp_fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(temp_path, file_path)
        except OSError:
            Path(temp_path).unlink(missing_ok=True)
            raise

    def run_command(
        self,
        run: SandboxRun,
        command: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> CommandResult:
        """Sync the staged copy, then run a command inside it."""
        cwd = self.sync_to_disk(run)
        if cwd is None:
            return CommandResult(exit_code=None, error_message="Failed to stage sandbox for command")
        return self.runner.run(command, cwd, cancel_event=cancel_event)

    # ==================== Checks ====================

    def run_checks(self, run: SandboxRun, cancel_event: Optional[threading.Event] = None) -> SandboxChecks:
        """Run lint, tests and run checks against the staged copy."""
        cwd = self.sync_to_disk(run)
        if cwd is None:
            skipped = CheckResult(CheckStatus.SKIPPED, "Sandbox could not be staged")
            checks = SandboxChecks(lint=skipped, tests=skipped, run=skipped)
        else:
            plan = CheckPlan(run.files, root=cwd)
            checks = SandboxChecks(
                lint=self._run_candidates(plan.lint_commands(), "lint", plan.stack, cwd, cancel_event),
                tests=self._run_candidates(plan.test_commands(), "test", plan.stack, cwd, cancel_event),
                run=self._run_app(plan, cwd, cancel_event),
            )

        run.checks = checks
        self._transition(run, SandboxStatus.CHECKS_RUN, f"Checks passed: {checks.passed}")
        logger.info(
            f"Sandbox {run.id} checks: lint={checks.lint.status.value} "
            f"tests={checks.tests.status.value} run={checks.run.status.value}"
        )
        return checks

    def _run_candidates(
        self,
        commands: List[str],
        label: str,
        stack: StackKind,
        cwd: Path,
        cancel_event: Optional[threading.Event],
    ) -> CheckResult:
        """The first candidate that produces an exit code decides the check."""
        for cmd in commands:
            result = self.runner.run(cmd, cwd, cancel_event=cancel_event)
            if result.exit_code is None:
                continue
            output = f"{result.stdout}\n{result.stderr}".strip()
            if result.exit_code == 0:
                return CheckResult(CheckStatus.PASSED, result.stdout or result.stderr or f"{label.capitalize()} passed")
            return CheckResult(CheckStatus.FAILED, output or f"{label.capitalize()} failed")

        if stack == StackKind.UNKNOWN:
            return CheckResult(CheckStatus.SKIPPED, "No recognized project")
        if not commands:
            return CheckResult(CheckStatus.NOT_CONFIGURED, f"No {label} command found for {stack.value}")
        return CheckResult(CheckStatus.NOT_CONFIGURED, f"{label.capitalize()} script not available or failed to run")

    def _run_app(self, plan: CheckPlan, cwd: Path, cancel_event: Optional[threading.Event]) -> CheckResult:
        candidates = plan.run_commands()
        if not candidates:
            if plan.stack == StackKind.UNKNOWN:
                return CheckResult(CheckStatus.SKIPPED, "No recognized project")
            return CheckResult(CheckStatus.NOT_CONFIGURED, plan.missing_run_reason())

        for candidate in candidates:
            is_server = candidate.is_server or is_server_command(candidate.cmd)
            timeout_ms = self.run_check_timeout_ms if is_server else None
            result = self.runner.run(candidate.cmd, cwd, timeout_ms=timeout_ms, cancel_event=cancel_event)
            verdict = judge_run_output(result, is_server)
            if verdict is not None:
                return verdict
        return CheckResult(CheckStatus.SKIPPED, "Profile run commands tried but none succeeded")

    # ==================== Promotion ====================

    def decide_promotion(self, run: SandboxRun) -> bool:
        """
        Whether the run may be promoted; adds check conflicts to the run.

        A failed run check always blocks promotion. Failed lint/tests add a
        warning and block only when promote_on_check_failure is off.
        """
        checks = run.checks
        if checks is None:
            return True
        if checks.run.status == CheckStatus.FAILED:
            run.add_conflict("", f"{CRITICAL_RUN_MESSAGE} {_tail(checks.run.logs)}", kind="critical")
            return False

        allowed = True
        for label, check in (("Lint", checks.lint), ("Test", checks.tests)):
            if check.status == CheckStatus.FAILED:
                run.add_conflict("", f"{label} check failed: {_tail(check.logs)}", kind="check")
                allowed = allowed and self.promote_on_check_failure
        return allowed

    def promote(self, run: SandboxRun) -> List[str]:
        """
        Copy changed staged files into the store.

        Returns:
            Paths written to the store

        Raises:
            SandboxStateError: If the run is already promoted or rejected
        """
        if run.status in _TERMINAL:
            raise SandboxStateError(f"Sandbox run {run.id} is already {run.status.value}")

        written: List[str] = []
        for path in run.changed_paths:
            try:
                self.store.write_file(run.workspace_id, path, run.files[path])
                written.append(path)
            except Exception as e:
                logger.warning(f"Failed to promote {path} from sandbox {run.id}: {e}")
                run.add_conflict(path, f"Failed to update file in workspace: {e}")

        run.promoted = True
        run.promoted_at = _now()
        run.update_status(SandboxStatus.PROMOTED, f"{len(written)} file(s) promoted")
        self.cleanup(run)
        logger.info(f"Sandbox {run.id} promoted: {written}")
        return written

    def reject(self, run: SandboxRun, reason: str = "") -> None:
        """Discard a run without touching the store."""
        self._transition(run, SandboxStatus.REJECTED, reason or "Rejected")
        self.cleanup(run)
        logger.info(f"Sandbox {run.id} rejected: {reason}")

    def mark_rolled_back(self, run: SandboxRun) -> None:
        """Record that the user rolled the run's changes back."""
        run.user_rolled_back = True
        logger.info(f"Sandbox {run.id} marked as rolled back by user")

    def cleanup(self, run: SandboxRun) -> None:
        shutil.rmtree(self.sandbox_dir(run.id), ignore_errors=True)


def extract_port(output: str) -> Optional[int]:
    match = _PORT_PATTERN.search(output)
    return int(match.group(1)) if match else None


def judge_run_output(result: CommandResult, is_server: bool) -> Optional[CheckResult]:
    """
    Judge whether a started application ran.

    Returns:
        CheckResult when the output is conclusive, None to try the next candidate
    """
    timed_out = result.exit_code is None and bool(result.error_message) and "timed out" in result.error_message
    if result.exit_code is None and not timed_out:
        # Blocked, cancelled or failed to spawn
        return None

    stderr_lower = result.stderr.lower()
    combined = f"{result.stdout}\n{result.stderr}"
    combined_lower = combined.lower()

    has_error = (
        any(marker in stderr_lower for marker in _RUN_ERROR_MARKERS)
        or ("port" in stderr_lower and "already in use" in stderr_lower)
        or (result.exit_code not in (None, 0) and not is_server)
    )
    if has_error:
        return CheckResult(CheckStatus.FAILED, combined.strip() or "Application failed to start")

    # A server still running at the deadline with no error output counts as started
    has_success = any(marker in combined_lower for marker in _RUN_SUCCESS_MARKERS) or (is_server and timed_out)
    if has_success:
        return CheckResult(
            CheckStatus.PASSED,
            result.stdout or result.stderr or "Application started successfully",
            port=extract_port(combined),
        )
    if result.exit_code == 0:
        return CheckResult(CheckStatus.PASSED, result.stdout or result.stderr or "Application ran successfully")
    if result.exit_code is not None:
        return CheckResult(CheckStatus.FAILED, combined.strip() or "Application failed to run")
    return None
