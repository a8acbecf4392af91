"""
Plan Execution Orchestrator - walks a plan through a sandbox

Flow:
    1. Safe-Edit gate (protected / over-edit paths need confirmation)
    2. Stage a sandbox from the workspace
    3. Walk steps in order:
       - file_edit → FileApplier against the staged copy
       - command → CommandRunner inside the staged copy, classified;
         a failed test command gets one bounded auto-fix attempt
    4. Run sandbox checks (lint / tests / run)
    5. Promote (and record an undo batch) or reject

Per-step failures never escape: each becomes a log entry.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Union

from governance import SAFE_EDIT_MAX_FILES, build_repair_scope

from .classify import (
    CommandKind,
    CommandResultStatus,
    action_label_for,
    classify_command_kind,
    classify_command_result,
    classify_execution_error,
)
from .edit_history import EditEntry, EditHistory
from .errors import PolicyDeniedError
from .file_applier import CONFLICT_MESSAGE, ConfirmationRequest, StepOutcome
from .plan import CommandStep, FileEditStep, Plan
from .repair import FixProposer, NullFixProposer, RepairContext, filter_fix_steps, tail_lines
from .sandbox import CheckStatus, SandboxManager, SandboxRun

logger = logging.getLogger(__name__)

AUTO_FIX_LABEL = "AUTO-FIX"
EDIT_LABEL = "EDIT"
RUN_FAILED_MESSAGE = "Application failed to run. Please fix errors before applying changes."
CHECKS_FAILED_MESSAGE = "Sandbox checks failed. Changes were not applied."
CANCELLED_MESSAGE = "Execution cancelled"


def _is_cancelled(cancel_event: Optional[threading.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()


@dataclass
class LogEntry:
    """One line of the execution log."""
    step_index: int
    type: str  # file_edit | command | info
    status: str  # ok | skipped | error
    message: str = ""
    path: Optional[str] = None
    command: Optional[str] = None
    command_kind: Optional[str] = None
    command_status: Optional[str] = None
    command_status_summary: Optional[str] = None
    action_label: Optional[str] = None
    status_line: Optional[str] = None
    auto_fix_attempted: Optional[bool] = None
    second_run_status: Optional[str] = None
    second_run_summary: Optional[str] = None
    structured_error: Optional[Dict] = None
    replaced_ratio: Optional[float] = None

    def to_dict(self) -> dict:
        data = {
            "stepIndex": self.step_index,
            "type": self.type,
            "status": self.status,
            "message": self.message,
        }
        optional = {
            "path": self.path,
            "command": self.command,
            "commandKind": self.command_kind,
            "commandStatus": self.command_status,
            "commandStatusSummary": self.command_status_summary,
            "actionLabel": self.action_label,
            "statusLine": self.status_line,
            "autoFixAttempted": self.auto_fix_attempted,
            "secondRunStatus": self.second_run_status,
            "secondRunSummary": self.second_run_summary,
            "structuredError": self.structured_error,
            "replacedRatio": self.replaced_ratio,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data


@dataclass
class ExecutionReport:
    """Outcome of one plan execution."""
    success: bool
    run: SandboxRun
    log: List[LogEntry] = field(default_factory=list)
    summary: str = ""
    message: Optional[str] = None

    @property
    def files_edited(self) -> List[str]:
        return list(self.run.files_edited)

    @property
    def promoted(self) -> bool:
        return self.run.promoted

    def to_dict(self) -> dict:
        data = {
            "success": self.success,
            "filesEdited": self.files_edited,
            "log": [entry.to_dict() for entry in self.log],
            "conflicts": [c.to_dict() for c in self.run.conflicts],
            "sandboxRunId": self.run.id,
            "sandboxChecks": self.run.checks.to_dict() if self.run.checks else None,
            "promoted": self.promoted,
            "summary": self.summary,
        }
        if self.message:
            data["message"] = self.message
        return data


@dataclass
class _Tally:
    commands_ok: int = 0
    commands_failed: int = 0
    tests_passed: int = 0
    tests_failed: int = 0
    auto_fix_succeeded: bool = False
    auto_fix_failed: bool = False


class PlanExecutor:
    """
    Executes validated plans against a workspace.

    Attributes:
        sandbox: SandboxManager owning the staged copies
        history: EditHistory receiving one batch per promoted run
        fix_proposer: Repair collaborator for failed test commands
        safe_edit_max_files: Distinct files a Safe-Edit plan may touch
        allowed_root_dirs: Root directories auto-fix edits may touch
        allowed_root_files: Root files auto-fix edits may touch
    """

    def __init__(
        self,
        sandbox: SandboxManager,
        history: EditHistory,
        fix_proposer: Optional[FixProposer] = None,
        safe_edit_max_files: int = SAFE_EDIT_MAX_FILES,
        allowed_root_dirs: Optional[List[str]] = None,
        allowed_root_files: Optional[List[str]] = None,
    ):
        self.sandbox = sandbox
        self.history = history
        self.fix_proposer = fix_proposer or NullFixProposer()
        self.safe_edit_max_files = safe_edit_max_files
        self.allowed_root_dirs = allowed_root_dirs
        self.allowed_root_files = allowed_root_files

    # ==================== Safe-Edit gate ====================

    def check_safe_edit(
        self,
        workspace_id: str,
        plan: Plan,
        confirmed_paths: Sequence[str] = (),
    ) -> ConfirmationRequest:
        """
        Evaluate the Safe-Edit gate for a plan.

        Raises:
            PolicyDeniedError: If the plan edits more files than Safe-Edit allows
        """
        paths = plan.edit_paths
        if len(paths) > self.safe_edit_max_files:
            raise PolicyDeniedError(
                f"Safe-Edit Mode allows at most {self.safe_edit_max_files} files per plan "
                f"({len(paths)} requested)"
            )
        current = self.sandbox.store.read_files(workspace_id, paths)
        return self.sandbox.applier.confirmation_needed(plan.edit_steps, current, confirmed_paths)

    # ==================== Execution ====================

    def execute(
        self,
        workspace_id: str,
        plan: Plan,
        user_id: Optional[str] = None,
        safe_edit: bool = False,
        confirmed_paths: Sequence[str] = (),
        source: str = "agent",
        metadata: Optional[Dict] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Union[ExecutionReport, ConfirmationRequest]:
        """
        Execute a plan end to end.

        Args:
            workspace_id: Target workspace
            plan: Validated plan
            user_id: Requesting user (recorded on the run)
            safe_edit: Apply the Safe-Edit confirmation gate
            confirmed_paths: Paths the caller confirmed for the gate
            source: Origin tag recorded on the sandbox run
            metadata: Free-form run metadata
            cancel_event: When set, the in-flight command is killed and the walk stops

        Returns:
            ConfirmationRequest when Safe-Edit needs confirmation, else ExecutionReport

        Raises:
            PolicyDeniedError: If Safe-Edit refuses the plan outright
        """
        if safe_edit:
            confirmation = self.check_safe_edit(workspace_id, plan, confirmed_paths)
            if confirmation.needed:
                logger.info(
                    f"Workspace {workspace_id}: confirmation needed for "
                    f"{confirmation.protected_paths + confirmation.over_edit_paths}"
                )
                return confirmation

        run = self.sandbox.create(
            workspace_id,
            user_id=user_id,
            source=source,
            metadata={**(metadata or {}), "stepCount": len(plan.steps)},
        )
        log: List[LogEntry] = []
        tally = _Tally()

        for index, step in enumerate(plan.steps):
            if _is_cancelled(cancel_event):
                return self._cancelled_report(plan, run, log, tally, index)
            try:
                if isinstance(step, FileEditStep):
                    log.append(self._run_edit(run, index, step))
                else:
                    log.extend(self._run_command(run, index, step, tally, cancel_event))
            except Exception as e:
                logger.exception(f"Step {index} failed in sandbox {run.id}")
                log.append(LogEntry(
                    step_index=index,
                    type=step.type,
                    status="error",
                    message=f"Step failed: {e}",
                    path=getattr(step, "path", None),
                    command=getattr(step, "command", None),
                ))

        # A cancel during the last step or during checks must not promote.
        if _is_cancelled(cancel_event):
            return self._cancelled_report(plan, run, log, tally, len(plan.steps))
        self.sandbox.run_checks(run, cancel_event)
        if _is_cancelled(cancel_event):
            return self._cancelled_report(plan, run, log, tally, len(plan.steps))

        message = None
        if self.sandbox.decide_promotion(run):
            before = {p: run.original.get(p, "") for p in run.changed_paths}
            written = self.sandbox.promote(run)
            self.history.push_edit_batch(
                workspace_id,
                [
                    EditEntry(path=p, old_content=before[p], new_content=run.files[p], created=p not in run.original)
                    for p in written
                ],
            )
            success = True
        else:
            run_failed = run.checks is not None and run.checks.run.status == CheckStatus.FAILED
            message = RUN_FAILED_MESSAGE if run_failed else CHECKS_FAILED_MESSAGE
            self.sandbox.reject(run, message)
            success = False

        report = ExecutionReport(
            success=success,
            run=run,
            log=log,
            summary=self._summarize(plan, run, tally),
            message=message,
        )
        logger.info(f"Workspace {workspace_id}: plan executed in sandbox {run.id}, promoted={run.promoted}")
        return report

    def _cancelled_report(self, plan, run, log, tally, index) -> ExecutionReport:
        """Reject the run; nothing staged reaches the store."""
        log.append(LogEntry(step_index=index, type="info", status="skipped", message=CANCELLED_MESSAGE))
        self.sandbox.reject(run, CANCELLED_MESSAGE)
        logger.info(f"Sandbox {run.id}: execution cancelled at step {index}")
        return ExecutionReport(
            success=False,
            run=run,
            log=log,
            summary=self._summarize(plan, run, tally),
            message=CANCELLED_MESSAGE,
        )

    def _run_edit(self, run: SandboxRun, index: int, step: FileEditStep, label: str = EDIT_LABEL) -> LogEntry:
        outcome: StepOutcome = self.sandbox.apply_edits(run, [step])[0]
        if not outcome.applied:
            return LogEntry(
                step_index=index,
                type="file_edit",
                status="skipped",
                message=outcome.conflict or CONFLICT_MESSAGE,
                path=step.path,
                action_label=label,
                status_line=f"{step.path} - skipped (conflict)",
            )
        message = f"Created {step.path}" if outcome.created else f"Applied edit to {step.path}"
        return LogEntry(
            step_index=index,
            type="file_edit",
            status="ok",
            message=message,
            path=step.path,
            action_label=label,
            status_line=message,
            replaced_ratio=outcome.replaced_ratio if outcome.replaced_ratio else None,
        )

    def _run_command(
        self,
        run: SandboxRun,
        index: int,
        step: CommandStep,
        tally: _Tally,
        cancel_event: Optional[threading.Event],
    ) -> List[LogEntry]:
        kind = classify_command_kind(step.command)
        result = self.sandbox.run_command(run, step.command, cancel_event)
        classification = classify_command_result(result)
        ok = classification.status == CommandResultStatus.SUCCESS

        entry = LogEntry(
            step_index=index,
            type="command",
            status="ok" if ok else "error",
            message=classification.summary,
            command=step.command,
            command_kind=kind.value,
            command_status=classification.status.value,
            command_status_summary=classification.summary,
            action_label=action_label_for(kind),
            status_line=f"{step.command} - {classification.status.value} ({classification.summary})",
        )
        entries = [entry]
        if not ok and classification.status == CommandResultStatus.FAILED:
            entry.structured_error = classify_execution_error(
                result.stderr, result.stdout, result.exit_code
            ).to_dict()

        final_ok = ok
        failed_test = kind == CommandKind.TEST and classification.status == CommandResultStatus.FAILED
        if failed_test and not _is_cancelled(cancel_event):
            repair_entries, final_ok = self._attempt_repair(run, index, step, result, entry, cancel_event)
            entries.extend(repair_entries)
            if final_ok:
                tally.auto_fix_succeeded = True
            else:
                tally.auto_fix_failed = True

        if final_ok:
            tally.commands_ok += 1
        else:
            tally.commands_failed += 1
        if kind == CommandKind.TEST:
            if final_ok:
                tally.tests_passed += 1
            else:
                tally.tests_failed += 1
        return entries

    # ==================== Self-repair ====================

    def _attempt_repair(self, run, index, step, result, entry, cancel_event):
        """
        One bounded auto-fix: propose, filter to scope, apply, re-run once.

        Returns:
            (extra log entries, whether the command passed on the second run)
        """
        structured = classify_execution_error(result.stderr, result.stdout, result.exit_code)
        scope = build_repair_scope(step.command, result.stderr, result.stdout, structured.failing_file)
        context = RepairContext(
            command=step.command,
            stdout_tail=tail_lines(result.stdout),
            stderr_tail=tail_lines(result.stderr),
            exit_code=result.exit_code,
            structured_error=structured,
            files_edited=list(run.files_edited),
            scope=scope,
        )
        entry.auto_fix_attempted = True
        entries = [LogEntry(
            step_index=index,
            type="info",
            status="ok",
            message="Auto-fixing failed tests...",
            action_label=AUTO_FIX_LABEL,
        )]
        logger.info(f"Sandbox {run.id}: auto-fix for {step.command!r}, scope={sorted(scope)}")

        try:
            proposed = self.fix_proposer.propose_fix_steps(context)
        except Exception as e:
            logger.warning(f"Fix proposer failed for sandbox {run.id}: {e}")
            entries.append(LogEntry(
                step_index=index,
                type="info",
                status="error",
                message=f"Auto-fix failed: {e}",
                action_label=AUTO_FIX_LABEL,
            ))
            return entries, False

        accepted, rejected = filter_fix_steps(
            list(proposed or []), context, self.allowed_root_dirs, self.allowed_root_files
        )
        for fix_step, reason in rejected:
            logger.warning(f"Sandbox {run.id}: {reason}")
            entries.append(LogEntry(
                step_index=index,
                type="file_edit",
                status="skipped",
                message=reason,
                path=fix_step.path,
                action_label=AUTO_FIX_LABEL,
                status_line=reason,
            ))

        applied = 0
        for fix_step in accepted:
            fix_entry = self._run_edit(run, index, fix_step, label=AUTO_FIX_LABEL)
            entries.append(fix_entry)
            if fix_entry.status == "ok":
                applied += 1

        if applied == 0:
            entries.append(LogEntry(
                step_index=index,
                type="info",
                status="skipped",
                message="Auto-fix produced no applicable edits",
                action_label=AUTO_FIX_LABEL,
            ))
            return entries, False

        second = self.sandbox.run_command(run, step.command, cancel_event)
        second_class = classify_command_result(second)
        entry.second_run_status = second_class.status.value
        entry.second_run_summary = second_class.summary
        passed = second_class.status == CommandResultStatus.SUCCESS
        if passed:
            message = f"Auto-fix applied {applied} edit(s), second run passed"
        else:
            message = (
                f"Auto-fix applied {applied} edit(s), second run: "
                f"{second_class.status.value} ({second_class.summary})"
            )
        entries.append(LogEntry(
            step_index=index,
            type="info",
            status="ok" if passed else "error",
            message=message,
            command=step.command,
            action_label=AUTO_FIX_LABEL,
            status_line=message,
        ))
        return entries, passed

    # ==================== Summary ====================

    @staticmethod
    def _summarize(plan: Plan, run: SandboxRun, tally: _Tally) -> str:
        parts = [
            plan.summary.strip() if plan.summary and plan.summary.strip() else f"Completed {len(plan.steps)} step(s).",
            f"Files edited: {len(run.files_edited)}.",
            f"Commands: {tally.commands_ok} succeeded, {tally.commands_failed} failed.",
        ]
        if tally.tests_passed or tally.tests_failed:
            if tally.tests_failed == 0:
                suffix = " (auto-fix succeeded)" if tally.auto_fix_succeeded else ""
                parts.append(f"Tests: {tally.tests_passed} passed{suffix}.")
            else:
                suffix = " (auto-fix tried, still failing)" if tally.auto_fix_failed else ""
                parts.append(f"Tests: {tally.tests_passed} passed, {tally.tests_failed} failed{suffix}.")
        drifted = sum(1 for c in run.conflicts if c.message == CONFLICT_MESSAGE)
        if drifted:
            parts.append(f"{drifted} edit(s) skipped (file changed since planning).")
        return " ".join(parts)
