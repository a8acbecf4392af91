"""
Patchbay Executor - sandboxed plan execution

Philosophy: an LLM plan never touches the workspace directly.

Every plan is staged into a disposable sandbox first:
- File edits are applied to a working copy (drift → conflict, not overwrite)
- Commands run inside the copy, bounded by a hard timeout
- A failed test gets at most one auto-fix attempt, locked to the repair scope
- Lint / test / run checks decide whether the copy is promoted

Architecture:
    Plan (validated tagged union)
        ↓
    PlanExecutor → Safe-Edit gate
        ↓
    SandboxManager → stage → edits → commands → checks
        ↓
    Promote → FileStore + EditHistory (undo/redo)
        or
    Reject → nothing written

Key Principle: the store is authoritative; a sandbox is only a working copy
until it is promoted.
"""

from .errors import (
    ExecutorError,
    PlanValidationError,
    InvalidPathError,
    PolicyDeniedError,
    SandboxNotFoundError,
    SandboxStateError,
)

from .plan import (
    FileEditStep,
    CommandStep,
    PlanStep,
    Plan,
    parse_plan,
    ensure_python_venv_step,
)

from .command_runner import CommandResult, CommandRunner, is_server_command

from .classify import (
    CommandKind,
    CommandResultStatus,
    ExecutionErrorType,
    StructuredExecutionError,
    classify_command_kind,
    classify_command_result,
    classify_execution_error,
)

from .file_applier import (
    CONFLICT_MESSAGE,
    ConfirmationRequest,
    FileApplier,
    StepOutcome,
    apply_edit,
)

from .edit_history import EditEntry, EditBatch, EditHistory, MAX_UNDO_DEPTH

from .store import FileStore, InMemoryFileStore

from .stack import (
    STACK_CONFIG_PATH,
    StackKind,
    StackConfig,
    ServiceConfig,
    CheckPlan,
    detect_stack,
    detect_stack_from_paths,
    parse_stack_config,
    python_entry_point,
    build_default_config,
)

from .sandbox import (
    SandboxManager,
    SandboxRun,
    SandboxStatus,
    SandboxChecks,
    CheckResult,
    CheckStatus,
    Conflict,
)

from .repair import FixProposer, NullFixProposer, RepairContext

from .orchestrator import PlanExecutor, ExecutionReport, LogEntry

__all__ = [
    # Errors
    "ExecutorError",
    "PlanValidationError",
    "InvalidPathError",
    "PolicyDeniedError",
    "SandboxNotFoundError",
    "SandboxStateError",

    # Plan
    "FileEditStep",
    "CommandStep",
    "PlanStep",
    "Plan",
    "parse_plan",
    "ensure_python_venv_step",

    # Commands
    "CommandResult",
    "CommandRunner",
    "is_server_command",
    "CommandKind",
    "CommandResultStatus",
    "ExecutionErrorType",
    "StructuredExecutionError",
    "classify_command_kind",
    "classify_command_result",
    "classify_execution_error",

    # Edits
    "CONFLICT_MESSAGE",
    "ConfirmationRequest",
    "FileApplier",
    "StepOutcome",
    "apply_edit",
    "EditEntry",
    "EditBatch",
    "EditHistory",
    "MAX_UNDO_DEPTH",
    "FileStore",
    "InMemoryFileStore",

    # Stack
    "STACK_CONFIG_PATH",
    "StackKind",
    "StackConfig",
    "ServiceConfig",
    "CheckPlan",
    "detect_stack",
    "detect_stack_from_paths",
    "parse_stack_config",
    "python_entry_point",
    "build_default_config",

    # Sandbox
    "SandboxManager",
    "SandboxRun",
    "SandboxStatus",
    "SandboxChecks",
    "CheckResult",
    "CheckStatus",
    "Conflict",

    # Orchestration
    "FixProposer",
    "NullFixProposer",
    "RepairContext",
    "PlanExecutor",
    "ExecutionReport",
    "LogEntry",
]

__version__ = "1.0.0"
