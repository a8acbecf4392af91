"""
Bounded self-repair - Auto-fix after a failed test command

Given a failed test command, build the context a fix proposer needs (output
tails, structured error, repair scope) and filter what it proposes:
- at most one fix edit is kept, unless the failure is a missing module
- edits outside the repair scope are rejected (hard lock)
- edits to paths outside allowed roots are rejected

The proposer itself (usually an LLM call) is injected; one attempt per
command, never a loop.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Set, Tuple

from governance import is_path_in_repair_scope, validate_path_for_plan

from .classify import ExecutionErrorType, StructuredExecutionError
from .plan import FileEditStep

TAIL_LINES = 150


def tail_lines(text: str, n: int = TAIL_LINES) -> str:
    """Last n lines of text."""
    lines = (text or "").split("\n")
    return "\n".join(lines[-n:])


@dataclass
class RepairContext:
    """Everything a fix proposer sees about a failed command."""
    command: str
    stdout_tail: str
    stderr_tail: str
    exit_code: Optional[int]
    structured_error: StructuredExecutionError
    files_edited: List[str] = field(default_factory=list)
    scope: Set[str] = field(default_factory=set)

    def to_dict(self) -> dict:
        return {
            "command": self.command,
            "stdoutTail": self.stdout_tail,
            "stderrTail": self.stderr_tail,
            "exitCode": self.exit_code,
            "structuredError": self.structured_error.to_dict(),
            "filesEdited": list(self.files_edited),
            "scope": sorted(self.scope),
        }


class FixProposer(Protocol):
    """Proposes file edits that should make a failed command pass."""

    def propose_fix_steps(self, context: RepairContext) -> List[FileEditStep]:
        ...


class NullFixProposer:
    """Proposes nothing; used when no repair collaborator is configured."""

    def propose_fix_steps(self, context: RepairContext) -> List[FileEditStep]:
        return []


def out_of_scope_message(path: str) -> str:
    return f"Rejected: {path} is outside the repair scope"


def filter_fix_steps(
    steps: List[FileEditStep],
    context: RepairContext,
    allowed_root_dirs: Optional[List[str]] = None,
    allowed_root_files: Optional[List[str]] = None,
) -> Tuple[List[FileEditStep], List[Tuple[FileEditStep, str]]]:
    """
    Split proposed fix steps into accepted and rejected (with reason).

    Args:
        steps: Steps returned by the proposer
        context: The context the proposer was given
        allowed_root_dirs: Root directories fix edits may touch (policy defaults when None)
        allowed_root_files: Root files fix edits may touch (policy defaults when None)

    Returns:
        (accepted, [(rejected_step, reason), ...])
    """
    if context.structured_error.error_type != ExecutionErrorType.MODULE_NOT_FOUND:
        steps = steps[:1]

    accepted: List[FileEditStep] = []
    rejected: List[Tuple[FileEditStep, str]] = []
    for step in steps:
        if context.scope and not is_path_in_repair_scope(step.path, context.scope):
            rejected.append((step, out_of_scope_message(step.path)))
            continue
        check = validate_path_for_plan(step.path, allowed_root_dirs, allowed_root_files)
        if not check.ok:
            rejected.append((step, f"Rejected: {check.error}"))
            continue
        accepted.append(step)
    return accepted, rejected
