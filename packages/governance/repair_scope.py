"""
Repair Scope - files an automatic repair attempt may touch

Built from the failing command's output (stack frames, tracebacks, error
lines), the command's direct target (`python app.py`, `node x.js`,
`go run ./cmd`), and an optional failing-file hint from the error classifier.

When the scope is non-empty it is a hard lock: any repair edit outside it is
rejected by the orchestrator.
"""

import re
from typing import Iterable, Optional, Set

from .path_utils import normalize_relative

_SOURCE_EXT = r"(?:tsx|ts|jsx|json|js|py|java|rb|go|rs|cpp|c|h|mod|sum)"
_CODE_EXT = r"(?:tsx|ts|jsx|js|py|java|rb|go|rs|cpp|c|h)"
_END = r"(?![A-Za-z0-9_])"

STACK_PATTERNS = [
    re.compile(
        r"\b(?:File|at)\s+[\"']?([^\s\"'()]+\." + _SOURCE_EXT + _END + r")[\"']?\s*(?:,\s*line\s+\d+)?",
        re.IGNORECASE,
    ),
    re.compile(r"\b(?:in|at)\s+\(?([^\s\"'()]+\." + _CODE_EXT + _END + r")(?:\s*:\s*\d+)?", re.IGNORECASE),
    re.compile(r"Traceback[\s\S]*?File\s+[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"Error.*?([^\s\"'()]+\.(?:tsx|ts|jsx|json|js|py)" + _END + r")(?:\s*:\s*\d+)?", re.IGNORECASE),
    re.compile(r"([a-zA-Z0-9_/-]+/go\.mod)", re.IGNORECASE),
]

_COMMAND_TARGETS = [
    re.compile(r"\bpython3?\s+([^\s&|;]+\.py)", re.IGNORECASE),
    re.compile(r"\bnode\s+([^\s&|;]+\.(?:js|ts))", re.IGNORECASE),
    re.compile(r"\bgo\s+(?:run|test)\s+([^\s&|;]+)", re.IGNORECASE),
]


def extract_command_target(command: str) -> Optional[str]:
    """Return the file a command runs directly, if any."""
    trimmed = command.strip()
    for pattern in _COMMAND_TARGETS:
        match = pattern.search(trimmed)
        if match:
            return match.group(1).strip()
    return None


def build_repair_scope(
    command: str,
    stderr: str,
    stdout: str,
    failing_file: Optional[str] = None,
) -> Set[str]:
    """
    Collect normalized relative paths implicated by a failure.

    Args:
        command: The command that failed
        stderr: Captured stderr
        stdout: Captured stdout
        failing_file: Optional explicit hint (used when output is sparse)

    Returns:
        Set of workspace-relative paths; absolute paths are dropped
    """
    scope: Set[str] = set()
    combined = f"{stderr or ''}\n{stdout or ''}"

    for pattern in STACK_PATTERNS:
        for match in pattern.finditer(combined):
            path = normalize_relative(match.group(1))
            if path:
                scope.add(path)

    target = extract_command_target(command or "")
    if target:
        path = normalize_relative(target)
        if path:
            scope.add(path)

    if failing_file and failing_file.strip():
        path = normalize_relative(failing_file)
        if path:
            scope.add(path)

    return scope


def is_path_in_repair_scope(path: str, scope: Iterable[str]) -> bool:
    """Exact match, or one path is a suffix of the other on a segment boundary."""
    normalized = normalize_relative(path)
    if not normalized:
        return False
    for allowed in scope:
        if normalized == allowed:
            return True
        if normalized.endswith("/" + allowed) or allowed.endswith("/" + normalized):
            return True
    return False
