"""
Command & Error Classification

Pure functions over command strings and command results. Classification is
expressed as ordered (predicate, category) tables evaluated top to bottom;
the first match wins, so every function is total and deterministic.

- classify_command_kind: setup | test | other
- classify_command_result: success | failed | blocked | timeout (+ summary)
- classify_execution_error: structured error for repair prompts
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .command_runner import CommandResult


class CommandKind(str, Enum):
    SETUP = "setup"
    TEST = "test"
    OTHER = "other"


class CommandResultStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    BLOCKED = "blocked"
    TIMEOUT = "timeout"


class ExecutionErrorType(str, Enum):
    MODULE_NOT_FOUND = "MODULE_NOT_FOUND"
    COMMAND_NOT_FOUND = "COMMAND_NOT_FOUND"
    SYNTAX_ERROR = "SYNTAX_ERROR"
    PERMISSION_ERROR = "PERMISSION_ERROR"
    CONFIG_ERROR = "CONFIG_ERROR"
    UNKNOWN = "UNKNOWN"


# ==================== Command kind ====================

_KIND_RULES: List[Tuple[re.Pattern, CommandKind]] = [
    (re.compile(r"^(npm|yarn|pnpm)\s+install"), CommandKind.SETUP),
    (re.compile(r"^(pip|pip3|venv/bin/pip)\s+install"), CommandKind.SETUP),
    (re.compile(r"^python3\s+-m\s+venv"), CommandKind.SETUP),
    (re.compile(r"^(npm|yarn|pnpm)\s+test\b"), CommandKind.TEST),
    (re.compile(r"^(npm|yarn|pnpm)\s+run\s+test"), CommandKind.TEST),
    (re.compile(r"^pytest\b"), CommandKind.TEST),
    (re.compile(r"^venv/bin/pytest\b"), CommandKind.TEST),
    (re.compile(r"^node\s+.*test"), CommandKind.TEST),
    (re.compile(r"^npx\s+.*test"), CommandKind.TEST),
]

ACTION_LABELS = {
    CommandKind.SETUP: "CMD-SETUP",
    CommandKind.TEST: "CMD-TEST",
    CommandKind.OTHER: "CMD-OTHER",
}


def classify_command_kind(command: str) -> CommandKind:
    """Classify command intent by its leading invocation."""
    c = command.strip().lower()
    for pattern, kind in _KIND_RULES:
        if pattern.search(c):
            return kind
    return CommandKind.OTHER


def action_label_for(kind: CommandKind) -> str:
    return ACTION_LABELS[kind]


# ==================== Command result ====================

@dataclass(frozen=True)
class CommandClassification:
    status: CommandResultStatus
    summary: str

    def to_dict(self) -> dict:
        return {"status": self.status.value, "summary": self.summary}


TIMEOUT_SUMMARY = "Command timed out"
BLOCKED_SUMMARY = "Command blocked (allowlist)"

_ERROR_MESSAGE_RULES: List[Tuple[Callable[[str], bool], CommandResultStatus, Optional[str]]] = [
    (lambda m: "timed out" in m or "timeout" in m, CommandResultStatus.TIMEOUT, TIMEOUT_SUMMARY),
    (lambda m: "blocked" in m or "allowlist" in m, CommandResultStatus.BLOCKED, BLOCKED_SUMMARY),
]


def classify_command_result(result: CommandResult) -> CommandClassification:
    """
    Derive a status from a CommandResult.

    Order:
        1. error_message mentioning timeout → timeout
        2. error_message mentioning blocked / allowlist → blocked
        3. any other error_message → failed (summary = first 120 chars)
        4. exit_code None → timeout
        5. exit_code 0 → success
        6. otherwise → failed
    """
    if result.error_message:
        lower = result.error_message.lower()
        for predicate, status, summary in _ERROR_MESSAGE_RULES:
            if predicate(lower):
                return CommandClassification(status, summary)
        return CommandClassification(CommandResultStatus.FAILED, result.error_message[:120])

    if result.exit_code is None:
        return CommandClassification(CommandResultStatus.TIMEOUT, TIMEOUT_SUMMARY)
    if result.exit_code == 0:
        return CommandClassification(CommandResultStatus.SUCCESS, "OK")
    return CommandClassification(CommandResultStatus.FAILED, f"Exit code {result.exit_code}")


# ==================== Execution error ====================

@dataclass
class StructuredExecutionError:
    """Typed failure description handed to the repair collaborator."""
    error_type: ExecutionErrorType
    exit_code: Optional[int]
    stderr: str
    stdout: str
    missing_dependency: Optional[str] = None
    failing_file: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "errorType": self.error_type.value,
            "exitCode": self.exit_code,
            "stderr": self.stderr,
            "stdout": self.stdout,
        }
        if self.missing_dependency:
            data["missingDependency"] = self.missing_dependency
        if self.failing_file:
            data["failingFile"] = self.failing_file
        return data


_MODULE_PATTERNS = [
    re.compile(r"cannot find module ['\"]([^'\"]+)['\"]", re.IGNORECASE),
    re.compile(r"module not found: ([^\s]+)", re.IGNORECASE),
    re.compile(r"MODULE_NOT_FOUND.*?['\"]([^'\"]+)['\"]", re.IGNORECASE),
    re.compile(r"No module named ['\"]([^'\"]+)['\"]", re.IGNORECASE),
    re.compile(r"npm ERR! 404.*?['\"]([^'\"]+)['\"]", re.IGNORECASE),
    re.compile(r"from ['\"]([^'\"]+)['\"]", re.IGNORECASE),
]

_FILE_LINE_PATTERNS = [
    re.compile(r"at\s+\(?([^\s:()]+\.(?:tsx|ts|jsx|js|py|java))(?:\s*:\s*\d+)?", re.IGNORECASE),
    re.compile(r"File\s+[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"in\s+([^\s:]+\.(?:py|ts|js))(?:\s*:\s*\d+)?", re.IGNORECASE),
    re.compile(r"([a-zA-Z0-9_/.-]+\.(?:tsx|ts|jsx|js|py))(?:\s*:\s*\d+)?"),
]


def _search(pattern: str) -> Callable[[str, Optional[int]], bool]:
    compiled = re.compile(pattern, re.IGNORECASE)
    return lambda text, exit_code: bool(compiled.search(text))


# (predicate over combined output + exit code, error type), first match wins
_ERROR_RULES: List[Tuple[Callable[[str, Optional[int]], bool], ExecutionErrorType]] = [
    (lambda text, exit_code: exit_code == 127, ExecutionErrorType.COMMAND_NOT_FOUND),
    (_search(r"command not found|'[^']+' is not recognized"), ExecutionErrorType.COMMAND_NOT_FOUND),
    (
        _search(r"cannot find module|module not found|MODULE_NOT_FOUND|no module named|npm ERR!|pnpm ERR!"),
        ExecutionErrorType.MODULE_NOT_FOUND,
    ),
    (
        _search(r"syntax error|SyntaxError|unexpected token|invalid syntax|IndentationError|parse error"),
        ExecutionErrorType.SYNTAX_ERROR,
    ),
    (_search(r"EACCES|permission denied|EPERM|operation not permitted"), ExecutionErrorType.PERMISSION_ERROR),
    (
        _search(r"tsconfig|package\.json|go\.mod|jest\.config|vitest\.config|compilerOptions|paths.*not found"),
        ExecutionErrorType.CONFIG_ERROR,
    ),
]

# Error types that never carry a failing file
_NO_FILE_TYPES = {ExecutionErrorType.COMMAND_NOT_FOUND, ExecutionErrorType.PERMISSION_ERROR}


def extract_module_name(stderr: str) -> Optional[str]:
    for pattern in _MODULE_PATTERNS:
        match = pattern.search(stderr)
        if match and match.group(1):
            return match.group(1).strip()
    return None


def extract_failing_file(stderr: str) -> Optional[str]:
    """Best-effort relative file path from stack frames."""
    for pattern in _FILE_LINE_PATTERNS:
        for match in pattern.finditer(stderr):
            path = match.group(1).strip().replace("\\", "/")
            while path.startswith("./"):
                path = path[2:]
            if path and not path.startswith("/"):
                return path
    return None


def classify_execution_error(stderr: str, stdout: str, exit_code: Optional[int] = None) -> StructuredExecutionError:
    """
    Classify a failed command's output.

    Args:
        stderr: Captured stderr
        stdout: Captured stdout
        exit_code: Process exit code (None for timeout/spawn failure)

    Returns:
        StructuredExecutionError with type and best-effort details
    """
    stderr = stderr or ""
    stdout = stdout or ""
    combined = f"{stderr}\n{stdout}"

    error_type = ExecutionErrorType.UNKNOWN
    for predicate, candidate in _ERROR_RULES:
        if predicate(combined, exit_code):
            error_type = candidate
            break

    error = StructuredExecutionError(error_type=error_type, exit_code=exit_code, stderr=stderr, stdout=stdout)
    if error_type == ExecutionErrorType.MODULE_NOT_FOUND:
        error.missing_dependency = extract_module_name(combined)
    if error_type not in _NO_FILE_TYPES:
        error.failing_file = extract_failing_file(stderr)
    return error
