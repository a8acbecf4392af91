"""Executor error types: each carries a code and HTTP status for the API layer."""
from __future__ import annotations


class ExecutorError(Exception):
    """Base error with code + message, rendered by the API as an error reason."""
    code: str = "EXECUTOR_ERROR"
    http_status: int = 500

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_reason(self) -> dict:
        return {"code": self.code, "message": self.message}


class PlanValidationError(ExecutorError):
    """Malformed plan or step → 400, nothing executed."""
    code = "INVALID_PLAN"
    http_status = 400


class InvalidPathError(ExecutorError):
    """Empty, absolute or traversal path → 400."""
    code = "INVALID_PATH"
    http_status = 400


class PolicyDeniedError(ExecutorError):
    """Policy refuses the whole request (e.g. too many files in Safe-Edit Mode) → 403."""
    code = "POLICY_DENIED"
    http_status = 403


class SandboxNotFoundError(ExecutorError):
    """Unknown sandbox run or workspace → 404."""
    code = "NOT_FOUND"
    http_status = 404


class SandboxStateError(ExecutorError):
    """Operation not valid in the run's current state → 409."""
    code = "INVALID_STATE"
    http_status = 409
