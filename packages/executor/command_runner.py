"""
Command Runner - executes one shell command under a hard timeout

The only component that touches the OS process table.

Guarantees:
- Wall-clock timeout per command (server commands get a longer ceiling)
- The child (and its process group) is killed on timeout or cancellation
- stdout/stderr are drained concurrently and capped per stream
- Spawn failures and policy blocks come back as results, never exceptions

Result semantics:
- exit_code None + error_message → timeout, cancellation, block or spawn failure
- exit_code int → the process ran to completion
"""

from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from governance import DEFAULT_ALLOWED_COMMANDS, DEFAULT_BLOCKED_PATTERNS, command_block_reason

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT_MS = 60_000
SERVER_COMMAND_TIMEOUT_MS = 3_600_000
MAX_OUTPUT_BYTES = 1_048_576
TRUNCATION_MARKER = "\n[output truncated]"

# Long-running dev servers that legitimately outlive the default timeout
SERVER_COMMAND_PATTERNS = [
    re.compile(r"\buvicorn\b"),
    re.compile(r"\bflask\s+run\b"),
    re.compile(r"manage\.py\s+runserver"),
    re.compile(r"\b(npm|yarn|pnpm)\s+(run\s+)?(start|dev|serve)\b"),
    re.compile(r"\bdocker-compose\s+up\b"),
    re.compile(r"\bgo\s+run\b"),
    re.compile(r"\bcargo\s+run\b"),
    re.compile(r"\bdotnet\s+(watch\s+)?run\b"),
]

_POLL_INTERVAL_SEC = 0.05


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one command."""
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    error_message: Optional[str] = None
    stdout_truncated: bool = False
    stderr_truncated: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.error_message

    def to_dict(self) -> dict:
        data = {
            "exitCode": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "durationMs": self.duration_ms,
        }
        if self.error_message:
            data["errorMessage"] = self.error_message
        return data


def is_server_command(command: str) -> bool:
    c = command.strip().lower()
    return any(p.search(c) for p in SERVER_COMMAND_PATTERNS)


def _drain(stream, max_bytes: int, sink: bytearray, truncated: list) -> None:
    """Read a pipe to EOF, keeping at most max_bytes; keeps draining past the cap."""
    while True:
        chunk = stream.read(4096)
        if not chunk:
            break
        room = max_bytes - len(sink)
        if room > 0:
            sink.extend(chunk[:room])
            if len(chunk) > room:
                truncated.append(True)
        else:
            truncated.append(True)


def _decode(data: bytearray, truncated: bool) -> str:
    text = bytes(data).decode("utf-8", errors="replace")
    return text + TRUNCATION_MARKER if truncated else text


@dataclass
class CommandRunner:
    """
    Runs shell commands against a working directory.

    Attributes:
        timeout_ms: Default per-command timeout
        server_timeout_ms: Ceiling for long-running server commands
        max_output_bytes: Cap per output stream
        enforce_allowlist: Apply allowlist/blocklist before spawning
        allowed_commands: Programs that may start a command segment
        blocked_patterns: Regexes refused anywhere in the command
        max_concurrent: Upper bound on simultaneously running commands
    """
    timeout_ms: int = COMMAND_TIMEOUT_MS
    server_timeout_ms: int = SERVER_COMMAND_TIMEOUT_MS
    max_output_bytes: int = MAX_OUTPUT_BYTES
    enforce_allowlist: bool = True
    allowed_commands: Iterable[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_COMMANDS))
    blocked_patterns: Iterable[str] = field(default_factory=lambda: list(DEFAULT_BLOCKED_PATTERNS))
    max_concurrent: int = 4

    def __post_init__(self):
        self._semaphore = threading.BoundedSemaphore(max(1, self.max_concurrent))

    def check_command(self, command: str) -> Optional[str]:
        """Return a block reason, or None if the command may run."""
        if not self.enforce_allowlist:
            return None if command.strip() else "Command is empty"
        return command_block_reason(command, self.allowed_commands, self.blocked_patterns)

    def resolve_timeout_ms(self, command: str, timeout_ms: Optional[int] = None) -> int:
        if timeout_ms is not None:
            return timeout_ms
        return self.server_timeout_ms if is_server_command(command) else self.timeout_ms

    def run(
        self,
        command: str,
        cwd: Path,
        timeout_ms: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
        env: Optional[dict] = None,
    ) -> CommandResult:
        """
        Execute a command and wait for it (bounded).

        Args:
            command: Shell command line
            cwd: Working directory (must exist)
            timeout_ms: Override the timeout for this call
            cancel_event: When set, the child is killed and the call returns
            env: Extra environment variables

        Returns:
            CommandResult (never raises for process failures)
        """
        reason = self.check_command(command)
        if reason:
            logger.warning(f"Command blocked: {command!r} ({reason})")
            return CommandResult(exit_code=None, error_message=reason)

        effective_timeout = self.resolve_timeout_ms(command, timeout_ms)
        with self._semaphore:
            return self._spawn_and_wait(command, Path(cwd), effective_timeout, cancel_event, env)

    def _spawn_and_wait(
        self,
        command: str,
        cwd: Path,
        timeout_ms: int,
        cancel_event: Optional[threading.Event],
        env: Optional[dict],
    ) -> CommandResult:
        started = time.monotonic()
        full_env = {**os.environ, **(env or {})}
        try:
            proc = subprocess.Popen(
                command,
                shell=True,
                cwd=str(cwd),
                env=full_env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            logger.warning(f"Failed to spawn {command!r}: {e}")
            return CommandResult(
                exit_code=None,
                duration_ms=int((time.monotonic() - started) * 1000),
                error_message=f"Failed to execute command: {e}",
            )

        out_buf, err_buf = bytearray(), bytearray()
        out_trunc: list = []
        err_trunc: list = []
        t_out = threading.Thread(target=_drain, args=(proc.stdout, self.max_output_bytes, out_buf, out_trunc), daemon=True)
        t_err = threading.Thread(target=_drain, args=(proc.stderr, self.max_output_bytes, err_buf, err_trunc), daemon=True)
        t_out.start()
        t_err.start()

        deadline = started + timeout_ms / 1000
        error_message = None
        while True:
            try:
                proc.wait(timeout=_POLL_INTERVAL_SEC)
                break
            except subprocess.TimeoutExpired:
                pass
            if cancel_event is not None and cancel_event.is_set():
                error_message = "Command cancelled"
                break
            if time.monotonic() >= deadline:
                error_message = f"Command timed out after {timeout_ms}ms"
                break

        if error_message:
            self._kill(proc)
            logger.warning(f"{error_message}: {command!r}")

        t_out.join(timeout=5)
        t_err.join(timeout=5)
        duration_ms = int((time.monotonic() - started) * 1000)

        result = CommandResult(
            exit_code=None if error_message else proc.returncode,
            stdout=_decode(out_buf, bool(out_trunc)),
            stderr=_decode(err_buf, bool(err_trunc)),
            duration_ms=duration_ms,
            error_message=error_message,
            stdout_truncated=bool(out_trunc),
            stderr_truncated=bool(err_trunc),
        )
        logger.info(f"Command finished: {command!r} exit={result.exit_code} duration_ms={duration_ms}")
        return result

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        """Kill the child's whole process group, then reap it."""
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError, AttributeError):
            proc.kill()
        proc.wait()
