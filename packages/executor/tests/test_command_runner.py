"""
Tests for Command Runner

Validates:
- Exit codes and captured output
- Hard timeout kills the child
- Cancellation via threading.Event
- Output cap with truncation marker
- Allowlist / blocklist enforcement
- Spawn failures come back as results
"""

import threading
import time

import pytest

from executor import CommandRunner, is_server_command
from executor.command_runner import TRUNCATION_MARKER


@pytest.fixture
def runner():
    return CommandRunner(enforce_allowlist=False)


# ==================== Basic execution ====================

def test_successful_command(runner, tmp_path):
    result = runner.run("echo hello", tmp_path)

    assert result.exit_code == 0
    assert result.stdout.strip() == "hello"
    assert result.error_message is None
    assert result.ok is True


def test_nonzero_exit_code(runner, tmp_path):
    result = runner.run("exit 3", tmp_path)
    assert result.exit_code == 3
    assert result.ok is False


def test_stderr_captured(runner, tmp_path):
    result = runner.run("echo oops 1>&2", tmp_path)
    assert result.stderr.strip() == "oops"


def test_runs_in_cwd(runner, tmp_path):
    (tmp_path / "marker.txt").write_text("here", encoding="utf-8")
    result = runner.run("cat marker.txt", tmp_path)
    assert result.stdout == "here"


def test_to_dict_wire_shape(runner, tmp_path):
    data = runner.run("echo hi", tmp_path).to_dict()
    assert set(data) == {"exitCode", "stdout", "stderr", "durationMs"}


# ==================== Timeout & cancellation ====================

def test_timeout_kills_process(runner, tmp_path):
    """A command past its deadline is killed and reports exit_code None."""
    started = time.monotonic()
    result = runner.run("sleep 5", tmp_path, timeout_ms=200)
    elapsed = time.monotonic() - started

    assert result.exit_code is None
    assert result.error_message == "Command timed out after 200ms"
    assert elapsed < 4


def test_cancel_event_kills_process(runner, tmp_path):
    cancel = threading.Event()
    timer = threading.Timer(0.2, cancel.set)
    timer.start()
    try:
        result = runner.run("sleep 5", tmp_path, cancel_event=cancel)
    finally:
        timer.cancel()

    assert result.exit_code is None
    assert result.error_message == "Command cancelled"
    assert result.duration_ms < 4000


def test_server_commands_get_longer_ceiling():
    runner = CommandRunner(timeout_ms=1000, server_timeout_ms=9000)
    assert runner.resolve_timeout_ms("uvicorn main:app --host 0.0.0.0") == 9000
    assert runner.resolve_timeout_ms("npm run dev") == 9000
    assert runner.resolve_timeout_ms("npm test") == 1000
    assert runner.resolve_timeout_ms("npm run dev", timeout_ms=50) == 50


@pytest.mark.parametrize("command,expected", [
    ("uvicorn app.main:app", True),
    ("python -m flask run", True),
    ("python manage.py runserver", True),
    ("npm start", True),
    ("yarn dev", True),
    ("npm test", False),
    ("pytest", False),
])
def test_is_server_command(command, expected):
    assert is_server_command(command) is expected


# ==================== Output cap ====================

def test_output_is_capped(tmp_path):
    runner = CommandRunner(enforce_allowlist=False, max_output_bytes=10)
    result = runner.run("echo 0123456789abcdefghij", tmp_path)

    assert result.stdout_truncated is True
    assert result.stdout == "0123456789" + TRUNCATION_MARKER
    assert result.exit_code == 0


# ==================== Policy ====================

def test_blocked_command_is_not_spawned(tmp_path):
    runner = CommandRunner()
    result = runner.run("curl http://example.com", tmp_path)

    assert result.exit_code is None
    assert "blocked pattern" in result.error_message


def test_command_outside_allowlist(tmp_path):
    runner = CommandRunner()
    result = runner.run("make build", tmp_path)

    assert result.exit_code is None
    assert result.error_message == 'Command "make" is not in the allowlist'


def test_allowlisted_command_runs(tmp_path):
    runner = CommandRunner()
    result = runner.run("echo allowed", tmp_path)
    assert result.exit_code == 0


def test_check_command_without_enforcement(runner):
    assert runner.check_command("rm -rf /") is None
    assert runner.check_command("   ") == "Command is empty"


# ==================== Spawn failure ====================

def test_missing_cwd_is_reported(runner, tmp_path):
    result = runner.run("echo hi", tmp_path / "does-not-exist")

    assert result.exit_code is None
    assert result.error_message.startswith("Failed to execute command:")
