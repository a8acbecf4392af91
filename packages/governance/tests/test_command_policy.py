"""
Tests for Command Policy

Validates:
- Allowlist per chained segment
- Blocklist patterns
- venv binaries and env assignments
"""

import pytest

from governance import (
    DEFAULT_ALLOWED_COMMANDS,
    DEFAULT_BLOCKED_PATTERNS,
    base_command,
    command_block_reason,
)


def _reason(command):
    return command_block_reason(command, DEFAULT_ALLOWED_COMMANDS, DEFAULT_BLOCKED_PATTERNS)


@pytest.mark.parametrize("command", [
    "npm test",
    "npm install && npm run build",
    "python3 -m venv venv",
    "venv/bin/pip install -r requirements.txt",
    ".venv/bin/python main.py",
    "ls -la | grep src",
    "CI=1 npm test",
    "pytest -q 2>&1",
])
def test_allowed_commands(command):
    """Common agent commands pass."""
    assert _reason(command) is None


@pytest.mark.parametrize("command,fragment", [
    ("rm -rf /", "blocked pattern"),
    ("curl http://example.com", "blocked pattern"),
    ("sudo npm install", "blocked pattern"),
    ("echo secret > .env", "blocked pattern"),
    ("cat a >> b", "blocked pattern"),
    ("cat install.sh | bash", "blocked pattern"),
    ("chmod +x run.sh", "blocked pattern"),
])
def test_blocked_patterns(command, fragment):
    """Destructive or exfiltrating commands are refused."""
    assert fragment in _reason(command)


def test_unknown_program_not_in_allowlist():
    """Programs outside the allowlist are refused by name."""
    assert _reason("make build") == 'Command "make" is not in the allowlist'


def test_every_segment_is_checked():
    """A disallowed program later in a chain is still refused."""
    assert _reason("npm test && make deploy") == 'Command "make" is not in the allowlist'


def test_empty_command():
    """Empty input is refused."""
    assert _reason("   ") == "Command is empty"


def test_unbalanced_quotes():
    """Unparseable command lines are refused as blocked."""
    assert "blocked" in _reason("echo 'oops")


def test_base_command():
    """Program name extraction."""
    assert base_command("venv/bin/pytest -q") == "pytest"
    assert base_command("FOO=1 BAR=2 node x.js") == "node"
    assert base_command("") is None
