"""
Command Policy - allowlist / blocklist for agent shell commands

A command is refused when it matches any blocked pattern, or when any
segment of a chained command (&&, ||, ;, |) starts with a program that is not
on the allowlist. Virtualenv binaries (venv/bin/pip, .venv/bin/python) are
judged by their basename.
"""

import re
import shlex
from typing import Iterable, List, Optional

DEFAULT_ALLOWED_COMMANDS = [
    "npm", "yarn", "pnpm", "node", "npx",
    "python", "python3", "pip", "pip3", "pytest",
    "docker", "docker-compose",
    "ls", "pwd", "cat", "grep", "find", "head", "tail", "wc", "echo",
    "go", "cargo", "mvn", "dotnet",
    "ruff", "flake8", "pylint", "uvicorn", "flask",
]

DEFAULT_BLOCKED_PATTERNS = [
    r"\brm\b",
    r"\brmdir\b",
    r"\bcurl\b",
    r"\bwget\b",
    r"\bssh\b",
    r"\bscp\b",
    r"\bnc\b",
    r"\bnetcat\b",
    r"\bsudo\b",
    r"\bsu\b",
    r"\bchmod\b",
    r"\bchown\b",
    r">>",
    r"(^|[^0-9&])>\s*[^&\s]",
    r"\|\s*(ba)?sh\b",
]

_SEGMENT_SPLIT = re.compile(r"&&|\|\||;|\|")
_VENV_BIN = re.compile(r"^(?:\./)?\.?venv/bin/([^/]+)$")
_ENV_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")


def base_command(segment: str) -> Optional[str]:
    """
    Program name of one command segment.

    Leading VAR=value assignments are skipped; venv binaries resolve to their
    basename. Returns None for an empty segment.

    Raises:
        ValueError: If the segment has unbalanced quotes
    """
    tokens = shlex.split(segment)
    while tokens and _ENV_ASSIGNMENT.match(tokens[0]):
        tokens.pop(0)
    if not tokens:
        return None
    program = tokens[0]
    venv = _VENV_BIN.match(program)
    if venv:
        return venv.group(1)
    return program


def command_block_reason(
    command: str,
    allowed_commands: Iterable[str],
    blocked_patterns: Iterable[str],
) -> Optional[str]:
    """
    Return why a command is refused, or None if it may run.

    Args:
        command: Full shell command line
        allowed_commands: Program names that may start a segment
        blocked_patterns: Regexes (case-insensitive) refused anywhere

    Returns:
        Human-readable reason, or None
    """
    text = command.strip()
    if not text:
        return "Command is empty"

    for pattern in blocked_patterns:
        if re.search(pattern, text, re.IGNORECASE):
            return f"Command contains blocked pattern: {pattern}"

    allowed = set(allowed_commands)
    segments: List[str] = [s.strip() for s in _SEGMENT_SPLIT.split(text)]
    for segment in segments:
        if not segment:
            continue
        try:
            program = base_command(segment)
        except ValueError:
            return "Command blocked: could not parse command line"
        if program is None:
            continue
        if program not in allowed:
            return f'Command "{program}" is not in the allowlist'
    return None
