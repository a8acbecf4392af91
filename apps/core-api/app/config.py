"""Core API configuration.

Environment variables are read once at import. Every value has a default so
the service starts with no configuration at all.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Optional


def _read_bool_env(name: str, default: bool) -> bool:
    """Read boolean environment variable."""
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"0", "false", "off", "no"}:
        return False
    if normalized in {"1", "true", "on", "yes"}:
        return True
    return default


def _read_int_env(name: str, default: int) -> int:
    """Read integer environment variable; invalid or non-positive values fall back."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    return value if value > 0 else default


def _read_list_env(name: str, default: list[str]) -> list[str]:
    """Read comma-separated list from environment variable."""
    raw = os.getenv(name)
    if raw is None:
        return list(default)
    items = [item.strip() for item in raw.split(",") if item.strip()]
    return items or list(default)


def _read_path_env(name: str, default: Optional[Path]) -> Optional[Path]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return Path(raw.strip()).expanduser()


APP_NAME = os.getenv("PATCHBAY_APP_NAME", "Patchbay Core API")
CORS_ORIGINS = _read_list_env("PATCHBAY_CORS_ORIGINS", ["http://localhost:5173", "http://localhost:8000"])

# Database
DB_URL = os.getenv("PATCHBAY_DB_URL", "sqlite:///./patchbay.db")
DB_ECHO = _read_bool_env("PATCHBAY_DB_ECHO", False)

# Sandbox staging
SANDBOX_DIR = _read_path_env("PATCHBAY_SANDBOX_DIR", Path(tempfile.gettempdir()) / "patchbay-sandboxes")

# Command execution (milliseconds / bytes)
COMMAND_TIMEOUT_MS = _read_int_env("PATCHBAY_COMMAND_TIMEOUT_MS", 60_000)
SERVER_TIMEOUT_MS = _read_int_env("PATCHBAY_SERVER_TIMEOUT_MS", 3_600_000)
RUN_CHECK_TIMEOUT_MS = _read_int_env("PATCHBAY_RUN_CHECK_TIMEOUT_MS", 15_000)
MAX_OUTPUT_BYTES = _read_int_env("PATCHBAY_MAX_OUTPUT_BYTES", 1_048_576)
ENFORCE_ALLOWLIST = _read_bool_env("PATCHBAY_ENFORCE_ALLOWLIST", True)

# Promotion policy: promote when lint/tests fail but the app runs
PROMOTE_ON_CHECK_FAILURE = _read_bool_env("PATCHBAY_PROMOTE_ON_CHECK_FAILURE", True)

# Governance policy file (None → bundled default)
POLICY_FILE = _read_path_env("PATCHBAY_POLICY_FILE", None)
