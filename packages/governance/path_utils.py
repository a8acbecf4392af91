"""
Path Utilities - Relative path sanitation for plan steps

Every path that reaches the executor comes from an LLM-authored plan, so it is
treated as untrusted input:
- Empty paths are rejected
- Absolute paths (POSIX, UNC, Windows drive) are rejected
- Traversal segments (..) are rejected
- Backslashes and duplicate slashes are normalized
- Hidden/system locations are rejected for plan edits

Paths returned from here are always relative, forward-slash separated and
free of "." / ".." segments. They are used verbatim as store keys.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional


class PathViolation(Enum):
    """Path rejection reasons."""
    EMPTY_PATH = "empty_path"
    ABSOLUTE_PATH_DENIED = "absolute_path_denied"
    PATH_TRAVERSAL = "path_traversal"
    HIDDEN_PATH = "hidden_path"
    SYSTEM_PATH = "system_path"


VIOLATION_MESSAGES = {
    PathViolation.EMPTY_PATH: "Path cannot be empty",
    PathViolation.ABSOLUTE_PATH_DENIED: "Absolute paths are not allowed",
    PathViolation.PATH_TRAVERSAL: "Path traversal is not allowed",
    PathViolation.HIDDEN_PATH: "Hidden or system paths are not allowed",
    PathViolation.SYSTEM_PATH: "Path points to system directory",
}

# Root directories a plan may write under
DEFAULT_ALLOWED_ROOT_DIRS = [
    "apps/",
    "packages/",
    "infra/",
    "docs/",
    "lib/",
    "libs/",
    "app/",
    "src/",
    "public/",
    "components/",
    "pages/",
    "config/",
    "scripts/",
    "tests/",
    "test/",
]

# Root-level files a plan may write
DEFAULT_ALLOWED_ROOT_FILES = [
    "package.json",
    "tsconfig.json",
    "README.md",
    ".gitignore",
    "HOW_TO_RUN.txt",
    "requirements.txt",
    "pyproject.toml",
    "docker-compose.yml",
    "Dockerfile",
]

SYSTEM_DIRS = {"node_modules", ".git"}

_WINDOWS_DRIVE = re.compile(r"^[a-zA-Z]:")


@dataclass
class SanitizedPath:
    """Result of path sanitation."""
    ok: bool
    path: str = ""
    error: Optional[str] = None
    violation: Optional[PathViolation] = None

    @classmethod
    def reject(cls, violation: PathViolation) -> "SanitizedPath":
        return cls(ok=False, error=VIOLATION_MESSAGES[violation], violation=violation)


def sanitize_path(path: Optional[str]) -> SanitizedPath:
    """
    Normalize a workspace-relative path and reject unsafe forms.

    Args:
        path: Raw path from a plan step or request body

    Returns:
        SanitizedPath with ok=True and the normalized path, or ok=False with
        a human-readable error
    """
    raw = (path or "").strip()
    if not raw:
        return SanitizedPath.reject(PathViolation.EMPTY_PATH)

    if raw.startswith("/") or raw.startswith("\\") or _WINDOWS_DRIVE.match(raw):
        return SanitizedPath.reject(PathViolation.ABSOLUTE_PATH_DENIED)

    normalized = re.sub(r"/+", "/", raw.replace("\\", "/"))

    segments = []
    for segment in normalized.split("/"):
        if segment == "..":
            return SanitizedPath.reject(PathViolation.PATH_TRAVERSAL)
        if segment in ("", "."):
            continue
        segments.append(segment)

    if not segments:
        return SanitizedPath.reject(PathViolation.EMPTY_PATH)

    return SanitizedPath(ok=True, path="/".join(segments))


def _is_allowed_hidden_segment(segment: str) -> bool:
    return segment.startswith(".env") or segment == ".gitignore"


def is_under_allowed_root(
    path: str,
    allowed_root_dirs: Optional[Iterable[str]] = None,
    allowed_root_files: Optional[Iterable[str]] = None,
) -> SanitizedPath:
    """
    Check that an already-sanitized path is a location plans may write.

    Order:
        1. System directories (node_modules, .git) anywhere → reject
        2. Allowed root file or allowed root directory → accept
        3. Hidden segments other than .env* / .gitignore → reject
        4. Anything else → accept (projects have varied layouts)
    """
    dirs = list(allowed_root_dirs) if allowed_root_dirs is not None else DEFAULT_ALLOWED_ROOT_DIRS
    files = list(allowed_root_files) if allowed_root_files is not None else DEFAULT_ALLOWED_ROOT_FILES

    normalized = re.sub(r"/+", "/", path.strip().replace("\\", "/"))
    parts = [p for p in normalized.split("/") if p]
    if not parts:
        return SanitizedPath.reject(PathViolation.EMPTY_PATH)

    if any(part in SYSTEM_DIRS for part in parts):
        return SanitizedPath.reject(PathViolation.SYSTEM_PATH)

    if len(parts) == 1 and parts[0] in files:
        return SanitizedPath(ok=True, path=normalized)

    for root in dirs:
        root_dir = root.rstrip("/")
        if normalized == root_dir or normalized.startswith(root_dir + "/"):
            return SanitizedPath(ok=True, path=normalized)

    if any(part.startswith(".") and not _is_allowed_hidden_segment(part) for part in parts):
        return SanitizedPath.reject(PathViolation.HIDDEN_PATH)

    return SanitizedPath(ok=True, path=normalized)


def validate_path_for_plan(
    path: Optional[str],
    allowed_root_dirs: Optional[Iterable[str]] = None,
    allowed_root_files: Optional[Iterable[str]] = None,
) -> SanitizedPath:
    """Sanitize, then apply the allowed-root check."""
    sanitized = sanitize_path(path)
    if not sanitized.ok:
        return sanitized
    return is_under_allowed_root(sanitized.path, allowed_root_dirs, allowed_root_files)


def normalize_relative(path: str) -> Optional[str]:
    """
    Loose normalization used for paths scraped from tool output.

    Strips a leading "./", converts backslashes, and returns None for
    absolute or empty paths instead of an error.
    """
    p = path.strip().replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    if not p or p.startswith("/") or _WINDOWS_DRIVE.match(p):
        return None
    return re.sub(r"/+", "/", p)
