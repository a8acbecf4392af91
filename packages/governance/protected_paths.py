"""
Protected Paths & Over-Edit Guardrail

Protected paths are files the agent must not touch in Safe-Edit Mode without
an explicit confirmation from the caller (secrets, CI workflows, infra).

Pattern forms (deliberately simpler than full glob):
- "dir/**"   → the directory itself and every descendant
- "*.ext"    → any path ending in ".ext"
- "prefix*"  → basename starts with "prefix" (star only at the end)
- otherwise  → exact path

Over-edit: a single edit that replaces more than OVER_EDIT_RATIO_THRESHOLD of
a file's length is flagged so wholesale rewrites are visible to the user.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

# In Safe-Edit Mode, plans touching more files than this are refused
SAFE_EDIT_MAX_FILES = 20

OVER_EDIT_RATIO_THRESHOLD = 0.4

DEFAULT_PROTECTED_PATTERNS = (
    ".env*",
    "*.key",
    "*.pem",
    "config/secrets/**",
    ".github/workflows/**",
    "infra/**",
)


@dataclass(frozen=True)
class OverEditResult:
    """Outcome of an over-edit ratio check."""
    over_edit: bool
    replaced_ratio: float

    def to_dict(self) -> dict:
        return {"overEdit": self.over_edit, "replacedRatio": self.replaced_ratio}


def _matches_directory(path: str, prefix: str) -> bool:
    if prefix == "":
        return True
    return path == prefix or path.startswith(prefix + "/")


def _matches_basename_prefix(path: str, prefix: str) -> bool:
    basename = path.rsplit("/", 1)[-1]
    return basename.startswith(prefix)


def _matches_suffix(path: str, suffix: str) -> bool:
    return path.endswith(suffix)


def _match_pattern(path: str, pattern: str) -> bool:
    """Match a single protected pattern against a normalized path."""
    p = pattern.strip()
    if not p:
        return False

    if p.endswith("/**"):
        return _matches_directory(path, p[:-3])
    if p.startswith("*."):
        return _matches_suffix(path, p[1:])
    if p.endswith("*") and p.index("*") == len(p) - 1:
        return _matches_basename_prefix(path, p[:-1])
    return path == p


def is_protected_path(path: str, patterns: Optional[Sequence[str]] = None) -> bool:
    """
    Check if a path matches any protected pattern.

    Args:
        path: Workspace-relative path (forward slashes)
        patterns: Patterns to test (default: DEFAULT_PROTECTED_PATTERNS)

    Returns:
        True if any pattern matches; False for empty input
    """
    normalized = (path or "").strip()
    if not normalized:
        return False
    active = DEFAULT_PROTECTED_PATTERNS if patterns is None else patterns
    return any(_match_pattern(normalized, pattern) for pattern in active)


def get_protected_paths(paths: Iterable[str], patterns: Optional[Sequence[str]] = None) -> List[str]:
    """Return the protected subset of paths, in input order."""
    return [path for path in paths if is_protected_path(path, patterns)]


def check_over_edit(
    file_length: int,
    old_content_length: int,
    new_content_length: int,
    threshold: float = OVER_EDIT_RATIO_THRESHOLD,
) -> OverEditResult:
    """
    Flag an edit replacing more than `threshold` of the file.

    The boundary is exclusive: a ratio exactly equal to the threshold is not
    an over-edit. new_content_length is accepted for symmetry with callers
    but does not influence the ratio.
    """
    if file_length <= 0:
        return OverEditResult(over_edit=False, replaced_ratio=0.0)
    ratio = old_content_length / file_length
    return OverEditResult(over_edit=ratio > threshold, replaced_ratio=ratio)
