"""
Tests for Path Safety

Validates:
- Empty / absolute / traversal rejection
- Separator normalization
- Allowed-root and hidden-path rules for plan steps
"""

import pytest

from governance import (
    PathViolation,
    sanitize_path,
    validate_path_for_plan,
    is_under_allowed_root,
    normalize_relative,
)


# ==================== sanitize_path ====================

@pytest.mark.parametrize("raw", ["", "   ", None, ".", "./", "./."])
def test_empty_paths_rejected(raw):
    """Empty input or input that collapses to nothing is rejected."""
    result = sanitize_path(raw)
    assert result.ok is False
    assert result.error == "Path cannot be empty"
    assert result.violation == PathViolation.EMPTY_PATH


@pytest.mark.parametrize("raw", ["/etc/passwd", "\\windows\\system32", "C:\\Users\\x", "c:/tmp/a.txt"])
def test_absolute_paths_rejected(raw):
    """POSIX, backslash-rooted and drive-letter paths are absolute."""
    result = sanitize_path(raw)
    assert result.ok is False
    assert result.error == "Absolute paths are not allowed"


@pytest.mark.parametrize("raw", ["../secrets", "src/../../x", "src\\..\\x", "a/b/.."])
def test_traversal_rejected(raw):
    """Any '..' segment is rejected, even if it would stay inside the workspace."""
    result = sanitize_path(raw)
    assert result.ok is False
    assert result.error == "Path traversal is not allowed"


def test_backslashes_and_duplicate_slashes_normalized():
    """Separators are normalized to single forward slashes."""
    result = sanitize_path("src\\\\components//Button.tsx")
    assert result.ok
    assert result.path == "src/components/Button.tsx"


def test_dot_segments_dropped_and_whitespace_trimmed():
    """Leading './' and inner '.' segments disappear."""
    result = sanitize_path("  ./src/./app.py  ")
    assert result.ok
    assert result.path == "src/app.py"


def test_dotdot_inside_name_is_not_traversal():
    """Only whole '..' segments count as traversal."""
    result = sanitize_path("docs/release..notes.md")
    assert result.ok
    assert result.path == "docs/release..notes.md"


# ==================== validate_path_for_plan ====================

def test_allowed_root_file_accepted():
    """Root-level files on the allow list pass."""
    assert validate_path_for_plan("package.json").ok
    assert validate_path_for_plan(".gitignore").ok


def test_allowed_root_dir_accepted():
    """Paths under an allowed directory pass."""
    result = validate_path_for_plan("src/app.ts")
    assert result.ok
    assert result.path == "src/app.ts"


def test_env_files_accepted():
    """.env* files are hidden but allowed (protection is a separate check)."""
    assert validate_path_for_plan(".env.local").ok


def test_hidden_paths_rejected():
    """Hidden directories outside allowed roots are rejected."""
    result = validate_path_for_plan(".ssh/id_rsa")
    assert result.ok is False
    assert result.violation == PathViolation.HIDDEN_PATH


def test_system_dirs_rejected_even_under_allowed_root():
    """node_modules and .git are never writable."""
    assert validate_path_for_plan("node_modules/x/index.js").violation == PathViolation.SYSTEM_PATH
    assert validate_path_for_plan("src/node_modules/x.js").violation == PathViolation.SYSTEM_PATH
    assert validate_path_for_plan(".git/config").violation == PathViolation.SYSTEM_PATH


def test_unlisted_paths_are_permitted():
    """Projects with other layouts still work."""
    assert validate_path_for_plan("main.py").ok
    assert validate_path_for_plan("server/routes.go").ok


def test_sanitize_runs_before_root_check():
    """Traversal is reported even when the root check would also fail."""
    result = validate_path_for_plan("../.git/config")
    assert result.violation == PathViolation.PATH_TRAVERSAL


def test_custom_allowed_roots():
    """Callers can pass their own allowed roots."""
    result = is_under_allowed_root(".config/tool.json", allowed_root_dirs=[".config/"], allowed_root_files=[])
    assert result.ok


# ==================== normalize_relative ====================

def test_normalize_relative():
    """Output-scraped paths are loosely normalized."""
    assert normalize_relative("./src/a.ts") == "src/a.ts"
    assert normalize_relative("src\\a.ts") == "src/a.ts"
    assert normalize_relative("/abs/a.ts") is None
    assert normalize_relative("   ") is None
