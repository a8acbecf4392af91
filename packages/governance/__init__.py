"""
Patchbay Governance Package

Pure policy checks applied before anything touches a workspace.

Components:
- path_utils: Path sanitation and allowed-root checks for plan steps
- protected_paths: Protected-path matching and over-edit ratio guardrail
- repair_scope: Files a self-repair attempt may modify
- command_policy: Allowlist / blocklist for shell commands
- policies: YAML policy loading

Philosophy:
- Governance = Judge (evaluates), not Executor (applies)
- No I/O beyond reading the policy file
- Every rejection carries a human-readable reason
"""

from .path_utils import (
    PathViolation,
    SanitizedPath,
    DEFAULT_ALLOWED_ROOT_DIRS,
    DEFAULT_ALLOWED_ROOT_FILES,
    sanitize_path,
    is_under_allowed_root,
    validate_path_for_plan,
    normalize_relative,
)

from .protected_paths import (
    DEFAULT_PROTECTED_PATTERNS,
    OVER_EDIT_RATIO_THRESHOLD,
    SAFE_EDIT_MAX_FILES,
    OverEditResult,
    is_protected_path,
    get_protected_paths,
    check_over_edit,
)

from .repair_scope import (
    build_repair_scope,
    is_path_in_repair_scope,
    extract_command_target,
)

from .command_policy import (
    DEFAULT_ALLOWED_COMMANDS,
    DEFAULT_BLOCKED_PATTERNS,
    base_command,
    command_block_reason,
)

from .policies import GuardPolicy, load_policy, DEFAULT_POLICY_PATH

__all__ = [
    # Path safety
    "PathViolation",
    "SanitizedPath",
    "DEFAULT_ALLOWED_ROOT_DIRS",
    "DEFAULT_ALLOWED_ROOT_FILES",
    "sanitize_path",
    "is_under_allowed_root",
    "validate_path_for_plan",
    "normalize_relative",

    # Protected paths / over-edit
    "DEFAULT_PROTECTED_PATTERNS",
    "OVER_EDIT_RATIO_THRESHOLD",
    "SAFE_EDIT_MAX_FILES",
    "OverEditResult",
    "is_protected_path",
    "get_protected_paths",
    "check_over_edit",

    # Repair scope
    "build_repair_scope",
    "is_path_in_repair_scope",
    "extract_command_target",

    # Command policy
    "DEFAULT_ALLOWED_COMMANDS",
    "DEFAULT_BLOCKED_PATTERNS",
    "base_command",
    "command_block_reason",

    # Policy
    "GuardPolicy",
    "load_policy",
    "DEFAULT_POLICY_PATH",
]

__version__ = "1.0.0"
