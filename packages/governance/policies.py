"""
Policy loading

Reads the write/command policy from YAML (default: policies/default.yaml next
to this module). Documents separated by `---` are merged in order. Missing
keys keep their built-in defaults so a site policy only needs to override
what it changes.
"""

import hashlib
import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import List, Optional

import yaml

from .command_policy import DEFAULT_ALLOWED_COMMANDS, DEFAULT_BLOCKED_PATTERNS
from .path_utils import DEFAULT_ALLOWED_ROOT_DIRS, DEFAULT_ALLOWED_ROOT_FILES
from .protected_paths import (
    DEFAULT_PROTECTED_PATTERNS,
    OVER_EDIT_RATIO_THRESHOLD,
    SAFE_EDIT_MAX_FILES,
)

DEFAULT_POLICY_PATH = Path(__file__).parent / "policies" / "default.yaml"


@dataclass
class GuardPolicy:
    """Merged policy used by the executor and the API."""
    protected_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_PROTECTED_PATTERNS))
    over_edit_ratio: float = OVER_EDIT_RATIO_THRESHOLD
    safe_edit_max_files: int = SAFE_EDIT_MAX_FILES
    allowed_root_dirs: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_ROOT_DIRS))
    allowed_root_files: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_ROOT_FILES))
    allowed_commands: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_COMMANDS))
    blocked_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_BLOCKED_PATTERNS))

    def snapshot_hash(self) -> str:
        """Stable hash of the effective policy, stored with sandbox runs."""
        content = json.dumps(asdict(self), sort_keys=True)
        return hashlib.sha256(content.encode()).hexdigest()[:16]


def load_policy(policy_path: Optional[Path] = None) -> GuardPolicy:
    """
    Load and merge a YAML policy file.

    Args:
        policy_path: Path to a policy YAML (default: bundled default.yaml)

    Returns:
        GuardPolicy with file values over built-in defaults

    Raises:
        FileNotFoundError: If the policy file does not exist
        ValueError: If a document is not a mapping or a key has the wrong type
    """
    path = Path(policy_path) if policy_path else DEFAULT_POLICY_PATH
    if not path.exists():
        raise FileNotFoundError(f"Policy not found: {path}")

    content = path.read_text(encoding="utf-8")

    merged = {}
    for doc in yaml.safe_load_all(content):
        if not doc:
            continue
        if not isinstance(doc, dict):
            raise ValueError(f"Policy document must be a mapping: {path}")
        merged.update(doc)

    policy = GuardPolicy()
    for key, value in merged.items():
        if not hasattr(policy, key):
            # Unknown keys are tolerated so policies can carry notes for other tools
            continue
        current = getattr(policy, key)
        if isinstance(current, list):
            if not isinstance(value, list):
                raise ValueError(f"Policy key '{key}' must be a list")
            value = [str(item) for item in value]
        elif isinstance(current, float):
            value = float(value)
        elif isinstance(current, int):
            value = int(value)
        setattr(policy, key, value)

    return policy
