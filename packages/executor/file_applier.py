"""
File Applier - applies file_edit steps to content

Handles:
- Full replace (no old_content): content becomes new_content
- Snippet replace: first occurrence of old_content is replaced
- Re-anchoring: when the snippet drifted slightly, a unique run of its
  middle lines is located and replaced instead
- Conflict: snippet not locatable → the edit is not applied

Safety:
- Protected paths and over-edits are gated before a batch is applied
  (Safe-Edit Mode), returning the paths that need confirmation
- Over-edits outside Safe-Edit Mode are applied but reported
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from governance import check_over_edit, get_protected_paths, OVER_EDIT_RATIO_THRESHOLD

from .plan import FileEditStep

CONFLICT_MESSAGE = (
    "Edit conflict: file changed since planning. "
    "Please review manually or re-run with updated context."
)
NOT_FOUND_MESSAGE = "Edit block not found in current file (file may have changed)."

_MIN_ANCHOR_LINES = 2
_MAX_ANCHOR_LINES = 8
_MIN_ANCHOR_CHARS = 10


@dataclass
class EditResult:
    """Outcome of applying one edit to content."""
    ok: bool
    content: str = ""
    error: Optional[str] = None
    reanchored: bool = False


def _reanchor(current: str, old: str, new: str) -> Optional[tuple]:
    """Find a unique centered slice of old's lines in current; return (index, anchor, replacement)."""
    old_lines = old.split("\n")
    new_lines = new.split("\n")
    max_len = min(_MAX_ANCHOR_LINES, len(old_lines))
    for length in range(max_len, _MIN_ANCHOR_LINES - 1, -1):
        start = (len(old_lines) - length) // 2
        anchor = "\n".join(old_lines[start:start + length])
        if len(anchor) < _MIN_ANCHOR_CHARS:
            continue
        first = current.find(anchor)
        if first == -1:
            continue
        if current.find(anchor, first + 1) != -1:
            continue
        replacement = "\n".join(new_lines[start:start + length])
        return first, anchor, replacement
    return None


def apply_edit(current: str, new_content: str, old_content: Optional[str] = None) -> EditResult:
    """
    Apply one edit to the current content of a file.

    Args:
        current: Current file content
        new_content: Replacement text
        old_content: Snippet to replace; empty/None means full replace

    Returns:
        EditResult; ok=False with NOT_FOUND_MESSAGE when the snippet cannot be located
    """
    if not old_content:
        return EditResult(ok=True, content=new_content)

    index = current.find(old_content)
    if index != -1:
        return EditResult(ok=True, content=current[:index] + new_content + current[index + len(old_content):])

    anchored = _reanchor(current, old_content, new_content)
    if anchored:
        at, anchor, replacement = anchored
        return EditResult(
            ok=True,
            content=current[:at] + replacement + current[at + len(anchor):],
            reanchored=True,
        )

    return EditResult(ok=False, error=NOT_FOUND_MESSAGE)


@dataclass
class StepOutcome:
    """Result of applying a FileEditStep against a file store snapshot."""
    path: str
    applied: bool
    created: bool = False
    old_content: str = ""
    new_content: str = ""
    conflict: Optional[str] = None
    over_edit: bool = False
    replaced_ratio: float = 0.0
    reanchored: bool = False


@dataclass
class ConfirmationRequest:
    """Paths a caller must confirm before a Safe-Edit batch may proceed."""
    protected_paths: List[str] = field(default_factory=list)
    over_edit_paths: List[str] = field(default_factory=list)

    @property
    def needed(self) -> bool:
        return bool(self.protected_paths or self.over_edit_paths)

    def to_dict(self) -> dict:
        data = {"needProtectedConfirmation": True, "protectedPaths": self.protected_paths}
        if self.over_edit_paths:
            data["overEditPaths"] = self.over_edit_paths
        return data


class FileApplier:
    """Applies file_edit steps to in-memory file content."""

    def __init__(
        self,
        protected_patterns: Optional[Sequence[str]] = None,
        over_edit_ratio: float = OVER_EDIT_RATIO_THRESHOLD,
    ):
        """
        Initialize file applier.

        Args:
            protected_patterns: Protected path patterns (default: built-in set)
            over_edit_ratio: Fraction of a file above which an edit is an over-edit
        """
        self.protected_patterns = protected_patterns
        self.over_edit_ratio = over_edit_ratio

    def measure_over_edit(self, step: FileEditStep, current: Optional[str]):
        """
        Over-edit ratio of a step against current content.

        A snippet edit replaces len(old_content); a full replace of an existing
        non-empty file replaces all of it. New files never count.
        """
        if not current:
            return check_over_edit(0, 0, len(step.new_content), self.over_edit_ratio)
        replaced = len(current) if step.is_full_replace else len(step.old_content)
        return check_over_edit(len(current), replaced, len(step.new_content), self.over_edit_ratio)

    def confirmation_needed(
        self,
        steps: Sequence[FileEditStep],
        files: Dict[str, str],
        confirmed_paths: Sequence[str] = (),
    ) -> ConfirmationRequest:
        """
        Safe-Edit gate for a whole batch.

        Args:
            steps: All file_edit steps of the batch
            files: Current content by path (paths absent are new files)
            confirmed_paths: Paths the caller already confirmed

        Returns:
            ConfirmationRequest; `needed` is False when the batch may proceed
        """
        confirmed = set(confirmed_paths)
        paths: List[str] = []
        for step in steps:
            if step.path not in paths:
                paths.append(step.path)

        protected = [p for p in get_protected_paths(paths, self.protected_patterns) if p not in confirmed]

        over_edit: List[str] = []
        for step in steps:
            if step.path in confirmed or step.path in over_edit or step.path in protected:
                continue
            if self.measure_over_edit(step, files.get(step.path)).over_edit:
                over_edit.append(step.path)

        return ConfirmationRequest(protected_paths=protected, over_edit_paths=over_edit)

    def apply_step(self, step: FileEditStep, current: Optional[str]) -> StepOutcome:
        """
        Apply a step to the current content of its file.

        Args:
            step: Validated file_edit step
            current: Current content, or None if the file does not exist

        Returns:
            StepOutcome (conflict set and applied=False on content drift)
        """
        if current is None:
            return StepOutcome(
                path=step.path,
                applied=True,
                created=True,
                old_content="",
                new_content=step.new_content,
            )

        measure = self.measure_over_edit(step, current)
        result = apply_edit(current, step.new_content, step.old_content)
        if not result.ok:
            return StepOutcome(path=step.path, applied=False, old_content=current, conflict=CONFLICT_MESSAGE)

        return StepOutcome(
            path=step.path,
            applied=True,
            old_content=current,
            new_content=result.content,
            over_edit=measure.over_edit,
            replaced_ratio=measure.replaced_ratio,
            reanchored=result.reanchored,
        )
