"""
Edit History - per-workspace undo/redo stacks of edit batches

Process-local by design: stacks start empty on process start and are not
persisted, so reversal only covers the current server lifetime. One instance
is owned by the application and handed to whoever needs it.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

MAX_UNDO_DEPTH = 20


@dataclass(frozen=True)
class EditEntry:
    """One file change: content before and after. `created` marks a file the change added."""
    path: str
    old_content: str
    new_content: str
    created: bool = False

    def to_dict(self) -> dict:
        data = {"path": self.path, "oldContent": self.old_content, "newContent": self.new_content}
        if self.created:
            data["created"] = True
        return data


@dataclass(frozen=True)
class EditBatch:
    """All file changes of one plan execution."""
    entries: tuple

    @classmethod
    def of(cls, entries) -> "EditBatch":
        return cls(entries=tuple(entries))

    @property
    def paths(self) -> List[str]:
        return [e.path for e in self.entries]

    def to_dict(self) -> dict:
        return {"entries": [e.to_dict() for e in self.entries]}


@dataclass
class _Stacks:
    # Newest batch last
    undo: List[EditBatch] = field(default_factory=list)
    redo: List[EditBatch] = field(default_factory=list)


class EditHistory:
    """Undo/redo stacks keyed by workspace id."""

    def __init__(self, max_depth: int = MAX_UNDO_DEPTH):
        self.max_depth = max_depth
        self._stacks: Dict[str, _Stacks] = {}
        self._lock = threading.Lock()

    def _get(self, workspace_id: str) -> _Stacks:
        stacks = self._stacks.get(workspace_id)
        if stacks is None:
            stacks = self._stacks[workspace_id] = _Stacks()
        return stacks

    def push_edit_batch(self, workspace_id: str, entries) -> Optional[EditBatch]:
        """
        Record a batch; clears the redo stack and caps undo depth.

        Returns:
            The stored batch, or None when entries is empty
        """
        batch = entries if isinstance(entries, EditBatch) else EditBatch.of(entries)
        if not batch.entries:
            return None
        with self._lock:
            stacks = self._get(workspace_id)
            stacks.undo.append(batch)
            if len(stacks.undo) > self.max_depth:
                del stacks.undo[: len(stacks.undo) - self.max_depth]
            stacks.redo.clear()
        return batch

    def pop_undo(self, workspace_id: str) -> Optional[EditBatch]:
        """Move the newest undo batch to redo and return it (caller restores old_content)."""
        with self._lock:
            stacks = self._get(workspace_id)
            if not stacks.undo:
                return None
            batch = stacks.undo.pop()
            stacks.redo.append(batch)
            return batch

    def pop_redo(self, workspace_id: str) -> Optional[EditBatch]:
        """Move the newest redo batch back to undo and return it (caller re-applies new_content)."""
        with self._lock:
            stacks = self._get(workspace_id)
            if not stacks.redo:
                return None
            batch = stacks.redo.pop()
            stacks.undo.append(batch)
            return batch

    def can_undo(self, workspace_id: str) -> bool:
        with self._lock:
            stacks = self._stacks.get(workspace_id)
            return bool(stacks and stacks.undo)

    def can_redo(self, workspace_id: str) -> bool:
        with self._lock:
            stacks = self._stacks.get(workspace_id)
            return bool(stacks and stacks.redo)

    def clear(self, workspace_id: Optional[str] = None) -> None:
        with self._lock:
            if workspace_id is None:
                self._stacks.clear()
            else:
                self._stacks.pop(workspace_id, None)
