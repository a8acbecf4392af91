"""
File Store - the authoritative project content, keyed by (workspace, path)

The executor only needs a handful of operations; the API backs this with the
workspace_files table, tests use the in-memory store.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Protocol, Tuple


class FileStore(Protocol):
    """Key/value file store keyed by workspace id + path."""

    def read_file(self, workspace_id: str, path: str) -> Optional[str]:
        ...

    def read_files(self, workspace_id: str, paths: Optional[Iterable[str]] = None) -> Dict[str, str]:
        ...

    def list_paths(self, workspace_id: str) -> List[str]:
        ...

    def write_file(self, workspace_id: str, path: str, content: str) -> None:
        ...

    def delete_file(self, workspace_id: str, path: str) -> None:
        ...


class InMemoryFileStore:
    """Dict-backed FileStore."""

    def __init__(self, files: Optional[Dict[Tuple[str, str], str]] = None):
        self._files: Dict[Tuple[str, str], str] = dict(files or {})

    def read_file(self, workspace_id: str, path: str) -> Optional[str]:
        return self._files.get((workspace_id, path))

    def read_files(self, workspace_id: str, paths: Optional[Iterable[str]] = None) -> Dict[str, str]:
        wanted = set(paths) if paths is not None else None
        return {
            p: content
            for (ws, p), content in self._files.items()
            if ws == workspace_id and (wanted is None or p in wanted)
        }

    def list_paths(self, workspace_id: str) -> List[str]:
        return sorted(p for (ws, p) in self._files if ws == workspace_id)

    def write_file(self, workspace_id: str, path: str, content: str) -> None:
        self._files[(workspace_id, path)] = content

    def delete_file(self, workspace_id: str, path: str) -> None:
        self._files.pop((workspace_id, path), None)
