"""SQL-backed FileStore over the workspace_files table."""
from __future__ import annotations

import uuid
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from app.db import WorkspaceFileModel


class SqlFileStore:
    """FileStore implementation used by the API; every write commits immediately."""

    def __init__(self, db: Session):
        self.db = db

    def _row(self, workspace_id: str, path: str) -> Optional[WorkspaceFileModel]:
        return (
            self.db.query(WorkspaceFileModel)
            .filter(WorkspaceFileModel.workspace_id == workspace_id, WorkspaceFileModel.path == path)
            .first()
        )

    def read_file(self, workspace_id: str, path: str) -> Optional[str]:
        row = self._row(workspace_id, path)
        return row.content if row is not None else None

    def read_files(self, workspace_id: str, paths: Optional[Iterable[str]] = None) -> Dict[str, str]:
        query = self.db.query(WorkspaceFileModel).filter(WorkspaceFileModel.workspace_id == workspace_id)
        if paths is not None:
            wanted = list(paths)
            if not wanted:
                return {}
            query = query.filter(WorkspaceFileModel.path.in_(wanted))
        return {row.path: row.content for row in query.all()}

    def list_paths(self, workspace_id: str) -> List[str]:
        rows = (
            self.db.query(WorkspaceFileModel.path)
            .filter(WorkspaceFileModel.workspace_id == workspace_id)
            .order_by(WorkspaceFileModel.path)
            .all()
        )
        return [row[0] for row in rows]

    def write_file(self, workspace_id: str, path: str, content: str) -> None:
        row = self._row(workspace_id, path)
        if row is None:
            self.db.add(WorkspaceFileModel(
                id=str(uuid.uuid4()),
                workspace_id=workspace_id,
                path=path,
                content=content,
            ))
        else:
            row.content = content
        self.db.commit()

    def delete_file(self, workspace_id: str, path: str) -> None:
        row = self._row(workspace_id, path)
        if row is not None:
            self.db.delete(row)
            self.db.commit()
