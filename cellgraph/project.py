"""
Project facade for Cellgraph.

Ties the store, the lazy canvas, undo/redo and the external edit
reconciler together behind the operations the canvas, UI and CLI use.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from .config import ConfigManager
from .content.cache import LazyCanvas
from .database import DatabaseManager
from .editing import EditOutcome, EditSession, ExternalEditReconciler
from .models import (
    Cell,
    CellDraft,
    ConflictRecord,
    ContentLocation,
    ExecutionTrace,
    SplitDirection,
    ValidationIssue,
)
from .versioning import VersionManager, validate_retention


class Project:
    """
    One open project directory.
    """

    def __init__(self, root: Union[str, Path], config: Optional[ConfigManager] = None):
        """
        Initialize the project; call ``open()`` (or use it as a context manager).

        Args:
            root: Project directory
            config: Configuration (default: built-in defaults)

        Raises:
            RetentionConfigError: If the configured journal retention is invalid
        """
        self.root = Path(root)
        self.config = config or ConfigManager(None)
        db_path = self.root / self.config.database_filename

        self.store = DatabaseManager(
            db_path,
            retention=validate_retention(self.config.journal_retention),
            remote_timeout=self.config.remote_timeout,
        )
        self.canvas: Optional[LazyCanvas] = None
        self.versions: Optional[VersionManager] = None
        self.reconciler: Optional[ExternalEditReconciler] = None

    def open(self) -> "Project":
        self.root.mkdir(parents=True, exist_ok=True)
        self.store.connect()
        self.store.initialize_database()
        self.canvas = LazyCanvas.open(self.store, capacity=self.config.cache_capacity)
        self.versions = VersionManager(self.store, canvas=self.canvas)
        self.reconciler = ExternalEditReconciler(
            self.store,
            canvas=self.canvas,
            poll_interval=self.config.editor_poll_interval,
            editor_command=self.config.editor_command,
        )
        logging.info(f"Opened project {self.root} ({len(self.canvas)} cells)")
        return self

    def close(self) -> None:
        if self.reconciler is not None:
            for session in self.reconciler.active_sessions():
                self.reconciler.abandon(session)
        self.store.disconnect()

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # Cells

    def _refresh(self, *cell_ids: str, relationships: bool = False) -> None:
        for cell_id in cell_ids:
            self.canvas.invalidate(cell_id)
        if relationships:
            self.canvas.reload_relationships()

    def create_cell(self, draft: Optional[CellDraft] = None, **fields) -> Cell:
        cell = self.store.create_cell(draft, **fields)
        self._refresh(cell.id)
        return cell

    def update_cell(self, cell_id: str, fields: Dict[str, Any],
                    preference: Optional[ContentLocation] = None) -> Cell:
        cell = self.store.update_cell(cell_id, fields, preference=preference)
        self._refresh(cell_id)
        return cell

    def update_cell_content(self, cell_id: str, content: str,
                            preference: Optional[ContentLocation] = None) -> Cell:
        cell = self.store.update_cell_content(cell_id, content, preference=preference)
        self._refresh(cell_id)
        return cell

    def delete_cell(self, cell_id: str) -> Cell:
        cell = self.store.delete_cell(cell_id)
        self._refresh(cell_id, relationships=True)
        return cell

    def split_cell(self, parent_id: str, direction: SplitDirection, drafts: Sequence[CellDraft],
                   parent_fields: Optional[Dict[str, Any]] = None) -> List[Cell]:
        children = self.store.split_cell(parent_id, direction, drafts, parent_fields=parent_fields)
        self._refresh(parent_id, *[child.id for child in children])
        return children

    def merge_cells(self, cell_ids: Sequence[str], draft: Optional[CellDraft] = None) -> Cell:
        merged = self.store.merge_cells(cell_ids, draft)
        self._refresh(*cell_ids, merged.id, relationships=True)
        return merged

    def create_relationship(self, from_id: str, to_id: str) -> bool:
        created = self.store.create_relationship(from_id, to_id)
        if created:
            self._refresh(relationships=True)
        return created

    def delete_relationship(self, from_id: str, to_id: str) -> None:
        self.store.delete_relationship(from_id, to_id)
        self._refresh(relationships=True)

    def resolve(self, reference: str) -> Cell:
        """
        Find a cell by id, short id or name.

        Raises:
            NotFoundError: If nothing matches
        """
        cell = self.store.find_cell(reference) or self.store.find_cell_by_short_id(reference)
        if cell is None:
            for candidate in self.canvas.cells():
                if candidate.name == reference:
                    return candidate
            return self.store.get_cell(reference)
        return cell

    def get_cell(self, cell_id: str) -> Cell:
        return self.canvas.get(cell_id).cell

    def get_cell_content(self, cell_id: str) -> str:
        return self.canvas.get_with_content(cell_id)[1]

    def iter_cells(self) -> Iterator[Tuple[Cell, str]]:
        return self.store.iter_cells_with_content()

    def export_content(self, destination: Union[str, Path]) -> Path:
        return self.store.copy_content_tree(destination)

    # Undo / redo

    def undo(self) -> Optional[str]:
        """Returns the description of the undone operation, or None."""
        snapshot = self.versions.undo()
        return snapshot.description if snapshot else None

    def redo(self) -> Optional[str]:
        """Returns the description of the redone operation, or None."""
        snapshot = self.versions.redo()
        return snapshot.description if snapshot else None

    def history(self, limit: int = 10) -> List[dict]:
        return self.versions.get_history(limit)

    # Execution traces

    def record_trace(self, mode: str, log: str, start_cell: Optional[str] = None) -> ExecutionTrace:
        return self.store.record_execution_trace(mode, log, start_cell=start_cell)

    # External edits and conflicts

    def begin_edit(self, cell_id: str, editor_command: Optional[str] = None) -> EditSession:
        return self.reconciler.begin_edit(cell_id, editor_command)

    def finish_edit(self, session: EditSession, timeout: Optional[float] = None) -> EditOutcome:
        return self.reconciler.wait(session, timeout=timeout)

    def conflicts(self) -> List[ConflictRecord]:
        self.reconciler.scan_external_changes()
        return self.store.list_conflicts()

    def resolve_conflict(self, conflict_id: int, accept: str) -> ConflictRecord:
        return self.reconciler.resolve_conflict(conflict_id, accept)

    def validate(self) -> List[ValidationIssue]:
        return self.store.validate()
