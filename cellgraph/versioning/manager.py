"""
Undo/redo for Cellgraph.

This module moves the journal cursor backward and forward, reverting or
re-applying one snapshot at a time. Each step runs in a single store
transaction and the lazy cache is told which cells changed once it commits.
"""

import logging
from typing import List, Optional, Set

from ..models import Snapshot
from .journal import SnapshotJournal


class VersionManager:
    """
    Walks the snapshot journal for undo and redo.

    Undo follows each snapshot's predecessor link; redo replays the newest
    snapshot appended on top of the current position. Work done after an
    undo therefore makes the undone entries unreachable instead of replaying
    them.
    """

    def __init__(self, store, journal: Optional[SnapshotJournal] = None, canvas=None):
        """
        Initialize the version manager.

        Args:
            store: The DatabaseManager to apply changes to
            journal: Journal to walk (default: the store's own)
            canvas: Optional LazyCanvas to invalidate after each step
        """
        self.store = store
        self.journal = journal or store.journal
        self.canvas = canvas

        logging.info(f"Initialized VersionManager at #{self.current_sequence}")

    @property
    def current_sequence(self) -> int:
        return self.journal.current_sequence

    def can_undo(self) -> bool:
        current = self.current_sequence
        return current > 0 and self.journal.load_by_sequence(current) is not None

    def can_redo(self) -> bool:
        return self.journal.find_redo_target(self.current_sequence) is not None

    def undo(self) -> Optional[Snapshot]:
        """
        Revert the snapshot at the cursor.

        Returns:
            The reverted snapshot, or None at the start of the retained history
        """
        with self.store.transaction():
            current = self.current_sequence
            snapshot = self.journal.load_by_sequence(current) if current else None
            if snapshot is None:
                logging.info("Nothing to undo")
                return None

            for change in reversed(snapshot.changes):
                change.revert(self.store)
            self.journal.set_current_sequence(snapshot.previous_sequence)

        logging.info(f"Undid #{snapshot.sequence}: {snapshot.description}")
        self._refresh(snapshot)
        return snapshot

    def redo(self) -> Optional[Snapshot]:
        """
        Re-apply the next snapshot after the cursor.

        Returns:
            The applied snapshot, or None when there is nothing to redo
        """
        with self.store.transaction():
            snapshot = self.journal.find_redo_target(self.current_sequence)
            if snapshot is None:
                logging.info("Nothing to redo")
                return None

            for change in snapshot.changes:
                change.apply(self.store)
            self.journal.set_current_sequence(snapshot.sequence)

        logging.info(f"Redid #{snapshot.sequence}: {snapshot.description}")
        self._refresh(snapshot)
        return snapshot

    def _refresh(self, snapshot: Snapshot) -> None:
        if self.canvas is None:
            return
        for cell_id in snapshot.affected_ids():
            self.canvas.invalidate(cell_id)
        if snapshot.has_relationship_changes() or snapshot.operation.value in ("delete", "merge"):
            self.canvas.reload_relationships()

    def _applied_sequences(self) -> Set[int]:
        applied = set()
        sequence = self.current_sequence
        while sequence:
            snapshot = self.journal.load_by_sequence(sequence)
            if snapshot is None:
                break
            applied.add(sequence)
            sequence = snapshot.previous_sequence
        return applied

    def get_history(self, limit: int = 10) -> List[dict]:
        """
        Get the retained journal, newest first.

        Args:
            limit: Maximum number of entries to return

        Returns:
            List of snapshot information dictionaries
        """
        applied = self._applied_sequences()
        current = self.current_sequence
        history = []
        for snapshot in self.journal.list_snapshots(limit):
            history.append({
                'sequence': snapshot.sequence,
                'snapshot_id': snapshot.snapshot_id,
                'operation': snapshot.operation.value,
                'description': snapshot.description,
                'date': snapshot.created_at.isoformat(),
                'cells_affected': len(snapshot.affected_ids()),
                'applied': snapshot.sequence in applied,
                'current': snapshot.sequence == current,
            })
        return history
