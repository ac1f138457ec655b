"""
Snapshot journal for Cellgraph.

Every mutation is recorded as one Snapshot row holding its Changes as JSON.
Rows are written in the same transaction as the mutation they describe and
the oldest rows are pruned once more than ``retention`` snapshots exist.
"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence, Union

from ..database.ids import new_snapshot_id
from ..errors import RetentionConfigError
from ..models.changes import OperationKind, Snapshot, dump_changes, load_changes

DEFAULT_RETENTION = 50

CURRENT_SEQUENCE_KEY = "current_sequence"

SNAPSHOT_COLUMNS = "snapshot_id, sequence, previous_sequence, created_at, description, operation, changes"


def validate_retention(retention) -> int:
    """Return retention as an int, or raise RetentionConfigError."""
    if isinstance(retention, bool) or not isinstance(retention, int):
        raise RetentionConfigError(f"Journal retention must be an integer, got {retention!r}")
    if retention < 1:
        raise RetentionConfigError(f"Journal retention must be at least 1, got {retention}")
    return retention


class SnapshotJournal:
    """
    Append-only change journal stored alongside the cells it describes.
    """

    def __init__(self, store, retention: int = DEFAULT_RETENTION):
        """
        Initialize the journal.

        Args:
            store: The DatabaseManager owning the connection and transactions
            retention: Number of most recent snapshots to keep

        Raises:
            RetentionConfigError: If retention is not a positive integer
        """
        self.store = store
        self.retention = validate_retention(retention)

    def append(self, operation: OperationKind, description: str, changes: Sequence) -> str:
        """
        Append a snapshot and move the cursor onto it.

        Runs inside the caller's transaction when one is open, so the entry
        commits or rolls back together with the mutation it describes.

        Args:
            operation: Kind of logical operation
            description: Human-readable description shown by undo/redo
            changes: Ordered Change records

        Returns:
            The new snapshot's id
        """
        snapshot_id = new_snapshot_id()

        with self.store.transaction():
            sequence = self.latest_sequence() + 1
            previous = self.current_sequence

            self.store.connection.execute(f"""
                INSERT INTO snapshots ({SNAPSHOT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, [
                snapshot_id,
                sequence,
                previous,
                datetime.now(),
                description,
                OperationKind(operation).value,
                dump_changes(list(changes)),
            ])

            self.set_current_sequence(sequence)
            self.prune(sequence)

        logging.info(f"Journaled #{sequence} ({OperationKind(operation).value}): {description}")
        return snapshot_id

    def prune(self, latest: Optional[int] = None) -> int:
        """
        Delete snapshots more than ``retention`` behind the latest sequence.

        Returns:
            Number of snapshots deleted
        """
        if latest is None:
            latest = self.latest_sequence()
        cutoff = latest - self.retention
        if cutoff < 1:
            return 0

        with self.store.transaction():
            conn = self.store.connection
            (stale,) = conn.execute(
                "SELECT COUNT(*) FROM snapshots WHERE sequence <= ?", [cutoff]
            ).fetchone()
            if stale:
                conn.execute("DELETE FROM snapshots WHERE sequence <= ?", [cutoff])
                logging.info(f"Pruned {stale} journal entries at or below #{cutoff}")
        return stale

    def latest_sequence(self) -> int:
        (latest,) = self.store.reader().execute("SELECT MAX(sequence) FROM snapshots").fetchone()
        return latest or 0

    def count(self) -> int:
        (total,) = self.store.reader().execute("SELECT COUNT(*) FROM snapshots").fetchone()
        return total

    @property
    def current_sequence(self) -> int:
        """Sequence of the last applied snapshot (0 = nothing applied)."""
        return self.store.get_state(CURRENT_SEQUENCE_KEY, 0)

    def set_current_sequence(self, sequence: int) -> None:
        self.store.set_state(CURRENT_SEQUENCE_KEY, sequence)

    def load(self, key: Union[int, str]) -> Optional[Snapshot]:
        """
        Load a snapshot by sequence number or by snapshot id.

        Returns:
            The snapshot if found, None otherwise
        """
        if isinstance(key, int):
            return self.load_by_sequence(key)
        return self.load_by_id(key)

    def load_by_sequence(self, sequence: int) -> Optional[Snapshot]:
        row = self.store.reader().execute(f"""
            SELECT {SNAPSHOT_COLUMNS} FROM snapshots WHERE sequence = ?
        """, [sequence]).fetchone()
        return self._row_to_snapshot(row) if row else None

    def load_by_id(self, snapshot_id: str) -> Optional[Snapshot]:
        row = self.store.reader().execute(f"""
            SELECT {SNAPSHOT_COLUMNS} FROM snapshots WHERE snapshot_id = ?
        """, [snapshot_id]).fetchone()
        return self._row_to_snapshot(row) if row else None

    def find_redo_target(self, sequence: int) -> Optional[Snapshot]:
        """
        Find the snapshot to replay from the given cursor position.

        When several snapshots were appended on top of the same position
        (because new work was done after an undo) the newest one wins; the
        older branch is unreachable.
        """
        row = self.store.reader().execute(f"""
            SELECT {SNAPSHOT_COLUMNS} FROM snapshots
            WHERE previous_sequence = ? AND sequence > ?
            ORDER BY sequence DESC
            LIMIT 1
        """, [sequence, sequence]).fetchone()
        return self._row_to_snapshot(row) if row else None

    def list_snapshots(self, limit: Optional[int] = None) -> List[Snapshot]:
        """
        List snapshots, newest first.

        Args:
            limit: Limit number of results
        """
        query = f"SELECT {SNAPSHOT_COLUMNS} FROM snapshots ORDER BY sequence DESC"
        params: List[int] = []
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))
        rows = self.store.reader().execute(query, params).fetchall()
        return [self._row_to_snapshot(row) for row in rows]

    def mentions(self, cell_id: str) -> bool:
        """True if any retained snapshot references the given cell id."""
        row = self.store.reader().execute(
            "SELECT 1 FROM snapshots WHERE contains(changes, ?) LIMIT 1", [cell_id]
        ).fetchone()
        return row is not None

    @staticmethod
    def _row_to_snapshot(row) -> Snapshot:
        return Snapshot(
            snapshot_id=row[0],
            sequence=row[1],
            previous_sequence=row[2],
            created_at=row[3],
            description=row[4],
            operation=OperationKind(row[5]),
            changes=load_changes(row[6]),
        )
