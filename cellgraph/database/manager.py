"""
Database manager for Cellgraph.

This module handles all persistence using a single DuckDB file per project:
cell metadata, relationships, the change journal, conflict records and
execution traces. Content that does not live inline is kept in a directory
next to the database file and written inside the same transaction as the
metadata that references it.
"""

import duckdb
import logging
import shutil
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from ..content.files import (
    calculate_content_hash,
    content_bytes,
    fetch_remote,
    hash_file,
    read_optional_bytes,
    read_text,
    remove_file,
    write_bytes_atomic,
)
from ..content.locations import CONTENT_SUBDIRECTORIES, EDITS_DIR, ContentLocationResolver
from ..errors import ConflictError, NotFoundError, PathResolutionError, SelfReferenceError, StorageIOError
from ..models import (
    Cell,
    CellDraft,
    CellState,
    CellType,
    ConflictKind,
    ConflictRecord,
    ContentLocation,
    ExecutionTrace,
    Rectangle,
    Relationship,
    SplitDirection,
    ValidationIssue,
)
from ..models.changes import (
    CellCreated,
    CellDeleted,
    CellMerged,
    CellModified,
    CellSplit,
    OperationKind,
    RelationshipCreated,
    RelationshipDeleted,
)
from ..versioning.journal import DEFAULT_RETENTION, SnapshotJournal
from .ids import ShortIdGenerator, new_cell_id, new_trace_id

CELL_COLUMNS = (
    "id, short_id, name, cell_type, x, y, width, height, location, inline_text, path, "
    "summary, content_hash, parent_id, split_direction, is_start_point, preview_mode, "
    "created_at, modified_at"
)

# Fields a caller may change through update_cell
UPDATABLE_FIELDS = {
    "name", "cell_type", "bounds", "summary", "is_start_point", "preview_mode", "content",
}

SHORT_ID_WIDTH_KEY = "short_id_width"
SHORT_ID_NEXT_KEY = "short_id_next"


def _decode_remote(data: bytes, url: str) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise StorageIOError(f"Remote content is not valid utf-8: {url}") from e


class DatabaseManager:
    """
    Manages the DuckDB database and content directory of one project.

    Writers are serialized: one transaction is in flight at a time. Readers
    on other threads use their own cursors and never wait for a writer.
    """

    def __init__(self, db_path: Union[str, Path] = "project.duckdb",
                 content_root: Optional[Union[str, Path]] = None,
                 retention: int = DEFAULT_RETENTION,
                 resolver: Optional[ContentLocationResolver] = None,
                 remote_timeout: float = 30.0):
        """
        Initialize the database manager.

        Args:
            db_path: Path to the DuckDB database file
            content_root: Directory for content files (default: "<stem>_content" next to the database)
            retention: Number of journal snapshots to keep
            resolver: Optional content location resolver (default: one rooted at content_root)
            remote_timeout: Timeout in seconds for downloading remote content

        Raises:
            RetentionConfigError: If retention is not a positive integer
        """
        self.db_path = Path(db_path)
        if content_root is None:
            content_root = self.db_path.parent / f"{self.db_path.stem}_content"
        self.content_root = Path(content_root)
        self.resolver = resolver or ContentLocationResolver(self.content_root)
        self.remote_timeout = remote_timeout
        self.connection = None
        self.journal = SnapshotJournal(self, retention)

        self._write_lock = threading.RLock()
        self._tx_depth = 0
        self._tx_owner: Optional[int] = None
        self._file_journal: List[Tuple[Path, Optional[bytes]]] = []
        self._local = threading.local()
        self._cursors: List[Any] = []
        self._cursor_lock = threading.Lock()
        self._leases: Dict[Path, str] = {}

    def connect(self):
        """Establish connection to the database."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.connection = duckdb.connect(str(self.db_path))
        self._local = threading.local()

    def disconnect(self):
        """Close the database connection and every reader cursor."""
        with self._cursor_lock:
            for cursor in self._cursors:
                try:
                    cursor.close()
                except duckdb.Error as e:
                    logging.warning(f"Failed to close reader cursor: {e}")
            self._cursors = []
        if self.connection:
            self.connection.close()
            self.connection = None

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        self.initialize_database()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()

    def _require_connection(self):
        if not self.connection:
            raise RuntimeError("Database connection not established")

    def initialize_database(self):
        """
        Create all necessary tables and content directories if they don't exist.
        """
        self._require_connection()

        self.connection.execute("""
            CREATE TABLE IF NOT EXISTS cells (
                id VARCHAR PRIMARY KEY,
                short_id VARCHAR NOT NULL UNIQUE,
                name VARCHAR,
                cell_type VARCHAR NOT NULL,
                x DOUBLE NOT NULL,
                y DOUBLE NOT NULL,
                width DOUBLE NOT NULL,
                height DOUBLE NOT NULL,
                location VARCHAR NOT NULL,
                inline_text VARCHAR,
                path VARCHAR,
                summary VARCHAR,
                content_hash VARCHAR NOT NULL,
                parent_id VARCHAR,
                split_direction VARCHAR,
                is_start_point BOOLEAN NOT NULL DEFAULT false,
                preview_mode VARCHAR,
                created_at TIMESTAMP NOT NULL,
                modified_at TIMESTAMP NOT NULL
            )
        """)

        # Cascades are done in code: DuckDB has no ON DELETE CASCADE
        self.connection.execute("""
            CREATE TABLE IF NOT EXISTS relationships (
                from_id VARCHAR NOT NULL,
                to_id VARCHAR NOT NULL,
                PRIMARY KEY (from_id, to_id)
            )
        """)

        self.connection.execute("""
            CREATE TABLE IF NOT EXISTS snapshots (
                snapshot_id VARCHAR PRIMARY KEY,
                sequence BIGINT NOT NULL UNIQUE,
                previous_sequence BIGINT NOT NULL,
                created_at TIMESTAMP NOT NULL,
                description VARCHAR NOT NULL,
                operation VARCHAR NOT NULL,
                changes VARCHAR NOT NULL
            )
        """)

        self.connection.execute("""
            CREATE TABLE IF NOT EXISTS store_state (
                key VARCHAR PRIMARY KEY,
                value BIGINT NOT NULL
            )
        """)

        self.connection.execute("CREATE SEQUENCE IF NOT EXISTS conflict_id_seq;")
        self.connection.execute("""
            CREATE TABLE IF NOT EXISTS conflicts (
                conflict_id BIGINT PRIMARY KEY DEFAULT nextval('conflict_id_seq'),
                cell_id VARCHAR NOT NULL,
                short_id VARCHAR NOT NULL,
                kind VARCHAR NOT NULL,
                detected_at TIMESTAMP NOT NULL,
                artifact_path VARCHAR
            )
        """)

        self.connection.execute("""
            CREATE TABLE IF NOT EXISTS execution_traces (
                trace_id VARCHAR PRIMARY KEY,
                created_at TIMESTAMP NOT NULL,
                mode VARCHAR NOT NULL,
                start_cell VARCHAR,
                log TEXT NOT NULL
            )
        """)

        for name in CONTENT_SUBDIRECTORIES:
            (self.content_root / name).mkdir(parents=True, exist_ok=True)

        logging.info(f"Database initialized: {self.db_path}")

    # Transactions and connections

    @contextmanager
    def transaction(self):
        """
        Run the enclosed block as one atomic transaction.

        Nested use joins the outer transaction. Content files written inside
        the block are restored to their previous bytes if it fails.
        """
        with self._write_lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return

            self._require_connection()
            self.connection.begin()
            self._tx_depth = 1
            self._tx_owner = threading.get_ident()
            self._file_journal = []
            try:
                yield self
                self.connection.commit()
            except BaseException:
                try:
                    self.connection.rollback()
                except duckdb.Error as e:
                    logging.warning(f"Rollback failed: {e}")
                self._restore_files()
                raise
            finally:
                self._tx_depth = 0
                self._tx_owner = None
                self._file_journal = []

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0 and self._tx_owner == threading.get_ident()

    def reader(self):
        """
        Return the connection to read from on the calling thread.

        Inside a transaction this is the writing connection (so reads see the
        transaction's own changes); otherwise a per-thread cursor.
        """
        self._require_connection()
        if self.in_transaction:
            return self.connection

        cursor = getattr(self._local, "cursor", None)
        if cursor is None:
            cursor = self.connection.cursor()
            self._local.cursor = cursor
            with self._cursor_lock:
                self._cursors.append(cursor)
        return cursor

    def get_state(self, key: str, default: int = 0) -> int:
        row = self.reader().execute("SELECT value FROM store_state WHERE key = ?", [key]).fetchone()
        return row[0] if row else default

    def set_state(self, key: str, value: int) -> None:
        with self.transaction():
            exists = self.connection.execute(
                "SELECT 1 FROM store_state WHERE key = ?", [key]
            ).fetchone()
            if exists:
                self.connection.execute("UPDATE store_state SET value = ? WHERE key = ?", [value, key])
            else:
                self.connection.execute("INSERT INTO store_state (key, value) VALUES (?, ?)", [key, value])

    # Content files

    def calculate_content_hash(self, content: Union[str, bytes]) -> str:
        """
        Calculate SHA-256 hash of raw content bytes.

        Args:
            content: The content to hash

        Returns:
            The SHA-256 hash as a hex string
        """
        return calculate_content_hash(content)

    def _remember_file(self, path: Path) -> None:
        if any(existing == path for existing, _ in self._file_journal):
            return
        self._file_journal.append((path, read_optional_bytes(path)))

    def _restore_files(self) -> None:
        for path, previous in reversed(self._file_journal):
            try:
                if previous is None:
                    remove_file(path)
                else:
                    write_bytes_atomic(path, previous)
            except StorageIOError as e:
                logging.error(f"Failed to restore {path} after rollback: {e}")

    def _write_content_file(self, path: Path, content: str) -> None:
        if not self.in_transaction:
            raise RuntimeError("Content files are only written inside a transaction")
        if self.is_leased(path):
            raise ConflictError(f"{path} is being edited externally", artifact_path=None)
        self._remember_file(path)
        write_bytes_atomic(path, content_bytes(content))

    def _delete_content_file(self, path: Path) -> None:
        if not self.in_transaction:
            raise RuntimeError("Content files are only removed inside a transaction")
        if self.is_leased(path):
            raise ConflictError(f"{path} is being edited externally", artifact_path=None)
        self._remember_file(path)
        remove_file(path)

    def content_path(self, cell: Cell) -> Optional[Path]:
        """Absolute path of a cell's content, or None for inline content."""
        return self.resolver.resolve_path(cell.location, cell.path)

    def read_content(self, cell: Cell) -> str:
        """
        Read a cell's full content from wherever it lives.

        Remote content is downloaded into the cache directory on first read.

        Raises:
            PathResolutionError: If a non-inline cell has no stored path
            StorageIOError: If the file cannot be read or downloaded
        """
        if cell.location == ContentLocation.INLINE:
            return cell.inline_text or ""

        path = self.content_path(cell)
        if cell.location == ContentLocation.REMOTE and not path.exists():
            data = fetch_remote(cell.path, timeout=self.remote_timeout)
            write_bytes_atomic(path, data)
            return _decode_remote(data, cell.path)
        return read_text(path)

    def get_cell_content(self, cell_id: str) -> str:
        """Read-only content access used by the execution engine."""
        return self.read_content(self.get_cell(cell_id))

    def restore_content_file(self, cell_id: str, content: str) -> None:
        """
        Rewrite a cell's file with the content its stored hash describes.

        Used to discard changes made on disk outside the application; the
        cell's metadata does not change, so nothing is journaled.

        Raises:
            ValueError: If content does not match the stored hash
        """
        cell = self.get_cell(cell_id)
        if calculate_content_hash(content) != cell.content_hash:
            raise ValueError(f"Content does not match the stored hash of cell {cell.short_id}")
        path = self.content_path(cell)
        if path is None:
            return
        with self.transaction():
            self._write_content_file(path, content)
        logging.info(f"Restored content file of cell {cell.short_id}")

    # File leases held by external editors

    def lease_file(self, path: Union[str, Path], cell_id: str) -> None:
        self._leases[Path(path)] = cell_id

    def release_file(self, path: Union[str, Path]) -> None:
        self._leases.pop(Path(path), None)

    def is_leased(self, path: Optional[Path]) -> bool:
        return path is not None and Path(path) in self._leases

    def _check_lease(self, cell: Cell) -> None:
        """Refuse in-app content writes to a file an external editor owns."""
        if cell.location == ContentLocation.INLINE:
            return
        path = self.content_path(cell)
        if self.is_leased(path):
            self.add_conflict(cell.id, cell.short_id, ConflictKind.CONCURRENT_EDIT)
            raise ConflictError(
                f"Cell {cell.short_id} is open in an external editor; close it before editing in-app",
                cell_id=cell.id,
            )

    def _changed_on_disk(self, cell: Cell, path: Optional[Path], *expected: str) -> bool:
        """
        Check whether a file the user can edit no longer holds a content
        version the store knows about.

        Only external and symlinked files are checked; inline text has no
        file and remote downloads are a cache.
        """
        if path is None or cell.location not in (ContentLocation.EXTERNAL, ContentLocation.SYMLINK):
            return False
        if not path.exists():
            return False
        return hash_file(path) not in (cell.content_hash,) + expected

    def _keep_changed_file(self, cell: Cell, path: Path) -> None:
        """Leave an externally changed file alone and record the conflict."""
        self.add_conflict(cell.id, cell.short_id, ConflictKind.EXTERNAL_MODIFICATION)
        logging.warning(f"{path} changed outside the application; kept it instead of overwriting")

    def _check_unsynced(self, cell: Cell) -> None:
        """Refuse in-app content writes over changes made on disk."""
        path = self.content_path(cell)
        if self._changed_on_disk(cell, path):
            self._keep_changed_file(cell, path)
            raise ConflictError(
                f"Cell {cell.short_id} was changed outside the application; resolve the conflict first",
                cell_id=cell.id,
            )

    # Rows

    @staticmethod
    def _cell_params(cell: Cell) -> list:
        return [
            cell.id,
            cell.short_id,
            cell.name,
            cell.cell_type.value,
            cell.bounds.x,
            cell.bounds.y,
            cell.bounds.width,
            cell.bounds.height,
            cell.location.value,
            cell.inline_text,
            cell.path,
            cell.summary,
            cell.content_hash,
            cell.parent_id,
            cell.split_direction.value if cell.split_direction else None,
            cell.is_start_point,
            cell.preview_mode.value if cell.preview_mode else None,
            cell.created_at,
            cell.modified_at,
        ]

    @staticmethod
    def _row_to_cell(row) -> Cell:
        return Cell(
            id=row[0],
            short_id=row[1],
            name=row[2],
            cell_type=row[3],
            bounds=Rectangle(x=row[4], y=row[5], width=row[6], height=row[7]),
            location=row[8],
            inline_text=row[9],
            path=row[10],
            summary=row[11],
            content_hash=row[12],
            parent_id=row[13],
            split_direction=row[14],
            is_start_point=row[15],
            preview_mode=row[16],
            created_at=row[17],
            modified_at=row[18],
        )

    def _next_short_id(self) -> str:
        """Issue a short id that has never been used in this project."""
        width = self.get_state(SHORT_ID_WIDTH_KEY, 0)
        if width:
            generator = ShortIdGenerator(width)
            generator.counter = self.get_state(SHORT_ID_NEXT_KEY, 0)
        else:
            rows = self.reader().execute("SELECT short_id FROM cells").fetchall()
            generator = ShortIdGenerator.from_existing(row[0] for row in rows)

        short_id = generator.next()
        self.set_state(SHORT_ID_WIDTH_KEY, generator.length)
        self.set_state(SHORT_ID_NEXT_KEY, generator.counter)
        return short_id

    # Cell reads

    def find_cell(self, cell_id: str) -> Optional[Cell]:
        """
        Retrieve a cell by id.

        Returns:
            The cell if found, None otherwise
        """
        row = self.reader().execute(f"""
            SELECT {CELL_COLUMNS} FROM cells WHERE id = ?
        """, [cell_id]).fetchone()
        return self._row_to_cell(row) if row else None

    def get_cell(self, cell_id: str) -> Cell:
        """
        Retrieve a cell by id.

        Raises:
            NotFoundError: If no cell has this id
        """
        cell = self.find_cell(cell_id)
        if cell is None:
            raise NotFoundError("Cell", cell_id)
        return cell

    def find_cell_by_short_id(self, short_id: str) -> Optional[Cell]:
        row = self.reader().execute(f"""
            SELECT {CELL_COLUMNS} FROM cells WHERE upper(short_id) = upper(?)
        """, [short_id]).fetchone()
        return self._row_to_cell(row) if row else None

    def list_cells(self, cell_type: Optional[CellType] = None) -> List[Cell]:
        """
        List all cells in id (creation) order, optionally filtered by type.
        """
        if cell_type:
            rows = self.reader().execute(f"""
                SELECT {CELL_COLUMNS} FROM cells WHERE cell_type = ? ORDER BY id
            """, [CellType(cell_type).value]).fetchall()
        else:
            rows = self.reader().execute(f"""
                SELECT {CELL_COLUMNS} FROM cells ORDER BY id
            """).fetchall()
        return [self._row_to_cell(row) for row in rows]

    def cell_count(self) -> int:
        (total,) = self.reader().execute("SELECT COUNT(*) FROM cells").fetchone()
        return total

    def load_state(self, cell_id: str) -> CellState:
        """A cell's metadata plus its full content."""
        cell = self.get_cell(cell_id)
        return CellState(cell=cell, content=self.read_content(cell))

    def iter_cells_with_content(self) -> Iterator[Tuple[Cell, str]]:
        """Yield every cell with its content, for export."""
        for cell in self.list_cells():
            yield cell, self.read_content(cell)

    # Location planning

    def _plan_location(self, cell_id: str, cell_type: CellType, content: str,
                       preference: Optional[ContentLocation], source: Optional[str],
                       current: Optional[Cell] = None) -> Tuple[ContentLocation, Optional[str], Optional[str]]:
        """
        Decide location, inline text and stored path for content about to be written.

        Returns:
            (location, inline_text, path)
        """
        size = len(content_bytes(content))
        explicit = preference is not None
        if preference is None and current is not None:
            preference = current.location
        location = self.resolver.decide(cell_type, size, preference)

        if location == ContentLocation.REMOTE:
            if source:
                return location, None, source
            # Edited remote content becomes local; undo restores the link
            location = self.resolver.decide(cell_type, size, None)
            if explicit:
                raise PathResolutionError("Remote content needs a source URL")

        if location == ContentLocation.SYMLINK:
            if source:
                return location, None, str(source)
            if current is not None and current.location == ContentLocation.SYMLINK:
                return location, None, current.path
            raise PathResolutionError("Symlinked content needs an absolute source path")

        if location == ContentLocation.EXTERNAL:
            if current is not None and current.location == ContentLocation.EXTERNAL \
                    and CellType(current.cell_type) == CellType(cell_type):
                return location, None, current.path
            return location, None, self.resolver.external_relpath(cell_id, cell_type)

        if location == ContentLocation.INLINE:
            return location, content, None

        raise PathResolutionError(f"Unknown content location: {location}")

    def _materialize(self, draft: CellDraft, parent_id: Optional[str] = None,
                     split_direction: Optional[SplitDirection] = None) -> CellState:
        """Assign identity and storage to a draft. Writes nothing."""
        cell_id = new_cell_id()
        content = draft.content

        if content is None and draft.source:
            if draft.preference == ContentLocation.REMOTE:
                content = _decode_remote(
                    fetch_remote(draft.source, timeout=self.remote_timeout), draft.source
                )
            elif draft.preference == ContentLocation.SYMLINK:
                content = read_text(draft.source)
        if content is None:
            content = ""

        location, inline_text, path = self._plan_location(
            cell_id, draft.cell_type, content, draft.preference, draft.source
        )
        now = datetime.now()
        cell = Cell(
            id=cell_id,
            short_id=self._next_short_id(),
            name=draft.name,
            cell_type=draft.cell_type,
            bounds=draft.bounds,
            location=location,
            inline_text=inline_text,
            path=path,
            summary=draft.summary,
            content_hash=calculate_content_hash(content),
            parent_id=parent_id,
            split_direction=split_direction,
            is_start_point=draft.is_start_point,
            preview_mode=draft.preview_mode,
            created_at=now,
            modified_at=now,
        )
        return CellState(cell=cell, content=content)

    # Non-journaled primitives (called by Change.apply / Change.revert)

    def restore_cell(self, state: CellState) -> None:
        """Insert a cell row and write its content file, exactly as captured."""
        with self.transaction():
            cell = state.cell
            path = self.content_path(cell)
            if self._changed_on_disk(cell, path):
                self._keep_changed_file(cell, path)
            elif path is not None:
                self._write_content_file(path, state.content)
            self.connection.execute(f"""
                INSERT INTO cells ({CELL_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, self._cell_params(cell))

    def remove_cell(self, cell_id: str) -> None:
        """Delete a cell row, its relationships and any file it owns."""
        with self.transaction():
            cell = self.get_cell(cell_id)
            self.connection.execute(
                "DELETE FROM relationships WHERE from_id = ? OR to_id = ?", [cell_id, cell_id]
            )
            self.connection.execute("DELETE FROM cells WHERE id = ?", [cell_id])
            # Symlink targets belong to the user and cached downloads stay cached
            if cell.location == ContentLocation.EXTERNAL:
                self._delete_content_file(self.content_path(cell))

    def apply_fields(self, cell_id: str, fields: Dict[str, Any]) -> Cell:
        """
        Overwrite a cell's fields with a diff as captured in the journal.

        A ``content`` entry is written to wherever the updated fields say the
        content lives.
        """
        with self.transaction():
            current = self.get_cell(cell_id)
            fields = dict(fields)
            content = fields.pop("content", None)
            merged = current.model_dump()
            merged.update(fields)
            updated = Cell.model_validate(merged)
            self._write_cell(current, updated, content)
            return updated

    def _write_cell(self, current: Cell, updated: Cell, content: Optional[str]) -> None:
        old_path = self.content_path(current)
        new_path = self.content_path(updated)

        if content is not None and new_path is not None:
            unchanged = (
                old_path == new_path
                and current.content_hash == updated.content_hash
                and new_path.exists()
            )
            if not unchanged:
                if old_path == new_path and self._changed_on_disk(
                        current, old_path, calculate_content_hash(content)):
                    self._keep_changed_file(current, old_path)
                else:
                    self._write_content_file(new_path, content)

        if current.location == ContentLocation.EXTERNAL and old_path != new_path:
            self._delete_content_file(old_path)

        self.connection.execute("""
            UPDATE cells SET
                name = ?, cell_type = ?, x = ?, y = ?, width = ?, height = ?,
                location = ?, inline_text = ?, path = ?, summary = ?, content_hash = ?,
                parent_id = ?, split_direction = ?, is_start_point = ?, preview_mode = ?,
                created_at = ?, modified_at = ?
            WHERE id = ?
        """, self._cell_params(updated)[2:] + [updated.id])

    def insert_relationship_row(self, from_id: str, to_id: str) -> None:
        with self.transaction():
            self.connection.execute(
                "INSERT INTO relationships (from_id, to_id) VALUES (?, ?)", [from_id, to_id]
            )

    def remove_relationship_row(self, from_id: str, to_id: str) -> None:
        with self.transaction():
            self.connection.execute(
                "DELETE FROM relationships WHERE from_id = ? AND to_id = ?", [from_id, to_id]
            )

    # Journaled cell operations

    def create_cell(self, draft: Optional[CellDraft] = None, description: Optional[str] = None,
                    **fields) -> Cell:
        """
        Create a new cell and journal it.

        Args:
            draft: The cell as described by the canvas (or pass its fields as keywords)
            description: Optional journal description

        Returns:
            The created cell
        """
        if draft is None:
            draft = CellDraft(**fields)

        with self.transaction():
            state = self._materialize(draft)
            change = CellCreated(state=state)
            change.apply(self)
            self.journal.append(
                OperationKind.CREATE,
                description or f"Create {state.cell.cell_type.value} cell {state.cell.short_id}",
                [change],
            )

        logging.info(f"Created cell {state.cell.short_id} ({state.cell.location.value})")
        return state.cell

    def update_cell(self, cell_id: str, fields: Dict[str, Any],
                    preference: Optional[ContentLocation] = None,
                    description: Optional[str] = None,
                    baseline: Optional[str] = None) -> Cell:
        """
        Apply a field diff from the canvas and journal it.

        Args:
            cell_id: The cell to change
            fields: Changed fields; ``content`` replaces the cell's text
            preference: Optional requested content location
            description: Optional journal description
            baseline: Content to journal as the previous text instead of
                reading it from disk (used when the file already changed on disk)

        Returns:
            The updated cell (unchanged if the diff was empty)

        Raises:
            NotFoundError: If the cell does not exist
            ConflictError: If the cell's file is open in an external editor
        """
        fields = dict(fields)
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update cell fields: {', '.join(sorted(unknown))}")

        relocate = "content" in fields or "cell_type" in fields or preference is not None
        if relocate:
            cell = self.get_cell(cell_id)
            self._check_lease(cell)
            if baseline is None:
                self._check_unsynced(cell)

        with self.transaction():
            current = self.get_cell(cell_id)
            new_content = fields.pop("content", None)

            merged = current.model_dump()
            merged.update(fields)
            merged["modified_at"] = datetime.now()
            updated = Cell.model_validate(merged)

            old_content = None
            if relocate:
                old_content = baseline if baseline is not None else self.read_content(current)
                text = new_content if new_content is not None else old_content
                location, inline_text, path = self._plan_location(
                    current.id, updated.cell_type, text, preference, None, current=current
                )
                updated = updated.model_copy(update={
                    "location": location,
                    "inline_text": inline_text,
                    "path": path,
                    "content_hash": calculate_content_hash(text),
                })

            before_all = current.model_dump(mode="json")
            after_all = updated.model_dump(mode="json")
            changed = [key for key in after_all if after_all[key] != before_all[key]]
            if changed == ["modified_at"] or not changed:
                return current

            before = {key: before_all[key] for key in changed}
            after = {key: after_all[key] for key in changed}
            if {"location", "path", "content_hash"} & set(changed):
                before["content"] = old_content
                after["content"] = text

            change = CellModified(cell_id=cell_id, before=before, after=after)
            change.apply(self)

            if description is None:
                edited = [key for key in changed if key not in ("modified_at", "content_hash", "inline_text")]
                description = f"Edit {', '.join(edited) or 'content'} of cell {current.short_id}"
            self.journal.append(OperationKind.MODIFY, description, [change])

        logging.info(f"Updated cell {current.short_id}: {', '.join(changed)}")
        return self.get_cell(cell_id)

    def update_cell_content(self, cell_id: str, content: str,
                            preference: Optional[ContentLocation] = None,
                            description: Optional[str] = None,
                            baseline: Optional[str] = None) -> Cell:
        """
        Replace a cell's content, re-deciding where it is stored.
        """
        return self.update_cell(
            cell_id, {"content": content}, preference=preference,
            description=description, baseline=baseline,
        )

    def delete_cell(self, cell_id: str, description: Optional[str] = None) -> Cell:
        """
        Delete a cell together with its relationships, as one journal entry.

        Returns:
            The deleted cell
        """
        with self.transaction():
            state = self.load_state(cell_id)
            changes: list = [
                RelationshipDeleted(from_id=rel.from_id, to_id=rel.to_id)
                for rel in self.relationships_involving([cell_id])
            ]
            changes.append(CellDeleted(state=state))
            for change in changes:
                change.apply(self)
            self.journal.append(
                OperationKind.DELETE,
                description or f"Delete cell {state.cell.short_id}",
                changes,
            )

        logging.info(f"Deleted cell {state.cell.short_id} and {len(changes) - 1} relationships")
        return state.cell

    def split_cell(self, parent_id: str, direction: SplitDirection, drafts: Sequence[CellDraft],
                   parent_fields: Optional[Dict[str, Any]] = None,
                   description: Optional[str] = None) -> List[Cell]:
        """
        Record a split computed by the canvas.

        Child ids are generated before anything is written, so the journal
        entry is complete when it is appended.

        Args:
            parent_id: The cell being split
            direction: Split direction
            drafts: The child cells, in order
            parent_fields: Optional metadata changes to the parent (no content)
            description: Optional journal description

        Returns:
            The created child cells
        """
        if not drafts:
            raise ValueError("A split needs at least one child")
        parent_fields = dict(parent_fields or {})
        if "content" in parent_fields or set(parent_fields) - UPDATABLE_FIELDS:
            raise ValueError("Split may only change parent metadata")

        direction = SplitDirection(direction)
        with self.transaction():
            parent_before = self.load_state(parent_id)
            children = [
                self._materialize(draft, parent_id=parent_id, split_direction=direction)
                for draft in drafts
            ]

            merged = parent_before.cell.model_dump()
            merged.update(parent_fields)
            if parent_fields:
                merged["modified_at"] = datetime.now()
            parent_after = CellState(cell=Cell.model_validate(merged), content=parent_before.content)

            change = CellSplit(
                parent_id=parent_id,
                child_ids=[child.cell.id for child in children],
                parent_before=parent_before,
                parent_after=parent_after,
                children=children,
            )
            change.apply(self)
            self.journal.append(
                OperationKind.SPLIT,
                description or f"Split cell {parent_before.cell.short_id} {direction.value}ly",
                [change],
            )

        logging.info(f"Split cell {parent_before.cell.short_id} into {len(children)} cells")
        return [child.cell for child in children]

    def merge_cells(self, cell_ids: Sequence[str], draft: Optional[CellDraft] = None,
                    description: Optional[str] = None) -> Cell:
        """
        Replace several cells by one merged cell.

        Args:
            cell_ids: Cells to merge (at least two)
            draft: The merged cell; defaults to the bounding box of the
                originals, the first one's type and their contents joined by blank lines
            description: Optional journal description

        Returns:
            The merged cell
        """
        cell_ids = list(dict.fromkeys(cell_ids))
        if len(cell_ids) < 2:
            raise ValueError("Must merge at least 2 cells")

        with self.transaction():
            originals = [self.load_state(cell_id) for cell_id in cell_ids]
            if draft is None:
                draft = CellDraft(
                    cell_type=originals[0].cell.cell_type,
                    bounds=bounding_box([state.cell.bounds for state in originals]),
                    content="\n\n".join(state.content for state in originals),
                )
            result = self._materialize(draft)

            changes: list = [
                RelationshipDeleted(from_id=rel.from_id, to_id=rel.to_id)
                for rel in self.relationships_involving(cell_ids)
            ]
            changes.append(CellMerged(merged_ids=cell_ids, originals=originals, result=result))
            for change in changes:
                change.apply(self)

            short_ids = ", ".join(state.cell.short_id for state in originals)
            self.journal.append(
                OperationKind.MERGE,
                description or f"Merge cells {short_ids} into {result.cell.short_id}",
                changes,
            )

        logging.info(f"Merged {len(cell_ids)} cells into {result.cell.short_id}")
        return result.cell

    # Relationships

    def relationship_exists(self, from_id: str, to_id: str) -> bool:
        row = self.reader().execute(
            "SELECT 1 FROM relationships WHERE from_id = ? AND to_id = ?", [from_id, to_id]
        ).fetchone()
        return row is not None

    def create_relationship(self, from_id: str, to_id: str, description: Optional[str] = None) -> bool:
        """
        Create a data-flow relationship.

        Returns:
            True if the relationship was created, False if it already existed

        Raises:
            SelfReferenceError: If both endpoints are the same cell
            NotFoundError: If either endpoint does not exist
        """
        if from_id == to_id:
            raise SelfReferenceError(from_id)

        with self.transaction():
            source = self.get_cell(from_id)
            target = self.get_cell(to_id)
            if self.relationship_exists(from_id, to_id):
                return False
            change = RelationshipCreated(from_id=from_id, to_id=to_id)
            change.apply(self)
            self.journal.append(
                OperationKind.RELATIONSHIP,
                description or f"Link {source.short_id} -> {target.short_id}",
                [change],
            )

        logging.info(f"Created relationship {source.short_id} -> {target.short_id}")
        return True

    def delete_relationship(self, from_id: str, to_id: str, description: Optional[str] = None) -> None:
        """
        Delete a relationship.

        Raises:
            NotFoundError: If the relationship does not exist
        """
        with self.transaction():
            if not self.relationship_exists(from_id, to_id):
                raise NotFoundError("Relationship", f"{from_id} -> {to_id}")
            change = RelationshipDeleted(from_id=from_id, to_id=to_id)
            change.apply(self)
            self.journal.append(
                OperationKind.RELATIONSHIP,
                description or f"Unlink {self._label(from_id)} -> {self._label(to_id)}",
                [change],
            )

        logging.info(f"Deleted relationship {from_id} -> {to_id}")

    def _label(self, cell_id: str) -> str:
        cell = self.find_cell(cell_id)
        return cell.short_id if cell else cell_id

    def list_relationships(self) -> List[Relationship]:
        rows = self.reader().execute(
            "SELECT from_id, to_id FROM relationships ORDER BY from_id, to_id"
        ).fetchall()
        return [Relationship(from_id=row[0], to_id=row[1]) for row in rows]

    def relationships_involving(self, cell_ids: Sequence[str]) -> List[Relationship]:
        if not cell_ids:
            return []
        placeholders = ", ".join("?" for _ in cell_ids)
        rows = self.reader().execute(f"""
            SELECT from_id, to_id FROM relationships
            WHERE from_id IN ({placeholders}) OR to_id IN ({placeholders})
            ORDER BY from_id, to_id
        """, list(cell_ids) + list(cell_ids)).fetchall()
        return [Relationship(from_id=row[0], to_id=row[1]) for row in rows]

    def get_outgoing_relationships(self, from_id: str) -> List[Relationship]:
        rows = self.reader().execute(
            "SELECT from_id, to_id FROM relationships WHERE from_id = ? ORDER BY to_id", [from_id]
        ).fetchall()
        return [Relationship(from_id=row[0], to_id=row[1]) for row in rows]

    def get_incoming_relationships(self, to_id: str) -> List[Relationship]:
        rows = self.reader().execute(
            "SELECT from_id, to_id FROM relationships WHERE to_id = ? ORDER BY from_id", [to_id]
        ).fetchall()
        return [Relationship(from_id=row[0], to_id=row[1]) for row in rows]

    # Conflicts

    def add_conflict(self, cell_id: str, short_id: str, kind: ConflictKind,
                     artifact_path: Optional[Union[str, Path]] = None) -> ConflictRecord:
        """
        Record a conflict against a cell.

        Returns:
            The stored conflict record
        """
        detected_at = datetime.now()
        with self.transaction():
            (conflict_id,) = self.connection.execute("""
                INSERT INTO conflicts (cell_id, short_id, kind, detected_at, artifact_path)
                VALUES (?, ?, ?, ?, ?)
                RETURNING conflict_id
            """, [
                cell_id,
                short_id,
                ConflictKind(kind).value,
                detected_at,
                str(artifact_path) if artifact_path else None,
            ]).fetchone()

        logging.warning(f"Conflict #{conflict_id} ({ConflictKind(kind).value}) recorded for cell {short_id}")
        return ConflictRecord(
            conflict_id=conflict_id,
            cell_id=cell_id,
            short_id=short_id,
            kind=kind,
            detected_at=detected_at,
            artifact_path=str(artifact_path) if artifact_path else None,
        )

    def list_conflicts(self, cell_id: Optional[str] = None) -> List[ConflictRecord]:
        query = """
            SELECT conflict_id, cell_id, short_id, kind, detected_at, artifact_path
            FROM conflicts
            WHERE 1=1
        """
        params = []
        if cell_id:
            query += " AND cell_id = ?"
            params.append(cell_id)
        query += " ORDER BY conflict_id"

        rows = self.reader().execute(query, params).fetchall()
        return [
            ConflictRecord(
                conflict_id=row[0],
                cell_id=row[1],
                short_id=row[2],
                kind=row[3],
                detected_at=row[4],
                artifact_path=row[5],
            )
            for row in rows
        ]

    def get_conflict(self, conflict_id: int) -> ConflictRecord:
        for conflict in self.list_conflicts():
            if conflict.conflict_id == conflict_id:
                return conflict
        raise NotFoundError("Conflict", conflict_id)

    def clear_conflict(self, conflict_id: int) -> None:
        with self.transaction():
            self.get_conflict(conflict_id)
            self.connection.execute("DELETE FROM conflicts WHERE conflict_id = ?", [conflict_id])
        logging.info(f"Cleared conflict #{conflict_id}")

    # Execution traces (append-only, outside undo/redo)

    def record_execution_trace(self, mode: str, log: str, start_cell: Optional[str] = None,
                               trace_id: Optional[str] = None) -> ExecutionTrace:
        """
        Store an execution trace.

        Args:
            mode: Execution mode the run used
            log: Serialized execution log
            start_cell: Cell the run started from
            trace_id: Optional explicit trace id

        Returns:
            The stored trace
        """
        trace = ExecutionTrace(
            trace_id=trace_id or new_trace_id(),
            mode=mode,
            start_cell=start_cell,
            log=log,
        )
        with self.transaction():
            self.connection.execute("""
                INSERT INTO execution_traces (trace_id, created_at, mode, start_cell, log)
                VALUES (?, ?, ?, ?, ?)
            """, [trace.trace_id, trace.created_at, trace.mode, trace.start_cell, trace.log])
        return trace

    def get_execution_traces(self, mode: Optional[str] = None, start_cell: Optional[str] = None,
                             limit: Optional[int] = None) -> List[ExecutionTrace]:
        """
        Retrieve execution traces, newest first.

        Args:
            mode: Filter by execution mode (optional)
            start_cell: Filter by start cell (optional)
            limit: Limit number of results
        """
        query = """
            SELECT trace_id, created_at, mode, start_cell, log
            FROM execution_traces
            WHERE 1=1
        """
        params: List[Any] = []

        if mode:
            query += " AND mode = ?"
            params.append(mode)

        if start_cell:
            query += " AND start_cell = ?"
            params.append(start_cell)

        query += " ORDER BY created_at DESC, trace_id DESC"

        if limit:
            query += " LIMIT ?"
            params.append(int(limit))

        rows = self.reader().execute(query, params).fetchall()
        return [
            ExecutionTrace(trace_id=row[0], created_at=row[1], mode=row[2], start_cell=row[3], log=row[4])
            for row in rows
        ]

    def get_execution_trace(self, trace_id: str) -> ExecutionTrace:
        row = self.reader().execute("""
            SELECT trace_id, created_at, mode, start_cell, log
            FROM execution_traces WHERE trace_id = ?
        """, [trace_id]).fetchone()
        if not row:
            raise NotFoundError("Execution trace", trace_id)
        return ExecutionTrace(trace_id=row[0], created_at=row[1], mode=row[2], start_cell=row[3], log=row[4])

    # Export and integrity

    def copy_content_tree(self, destination: Union[str, Path]) -> Path:
        """
        Copy the content directory tree (minus in-flight edit files) to destination.

        Returns:
            The destination path
        """
        destination = Path(destination)
        try:
            shutil.copytree(
                self.content_root,
                destination,
                ignore=shutil.ignore_patterns(EDITS_DIR, "*.tmp"),
                dirs_exist_ok=True,
            )
        except (OSError, shutil.Error) as e:
            raise StorageIOError(f"Failed to copy content tree to {destination}: {e}") from e
        logging.info(f"Copied content tree to {destination}")
        return destination

    def validate(self) -> List[ValidationIssue]:
        """
        Check stored data against the store's invariants.

        Returns:
            A list of issues; empty when everything is consistent
        """
        issues: List[ValidationIssue] = []
        cells = {cell.id: cell for cell in self.list_cells()}

        start_points = [cell for cell in cells.values() if cell.is_start_point]
        if len(start_points) > 1:
            issues.append(ValidationIssue(
                severity="warning",
                message=f"{len(start_points)} cells are marked as start point",
            ))

        for cell in cells.values():
            if cell.parent_id and cell.parent_id not in cells and not self.journal.mentions(cell.parent_id):
                issues.append(ValidationIssue(
                    severity="error",
                    message=f"Parent {cell.parent_id} of cell {cell.short_id} is neither live nor journaled",
                    cell_id=cell.id,
                ))

            if cell.location in (ContentLocation.EXTERNAL, ContentLocation.SYMLINK):
                path = self.content_path(cell)
                if not path.exists():
                    issues.append(ValidationIssue(
                        severity="error",
                        message=f"Content file missing for cell {cell.short_id}: {path}",
                        cell_id=cell.id,
                    ))
                elif hash_file(path) != cell.content_hash:
                    issues.append(ValidationIssue(
                        severity="warning",
                        message=f"Content of cell {cell.short_id} changed outside the application",
                        cell_id=cell.id,
                    ))
            elif cell.location == ContentLocation.INLINE:
                if calculate_content_hash(cell.inline_text or "") != cell.content_hash:
                    issues.append(ValidationIssue(
                        severity="error",
                        message=f"Stored hash of cell {cell.short_id} does not match its text",
                        cell_id=cell.id,
                    ))

        for rel in self.list_relationships():
            if rel.from_id not in cells or rel.to_id not in cells:
                issues.append(ValidationIssue(
                    severity="error",
                    message=f"Relationship {rel.from_id} -> {rel.to_id} references a missing cell",
                ))

        return issues


def bounding_box(rects: Sequence[Rectangle]) -> Rectangle:
    """Smallest rectangle containing all the given rectangles."""
    min_x = min(rect.x for rect in rects)
    min_y = min(rect.y for rect in rects)
    max_x = max(rect.right for rect in rects)
    max_y = max(rect.bottom for rect in rects)
    return Rectangle(x=min_x, y=min_y, width=max_x - min_x, height=max_y - min_y)
