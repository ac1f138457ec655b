"""
External edit reconciliation for Cellgraph.

A cell can be opened in an external editor. When the editor exits the
edited file is compared with what the store expects: unchanged edits are
ignored, clean edits are synced into the store as one journal entry, and
edits that collide with changes made in the meantime produce a conflict
artifact and a ConflictError. Conflicts are only ever resolved explicitly.
"""

import logging
import os
import queue
import shlex
import subprocess
import threading
import time
import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from ..content.files import (
    calculate_content_hash,
    content_bytes,
    hash_file,
    read_text,
    remove_file,
    write_bytes_atomic,
)
from ..content.locations import CONFLICTS_DIR, EDITS_DIR
from ..errors import ConflictError, NotFoundError, StorageIOError
from ..models import Cell, ConflictKind, ConflictRecord, ContentLocation
from ..models.changes import CellCreated, CellDeleted, CellMerged, CellModified, CellSplit
from .watcher import DEFAULT_POLL_INTERVAL, EditFinished, ProcessWatcher

ACCEPT_EXTERNAL = "external"
ACCEPT_IN_APP = "in_app"

EXTERNAL_SUFFIX = ".external"

# Seconds to wait for a terminated editor before killing it
ABANDON_TIMEOUT = 5.0


class EditOutcome(str, Enum):
    UNCHANGED = "unchanged"
    SYNCED = "synced"


class EditSession:
    """One cell opened in one external editor process."""

    def __init__(self, session_id: str, cell: Cell, path: Path, original_content: str,
                 temporary: bool):
        self.session_id = session_id
        self.cell_id = cell.id
        self.short_id = cell.short_id
        self.path = path
        self.original_hash = cell.content_hash
        self.original_content = original_content
        self.temporary = temporary
        self.started_at = datetime.now()
        self.process: Optional[subprocess.Popen] = None
        self.watcher: Optional[ProcessWatcher] = None

    def __repr__(self) -> str:
        return f"EditSession({self.session_id}, cell={self.short_id}, path={self.path})"


def default_editor_command() -> str:
    return os.environ.get("VISUAL") or os.environ.get("EDITOR") or "vi"


def _terminated(text: str) -> str:
    return text if text.endswith("\n") else text + "\n"


def _journaled_contents(change, cell_id: str) -> List[str]:
    """Content versions of a cell recorded in one journal change."""
    found = []
    if isinstance(change, (CellCreated, CellDeleted)):
        states = [change.state]
    elif isinstance(change, CellSplit):
        states = [change.parent_before, change.parent_after] + list(change.children)
    elif isinstance(change, CellMerged):
        states = list(change.originals) + [change.result]
    elif isinstance(change, CellModified):
        states = []
        if change.cell_id == cell_id:
            for side in (change.after, change.before):
                if side.get("content") is not None:
                    found.append(side["content"])
    else:
        states = []

    for state in states:
        if state.cell.id == cell_id:
            found.append(state.content)
    return found


class ExternalEditReconciler:
    """
    Opens cells in external editors and reconciles the results.
    """

    def __init__(self, store, canvas=None, poll_interval: float = DEFAULT_POLL_INTERVAL,
                 editor_command: Optional[str] = None):
        """
        Initialize the reconciler.

        Args:
            store: The DatabaseManager holding the cells
            canvas: Optional LazyCanvas to invalidate after a sync
            poll_interval: Seconds between editor process polls
            editor_command: Editor command line; the file path is appended
        """
        self.store = store
        self.canvas = canvas
        self.poll_interval = poll_interval
        self.editor_command = editor_command or default_editor_command()
        self.results: "queue.Queue[EditFinished]" = queue.Queue()
        self._sessions: Dict[str, EditSession] = {}
        self._finished: Dict[str, EditFinished] = {}
        self._lock = threading.Lock()

    # Sessions

    def begin_edit(self, cell_id: str, editor_command: Optional[str] = None) -> EditSession:
        """
        Open a cell's content in an external editor.

        Inline and remote content is written to a temporary file under
        edits/; external and symlinked content is edited in place. The
        edited file is leased so in-app writes to it are refused until the
        session ends.

        Raises:
            NotFoundError: If the cell does not exist
            ConflictError: If the cell is already open in an editor
        """
        cell = self.store.get_cell(cell_id)
        with self._lock:
            for session in self._sessions.values():
                if session.cell_id == cell_id:
                    raise ConflictError(
                        f"Cell {cell.short_id} is already open in an external editor",
                        cell_id=cell_id,
                    )

        content = self.store.read_content(cell)
        session_id = uuid.uuid4().hex[:8]

        if cell.location in (ContentLocation.INLINE, ContentLocation.REMOTE):
            path = self.store.resolver.directory(EDITS_DIR) / (
                f"{cell.short_id}-{session_id}{cell.cell_type.file_extension}"
            )
            write_bytes_atomic(path, content_bytes(content))
            temporary = True
        else:
            path = self.store.content_path(cell)
            temporary = False

        session = EditSession(session_id, cell, path, content, temporary)
        self.store.lease_file(path, cell_id)

        command = shlex.split(editor_command or self.editor_command) + [str(path)]
        try:
            session.process = subprocess.Popen(command)
        except OSError as e:
            self._end_session(session)
            raise StorageIOError(f"Failed to start editor {command[0]}: {e}") from e

        session.watcher = ProcessWatcher(
            session_id, session.process, path, self.results, poll_interval=self.poll_interval
        )
        with self._lock:
            self._sessions[session_id] = session
        session.watcher.start()

        logging.info(f"Opened cell {cell.short_id} in {command[0]} (session {session_id}, {path})")
        return session

    def active_sessions(self) -> List[EditSession]:
        with self._lock:
            return list(self._sessions.values())

    def wait(self, session: EditSession, timeout: Optional[float] = None) -> EditOutcome:
        """
        Block until the session's editor exits, then reconcile.

        Raises:
            TimeoutError: If the editor is still running after timeout seconds
            ConflictError: If the edit collides with in-app changes
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                message = self._finished.pop(session.session_id, None)
            if message is not None:
                return self.reconcile(session, message.new_hash)

            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                raise TimeoutError(f"Editor for cell {session.short_id} is still running")
            try:
                message = self.results.get(timeout=remaining)
            except queue.Empty:
                continue
            with self._lock:
                self._finished[message.session_id] = message

    def process_finished(self) -> List[EditOutcome]:
        """
        Reconcile every session whose editor has already exited, without blocking.

        Conflicts are recorded and logged; they do not stop other sessions.
        """
        # Messages parked by wait() for other sessions come first
        with self._lock:
            messages = list(self._finished.values())
            self._finished.clear()
        while True:
            try:
                messages.append(self.results.get_nowait())
            except queue.Empty:
                break

        outcomes = []
        for message in messages:
            with self._lock:
                session = self._sessions.get(message.session_id)
            if session is None:
                continue
            try:
                outcomes.append(self.reconcile(session, message.new_hash))
            except ConflictError as e:
                logging.warning(f"Edit session {session.session_id} ended in conflict: {e}")
        return outcomes

    def abandon(self, session: EditSession) -> None:
        """Stop the editor and discard the session without touching the store."""
        if session.watcher is not None:
            session.watcher.cancel()
        if session.process is not None and session.process.poll() is None:
            session.process.terminate()
            try:
                session.process.wait(timeout=ABANDON_TIMEOUT)
            except subprocess.TimeoutExpired:
                session.process.kill()
                session.process.wait()
        if session.watcher is not None:
            session.watcher.join(ABANDON_TIMEOUT)
        self._end_session(session)
        logging.info(f"Abandoned edit session {session.session_id} for cell {session.short_id}")

    def _end_session(self, session: EditSession) -> None:
        with self._lock:
            self._sessions.pop(session.session_id, None)
            self._finished.pop(session.session_id, None)
        self.store.release_file(session.path)
        if session.temporary:
            remove_file(session.path)

    # Reconciliation

    def reconcile(self, session: EditSession, new_hash: Optional[str]) -> EditOutcome:
        """
        Bring the store in line with an edit that has finished.

        Args:
            session: The finished session
            new_hash: Hash of the edited file (None if it disappeared)

        Returns:
            UNCHANGED if the file was not modified, SYNCED if the edit was stored

        Raises:
            ConflictError: If the cell changed in-app during the edit (or was
                deleted); a conflict artifact is written and recorded first
            StorageIOError: If the edited file can no longer be read
        """
        try:
            if new_hash is None:
                raise StorageIOError(f"Edited file for cell {session.short_id} is missing: {session.path}")

            if new_hash == session.original_hash:
                logging.info(f"No changes in edit session {session.session_id} for cell {session.short_id}")
                return EditOutcome.UNCHANGED

            edited = read_text(session.path)
            self.store.release_file(session.path)
            current = self.store.find_cell(session.cell_id)

            if current is None or current.content_hash != session.original_hash:
                in_app = self._in_app_content(current, session) if current else ""
                artifact = self.write_conflict_artifact(session.short_id, in_app, edited)
                self.store.add_conflict(
                    session.cell_id, session.short_id, ConflictKind.EXTERNAL_EDITOR, artifact
                )
                raise ConflictError(
                    f"Cell {session.short_id} changed while it was being edited externally; "
                    f"both versions are in {artifact}",
                    cell_id=session.cell_id,
                    artifact_path=artifact,
                )

            edited_in_place = self.store.content_path(current) == session.path
            self.store.update_cell_content(
                session.cell_id,
                edited,
                description=f"External edit of cell {session.short_id}",
                baseline=session.original_content if edited_in_place else None,
            )
            self._invalidate(session.cell_id)
            logging.info(f"Synced external edit of cell {session.short_id}")
            return EditOutcome.SYNCED
        finally:
            self._end_session(session)

    def _in_app_content(self, cell: Cell, session: Optional[EditSession] = None) -> Optional[str]:
        """
        Best available copy of the content the store expects for a cell.

        Returns:
            The content, or None if no copy matching the stored hash exists
        """
        if cell.location == ContentLocation.INLINE:
            return cell.inline_text or ""

        path = self.store.content_path(cell)
        try:
            if path.exists() and hash_file(path) == cell.content_hash:
                return read_text(path)
        except StorageIOError as e:
            logging.warning(f"Could not read content of cell {cell.short_id}: {e}")

        if session is not None and calculate_content_hash(session.original_content) == cell.content_hash:
            return session.original_content

        for snapshot in self.store.journal.list_snapshots():
            for change in snapshot.changes:
                for content in _journaled_contents(change, cell.id):
                    if calculate_content_hash(content) == cell.content_hash:
                        return content
        return None

    def write_conflict_artifact(self, short_id: str, in_app: Optional[str], external: str) -> Path:
        """
        Write a file holding both versions between conflict markers.

        The external version is also kept on its own next to the artifact so
        it can be accepted byte for byte.

        Returns:
            Path of the artifact
        """
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
        artifact = self.store.resolver.directory(CONFLICTS_DIR) / f"{short_id}-{timestamp}.conflict"

        in_app_text = in_app if in_app is not None else "(in-app version unavailable)\n"
        body = (
            "<<<<<<< in-app\n"
            + _terminated(in_app_text)
            + "=======\n"
            + _terminated(external)
            + ">>>>>>> external\n"
        )
        write_bytes_atomic(artifact, content_bytes(body))
        write_bytes_atomic(Path(f"{artifact}{EXTERNAL_SUFFIX}"), content_bytes(external))
        logging.warning(f"Wrote conflict artifact for cell {short_id}: {artifact}")
        return artifact

    def scan_external_changes(self) -> List[ConflictRecord]:
        """
        Record a conflict for every stored file changed outside the application.

        Files currently open in an editor session are skipped, as are cells
        that already have an open external-modification conflict.

        Returns:
            The newly recorded conflicts
        """
        already = {
            conflict.cell_id
            for conflict in self.store.list_conflicts()
            if conflict.kind == ConflictKind.EXTERNAL_MODIFICATION
        }
        recorded = []
        for cell in self.store.list_cells():
            if cell.location not in (ContentLocation.EXTERNAL, ContentLocation.SYMLINK):
                continue
            if cell.id in already:
                continue
            path = self.store.content_path(cell)
            if self.store.is_leased(path) or not path.exists():
                continue
            if hash_file(path) == cell.content_hash:
                continue

            external = read_text(path)
            artifact = self.write_conflict_artifact(cell.short_id, self._in_app_content(cell), external)
            recorded.append(self.store.add_conflict(
                cell.id, cell.short_id, ConflictKind.EXTERNAL_MODIFICATION, artifact
            ))

        if recorded:
            logging.warning(f"Found {len(recorded)} cells changed outside the application")
        return recorded

    def resolve_conflict(self, conflict_id: int, accept: str) -> ConflictRecord:
        """
        Resolve a recorded conflict by keeping one side.

        Args:
            conflict_id: The conflict to resolve
            accept: "external" to store the external version (journaled, so
                undoable), or "in_app" to keep what the store holds and put
                it back on disk

        Returns:
            The resolved conflict record

        Raises:
            NotFoundError: If the conflict does not exist
            ValueError: If accept is not "external" or "in_app"
            ConflictError: If the chosen version is no longer available
        """
        if accept not in (ACCEPT_EXTERNAL, ACCEPT_IN_APP):
            raise ValueError(f"accept must be '{ACCEPT_EXTERNAL}' or '{ACCEPT_IN_APP}', got {accept!r}")

        conflict = self.store.get_conflict(conflict_id)
        cell = self.store.find_cell(conflict.cell_id)
        if cell is None:
            raise NotFoundError("Cell", conflict.cell_id)

        artifact = Path(conflict.artifact_path) if conflict.artifact_path else None
        external_copy = Path(f"{artifact}{EXTERNAL_SUFFIX}") if artifact else None

        if accept == ACCEPT_EXTERNAL:
            if external_copy is not None and external_copy.exists():
                external = read_text(external_copy)
            else:
                path = self.store.content_path(cell)
                if path is None or not path.exists():
                    raise ConflictError(
                        f"External version of cell {cell.short_id} is no longer available",
                        cell_id=cell.id,
                    )
                external = read_text(path)
            on_disk = self.store.content_path(cell)
            baseline = None
            if on_disk is not None and on_disk.exists() and hash_file(on_disk) != cell.content_hash:
                baseline = self._in_app_content(cell)
            self.store.update_cell_content(
                cell.id,
                external,
                description=f"Accept external version of cell {cell.short_id}",
                baseline=baseline,
            )
        else:
            path = self.store.content_path(cell)
            if path is not None and (not path.exists() or hash_file(path) != cell.content_hash):
                in_app = self._in_app_content(cell)
                if in_app is None:
                    raise ConflictError(
                        f"In-app version of cell {cell.short_id} is no longer available",
                        cell_id=cell.id,
                        artifact_path=artifact,
                    )
                self.store.restore_content_file(cell.id, in_app)

        self.store.clear_conflict(conflict_id)
        if artifact is not None:
            remove_file(artifact)
            remove_file(external_copy)
        self._invalidate(cell.id)

        logging.info(f"Resolved conflict #{conflict_id} for cell {cell.short_id} keeping the {accept} version")
        return conflict

    def _invalidate(self, cell_id: str) -> None:
        if self.canvas is not None:
            self.canvas.invalidate(cell_id)
