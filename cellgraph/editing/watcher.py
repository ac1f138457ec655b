"""
Background watcher for external editor processes.

Polls an editor process until it exits, hashes the edited file and reports
the result on a queue. The watcher never touches the store; whoever reads
the queue decides what to do with the result.
"""

import logging
import queue
import subprocess
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from ..content.files import hash_file
from ..errors import StorageIOError

DEFAULT_POLL_INTERVAL = 0.5


class EditFinished(BaseModel):
    """Message sent when the editor process for a session has exited."""

    session_id: str
    returncode: Optional[int]
    new_hash: Optional[str]
    finished_at: datetime
    error: Optional[str] = None


class ProcessWatcher(threading.Thread):
    """
    Daemon thread waiting for one editor process to exit.
    """

    def __init__(self, session_id: str, process: subprocess.Popen, path: Path,
                 results: "queue.Queue[EditFinished]",
                 poll_interval: float = DEFAULT_POLL_INTERVAL):
        super().__init__(name=f"edit-watcher-{session_id}", daemon=True)
        self.session_id = session_id
        self.process = process
        self.path = Path(path)
        self.results = results
        self.poll_interval = poll_interval
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        """Stop watching without reporting a result."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def run(self) -> None:
        returncode = None
        while not self._cancelled.is_set():
            try:
                returncode = self.process.poll()
            except OSError as e:
                # The process disappeared underneath us; treat it as exited
                logging.warning(f"Lost track of editor process for session {self.session_id}: {e}")
                break
            if returncode is not None:
                break
            self._cancelled.wait(self.poll_interval)

        if self._cancelled.is_set():
            logging.info(f"Stopped watching edit session {self.session_id}")
            return

        new_hash = None
        error = None
        try:
            new_hash = hash_file(self.path)
        except StorageIOError as e:
            error = str(e)
            logging.warning(f"Edited file unreadable for session {self.session_id}: {e}")

        logging.info(f"Editor for session {self.session_id} exited with {returncode}")
        self.results.put(EditFinished(
            session_id=self.session_id,
            returncode=returncode,
            new_hash=new_hash,
            finished_at=datetime.now(),
            error=error,
        ))
