"""Change journal and undo/redo for Cellgraph."""

from .journal import DEFAULT_RETENTION, SnapshotJournal, validate_retention
from .manager import VersionManager

__all__ = ["DEFAULT_RETENTION", "SnapshotJournal", "VersionManager", "validate_retention"]
