"""
Error types for Cellgraph.

Store-layer errors abort the enclosing transaction and reach the caller
unchanged. The UI or CLI decides how to report them.
"""

from pathlib import Path
from typing import Optional, Union


class CellgraphError(Exception):
    """Base class for all Cellgraph errors."""


class NotFoundError(CellgraphError, KeyError):
    """Raised when a cell, relationship, snapshot or conflict id is unknown."""

    def __init__(self, kind: str, identifier: object):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")

    def __str__(self) -> str:
        # KeyError would otherwise quote the message
        return self.args[0]


class SelfReferenceError(CellgraphError, ValueError):
    """Raised when a relationship would connect a cell to itself."""

    def __init__(self, cell_id: str):
        self.cell_id = cell_id
        super().__init__(f"Relationship endpoints must differ: {cell_id}")


class PathResolutionError(CellgraphError):
    """Raised when a non-inline content location has no stored path."""


class StorageIOError(CellgraphError, OSError):
    """Wraps a filesystem or network failure while reading or writing content."""


class ConflictError(CellgraphError):
    """
    Raised when in-app and external content have diverged.

    Conflicts are never merged automatically; the artifact (when one was
    written) holds both versions for manual resolution.
    """

    def __init__(self, message: str, cell_id: Optional[str] = None,
                 artifact_path: Optional[Union[str, Path]] = None):
        self.cell_id = cell_id
        self.artifact_path = Path(artifact_path) if artifact_path else None
        super().__init__(message)


class RetentionConfigError(CellgraphError, ValueError):
    """Raised when the journal retention count is not a positive integer."""
