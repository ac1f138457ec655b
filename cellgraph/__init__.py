"""
Cellgraph: storage and versioning core for a spatial cell-graph editor.

Cells live on a canvas, are connected by data-flow relationships and keep
their content inline, in project files, behind a URL or in user files.
Every change is journaled for undo/redo.
"""

__version__ = "0.1.0"
__author__ = "Cellgraph Project"

# Import main components
from .database import DatabaseManager
from .config import ConfigManager
from .content import ContentLocationResolver, LazyCanvas
from .editing import EditOutcome, ExternalEditReconciler
from .errors import (
    CellgraphError,
    ConflictError,
    NotFoundError,
    PathResolutionError,
    RetentionConfigError,
    SelfReferenceError,
    StorageIOError,
)
from .models import Cell, CellDraft, CellType, ContentLocation, Rectangle, Relationship, SplitDirection
from .versioning import SnapshotJournal, VersionManager
from .project import Project

__all__ = [
    "DatabaseManager",
    "ConfigManager",
    "ContentLocationResolver",
    "LazyCanvas",
    "EditOutcome",
    "ExternalEditReconciler",
    "CellgraphError",
    "ConflictError",
    "NotFoundError",
    "PathResolutionError",
    "RetentionConfigError",
    "SelfReferenceError",
    "StorageIOError",
    "Cell",
    "CellDraft",
    "CellType",
    "ContentLocation",
    "Rectangle",
    "Relationship",
    "SplitDirection",
    "SnapshotJournal",
    "VersionManager",
    "Project",
]
