"""Data models for Cellgraph."""

from .cell import (
    Cell,
    CellDraft,
    CellState,
    CellType,
    ContentLocation,
    PreviewMode,
    Rectangle,
    SplitDirection,
    StorageRule,
)
from .changes import (
    CellCreated,
    CellDeleted,
    CellMerged,
    CellModified,
    CellSplit,
    OperationKind,
    RelationshipCreated,
    RelationshipDeleted,
    Snapshot,
)
from .records import ConflictKind, ConflictRecord, ExecutionTrace, Relationship, ValidationIssue

__all__ = [
    "Cell",
    "CellDraft",
    "CellState",
    "CellType",
    "ContentLocation",
    "PreviewMode",
    "Rectangle",
    "SplitDirection",
    "StorageRule",
    "CellCreated",
    "CellDeleted",
    "CellMerged",
    "CellModified",
    "CellSplit",
    "OperationKind",
    "RelationshipCreated",
    "RelationshipDeleted",
    "Snapshot",
    "ConflictKind",
    "ConflictRecord",
    "ExecutionTrace",
    "Relationship",
    "ValidationIssue",
]
