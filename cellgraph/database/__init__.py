"""Persistent store for Cellgraph."""

from .ids import ShortIdGenerator, new_cell_id, new_snapshot_id, new_trace_id
from .manager import DatabaseManager, bounding_box

__all__ = [
    "DatabaseManager",
    "ShortIdGenerator",
    "bounding_box",
    "new_cell_id",
    "new_snapshot_id",
    "new_trace_id",
]
