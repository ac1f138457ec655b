"""
Relationship, conflict and execution-trace records for Cellgraph.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class Relationship(BaseModel):
    """
    Data-flow relationship between two cells.
    """

    from_id: str = Field(
        ...,
        description="Source cell (data flows FROM this cell)"
    )

    to_id: str = Field(
        ...,
        description="Destination cell (data flows TO this cell)"
    )

    @property
    def key(self):
        return (self.from_id, self.to_id)


class ConflictKind(str, Enum):
    EXTERNAL_MODIFICATION = "external_modification"
    CONCURRENT_EDIT = "concurrent_edit"
    EXTERNAL_EDITOR = "external_editor"


class ConflictRecord(BaseModel):
    """
    A detected divergence between in-app and on-disk content.

    Cleared only by explicit user resolution.
    """

    conflict_id: Optional[int] = Field(
        None,
        description="Primary key (sequence-generated in the database)"
    )

    cell_id: str
    short_id: str
    kind: ConflictKind
    detected_at: datetime = Field(default_factory=datetime.now)

    artifact_path: Optional[str] = Field(
        None,
        description="Conflict artifact holding both versions, when one was written"
    )


class ExecutionTrace(BaseModel):
    """
    Append-only record of one execution run. Never journaled.
    """

    trace_id: str
    created_at: datetime = Field(default_factory=datetime.now)
    mode: str
    start_cell: Optional[str] = None
    log: str = Field(
        "",
        description="Serialized execution log"
    )


class ValidationIssue(BaseModel):
    """A single finding from the store's integrity check."""

    severity: str = Field(
        ...,
        description="'error', 'warning' or 'info'"
    )
    message: str
    cell_id: Optional[str] = None
