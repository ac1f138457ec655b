"""
Journal models for Cellgraph.

A Snapshot records one logical operation as an ordered list of Changes. Each
Change carries everything needed to apply it forward or backward, so undo and
redo never have to consult any other state. The store argument of
``apply``/``revert`` is the DatabaseManager; the calls it receives are its
non-journaled primitives and always run inside an open transaction.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from .cell import CellState


class OperationKind(str, Enum):
    CREATE = "create"
    DELETE = "delete"
    MODIFY = "modify"
    SPLIT = "split"
    MERGE = "merge"
    RELATIONSHIP = "relationship"


def state_fields(state: CellState) -> Dict[str, Any]:
    """Flatten a CellState into the field-diff form accepted by apply_fields."""
    fields = state.cell.model_dump(mode="json")
    fields["content"] = state.content
    return fields


class CellCreated(BaseModel):
    kind: Literal["cell_created"] = "cell_created"
    state: CellState

    def apply(self, store) -> None:
        store.restore_cell(self.state)

    def revert(self, store) -> None:
        store.remove_cell(self.state.cell.id)

    def affected_ids(self) -> List[str]:
        return [self.state.cell.id]


class CellDeleted(BaseModel):
    kind: Literal["cell_deleted"] = "cell_deleted"
    state: CellState

    def apply(self, store) -> None:
        store.remove_cell(self.state.cell.id)

    def revert(self, store) -> None:
        store.restore_cell(self.state)

    def affected_ids(self) -> List[str]:
        return [self.state.cell.id]


class CellModified(BaseModel):
    """Only the changed fields are carried; ``content`` is one of them when the text changed."""

    kind: Literal["cell_modified"] = "cell_modified"
    cell_id: str
    before: Dict[str, Any]
    after: Dict[str, Any]

    def apply(self, store) -> None:
        store.apply_fields(self.cell_id, self.after)

    def revert(self, store) -> None:
        store.apply_fields(self.cell_id, self.before)

    def affected_ids(self) -> List[str]:
        return [self.cell_id]


class CellSplit(BaseModel):
    kind: Literal["cell_split"] = "cell_split"
    parent_id: str
    child_ids: List[str]
    parent_before: CellState = Field(
        ...,
        description="Parent's full pre-split state"
    )
    parent_after: CellState = Field(
        ...,
        description="Parent's full post-split state"
    )
    children: List[CellState]

    def apply(self, store) -> None:
        store.apply_fields(self.parent_id, state_fields(self.parent_after))
        for child in self.children:
            store.restore_cell(child)

    def revert(self, store) -> None:
        for child_id in reversed(self.child_ids):
            store.remove_cell(child_id)
        store.apply_fields(self.parent_id, state_fields(self.parent_before))

    def affected_ids(self) -> List[str]:
        return [self.parent_id] + list(self.child_ids)


class CellMerged(BaseModel):
    kind: Literal["cell_merged"] = "cell_merged"
    merged_ids: List[str]
    originals: List[CellState]
    result: CellState

    def apply(self, store) -> None:
        for cell_id in self.merged_ids:
            store.remove_cell(cell_id)
        store.restore_cell(self.result)

    def revert(self, store) -> None:
        store.remove_cell(self.result.cell.id)
        for original in self.originals:
            store.restore_cell(original)

    def affected_ids(self) -> List[str]:
        return list(self.merged_ids) + [self.result.cell.id]


class RelationshipCreated(BaseModel):
    kind: Literal["relationship_created"] = "relationship_created"
    from_id: str
    to_id: str

    def apply(self, store) -> None:
        store.insert_relationship_row(self.from_id, self.to_id)

    def revert(self, store) -> None:
        store.remove_relationship_row(self.from_id, self.to_id)

    def affected_ids(self) -> List[str]:
        return [self.from_id, self.to_id]


class RelationshipDeleted(BaseModel):
    kind: Literal["relationship_deleted"] = "relationship_deleted"
    from_id: str
    to_id: str

    def apply(self, store) -> None:
        store.remove_relationship_row(self.from_id, self.to_id)

    def revert(self, store) -> None:
        store.insert_relationship_row(self.from_id, self.to_id)

    def affected_ids(self) -> List[str]:
        return [self.from_id, self.to_id]


Change = Annotated[
    Union[
        CellCreated,
        CellDeleted,
        CellModified,
        CellSplit,
        CellMerged,
        RelationshipCreated,
        RelationshipDeleted,
    ],
    Field(discriminator="kind"),
]

change_list_adapter = TypeAdapter(List[Change])


class Snapshot(BaseModel):
    """
    One journal entry: a logical operation and its ordered Changes.
    """

    snapshot_id: str
    sequence: int = Field(
        ...,
        description="Monotonically increasing position in the journal"
    )
    previous_sequence: int = Field(
        0,
        description="Cursor position this snapshot was appended on top of"
    )
    created_at: datetime = Field(default_factory=datetime.now)
    description: str
    operation: OperationKind
    changes: List[Change] = Field(default_factory=list)

    def affected_ids(self) -> List[str]:
        seen: Dict[str, None] = {}
        for change in self.changes:
            for cell_id in change.affected_ids():
                seen.setdefault(cell_id, None)
        return list(seen)

    def has_relationship_changes(self) -> bool:
        return any(
            isinstance(change, (RelationshipCreated, RelationshipDeleted))
            for change in self.changes
        )


def dump_changes(changes: List[BaseModel]) -> str:
    return change_list_adapter.dump_json(changes).decode("utf-8")


def load_changes(payload: str) -> List[BaseModel]:
    return change_list_adapter.validate_json(payload)

