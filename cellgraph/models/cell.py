"""
Cell models for Cellgraph.

This module defines the cell record persisted by the store, the geometry and
type enumerations it uses, and the two wrappers that travel with it: the
draft handed in by the canvas and the full state captured in the journal.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class StorageRule(str, Enum):
    """How a cell type decides where its content lives."""

    ALWAYS_EXTERNAL = "always_external"
    ALWAYS_INLINE = "always_inline"
    USER_CHOICE = "user_choice"
    SIZE_DEPENDENT = "size_dependent"


class CellType(str, Enum):
    """Cell type determines rendering, execution and storage behaviour."""

    TEXT = "text"
    MARKDOWN = "markdown"
    PYTHON = "python"
    JSON = "json"
    LABEL = "label"

    @property
    def storage_rule(self) -> StorageRule:
        return _STORAGE_RULES[self]

    @property
    def file_extension(self) -> str:
        return _FILE_EXTENSIONS[self]


_STORAGE_RULES = {
    CellType.TEXT: StorageRule.SIZE_DEPENDENT,
    CellType.MARKDOWN: StorageRule.SIZE_DEPENDENT,
    CellType.PYTHON: StorageRule.ALWAYS_EXTERNAL,
    CellType.JSON: StorageRule.USER_CHOICE,
    CellType.LABEL: StorageRule.ALWAYS_INLINE,
}

_FILE_EXTENSIONS = {
    CellType.TEXT: ".txt",
    CellType.MARKDOWN: ".md",
    CellType.PYTHON: ".py",
    CellType.JSON: ".json",
    CellType.LABEL: ".txt",
}


class ContentLocation(str, Enum):
    """Where a cell's bytes physically live."""

    INLINE = "inline"
    EXTERNAL = "external"
    REMOTE = "remote"
    SYMLINK = "symlink"


class SplitDirection(str, Enum):
    HORIZONTAL = "horizontal"  # top/bottom
    VERTICAL = "vertical"  # left/right


class PreviewMode(str, Enum):
    SOURCE = "source"
    RENDERED = "rendered"
    SPLIT = "split"


class Rectangle(BaseModel):
    """Position and size on the canvas, in pixels."""

    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    def intersects(self, other: "Rectangle") -> bool:
        return not (
            self.right <= other.x
            or other.right <= self.x
            or self.bottom <= other.y
            or other.bottom <= self.y
        )

    def contains_point(self, x: float, y: float) -> bool:
        return self.x <= x <= self.right and self.y <= y <= self.bottom


class Cell(BaseModel):
    """
    The persisted metadata of a single cell.

    Content itself is not part of this record: inline cells carry their text
    in ``inline_text``, every other location carries a ``path`` (relative
    path, URL or absolute path depending on the location).
    """

    id: str = Field(
        ...,
        description="Opaque, time-sortable identifier"
    )

    short_id: str = Field(
        ...,
        description="Short base-36 identifier, unique within the project"
    )

    name: Optional[str] = Field(
        default=None,
        description="Optional human-readable name for references"
    )

    cell_type: CellType = Field(
        default=CellType.TEXT,
        description="Type tag driving rendering, execution and storage"
    )

    bounds: Rectangle = Field(
        default_factory=Rectangle,
        description="Rectangular bounds on the canvas"
    )

    location: ContentLocation = Field(
        default=ContentLocation.INLINE,
        description="Where the content bytes live"
    )

    inline_text: Optional[str] = Field(
        default=None,
        description="Content text for inline cells"
    )

    path: Optional[str] = Field(
        default=None,
        description="Relative path, URL or absolute path for non-inline cells"
    )

    summary: Optional[str] = Field(
        default=None,
        description="User-provided description of externally stored content"
    )

    content_hash: str = Field(
        ...,
        description="SHA-256 hex digest of the raw content bytes"
    )

    parent_id: Optional[str] = Field(
        default=None,
        description="Cell this one was split from"
    )

    split_direction: Optional[SplitDirection] = Field(
        default=None,
        description="Direction of the split that created this cell"
    )

    is_start_point: bool = Field(
        default=False,
        description="Execution starting point flag"
    )

    preview_mode: Optional[PreviewMode] = Field(
        default=None,
        description="Optional preview mode for rendered cell types"
    )

    created_at: datetime = Field(default_factory=datetime.now)

    modified_at: datetime = Field(default_factory=datetime.now)

    @model_validator(mode="after")
    def _check_location(self) -> "Cell":
        if self.location == ContentLocation.INLINE:
            if self.inline_text is None or self.path is not None:
                raise ValueError("inline cells need inline_text and no path")
        elif self.path is None or self.inline_text is not None:
            raise ValueError(f"{self.location.value} cells need a path and no inline_text")
        return self


class CellState(BaseModel):
    """A cell's metadata together with its full content, as journaled."""

    cell: Cell
    content: str = ""


class CellDraft(BaseModel):
    """
    A cell as described by the canvas before the store assigns identity.

    ``preference`` asks for a content location; ``source`` is the URL or
    absolute file path a remote or symlinked cell points at.
    """

    cell_type: CellType = CellType.TEXT
    bounds: Rectangle = Field(default_factory=Rectangle)
    content: Optional[str] = None
    name: Optional[str] = None
    summary: Optional[str] = None
    preference: Optional[ContentLocation] = None
    source: Optional[str] = None
    is_start_point: bool = False
    preview_mode: Optional[PreviewMode] = None
