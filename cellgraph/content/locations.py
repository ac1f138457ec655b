"""
Content location resolution for Cellgraph.

Decides where a cell's content should live and turns a stored path into an
absolute filesystem path. Nothing in this module touches the filesystem.
"""

import hashlib
from pathlib import Path, PurePosixPath
from typing import Optional, Union
from urllib.parse import urlparse

from ..errors import PathResolutionError
from ..models import CellType, ContentLocation, StorageRule

# Content larger than this is moved out of the database for size-dependent types
INLINE_THRESHOLD = 1_048_576

CELLS_DIR = "cells"
ATTACHMENTS_DIR = "attachments"
CACHE_DIR = "cache"
CONFLICTS_DIR = "conflicts"
EDITS_DIR = "edits"

CONTENT_SUBDIRECTORIES = (CELLS_DIR, ATTACHMENTS_DIR, CACHE_DIR, CONFLICTS_DIR, EDITS_DIR)


def decide_location(kind: Union[CellType, StorageRule], size: int,
                    preference: Optional[ContentLocation] = None) -> ContentLocation:
    """
    Decide where content of the given kind and byte size should be stored.

    Rules, in priority order:
      1. kinds that are always external (code) go External, whatever the size or preference
      2. kinds that are always inline stay Inline
      3. size-dependent kinds above INLINE_THRESHOLD go External
      4. an explicit preference is honored
      5. otherwise Inline

    Args:
        kind: Cell type, or its storage rule directly
        size: Content size in bytes
        preference: Optional user-requested location

    Returns:
        The content location to use
    """
    rule = kind.storage_rule if isinstance(kind, CellType) else StorageRule(kind)

    if rule == StorageRule.ALWAYS_EXTERNAL:
        return ContentLocation.EXTERNAL
    if rule == StorageRule.ALWAYS_INLINE:
        return ContentLocation.INLINE
    if rule == StorageRule.SIZE_DEPENDENT and size > INLINE_THRESHOLD:
        return ContentLocation.EXTERNAL
    if preference is not None:
        return ContentLocation(preference)
    return ContentLocation.INLINE


def external_relpath(cell_id: str, cell_type: CellType) -> str:
    """Relative path (under the content root) for a locally stored cell file."""
    return str(PurePosixPath(CELLS_DIR) / f"{cell_id}{CellType(cell_type).file_extension}")


def remote_cache_name(url: str) -> str:
    """Deterministic cache filename for a remote URL, keeping its extension."""
    digest = hashlib.sha256(url.encode("utf-8")).hexdigest()[:32]
    suffix = PurePosixPath(urlparse(url).path).suffix
    if not suffix or len(suffix) > 10:
        suffix = ".bin"
    return f"{digest}{suffix}"


class ContentLocationResolver:
    """
    Maps content locations and stored paths to absolute filesystem paths.
    """

    def __init__(self, content_root: Union[str, Path]):
        """
        Initialize the resolver.

        Args:
            content_root: Project-adjacent directory holding cells/, attachments/ and cache/
        """
        self.content_root = Path(content_root)

    def decide(self, kind: Union[CellType, StorageRule], size: int,
               preference: Optional[ContentLocation] = None) -> ContentLocation:
        return decide_location(kind, size, preference)

    def external_relpath(self, cell_id: str, cell_type: CellType) -> str:
        return external_relpath(cell_id, cell_type)

    def resolve_path(self, location: ContentLocation, stored_path: Optional[str]) -> Optional[Path]:
        """
        Resolve the absolute path holding a cell's bytes.

        Args:
            location: The cell's content location
            stored_path: The path or URL stored with the cell

        Returns:
            None for inline content, otherwise the absolute path

        Raises:
            PathResolutionError: If a non-inline location has no stored path
        """
        location = ContentLocation(location)

        if location == ContentLocation.INLINE:
            return None

        if not stored_path:
            raise PathResolutionError(f"{location.value} content has no stored path")

        if location == ContentLocation.EXTERNAL:
            return self.content_root / stored_path
        if location == ContentLocation.REMOTE:
            return self.content_root / CACHE_DIR / remote_cache_name(stored_path)
        if location == ContentLocation.SYMLINK:
            path = Path(stored_path)
            if not path.is_absolute():
                raise PathResolutionError(f"Symlink path must be absolute: {stored_path}")
            return path

        raise PathResolutionError(f"Unknown content location: {location}")

    def directory(self, name: str) -> Path:
        return self.content_root / name
