"""Content storage: location decisions, file IO and the lazy cache."""

from .cache import CellHandle, LazyCanvas, LoadState
from .files import calculate_content_hash, fetch_remote, hash_file
from .locations import INLINE_THRESHOLD, ContentLocationResolver, decide_location

__all__ = [
    "CellHandle",
    "ContentLocationResolver",
    "INLINE_THRESHOLD",
    "LazyCanvas",
    "LoadState",
    "calculate_content_hash",
    "decide_location",
    "fetch_remote",
    "hash_file",
]
