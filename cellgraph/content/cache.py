"""
Lazy content cache for Cellgraph.

Opening a project loads only cell metadata. Content is read from the store
the first time a cell is displayed or executed, at most once at a time per
cell, and the most recently used payloads are kept in memory.
"""

import logging
import threading
from collections import OrderedDict
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..errors import NotFoundError
from ..models import Cell, Relationship

DEFAULT_CAPACITY = 100


class LoadState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"


class _Flight:
    """One in-progress content load that other callers can wait on."""

    def __init__(self, generation: int):
        self.generation = generation
        self.done = threading.Event()
        self.result: Optional[str] = None
        self.error: Optional[BaseException] = None


class CellHandle:
    """
    A cell's metadata plus its lazily loaded content.

    Metadata is always resident. ``content()`` loads the payload on first
    use; concurrent callers share the same load and all see its result or
    its error. A failed load leaves the handle retryable.
    """

    def __init__(self, cell: Cell, loader: Callable[[Cell], str],
                 on_loaded: Optional[Callable[["CellHandle"], None]] = None):
        self.cell = cell
        self.children: List[str] = []
        self._loader = loader
        self._on_loaded = on_loaded
        self._lock = threading.Lock()
        self._state = LoadState.UNLOADED
        self._content: Optional[str] = None
        self._flight: Optional[_Flight] = None
        self._generation = 0
        self.last_error: Optional[BaseException] = None

    @property
    def id(self) -> str:
        return self.cell.id

    @property
    def state(self) -> LoadState:
        return self._state

    @property
    def is_loaded(self) -> bool:
        return self._state == LoadState.LOADED

    def content(self) -> str:
        """
        Return the cell's content, loading it if needed.

        Raises:
            Whatever the loader raised (StorageIOError, PathResolutionError, ...)
        """
        with self._lock:
            if self._state == LoadState.LOADED:
                return self._content
            if self._flight is not None:
                flight = self._flight
                owner = False
            else:
                flight = _Flight(self._generation)
                self._flight = flight
                self._state = LoadState.LOADING
                owner = True
            cell = self.cell

        if not owner:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return flight.result

        try:
            data = self._loader(cell)
        except BaseException as e:
            with self._lock:
                if self._flight is flight:
                    self._flight = None
                    self._state = LoadState.FAILED
                    self.last_error = e
            flight.error = e
            flight.done.set()
            logging.warning(f"Failed to load content of cell {cell.short_id}: {e}")
            raise

        cached = False
        with self._lock:
            if self._flight is flight:
                self._flight = None
            # A load that started before invalidate() must not be cached
            if flight.generation == self._generation:
                self._content = data
                self._state = LoadState.LOADED
                self.last_error = None
                cached = True
        flight.result = data
        flight.done.set()

        if cached and self._on_loaded:
            self._on_loaded(self)
        return data

    def evict(self) -> bool:
        """Drop the loaded payload. Returns True if one was dropped."""
        with self._lock:
            if self._state != LoadState.LOADED:
                return False
            self._content = None
            self._state = LoadState.UNLOADED
            return True

    def invalidate(self, cell: Optional[Cell] = None) -> None:
        """Drop content and replace metadata; in-flight loads are not cached."""
        with self._lock:
            if cell is not None:
                self.cell = cell
            self._generation += 1
            self._content = None
            self._flight = None
            self._state = LoadState.UNLOADED


class LazyCanvas:
    """
    Metadata for every cell plus an LRU of loaded content payloads.
    """

    def __init__(self, store, capacity: int = DEFAULT_CAPACITY):
        """
        Initialize an empty canvas; use ``LazyCanvas.open`` to populate it.

        Args:
            store: The DatabaseManager content is loaded from
            capacity: Maximum number of loaded payloads kept in memory
        """
        if capacity < 1:
            raise ValueError(f"Cache capacity must be at least 1, got {capacity}")
        self.store = store
        self.capacity = capacity
        self._handles: Dict[str, CellHandle] = {}
        self._relationships: List[Relationship] = []
        self._lru: "OrderedDict[str, None]" = OrderedDict()
        self._lock = threading.RLock()

    @classmethod
    def open(cls, store, capacity: int = DEFAULT_CAPACITY) -> "LazyCanvas":
        """
        Load all cell metadata and relationships; no content is read.
        """
        canvas = cls(store, capacity)
        cells = store.list_cells()

        # Pass 1: id -> handle
        for cell in cells:
            canvas._handles[cell.id] = canvas._new_handle(cell)

        # Pass 2: parent -> children
        for cell in cells:
            if cell.parent_id and cell.parent_id in canvas._handles:
                canvas._handles[cell.parent_id].children.append(cell.id)

        canvas._relationships = store.list_relationships()
        logging.info(f"Opened canvas with {len(cells)} cells and {len(canvas._relationships)} relationships")
        return canvas

    def _new_handle(self, cell: Cell) -> CellHandle:
        return CellHandle(cell, self.store.read_content, on_loaded=self._touch)

    def _touch(self, handle: CellHandle) -> None:
        evicted = []
        with self._lock:
            self._lru[handle.id] = None
            self._lru.move_to_end(handle.id)
            while len(self._lru) > self.capacity:
                oldest, _ = self._lru.popitem(last=False)
                victim = self._handles.get(oldest)
                if victim is not None and victim.evict():
                    evicted.append(victim.cell.short_id)
        if evicted:
            logging.debug(f"Evicted content of cells: {', '.join(evicted)}")

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, cell_id: str) -> bool:
        return cell_id in self._handles

    def get(self, cell_id: str) -> CellHandle:
        """
        Raises:
            NotFoundError: If the cell is not on the canvas
        """
        handle = self._handles.get(cell_id)
        if handle is None:
            raise NotFoundError("Cell", cell_id)
        return handle

    def get_with_content(self, cell_id: str) -> Tuple[Cell, str]:
        handle = self.get(cell_id)
        content = handle.content()
        with self._lock:
            if cell_id in self._lru:
                self._lru.move_to_end(cell_id)
        return handle.cell, content

    def load_batch(self, cell_ids: Iterable[str]) -> Dict[str, str]:
        """Load several cells' content; the first failure propagates."""
        return {cell_id: self.get_with_content(cell_id)[1] for cell_id in cell_ids}

    def cells(self) -> List[Cell]:
        return [handle.cell for handle in self._handles.values()]

    def children_of(self, cell_id: str) -> List[str]:
        return list(self.get(cell_id).children)

    @property
    def relationships(self) -> List[Relationship]:
        return list(self._relationships)

    @property
    def loaded_count(self) -> int:
        return sum(1 for handle in self._handles.values() if handle.is_loaded)

    def evict(self, cell_id: str) -> None:
        with self._lock:
            self._lru.pop(cell_id, None)
            handle = self._handles.get(cell_id)
        if handle is not None:
            handle.evict()

    def invalidate(self, cell_id: str) -> None:
        """
        Re-read a cell's metadata from the store and drop its content.

        Cells that no longer exist are removed; cells that appeared are added.
        """
        cell = self.store.find_cell(cell_id)
        with self._lock:
            self._lru.pop(cell_id, None)
            handle = self._handles.get(cell_id)

            if cell is None:
                if handle is not None:
                    handle.invalidate()
                    del self._handles[cell_id]
                    parent = self._handles.get(handle.cell.parent_id) if handle.cell.parent_id else None
                    if parent is not None and cell_id in parent.children:
                        parent.children.remove(cell_id)
                return

            if handle is None:
                handle = self._new_handle(cell)
                self._handles[cell_id] = handle
                handle.children = [
                    other.id for other in self._handles.values() if other.cell.parent_id == cell_id
                ]
            else:
                handle.invalidate(cell)

            parent = self._handles.get(cell.parent_id) if cell.parent_id else None
            if parent is not None and cell_id not in parent.children:
                parent.children.append(cell_id)

    def reload_relationships(self) -> None:
        self._relationships = self.store.list_relationships()
