"""
Unit tests for the snapshot journal and undo/redo.
"""

import shutil
import tempfile
import unittest
from pathlib import Path

from cellgraph.content.cache import LazyCanvas
from cellgraph.database import DatabaseManager
from cellgraph.models import CellDraft, CellType, OperationKind, Rectangle, SplitDirection
from cellgraph.versioning import VersionManager


class VersioningTestCase(unittest.TestCase):

    retention = 50

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db = DatabaseManager(Path(self.temp_dir) / "test.duckdb", retention=self.retention)
        self.db.connect()
        self.db.initialize_database()
        self.canvas = LazyCanvas.open(self.db)
        self.versions = VersionManager(self.db, canvas=self.canvas)

    def tearDown(self):
        self.db.disconnect()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def add(self, content="", cell_type=CellType.TEXT, **fields):
        cell = self.db.create_cell(CellDraft(cell_type=cell_type, content=content, **fields))
        self.canvas.invalidate(cell.id)
        return cell

    def snapshot_state(self):
        """Everything a user can observe: cells, their content and relationships."""
        cells = {
            cell.id: (cell.model_dump(), content)
            for cell, content in self.db.iter_cells_with_content()
        }
        relationships = [rel.key for rel in self.db.list_relationships()]
        return cells, relationships


class TestSnapshotJournal(VersioningTestCase):
    """Test journal appends, loading and the cursor."""

    def test_sequences_start_at_one(self):
        self.assertEqual(self.db.journal.latest_sequence(), 0)
        self.assertEqual(self.db.journal.current_sequence, 0)

        self.add("a")
        self.add("b")

        self.assertEqual(self.db.journal.latest_sequence(), 2)
        self.assertEqual(self.db.journal.current_sequence, 2)
        second = self.db.journal.load(2)
        self.assertEqual(second.previous_sequence, 1)
        self.assertEqual(second.operation, OperationKind.CREATE)
        self.assertEqual(self.db.journal.load(second.snapshot_id).sequence, 2)

    def test_list_snapshots_newest_first(self):
        self.add("a")
        self.add("b")
        self.add("c")
        sequences = [snapshot.sequence for snapshot in self.db.journal.list_snapshots(limit=2)]
        self.assertEqual(sequences, [3, 2])

    def test_snapshot_changes_round_trip(self):
        cell = self.add("code", CellType.PYTHON)
        snapshot = self.db.journal.load(1)
        self.assertEqual(snapshot.changes[0].state.cell.id, cell.id)
        self.assertEqual(snapshot.changes[0].state.content, "code")
        self.assertTrue(self.db.journal.mentions(cell.id))


class TestRetention(VersioningTestCase):
    """Test that only the newest snapshots are kept."""

    retention = 3

    def test_prunes_oldest(self):
        for i in range(5):
            self.add(str(i))

        self.assertEqual(self.db.journal.count(), 3)
        self.assertIsNone(self.db.journal.load(2))
        self.assertIsNotNone(self.db.journal.load(3))

    def test_undo_stops_at_retention_boundary(self):
        for i in range(5):
            self.add(str(i))

        undone = [self.versions.undo() for _ in range(3)]
        self.assertTrue(all(undone))
        self.assertFalse(self.versions.can_undo())
        self.assertIsNone(self.versions.undo())
        self.assertEqual(len(self.db.list_cells()), 2)


class TestUndoRedo(VersioningTestCase):
    """Test undo/redo across every operation kind."""

    def test_boundaries_are_no_ops(self):
        self.assertIsNone(self.versions.undo())
        self.assertIsNone(self.versions.redo())
        self.add("a")
        self.assertIsNone(self.versions.redo())

    def test_full_undo_then_full_redo(self):
        """Test N operations, N undos and N redos land back where they should."""
        states = [self.snapshot_state()]

        a = self.add("alpha", name="a")
        states.append(self.snapshot_state())
        b = self.add("print(1)\n", CellType.PYTHON)
        states.append(self.snapshot_state())
        self.db.create_relationship(a.id, b.id)
        states.append(self.snapshot_state())
        self.db.update_cell_content(a.id, "alpha two")
        states.append(self.snapshot_state())
        self.db.update_cell(b.id, {"bounds": Rectangle(x=50, y=50, width=10, height=10)})
        states.append(self.snapshot_state())
        self.db.delete_cell(b.id)
        states.append(self.snapshot_state())

        operations = len(states) - 1
        for i in range(operations):
            self.assertIsNotNone(self.versions.undo())
            self.assertEqual(self.snapshot_state(), states[operations - i - 1])

        self.assertIsNone(self.versions.undo())
        self.assertEqual(self.db.list_cells(), [])

        for i in range(operations):
            self.assertIsNotNone(self.versions.redo())
            self.assertEqual(self.snapshot_state(), states[i + 1])

        self.assertIsNone(self.versions.redo())

    def test_undo_of_modify_is_byte_identical(self):
        cell = self.add("one\r\ntwo", CellType.PYTHON)
        before = self.db.get_cell(cell.id)
        path = self.db.content_path(before)
        original_bytes = path.read_bytes()

        self.db.update_cell_content(cell.id, "three")
        self.versions.undo()

        self.assertEqual(path.read_bytes(), original_bytes)
        self.assertEqual(self.db.get_cell(cell.id).model_dump(), before.model_dump())

    def test_undo_delete_restores_relationships_and_file(self):
        a = self.add("a")
        b = self.add("b", CellType.PYTHON)
        self.db.create_relationship(a.id, b.id)
        self.db.delete_cell(b.id)

        snapshot = self.versions.undo()

        self.assertEqual(snapshot.operation, OperationKind.DELETE)
        self.assertEqual(self.db.get_cell_content(b.id), "b")
        self.assertEqual([rel.key for rel in self.db.list_relationships()], [(a.id, b.id)])
        self.assertIn(b.id, self.canvas)
        self.assertEqual(len(self.canvas.relationships), 1)

    def test_split_undo_redo_keeps_child_ids(self):
        parent = self.add("whole")
        children = self.db.split_cell(
            parent.id,
            SplitDirection.VERTICAL,
            [CellDraft(content="left"), CellDraft(content="right")],
        )
        child_ids = [child.id for child in children]
        for child_id in child_ids:
            self.canvas.invalidate(child_id)

        self.versions.undo()
        self.assertEqual([cell.id for cell in self.db.list_cells()], [parent.id])
        self.assertEqual(self.canvas.children_of(parent.id), [])

        self.versions.redo()
        self.assertEqual(sorted(cell.id for cell in self.db.list_cells()), sorted([parent.id] + child_ids))
        self.assertEqual(sorted(self.canvas.children_of(parent.id)), sorted(child_ids))

    def test_merge_undo_restores_originals(self):
        a = self.add("a")
        b = self.add("b")
        c = self.add("c")
        self.db.create_relationship(c.id, a.id)
        merged = self.db.merge_cells([a.id, b.id])

        self.versions.undo()

        self.assertIsNone(self.db.find_cell(merged.id))
        self.assertEqual(self.db.get_cell_content(a.id), "a")
        self.assertEqual(self.db.get_cell_content(b.id), "b")
        self.assertEqual([rel.key for rel in self.db.list_relationships()], [(c.id, a.id)])

    def test_new_work_after_undo_truncates_redo(self):
        """Test undone entries are never replayed once new work is done."""
        a = self.add("a")
        b = self.add("b")
        self.versions.undo()
        c = self.add("c")

        self.assertFalse(self.versions.can_redo())
        self.assertIsNone(self.versions.redo())

        self.versions.undo()
        self.assertEqual([cell.id for cell in self.db.list_cells()], [a.id])

        redone = self.versions.redo()
        self.assertEqual(redone.changes[0].state.cell.id, c.id)
        self.assertIsNone(self.db.find_cell(b.id))

    def test_undo_invalidates_cache(self):
        cell = self.add("before")
        self.assertEqual(self.canvas.get_with_content(cell.id)[1], "before")

        self.db.update_cell_content(cell.id, "after")
        self.canvas.invalidate(cell.id)
        self.assertEqual(self.canvas.get_with_content(cell.id)[1], "after")

        self.versions.undo()
        self.assertEqual(self.canvas.get_with_content(cell.id)[1], "before")

    def test_history(self):
        self.add("a")
        self.add("b")
        self.versions.undo()

        history = self.versions.get_history()
        self.assertEqual([entry['sequence'] for entry in history], [2, 1])
        self.assertFalse(history[0]['applied'])
        self.assertTrue(history[1]['applied'])
        self.assertTrue(history[1]['current'])
        self.assertEqual(self.versions.current_sequence, 1)


if __name__ == '__main__':
    unittest.main()
