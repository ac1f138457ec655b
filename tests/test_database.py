"""
Unit tests for the Cellgraph persistent store.

Covers cell CRUD across content locations, relationships, atomicity of
content file writes, conflicts, execution traces and the integrity check.
"""

import shutil
import tempfile
import threading
import unittest
from pathlib import Path
from unittest.mock import patch

from cellgraph.content.locations import INLINE_THRESHOLD
from cellgraph.database import DatabaseManager
from cellgraph.errors import (
    ConflictError,
    NotFoundError,
    RetentionConfigError,
    SelfReferenceError,
    StorageIOError,
)
from cellgraph.models import (
    CellDraft,
    CellType,
    ConflictKind,
    ContentLocation,
    Rectangle,
    SplitDirection,
)
from cellgraph.versioning import VersionManager


class StoreTestCase(unittest.TestCase):
    """Opens a fresh store in a temporary directory for each test."""

    def setUp(self):
        """Set up test database."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = Path(self.temp_dir) / "test.duckdb"
        self.db = DatabaseManager(self.db_path)
        self.db.connect()
        self.db.initialize_database()

    def tearDown(self):
        """Clean up test database."""
        self.db.disconnect()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def add(self, content="", cell_type=CellType.TEXT, **fields):
        return self.db.create_cell(CellDraft(cell_type=cell_type, content=content, **fields))


class TestDatabaseManager(StoreTestCase):
    """Test database management functionality."""

    def test_database_initialization(self):
        """Test database creation and table initialization."""
        self.assertTrue(self.db_path.exists())
        self.assertIsNotNone(self.db.connection)
        for name in ("cells", "attachments", "cache", "conflicts", "edits"):
            self.assertTrue((self.db.content_root / name).is_dir())
        self.assertEqual(self.db.content_root, Path(self.temp_dir) / "test_content")

    def test_context_manager(self):
        """Test the store can be used as a context manager."""
        other = Path(self.temp_dir) / "other.duckdb"
        with DatabaseManager(other) as db:
            cell = db.create_cell(CellDraft(content="x"))
            self.assertEqual(db.get_cell(cell.id).inline_text, "x")
        self.assertIsNone(db.connection)

    def test_requires_connection(self):
        db = DatabaseManager(Path(self.temp_dir) / "unused.duckdb")
        with self.assertRaises(RuntimeError):
            db.initialize_database()

    def test_invalid_retention(self):
        for retention in (0, -1, 2.5, True, "50"):
            with self.assertRaises(RetentionConfigError):
                DatabaseManager(self.db_path, retention=retention)

    def test_content_hash(self):
        """Test hashing is SHA-256 over UTF-8 bytes."""
        self.assertEqual(
            self.db.calculate_content_hash("hello"),
            "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824",
        )
        self.assertEqual(self.db.calculate_content_hash("hello"), self.db.calculate_content_hash(b"hello"))
        self.assertNotEqual(self.db.calculate_content_hash("a\r\n"), self.db.calculate_content_hash("a\n"))


class TestCellOperations(StoreTestCase):
    """Test cell create, update, delete, split and merge."""

    def test_create_inline_cell(self):
        cell = self.add("hello", name="greeting", bounds=Rectangle(x=1, y=2, width=3, height=4))

        stored = self.db.get_cell(cell.id)
        self.assertEqual(stored.location, ContentLocation.INLINE)
        self.assertEqual(stored.inline_text, "hello")
        self.assertEqual(stored.name, "greeting")
        self.assertEqual(stored.bounds, Rectangle(x=1, y=2, width=3, height=4))
        self.assertEqual(stored.content_hash, self.db.calculate_content_hash("hello"))
        self.assertEqual(self.db.journal.count(), 1)

    def test_create_python_cell_is_external(self):
        """Test code cells always live in a file."""
        cell = self.add("print('hi')\n", CellType.PYTHON, preference=ContentLocation.INLINE)

        self.assertEqual(cell.location, ContentLocation.EXTERNAL)
        self.assertEqual(cell.path, f"cells/{cell.id}.py")
        path = self.db.content_path(cell)
        self.assertEqual(path.read_bytes(), b"print('hi')\n")
        self.assertEqual(self.db.get_cell_content(cell.id), "print('hi')\n")

    def test_large_text_goes_external(self):
        content = "x" * (INLINE_THRESHOLD + 1)
        cell = self.add(content)
        self.assertEqual(cell.location, ContentLocation.EXTERNAL)
        self.assertEqual(self.db.get_cell_content(cell.id), content)

    def test_content_is_byte_exact(self):
        """Test content round-trips without newline translation."""
        content = "line one\r\nline two\n\ttabbed é"
        cell = self.add(content, CellType.PYTHON)
        self.assertEqual(self.db.get_cell_content(cell.id), content)
        self.assertEqual(self.db.content_path(cell).read_bytes(), content.encode("utf-8"))

    def test_short_ids_are_unique_and_never_reused(self):
        first = self.add("a")
        second = self.add("b")
        self.assertNotEqual(first.short_id, second.short_id)

        self.db.delete_cell(second.id)
        third = self.add("c")
        self.assertNotIn(third.short_id, (first.short_id, second.short_id))
        self.assertEqual(self.db.find_cell_by_short_id(first.short_id.lower()).id, first.id)

    def test_update_metadata_only(self):
        cell = self.add("text")
        updated = self.db.update_cell(cell.id, {"name": "renamed", "bounds": Rectangle(x=5, y=5, width=10, height=10)})

        self.assertEqual(updated.name, "renamed")
        self.assertEqual(updated.bounds.x, 5)
        self.assertEqual(updated.inline_text, "text")

        snapshot = self.db.journal.load(self.db.journal.latest_sequence())
        change = snapshot.changes[0]
        self.assertNotIn("content", change.after)
        self.assertEqual(change.before["name"], None)

    def test_update_without_changes_is_not_journaled(self):
        cell = self.add("text", name="same")
        self.db.update_cell(cell.id, {"name": "same"})
        self.assertEqual(self.db.journal.count(), 1)

    def test_update_rejects_unknown_fields(self):
        cell = self.add("text")
        with self.assertRaises(ValueError):
            self.db.update_cell(cell.id, {"id": "other"})

    def test_update_content_relocates(self):
        """Test content crossing the threshold moves between inline and file."""
        cell = self.add("small")
        big = "y" * (INLINE_THRESHOLD + 10)

        moved = self.db.update_cell_content(cell.id, big)
        self.assertEqual(moved.location, ContentLocation.EXTERNAL)
        path = self.db.content_path(moved)
        self.assertTrue(path.exists())

        self.db.update_cell_content(cell.id, "small again", preference=ContentLocation.INLINE)
        back = self.db.get_cell(cell.id)
        self.assertEqual(back.location, ContentLocation.INLINE)
        self.assertEqual(back.inline_text, "small again")
        self.assertFalse(path.exists())

    def test_delete_cascades_relationships(self):
        a = self.add("a")
        b = self.add("b")
        c = self.add("c", CellType.PYTHON)
        self.db.create_relationship(a.id, c.id)
        self.db.create_relationship(c.id, b.id)
        self.db.create_relationship(a.id, b.id)

        self.db.delete_cell(c.id)

        self.assertIsNone(self.db.find_cell(c.id))
        self.assertEqual([rel.key for rel in self.db.list_relationships()], [(a.id, b.id)])
        self.assertFalse(self.db.content_path(c).exists())

        snapshot = self.db.journal.load(self.db.journal.latest_sequence())
        kinds = [change.kind for change in snapshot.changes]
        self.assertEqual(kinds, ["relationship_deleted", "relationship_deleted", "cell_deleted"])

    def test_delete_missing_cell(self):
        with self.assertRaises(NotFoundError):
            self.db.delete_cell("missing")

    def test_split_cell(self):
        parent = self.add("top\nbottom", bounds=Rectangle(width=100, height=100))
        drafts = [
            CellDraft(content="top", bounds=Rectangle(width=100, height=50)),
            CellDraft(content="bottom", bounds=Rectangle(y=50, width=100, height=50)),
        ]

        children = self.db.split_cell(parent.id, SplitDirection.HORIZONTAL, drafts, {"name": "split parent"})

        self.assertEqual(len(children), 2)
        for child in children:
            stored = self.db.get_cell(child.id)
            self.assertEqual(stored.parent_id, parent.id)
            self.assertEqual(stored.split_direction, SplitDirection.HORIZONTAL)
        self.assertEqual(self.db.get_cell(parent.id).name, "split parent")

        snapshot = self.db.journal.load(self.db.journal.latest_sequence())
        self.assertEqual(snapshot.changes[0].child_ids, [child.id for child in children])

    def test_split_cannot_change_parent_content(self):
        parent = self.add("p")
        with self.assertRaises(ValueError):
            self.db.split_cell(parent.id, SplitDirection.VERTICAL, [CellDraft(content="x")], {"content": "y"})

    def test_merge_cells(self):
        a = self.add("first", bounds=Rectangle(x=0, y=0, width=10, height=10))
        b = self.add("second", bounds=Rectangle(x=20, y=5, width=10, height=10))
        c = self.add("third")
        self.db.create_relationship(a.id, c.id)

        merged = self.db.merge_cells([a.id, b.id])

        self.assertEqual(self.db.get_cell_content(merged.id), "first\n\nsecond")
        self.assertEqual(merged.bounds, Rectangle(x=0, y=0, width=30, height=15))
        self.assertIsNone(self.db.find_cell(a.id))
        self.assertIsNone(self.db.find_cell(b.id))
        self.assertEqual(self.db.list_relationships(), [])
        self.assertIsNotNone(self.db.find_cell(c.id))

    def test_merge_needs_two_cells(self):
        a = self.add("a")
        with self.assertRaises(ValueError):
            self.db.merge_cells([a.id, a.id])

    def test_list_cells_by_type(self):
        self.add("a")
        self.add("b", CellType.PYTHON)
        self.assertEqual(len(self.db.list_cells()), 2)
        self.assertEqual(len(self.db.list_cells(CellType.PYTHON)), 1)
        contents = dict((cell.cell_type, content) for cell, content in self.db.iter_cells_with_content())
        self.assertEqual(contents[CellType.PYTHON], "b")


class TestContentLocations(StoreTestCase):
    """Test remote and symlinked content."""

    def test_remote_content_is_cached(self):
        url = "https://example.com/data.json"
        with patch("cellgraph.database.manager.fetch_remote", return_value=b'{"a": 1}') as fetch:
            cell = self.add(None, CellType.JSON, preference=ContentLocation.REMOTE, source=url)

        fetch.assert_called_once()
        self.assertEqual(cell.location, ContentLocation.REMOTE)
        self.assertEqual(cell.path, url)
        self.assertTrue(self.db.content_path(cell).exists())
        self.assertEqual(self.db.get_cell_content(cell.id), '{"a": 1}')

    def test_remote_fetched_again_when_cache_missing(self):
        url = "https://example.com/data.json"
        with patch("cellgraph.database.manager.fetch_remote", return_value=b"v1"):
            cell = self.add(None, CellType.JSON, preference=ContentLocation.REMOTE, source=url)
        self.db.content_path(cell).unlink()

        with patch("cellgraph.database.manager.fetch_remote", return_value=b"v1") as fetch:
            self.assertEqual(self.db.get_cell_content(cell.id), "v1")
        fetch.assert_called_once_with(url, timeout=self.db.remote_timeout)

    def test_remote_fetch_failure(self):
        with patch("cellgraph.database.manager.fetch_remote", side_effect=StorageIOError("offline")):
            with self.assertRaises(StorageIOError):
                self.add(None, CellType.JSON, preference=ContentLocation.REMOTE, source="https://x/y")
        self.assertEqual(self.db.list_cells(), [])

    def test_editing_remote_content_makes_it_local(self):
        url = "https://example.com/data.json"
        with patch("cellgraph.database.manager.fetch_remote", return_value=b"[]"):
            cell = self.add(None, CellType.JSON, preference=ContentLocation.REMOTE, source=url)

        updated = self.db.update_cell_content(cell.id, "[1]")
        self.assertEqual(updated.location, ContentLocation.INLINE)
        self.assertEqual(updated.inline_text, "[1]")

    def test_symlink_content(self):
        target = Path(self.temp_dir) / "outside.md"
        target.write_text("# outside", encoding="utf-8")

        cell = self.add(None, CellType.MARKDOWN, preference=ContentLocation.SYMLINK, source=str(target))
        self.assertEqual(cell.location, ContentLocation.SYMLINK)
        self.assertEqual(self.db.get_cell_content(cell.id), "# outside")

        self.db.update_cell_content(cell.id, "# changed")
        self.assertEqual(target.read_text(encoding="utf-8"), "# changed")

        # The user's file is not ours to delete
        self.db.delete_cell(cell.id)
        self.assertTrue(target.exists())

    def test_remote_content_must_be_utf8(self):
        url = "https://example.com/blob.bin"
        with patch("cellgraph.database.manager.fetch_remote", return_value=b"\xff\xfe\x00"):
            with self.assertRaises(StorageIOError):
                self.add(None, CellType.TEXT, preference=ContentLocation.REMOTE, source=url)
        self.assertEqual(self.db.list_cells(), [])


class TestExternallyChangedFiles(StoreTestCase):
    """Test that files changed outside the application are never overwritten."""

    def setUp(self):
        super().setUp()
        self.target = Path(self.temp_dir) / "notes.md"
        self.target.write_text("# outside", encoding="utf-8")
        self.cell = self.add(None, CellType.MARKDOWN, preference=ContentLocation.SYMLINK, source=str(self.target))
        self.versions = VersionManager(self.db)

    def test_undo_modify_keeps_changed_target(self):
        self.db.update_cell_content(self.cell.id, "# changed")
        self.target.write_text("# mine", encoding="utf-8")

        self.assertIsNotNone(self.versions.undo())

        self.assertEqual(self.target.read_text(encoding="utf-8"), "# mine")
        conflicts = self.db.list_conflicts(self.cell.id)
        self.assertEqual([conflict.kind for conflict in conflicts], [ConflictKind.EXTERNAL_MODIFICATION])
        self.assertEqual(self.db.get_cell(self.cell.id).content_hash, self.db.calculate_content_hash("# outside"))

    def test_undo_delete_keeps_changed_target(self):
        self.db.delete_cell(self.cell.id)
        self.target.write_text("# mine", encoding="utf-8")

        self.versions.undo()

        self.assertIsNotNone(self.db.find_cell(self.cell.id))
        self.assertEqual(self.target.read_text(encoding="utf-8"), "# mine")
        self.assertEqual(len(self.db.list_conflicts(self.cell.id)), 1)

    def test_undo_writes_unchanged_target(self):
        self.db.update_cell_content(self.cell.id, "# changed")
        self.versions.undo()

        self.assertEqual(self.target.read_text(encoding="utf-8"), "# outside")
        self.assertEqual(self.db.list_conflicts(), [])

    def test_in_app_write_refused_over_changed_file(self):
        self.target.write_text("# mine", encoding="utf-8")

        with self.assertRaises(ConflictError):
            self.db.update_cell_content(self.cell.id, "# app")

        self.assertEqual(self.target.read_text(encoding="utf-8"), "# mine")
        self.assertEqual(self.db.list_conflicts(self.cell.id)[0].kind, ConflictKind.EXTERNAL_MODIFICATION)
        self.assertEqual(self.db.journal.count(), 1)


class TestTransactions(StoreTestCase):
    """Test that metadata and content files commit or roll back together."""

    def test_failed_create_leaves_no_file(self):
        with patch.object(self.db.journal, "append", side_effect=RuntimeError("boom")):
            with self.assertRaises(RuntimeError):
                self.add("code", CellType.PYTHON)

        self.assertEqual(self.db.list_cells(), [])
        self.assertEqual(list((self.db.content_root / "cells").iterdir()), [])

    def test_failed_update_restores_file(self):
        cell = self.add("original", CellType.PYTHON)
        path = self.db.content_path(cell)

        with patch.object(self.db.journal, "append", side_effect=RuntimeError("boom")):
            with self.assertRaises(RuntimeError):
                self.db.update_cell_content(cell.id, "changed")

        self.assertEqual(path.read_text(encoding="utf-8"), "original")
        self.assertEqual(self.db.get_cell(cell.id).content_hash, cell.content_hash)
        self.assertEqual(self.db.journal.count(), 1)

    def test_failed_delete_restores_file(self):
        cell = self.add("keep me", CellType.PYTHON)
        with patch.object(self.db.journal, "append", side_effect=RuntimeError("boom")):
            with self.assertRaises(RuntimeError):
                self.db.delete_cell(cell.id)

        self.assertIsNotNone(self.db.find_cell(cell.id))
        self.assertEqual(self.db.get_cell_content(cell.id), "keep me")

    def test_nested_transactions_join(self):
        with self.db.transaction():
            self.add("a")
            with self.db.transaction():
                self.add("b")
            self.assertTrue(self.db.in_transaction)
        self.assertFalse(self.db.in_transaction)
        self.assertEqual(len(self.db.list_cells()), 2)

    def test_readers_on_other_threads(self):
        """Test a reader thread sees committed cells through its own cursor."""
        self.add("a")
        self.add("b")
        results = []

        def read():
            results.append(len(self.db.list_cells()))

        thread = threading.Thread(target=read)
        thread.start()
        thread.join()
        self.assertEqual(results, [2])

    def test_content_writes_need_transaction(self):
        with self.assertRaises(RuntimeError):
            self.db._write_content_file(self.db.content_root / "cells" / "x.txt", "x")


class TestRelationships(StoreTestCase):
    """Test relationship rules."""

    def test_create_and_query(self):
        a = self.add("a")
        b = self.add("b")

        self.assertTrue(self.db.create_relationship(a.id, b.id))
        self.assertEqual([rel.to_id for rel in self.db.get_outgoing_relationships(a.id)], [b.id])
        self.assertEqual([rel.from_id for rel in self.db.get_incoming_relationships(b.id)], [a.id])

    def test_duplicate_is_not_journaled(self):
        a = self.add("a")
        b = self.add("b")
        self.db.create_relationship(a.id, b.id)
        count = self.db.journal.count()

        self.assertFalse(self.db.create_relationship(a.id, b.id))
        self.assertEqual(self.db.journal.count(), count)
        self.assertEqual(len(self.db.list_relationships()), 1)

    def test_both_directions_allowed(self):
        a = self.add("a")
        b = self.add("b")
        self.assertTrue(self.db.create_relationship(a.id, b.id))
        self.assertTrue(self.db.create_relationship(b.id, a.id))

    def test_self_reference_rejected(self):
        a = self.add("a")
        with self.assertRaises(SelfReferenceError):
            self.db.create_relationship(a.id, a.id)

    def test_missing_endpoint(self):
        a = self.add("a")
        with self.assertRaises(NotFoundError):
            self.db.create_relationship(a.id, "missing")
        with self.assertRaises(NotFoundError):
            self.db.delete_relationship(a.id, "missing")


class TestLeasesAndConflicts(StoreTestCase):
    """Test file leases, conflict records and execution traces."""

    def test_leased_file_refuses_in_app_write(self):
        cell = self.add("original", CellType.PYTHON)
        self.db.lease_file(self.db.content_path(cell), cell.id)

        with self.assertRaises(ConflictError):
            self.db.update_cell_content(cell.id, "in-app")

        self.assertEqual(self.db.get_cell_content(cell.id), "original")
        conflicts = self.db.list_conflicts(cell.id)
        self.assertEqual(len(conflicts), 1)
        self.assertEqual(conflicts[0].kind, ConflictKind.CONCURRENT_EDIT)

        # Metadata edits are still allowed
        self.db.update_cell(cell.id, {"name": "still editable"})

        self.db.release_file(self.db.content_path(cell))
        self.db.update_cell_content(cell.id, "in-app")
        self.assertEqual(self.db.get_cell_content(cell.id), "in-app")

    def test_conflict_lifecycle(self):
        cell = self.add("a")
        record = self.db.add_conflict(cell.id, cell.short_id, ConflictKind.EXTERNAL_MODIFICATION, "/tmp/x.conflict")

        self.assertEqual(self.db.get_conflict(record.conflict_id).artifact_path, "/tmp/x.conflict")
        self.db.clear_conflict(record.conflict_id)
        self.assertEqual(self.db.list_conflicts(), [])
        with self.assertRaises(NotFoundError):
            self.db.clear_conflict(record.conflict_id)

    def test_execution_traces(self):
        """Test traces are stored and filtered but never journaled."""
        cell = self.add("a")
        self.db.record_execution_trace("step", '{"steps": 1}', start_cell=cell.id)
        trace = self.db.record_execution_trace("run", '{"steps": 3}')

        self.assertEqual(self.db.journal.count(), 1)
        self.assertEqual(len(self.db.get_execution_traces()), 2)
        self.assertEqual(len(self.db.get_execution_traces(mode="step")), 1)
        self.assertEqual(self.db.get_execution_trace(trace.trace_id).log, '{"steps": 3}')
        with self.assertRaises(NotFoundError):
            self.db.get_execution_trace("t-missing")


class TestValidationAndExport(StoreTestCase):
    """Test the integrity check and content export."""

    def test_clean_project_has_no_issues(self):
        a = self.add("a")
        b = self.add("b", CellType.PYTHON)
        self.db.create_relationship(a.id, b.id)
        self.assertEqual(self.db.validate(), [])

    def test_detects_missing_and_modified_files(self):
        missing = self.add("gone", CellType.PYTHON)
        modified = self.add("before", CellType.PYTHON)
        self.db.content_path(missing).unlink()
        self.db.content_path(modified).write_text("after", encoding="utf-8")

        issues = {issue.cell_id: issue.severity for issue in self.db.validate()}
        self.assertEqual(issues[missing.id], "error")
        self.assertEqual(issues[modified.id], "warning")

    def test_detects_multiple_start_points(self):
        self.add("a", is_start_point=True)
        self.add("b", is_start_point=True)
        messages = [issue.message for issue in self.db.validate()]
        self.assertTrue(any("start point" in message for message in messages))

    def test_copy_content_tree(self):
        cell = self.add("code", CellType.PYTHON)
        (self.db.content_root / "edits" / "scratch.txt").write_text("tmp", encoding="utf-8")

        destination = self.db.copy_content_tree(Path(self.temp_dir) / "export")

        self.assertEqual((destination / cell.path).read_text(encoding="utf-8"), "code")
        self.assertFalse((destination / "edits").exists())


if __name__ == '__main__':
    unittest.main()
