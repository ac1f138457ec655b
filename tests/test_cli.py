"""
Tests for the command line interface.
"""

import io
import shutil
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path

import main


class TestCommandLine(unittest.TestCase):
    """Run CLI commands against a temporary project."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.project = Path(self.temp_dir) / "project"
        self.config_path = Path(self.temp_dir) / "config.yaml"
        self.config_path.write_text(
            f"paths:\n  log_file: {Path(self.temp_dir) / 'cellgraph.log'}\n", encoding="utf-8"
        )

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def run_cli(self, *args):
        output = io.StringIO()
        with redirect_stdout(output):
            main.main(["--project", str(self.project), "--config", str(self.config_path)] + list(args))
        return output.getvalue()

    def test_add_show_undo(self):
        self.assertIn("Initialized", self.run_cli("init"))
        self.assertIn("Created", self.run_cli("add", "--type", "markdown", "--text", "# Hello", "--name", "intro"))

        shown = self.run_cli("show", "intro")
        self.assertIn("# Hello", shown)
        self.assertIn("markdown", shown)

        self.assertIn("Undid: Create markdown cell", self.run_cli("undo"))
        self.assertIn("No cells.", self.run_cli("list"))
        self.assertIn("Redid", self.run_cli("redo"))

    def test_link_and_history(self):
        self.run_cli("add", "--text", "a", "--name", "a")
        self.run_cli("add", "--text", "b", "--name", "b")
        self.assertIn("Linked", self.run_cli("link", "a", "b"))
        self.assertIn("already exists", self.run_cli("link", "a", "b"))

        history = self.run_cli("history")
        self.assertIn("Link", history)
        self.assertIn("No issues found.", self.run_cli("validate"))

    def test_errors_exit_non_zero(self):
        self.run_cli("init")
        with self.assertRaises(SystemExit) as caught:
            self.run_cli("show", "missing")
        self.assertEqual(caught.exception.code, 1)


if __name__ == '__main__':
    unittest.main()
