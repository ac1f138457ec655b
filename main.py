#!/usr/bin/env python3
"""
Cellgraph - command line interface

Main entry point for working with a Cellgraph project from the shell:
creating and editing cells, linking them, stepping through undo/redo
history and resolving conflicts with external edits.
"""

import logging
import sys
import argparse
from pathlib import Path
from typing import Optional

from cellgraph.config import ConfigManager
from cellgraph.errors import CellgraphError
from cellgraph.models import CellDraft, CellType, ContentLocation, Rectangle
from cellgraph.project import Project


def setup_logging(config: ConfigManager, verbose: bool = False):
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else getattr(logging, str(config.get("logging.level", "INFO")).upper())
    format_str = config.get("logging.format", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    log_file = config.log_filename

    # Console output is for the user; the log file gets everything
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)

    logging.basicConfig(
        level=level,
        format=format_str,
        handlers=[
            console,
            logging.FileHandler(log_file)
        ]
    )


def read_text_argument(args) -> Optional[str]:
    """Content from --text, --file or stdin ("-")."""
    if getattr(args, "text", None) is not None:
        return args.text
    if getattr(args, "file", None):
        if args.file == "-":
            return sys.stdin.read()
        return Path(args.file).read_text(encoding="utf-8")
    return None


def format_cell(cell) -> str:
    name = f" {cell.name}" if cell.name else ""
    start = " *start*" if cell.is_start_point else ""
    return (
        f"{cell.short_id:>4}  {cell.cell_type.value:<8} {cell.location.value:<8} "
        f"({cell.bounds.x:g}, {cell.bounds.y:g}, {cell.bounds.width:g}x{cell.bounds.height:g})"
        f"{name}{start}"
    )


def cmd_init(project: Project, args):
    print(f"Initialized project in {project.root}")


def cmd_add(project: Project, args):
    draft = CellDraft(
        cell_type=CellType(args.type),
        bounds=Rectangle(x=args.x, y=args.y, width=args.width, height=args.height),
        content=read_text_argument(args),
        name=args.name,
        preference=ContentLocation(args.location) if args.location else None,
        source=args.source,
        is_start_point=args.start,
    )
    cell = project.create_cell(draft)
    print(f"Created {format_cell(cell)}")


def cmd_show(project: Project, args):
    cell = project.resolve(args.cell)
    print(format_cell(cell))
    print(f"  id:       {cell.id}")
    print(f"  hash:     {cell.content_hash}")
    if cell.path:
        print(f"  path:     {cell.path}")
    if cell.parent_id:
        print(f"  parent:   {cell.parent_id}")
    if cell.summary:
        print(f"  summary:  {cell.summary}")
    print(f"  modified: {cell.modified_at.isoformat()}")
    print()
    print(project.get_cell_content(cell.id))


def cmd_list(project: Project, args):
    cells = project.canvas.cells()
    for cell in cells:
        print(format_cell(cell))
    for rel in project.canvas.relationships:
        source = project.get_cell(rel.from_id)
        target = project.get_cell(rel.to_id)
        print(f"  {source.short_id} -> {target.short_id}")
    if not cells:
        print("No cells.")


def cmd_set(project: Project, args):
    cell = project.resolve(args.cell)
    fields = {}
    if args.name is not None:
        fields["name"] = args.name
    if args.summary is not None:
        fields["summary"] = args.summary
    if args.type:
        fields["cell_type"] = CellType(args.type)
    if args.start is not None:
        fields["is_start_point"] = args.start
    content = read_text_argument(args)
    if content is not None:
        fields["content"] = content

    preference = ContentLocation(args.location) if args.location else None
    if not fields and preference is None:
        print("Nothing to change.")
        return
    updated = project.update_cell(cell.id, fields, preference=preference)
    print(f"Updated {format_cell(updated)}")


def cmd_rm(project: Project, args):
    cell = project.delete_cell(project.resolve(args.cell).id)
    print(f"Deleted cell {cell.short_id}")


def cmd_link(project: Project, args):
    source = project.resolve(args.source)
    target = project.resolve(args.target)
    if project.create_relationship(source.id, target.id):
        print(f"Linked {source.short_id} -> {target.short_id}")
    else:
        print(f"{source.short_id} -> {target.short_id} already exists")


def cmd_unlink(project: Project, args):
    source = project.resolve(args.source)
    target = project.resolve(args.target)
    project.delete_relationship(source.id, target.id)
    print(f"Unlinked {source.short_id} -> {target.short_id}")


def cmd_undo(project: Project, args):
    description = project.undo()
    print(f"Undid: {description}" if description else "Nothing to undo.")


def cmd_redo(project: Project, args):
    description = project.redo()
    print(f"Redid: {description}" if description else "Nothing to redo.")


def cmd_history(project: Project, args):
    entries = project.history(args.limit)
    if not entries:
        print("No history.")
    for entry in entries:
        marker = ">" if entry['current'] else " "
        state = "" if entry['applied'] else "  (undone)"
        print(f"{marker} #{entry['sequence']:<4} {entry['date'][:19]}  {entry['description']}{state}")


def cmd_edit(project: Project, args):
    cell = project.resolve(args.cell)
    session = project.begin_edit(cell.id, args.editor)
    outcome = project.finish_edit(session)
    print(f"Cell {cell.short_id}: {outcome.value}")


def cmd_conflicts(project: Project, args):
    conflicts = project.conflicts()
    if not conflicts:
        print("No conflicts.")
    for conflict in conflicts:
        artifact = f"  {conflict.artifact_path}" if conflict.artifact_path else ""
        print(f"#{conflict.conflict_id:<4} {conflict.short_id:>4}  {conflict.kind.value:<22}"
              f" {conflict.detected_at.isoformat(timespec='seconds')}{artifact}")


def cmd_resolve(project: Project, args):
    conflict = project.resolve_conflict(args.conflict_id, args.accept)
    print(f"Resolved conflict #{conflict.conflict_id} for cell {conflict.short_id}")


def cmd_validate(project: Project, args):
    issues = project.validate()
    for issue in issues:
        print(f"[{issue.severity}] {issue.message}")
    if not issues:
        print("No issues found.")
    if any(issue.severity == "error" for issue in issues):
        sys.exit(1)


def cmd_export(project: Project, args):
    destination = project.export_content(args.destination)
    print(f"Exported content to {destination}")


COMMANDS = {
    "init": cmd_init,
    "add": cmd_add,
    "show": cmd_show,
    "list": cmd_list,
    "set": cmd_set,
    "rm": cmd_rm,
    "link": cmd_link,
    "unlink": cmd_unlink,
    "undo": cmd_undo,
    "redo": cmd_redo,
    "history": cmd_history,
    "edit": cmd_edit,
    "conflicts": cmd_conflicts,
    "resolve": cmd_resolve,
    "validate": cmd_validate,
    "export": cmd_export,
}


def add_content_arguments(parser):
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--text", help="Cell content")
    group.add_argument("--file", help="Read cell content from a file ('-' for stdin)")
    parser.add_argument(
        "--location",
        choices=[location.value for location in ContentLocation],
        help="Requested content location"
    )


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Cellgraph - spatial cell graph storage",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --project demo init
  python main.py --project demo add --type markdown --text "# Notes"
  python main.py --project demo link A0 A1
  python main.py --project demo undo
  python main.py --project demo edit A0 --editor "code --wait"
        """
    )

    parser.add_argument(
        "--project",
        type=str,
        default=".",
        help="Project directory (default: current directory)"
    )

    parser.add_argument(
        "--config",
        type=str,
        default="config.yaml",
        help="Configuration file (default: config.yaml)"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Show log output on the console"
    )

    parser.add_argument(
        "--version",
        action="version",
        version="Cellgraph 0.1.0"
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create an empty project")

    add = sub.add_parser("add", help="Create a cell")
    add.add_argument("--type", choices=[kind.value for kind in CellType], default="text")
    add.add_argument("--name")
    add.add_argument("--x", type=float, default=0.0)
    add.add_argument("--y", type=float, default=0.0)
    add.add_argument("--width", type=float, default=200.0)
    add.add_argument("--height", type=float, default=100.0)
    add.add_argument("--source", help="URL (remote) or absolute path (symlink) the content comes from")
    add.add_argument("--start", action="store_true", help="Mark as execution start point")
    add_content_arguments(add)

    show = sub.add_parser("show", help="Show a cell and its content")
    show.add_argument("cell", help="Cell id, short id or name")

    sub.add_parser("list", help="List cells and relationships")

    set_ = sub.add_parser("set", help="Change a cell")
    set_.add_argument("cell")
    set_.add_argument("--name")
    set_.add_argument("--summary")
    set_.add_argument("--type", choices=[kind.value for kind in CellType])
    set_.add_argument("--start", dest="start", action="store_true", default=None)
    set_.add_argument("--no-start", dest="start", action="store_false")
    add_content_arguments(set_)

    rm = sub.add_parser("rm", help="Delete a cell and its relationships")
    rm.add_argument("cell")

    for name, help_text in (("link", "Create a relationship"), ("unlink", "Delete a relationship")):
        link = sub.add_parser(name, help=help_text)
        link.add_argument("source")
        link.add_argument("target")

    sub.add_parser("undo", help="Undo the last operation")
    sub.add_parser("redo", help="Redo the next operation")

    history = sub.add_parser("history", help="Show the journal")
    history.add_argument("--limit", type=int, default=20)

    edit = sub.add_parser("edit", help="Edit a cell in an external editor")
    edit.add_argument("cell")
    edit.add_argument("--editor", help="Editor command (default: config or $EDITOR)")

    sub.add_parser("conflicts", help="Scan for and list conflicts")

    resolve = sub.add_parser("resolve", help="Resolve a conflict")
    resolve.add_argument("conflict_id", type=int)
    resolve.add_argument("--accept", choices=["external", "in_app"], required=True)

    sub.add_parser("validate", help="Check the project for integrity problems")

    export = sub.add_parser("export", help="Copy the content tree")
    export.add_argument("destination")

    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point."""
    args = parse_arguments(argv)
    config = ConfigManager(args.config)
    setup_logging(config, args.verbose)

    logging.info(f"Cellgraph {args.command} in {args.project}")

    try:
        with Project(args.project, config) as project:
            COMMANDS[args.command](project, args)

    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        print("\nInterrupted.")
        sys.exit(130)

    except (CellgraphError, OSError, ValueError) as e:
        logging.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
