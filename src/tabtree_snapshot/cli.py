"""Command-line interface for inspecting and maintaining the snapshot store."""

from __future__ import annotations

import asyncio
import atexit
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from .codec import dumps, format_created_at
from .config import get_settings
from .db import delete_database, get_database_path, reset_database_state
from .errors import SnapshotError
from .export import SnapshotExporter
from .log import configure_logging
from .repository import SnapshotRepository

# aiosqlite worker threads can block interpreter shutdown if the engine is left open
atexit.register(reset_database_state)

console = Console()


def _run_async(coro: Any) -> Any:
    """Run an async coroutine and dispose the database engine afterwards."""
    try:
        return asyncio.run(coro)
    finally:
        reset_database_state()


def _run_or_exit(coro: Any) -> Any:
    try:
        return _run_async(coro)
    except SnapshotError as exc:
        console.print(f"[red]{exc.error_type}[/red]: {exc}")
        raise typer.Exit(code=1) from exc


app = typer.Typer(help="Inspect and maintain stored tab tree snapshots.", no_args_is_help=True)


@app.callback()
def _app_callback() -> None:
    configure_logging(get_settings())


@app.command("list")
def list_snapshots(
    oldest_first: Annotated[bool, typer.Option("--oldest-first", help="Sort ascending by creation time.")] = False,
) -> None:
    """List stored snapshots, newest first."""
    summaries = _run_or_exit(SnapshotRepository().list(descending=not oldest_first))
    table = Table(title="Snapshots", show_lines=False)
    table.add_column("id")
    table.add_column("created_at")
    table.add_column("name")
    table.add_column("auto")
    table.add_column("tabs", justify="right")
    for summary in summaries:
        table.add_row(
            summary.id,
            format_created_at(summary.created_at),
            summary.name,
            "yes" if summary.is_auto_save else "",
            str(summary.tab_count),
        )
    console.print(table)


@app.command("show")
def show_snapshot(
    snapshot_id: Annotated[str, typer.Argument(..., help="Snapshot id")],
) -> None:
    """Show snapshot metadata and its tab tree."""
    record = _run_or_exit(SnapshotRepository().get(snapshot_id))
    meta = Table(title=f"Snapshot: {record.name}", show_lines=False)
    meta.add_column("Field")
    meta.add_column("Value")
    meta.add_row("id", record.id)
    meta.add_row("created_at", format_created_at(record.created_at))
    meta.add_row("auto_save", str(record.is_auto_save).lower())
    meta.add_row("views", ", ".join(view.name for view in record.data.views) or "-")
    meta.add_row("tabs", str(record.tab_count))
    console.print(meta)

    tabs = Table(title="Tabs", show_lines=False)
    tabs.add_column("index", justify="right")
    tabs.add_column("parent", justify="right")
    tabs.add_column("view")
    tabs.add_column("title")
    tabs.add_column("url")
    for tab in sorted(record.data.tabs, key=lambda t: t.index):
        parent = "" if tab.parent_index is None else str(tab.parent_index)
        tabs.add_row(str(tab.index), parent, tab.view_id, tab.title, tab.url)
    console.print(tabs)


@app.command("delete")
def delete_snapshot(
    snapshot_id: Annotated[str, typer.Argument(..., help="Snapshot id")],
) -> None:
    """Delete a snapshot; deleting a missing id succeeds."""
    _run_or_exit(SnapshotRepository().delete(snapshot_id))
    console.print(f"[green]Deleted[/green] {snapshot_id}")


@app.command("export")
def export_snapshot(
    snapshot_id: Annotated[str, typer.Argument(..., help="Snapshot id")],
    output: Annotated[
        Optional[Path], typer.Option("--output", "-o", help="Target file (defaults to the export folder).")
    ] = None,
) -> None:
    """Write a snapshot to a JSON export file."""

    async def _export() -> Path:
        record = await SnapshotRepository().get(snapshot_id)
        if output is not None:
            output.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(output.write_text, dumps(record, indent=2) + "\n", encoding="utf-8")
            return output
        return await SnapshotExporter().write(record)

    path = _run_or_exit(_export())
    console.print(f"[green]Exported[/green] {snapshot_id} -> {path}")


@app.command("import")
def import_snapshot(
    file: Annotated[Path, typer.Argument(..., exists=True, dir_okay=False, help="Snapshot export file")],
) -> None:
    """Store a snapshot export file (replaces a snapshot with the same id)."""

    async def _import() -> str:
        record = await SnapshotExporter().read(file)
        return await SnapshotRepository().put(record)

    snapshot_id = _run_or_exit(_import())
    console.print(f"[green]Imported[/green] {snapshot_id}")


@app.command("prune")
def prune_snapshots(
    keep: Annotated[int, typer.Option("--keep", min=0, help="Number of newest snapshots to keep.")] = 10,
) -> None:
    """Delete all but the newest snapshots."""
    deleted = _run_or_exit(SnapshotRepository().prune(keep))
    console.print(f"Deleted {len(deleted)} snapshot(s); kept up to {keep}.")


@app.command("count")
def count_snapshots() -> None:
    """Print the number of stored snapshots."""
    console.print(str(_run_or_exit(SnapshotRepository().count())))


@app.command("reset-db")
def reset_db(
    yes: Annotated[bool, typer.Option("--yes", help="Confirm deletion without prompting.")] = False,
) -> None:
    """Delete the snapshot database file."""
    db_path = get_database_path()
    if db_path is None:
        console.print("[red]Only file-backed SQLite databases can be reset.[/red]")
        raise typer.Exit(code=2)
    if not yes and not typer.confirm(f"Delete {db_path} and all stored snapshots?"):
        raise typer.Exit(code=1)
    removed = _run_async(delete_database())
    console.print(f"[green]Removed[/green] {db_path}" if removed else f"Nothing to remove at {db_path}")
