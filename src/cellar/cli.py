#!/usr/bin/env python3
"""
🍷 Cellar CLI - Inspect tables from the shell.

Usage:
    cellar history --location /data/warehouse/db/events
    cellar refs --catalog prod --table db.events
    cellar files --catalog prod --table db.events --ref exp
    cellar snapshot --location s3://warehouse/db/events -P s3.endpoint=http://localhost:9000
"""

from __future__ import annotations

import argparse
import logging
from collections.abc import Sequence

import pandas as pd
from pyiceberg.table import Table
from pyiceberg.table.refs import MAIN_BRANCH
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table as RichTable

from cellar import __version__
from cellar.catalog.loader import CatalogLoader, TableLoader
from cellar.config import get_settings
from cellar.errors import CellarError
from cellar.table import data_files, history, table_name

console = Console()


def _size_human(size: float) -> str:
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def _parse_properties(pairs: Sequence[str]) -> dict[str, str]:
    properties = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Expected key=value, got {pair!r}")
        properties[key] = value
    return properties


def build_loader(args: argparse.Namespace) -> TableLoader:
    """Resolve the table selected on the command line into a loader."""
    properties = _parse_properties(args.property or [])
    if args.location:
        return TableLoader.from_path(args.location, properties)
    if not args.table:
        raise ValueError("Select a table with --location or --table")

    catalog = CatalogLoader.from_config(args.catalog or get_settings().default_catalog, args.config)
    if properties:
        catalog = CatalogLoader(
            catalog_type=catalog.catalog_type,
            name=catalog.name,
            properties={**catalog.properties, **properties},
        )
    return TableLoader.from_catalog(catalog, args.table)


# =========================================================================
# Commands
# =========================================================================


def show_history(table: Table) -> None:
    rows = history(table)
    name = table_name(table)
    if rows.empty:
        console.print(f"[yellow]No snapshots yet for {name}[/yellow]")
        return

    tbl = RichTable(title=f"📜 History: {name}", show_header=True, header_style="bold cyan")
    for column in ["Snapshot", "Parent", "Timestamp", "Operation", "Added", "Total", "Refs"]:
        tbl.add_column(column)
    for row in rows.itertuples(index=False):
        tbl.add_row(
            str(row.snapshot_id),
            "" if pd.isna(row.parent_id) else str(row.parent_id),
            row.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            row.operation,
            "" if pd.isna(row.added_records) else f"{row.added_records:,}",
            "" if pd.isna(row.total_records) else f"{row.total_records:,}",
            ", ".join(row.refs),
        )
    console.print(tbl)


def show_refs(table: Table) -> None:
    refs = table.refs()
    name = table_name(table)
    if not refs:
        console.print(f"[yellow]No refs yet for {name}[/yellow]")
        return

    tbl = RichTable(title=f"🌿 Refs: {name}", show_header=True, header_style="bold cyan")
    tbl.add_column("Name", style="green")
    tbl.add_column("Type")
    tbl.add_column("Snapshot")
    tbl.add_column("Records", justify="right")
    for ref_name, ref in sorted(refs.items()):
        snapshot = table.snapshot_by_id(ref.snapshot_id)
        total = snapshot.summary.get("total-records") if snapshot and snapshot.summary is not None else None
        tbl.add_row(
            ref_name,
            ref.snapshot_ref_type.value,
            str(ref.snapshot_id),
            f"{int(total):,}" if total is not None else "?",
        )
    console.print(tbl)


def show_files(table: Table, ref: str) -> None:
    files = data_files(table, ref)
    name = table_name(table)
    if not files:
        console.print(f"[yellow]No data files on {name}@{ref}[/yellow]")
        return

    tbl = RichTable(title=f"🗂️ Files: {name}@{ref}", show_header=True, header_style="bold cyan")
    tbl.add_column("Path", style="dim", overflow="fold")
    tbl.add_column("Format")
    tbl.add_column("Partition")
    tbl.add_column("Records", justify="right")
    tbl.add_column("Size", justify="right")
    tbl.add_column("Splits", justify="right")
    for f in files:
        partition = [f.partition[i] for i in range(len(f.partition))]
        tbl.add_row(
            f.file_path,
            f.file_format.value,
            ", ".join(map(str, partition)),
            f"{f.record_count:,}",
            _size_human(f.file_size_in_bytes),
            "-" if f.split_offsets is None else str(len(f.split_offsets)),
        )
    console.print(tbl)


def show_snapshot(table: Table, ref: str, snapshot_id: int | None) -> None:
    snapshot = table.snapshot_by_id(snapshot_id) if snapshot_id else table.snapshot_by_name(ref)
    name = table_name(table)
    if snapshot is None:
        target = snapshot_id if snapshot_id else ref
        console.print(f"[yellow]No snapshot {target} on {name}[/yellow]")
        return

    lines = [
        f"[bold]Snapshot:[/bold]   {snapshot.snapshot_id}",
        f"[bold]Parent:[/bold]     {snapshot.parent_snapshot_id}",
        f"[bold]Sequence:[/bold]   {snapshot.sequence_number}",
        f"[bold]Operation:[/bold]  {snapshot.summary.operation.value if snapshot.summary is not None else '?'}",
        f"[bold]Manifests:[/bold]  {snapshot.manifest_list}",
        "",
    ]
    if snapshot.summary is not None:
        lines.extend(f"  {key}: [cyan]{value}[/cyan]" for key, value in sorted(snapshot.summary.items()))
    console.print(Panel("\n".join(lines), title=f"📸 {name}", border_style="blue"))


def main(argv: Sequence[str] | None = None) -> int:
    """Main CLI entrypoint."""
    parser = argparse.ArgumentParser(
        prog="cellar",
        description="🍷 Cellar - Inspect lakehouse tables",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  cellar history --location /data/warehouse/db/events
  cellar refs --catalog prod --table db.events
  cellar files --table db.events --ref exp
  cellar snapshot --table db.events --id 4242
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--location", "-l", help="Table location (direct path access)")
    common.add_argument("--catalog", "-c", help="Catalog name from the catalog file")
    common.add_argument("--table", "-t", help="Table identifier, e.g. db.events")
    common.add_argument("--config", help="Catalog file (default: $CELLAR_CONFIG or ~/.cellar.yaml)")
    common.add_argument(
        "--property",
        "-P",
        action="append",
        metavar="KEY=VALUE",
        help="Extra FileIO/catalog property (repeatable)",
    )
    common.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")
    subparsers.add_parser("history", parents=[common], help="Show snapshot history")
    subparsers.add_parser("refs", parents=[common], help="Show branches and tags")
    files_parser = subparsers.add_parser("files", parents=[common], help="List live data files")
    files_parser.add_argument("--ref", default=MAIN_BRANCH, help="Branch or tag (default: main)")
    snapshot_parser = subparsers.add_parser("snapshot", parents=[common], help="Show one snapshot")
    snapshot_parser.add_argument("--ref", default=MAIN_BRANCH, help="Branch or tag (default: main)")
    snapshot_parser.add_argument("--id", type=int, dest="snapshot_id", help="Snapshot id")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )

    try:
        with build_loader(args) as loader:
            table = loader.load_table()
            if args.command == "history":
                show_history(table)
            elif args.command == "refs":
                show_refs(table)
            elif args.command == "files":
                show_files(table, args.ref)
            elif args.command == "snapshot":
                show_snapshot(table, args.ref, args.snapshot_id)
    except (CellarError, KeyError, ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error:[/red] {e}")
        return 1

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
