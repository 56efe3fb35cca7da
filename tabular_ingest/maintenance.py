#!/usr/bin/env python3
"""
Maintenance console for import data consistency.

Usage:
    python -m tabular_ingest.maintenance find-hanging
    python -m tabular_ingest.maintenance find-orphaned
    python -m tabular_ingest.maintenance cleanup-hanging [--include-processing] [--yes]
    python -m tabular_ingest.maintenance cleanup-orphaned [--yes]
    python -m tabular_ingest.maintenance delete-import <import_id> [--yes]
"""
import argparse
import asyncio
import sys
from typing import List, Optional, Sequence

from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from tabular_ingest.core.config import settings
from tabular_ingest.core.errors import ImportNotFoundError
from tabular_ingest.core.logging_config import configure_logging
from tabular_ingest.db.documents import DocumentStore, build_document_store
from tabular_ingest.domain.imports.reconciliation import ImportReconciler, OrphanReport


class MaintenanceConsole:
    """Runs reconciliation scans and cleanups and renders their results."""

    def __init__(self, store: DocumentStore, console: Optional[Console] = None, assume_yes: bool = False):
        self.reconciler = ImportReconciler(store)
        self.console = console or Console()
        self.assume_yes = assume_yes

    def _confirm(self, question: str) -> bool:
        if self.assume_yes:
            return True
        return Confirm.ask(question, console=self.console, default=False)

    def _print_hanging(self, documents: List[dict]) -> None:
        if not documents:
            self.console.print("[green]No hanging imports found.[/green]")
            return

        table = Table(title=f"Hanging imports ({len(documents)})")
        table.add_column("Import ID", style="cyan", no_wrap=True)
        table.add_column("File")
        table.add_column("Status")
        table.add_column("Valid rows", justify="right")
        table.add_column("Processed at")
        for doc in documents:
            table.add_row(
                str(doc.get("import_id") or doc.get("id")),
                str(doc.get("file_name", "")),
                str(doc.get("status", "")),
                str(doc.get("valid_rows", "")),
                str(doc.get("processed_at", "")),
            )
        self.console.print(table)

    def _print_orphans(self, report: OrphanReport) -> None:
        if not report.total:
            self.console.print("[green]No orphaned data found.[/green]")
            return

        table = Table(title=f"Orphaned data ({report.total} documents)")
        table.add_column("Import ID", style="cyan", no_wrap=True)
        table.add_column("Rows", justify="right")
        table.add_column("Content documents", justify="right")
        for import_id, (rows, content) in report.counts_by_import().items():
            table.add_row(import_id, str(rows), str(content))
        self.console.print(table)

    async def find_hanging(self) -> int:
        documents = await self.reconciler.find_hanging_imports()
        self._print_hanging(documents)
        return len(documents)

    async def find_orphaned(self) -> int:
        report = await self.reconciler.find_orphaned_data()
        self._print_orphans(report)
        return report.total

    async def cleanup_hanging(self, include_processing: bool = False) -> int:
        documents = await self.reconciler.find_hanging_imports()
        self._print_hanging(documents)
        if not documents:
            return 0
        if not self._confirm("Delete these hanging imports?"):
            self.console.print("[yellow]Aborted.[/yellow]")
            return 0

        result = await self.reconciler.cleanup_hanging_imports(include_processing=include_processing)
        self.console.print(
            f"[green]Deleted {result.deleted} hanging imports[/green] "
            f"({result.skipped} still processing skipped, {result.failed} failed)"
        )
        return 1 if result.failed else 0

    async def cleanup_orphaned(self) -> int:
        report = await self.reconciler.find_orphaned_data()
        self._print_orphans(report)
        if not report.total:
            return 0
        if not self._confirm(f"Delete {report.total} orphaned documents?"):
            self.console.print("[yellow]Aborted.[/yellow]")
            return 0

        result = await self.reconciler.cleanup_orphaned_data()
        self.console.print(f"[green]Deleted {result.deleted} orphaned documents[/green] ({result.failed} failed)")
        return 1 if result.failed else 0

    async def delete_import(self, import_id: str) -> int:
        if not self._confirm(f"Delete import {import_id} and all of its rows?"):
            self.console.print("[yellow]Aborted.[/yellow]")
            return 0
        try:
            result = await self.reconciler.delete_import(import_id)
        except ImportNotFoundError:
            self.console.print(f"[red]Import {import_id} not found.[/red]")
            return 1

        self.console.print(
            f"[green]Deleted import {result.import_id}[/green]: {result.deleted_rows} rows, "
            f"{result.deleted_content} content documents, {result.failed_deletions} failed deletions"
        )
        return 1 if result.failed_deletions else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Find and repair inconsistent import data.")
    parser.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation before deleting")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL for this run")

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("find-hanging", help="List imports whose metadata has no rows")
    subparsers.add_parser("find-orphaned", help="List rows and content whose import metadata is gone")

    cleanup_hanging = subparsers.add_parser("cleanup-hanging", help="Delete hanging import metadata")
    cleanup_hanging.add_argument(
        "--include-processing",
        action="store_true",
        help="Also delete imports that are still marked as processing",
    )
    subparsers.add_parser("cleanup-orphaned", help="Delete orphaned rows and content documents")

    delete_import = subparsers.add_parser("delete-import", help="Delete one import and all of its data")
    delete_import.add_argument("import_id")
    return parser


async def run(args: argparse.Namespace, store: Optional[DocumentStore] = None,
              console: Optional[Console] = None) -> int:
    if store is None:
        store = build_document_store(settings.document_store_backend)
    maintenance = MaintenanceConsole(store, console=console, assume_yes=args.yes)

    if args.command == "find-hanging":
        await maintenance.find_hanging()
        return 0
    if args.command == "find-orphaned":
        await maintenance.find_orphaned()
        return 0
    if args.command == "cleanup-hanging":
        return await maintenance.cleanup_hanging(include_processing=args.include_processing)
    if args.command == "cleanup-orphaned":
        return await maintenance.cleanup_orphaned()
    if args.command == "delete-import":
        return await maintenance.delete_import(args.import_id)
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    console = Console()
    configure_logging(args.log_level or settings.log_level, rich_console=console)
    return asyncio.run(run(args, console=console))


if __name__ == "__main__":
    sys.exit(main())
