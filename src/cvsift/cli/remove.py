"""cvsift remove / reset: source lifecycle management.

remove deletes a source and everything derived from it:
  - documents discovered through the source
  - their cached analyses
  - their chunk vectors

reset drops every vector and marks all documents unindexed, keeping sources,
documents and cached analyses (use it after switching embedding provider).

Usage:
  cvsift remove --source cvs/alice.pdf
  cvsift remove --source 3f2a9c --yes
  cvsift reset --yes
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from cvsift.cli._runtime import load_cli_config, run_with_service
from cvsift.cli.errors import err_no_db, err_source_not_found
from cvsift.service import RemovalReport, SiftService

console = Console()


def remove_cmd(
    source: Annotated[
        str,
        typer.Option("--source", "-s", help="Source location, URL or id (prefix)."),
    ],
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to .cvsift.db."),
    ] = None,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompt."),
    ] = False,
) -> None:
    """Remove a source, its documents, cached analyses and vectors."""
    cfg = load_cli_config(db)
    if not Path(cfg.storage.db_path).exists():
        console.print(err_no_db(cfg.storage.db_path))
        raise typer.Exit(1)

    async def _remove(sift: SiftService) -> RemovalReport | None:
        existing = sift.find_source(source)
        if existing is None:
            return None
        docs = sift.registry.list_documents(existing.id)
        console.print(f"\nRemove source: [bold]{existing.value}[/]")
        console.print(f"  Documents: {len(docs)}")
        if not yes and not typer.confirm("Confirm removal?", default=False):
            console.print("[dim]Cancelled.[/]")
            raise typer.Exit(0)
        return await sift.remove_source(existing.id)

    report = run_with_service(cfg, _remove)
    if report is None:
        console.print(err_source_not_found(source))
        raise typer.Exit(0)

    console.print(f"\n[green]✓[/] Removed: {report.source.value}")
    console.print(f"  {report.documents} document(s), {report.vectors} vector(s) deleted")


def reset_cmd(
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to .cvsift.db."),
    ] = None,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompt."),
    ] = False,
) -> None:
    """Drop all vectors and mark every document unindexed."""
    cfg = load_cli_config(db)
    if not Path(cfg.storage.db_path).exists():
        console.print(err_no_db(cfg.storage.db_path))
        raise typer.Exit(1)
    if not yes and not typer.confirm(
        "Drop all vectors? Documents must be re-ingested afterwards.", default=False
    ):
        console.print("[dim]Cancelled.[/]")
        raise typer.Exit(0)

    async def _reset(sift: SiftService) -> int:
        return await sift.reset()

    cleared = run_with_service(cfg, _reset)
    console.print(f"[green]✓[/] Vector store reset; {cleared} document(s) marked for re-ingest.")
