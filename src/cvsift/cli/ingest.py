"""cvsift ingest / preview: index PDF resumes into .cvsift.db.

Location forms accepted by --source:
  https:// / http://     → one downloaded PDF
  directory              → every .pdf below it (recursive), plus PDFs in .zip files
  archive.zip            → every .pdf entry
  archive.zip/entry.pdf  → a single entry
  file.pdf               → the file itself
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from cvsift.cli._runtime import load_cli_config, require_api_key, run_with_service
from cvsift.cli.errors import render_error
from cvsift.ingest.pipeline import BatchReport, PreviewFile
from cvsift.service import SiftService

console = Console()


def ingest_cmd(
    source: Annotated[
        list[str],
        typer.Option("--source", "-s", help="PDF, directory, zip or URL (repeatable)."),
    ],
    api_key: Annotated[
        str | None,
        typer.Option("--api-key", envvar="CVSIFT_API_KEY", help="Embedding provider API key."),
    ] = None,
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to .cvsift.db (created if missing)."),
    ] = None,
    chunk_size: Annotated[
        int | None,
        typer.Option("--chunk-size", help="Approximate chunk size in tokens."),
    ] = None,
    overlap: Annotated[
        int | None,
        typer.Option("--overlap", help="Approximate chunk overlap in tokens."),
    ] = None,
) -> None:
    """Ingest one or more locations: extract, chunk, embed and index new PDFs."""
    key = require_api_key(api_key)
    cfg = load_cli_config(db)

    async def _ingest(sift: SiftService) -> list[tuple[str, BatchReport]]:
        reports: list[tuple[str, BatchReport]] = []
        for location in source:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                transient=True,
                console=console,
            ) as prog:
                prog.add_task(f"Ingesting {location}…", total=None)
                report = await sift.ingest(
                    location, key, chunk_size=chunk_size, overlap=overlap
                )
            reports.append((location, report))
        return reports

    reports = run_with_service(cfg, _ingest)

    any_failed = False
    for location, report in reports:
        console.print(f"\n[bold]→ {location}[/]")
        for loc in report.processed:
            console.print(f"  [green]✓[/] {loc}")
        for loc in report.skipped:
            console.print(f"  [dim]↷ Unchanged, already indexed: {loc}[/]")
        for loc, exc in report.failed:
            any_failed = True
            console.print(f"  [red]✗[/] {loc}")
            console.print("    " + render_error(exc).replace("\n", "\n    "))
        if report.total == 0:
            console.print("  [yellow]No PDFs found.[/]")
        console.print(
            f"  {len(report.processed)} processed, {len(report.skipped)} skipped, "
            f"{len(report.failed)} failed"
        )

    if any_failed:
        raise typer.Exit(1)


def preview_cmd(
    source: Annotated[
        str,
        typer.Argument(help="PDF, directory, zip or URL to inspect."),
    ],
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to .cvsift.db (created if missing)."),
    ] = None,
) -> None:
    """List the PDFs behind a location and whether they are indexed. No API calls."""
    cfg = load_cli_config(db)

    async def _preview(sift: SiftService) -> list[PreviewFile]:
        return await sift.preview(source)

    files = run_with_service(cfg, _preview)
    if not files:
        console.print("[yellow]No PDFs found.[/]")
        return

    table = Table(title=f"Preview: {source}", show_header=True, header_style="bold")
    table.add_column("File")
    table.add_column("Size", justify="right")
    table.add_column("Checksum")
    table.add_column("Indexed")
    for f in files:
        table.add_row(
            f.file_name,
            f"{f.size / 1024:.1f} KB",
            f.checksum[:12],
            "[green]yes[/]" if f.indexed else "[dim]no[/]",
        )
    console.print(table)
