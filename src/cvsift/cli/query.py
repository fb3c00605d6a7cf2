"""cvsift query / analyze: rank indexed resumes and assess them against a role."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from cvsift.cli._runtime import load_cli_config, require_api_key, run_with_service
from cvsift.rag.analysis import AnalysisResult
from cvsift.rag.retriever import QueryResult
from cvsift.service import SiftService

console = Console()


def query_cmd(
    text: Annotated[str, typer.Argument(help="What to look for, e.g. 'backend engineer'.")],
    api_key: Annotated[
        str | None,
        typer.Option("--api-key", envvar="CVSIFT_API_KEY", help="Embedding provider API key."),
    ] = None,
    top_k: Annotated[
        int | None,
        typer.Option("--top-k", "-k", help="Number of chunks to retrieve."),
    ] = None,
    show_chunks: Annotated[
        bool,
        typer.Option("--chunks", help="Also list the matching chunks."),
    ] = False,
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to .cvsift.db."),
    ] = None,
) -> None:
    """Rank indexed resumes by similarity to TEXT."""
    key = require_api_key(api_key)
    cfg = load_cli_config(db)

    async def _query(sift: SiftService) -> QueryResult:
        return await sift.query(text, key, top_k=top_k)

    result = run_with_service(cfg, _query)
    if not result.sources:
        console.print("[yellow]No matches.[/] Ingest resumes first:  cvsift ingest --source <path>")
        return

    table = Table(title=f"Sources for: {text}", show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Source")
    table.add_column("Chunks", justify="right")
    table.add_column("Avg score", justify="right")
    for i, src in enumerate(result.sources, 1):
        table.add_row(str(i), src.source, str(src.matched_chunks), f"{src.average_score:.3f}")
    console.print(table)

    if show_chunks:
        for chunk in result.chunks:
            console.print(
                f"\n[bold]{chunk.file_name}[/] chunk {chunk.chunk_index} "
                f"[dim](score {chunk.score:.3f})[/]"
            )
            console.print(chunk.text[:400])


def analyze_cmd(
    text: Annotated[str, typer.Argument(help="Retrieval query selecting the resumes to assess.")],
    job: Annotated[
        str | None,
        typer.Option("--job", "-j", help="Job context to assess against (default: standard)."),
    ] = None,
    api_key: Annotated[
        str | None,
        typer.Option("--api-key", envvar="CVSIFT_API_KEY", help="LLM provider API key."),
    ] = None,
    tier: Annotated[
        str | None,
        typer.Option("--tier", help="basic or pro (prompt size and answer budget)."),
    ] = None,
    model: Annotated[
        str | None,
        typer.Option("--model", "-m", help="Chat model; falls back automatically if missing."),
    ] = None,
    top_k: Annotated[
        int | None,
        typer.Option("--top-k", "-k", help="Number of chunks to retrieve."),
    ] = None,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print the result as JSON."),
    ] = False,
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to .cvsift.db."),
    ] = None,
) -> None:
    """Retrieve resumes matching TEXT and assess their suitability for --job."""
    key = require_api_key(api_key)
    cfg = load_cli_config(db)

    async def _analyze(sift: SiftService) -> AnalysisResult | None:
        found = await sift.query(text, key, top_k=top_k)
        if not found.chunks:
            return None
        return await sift.analyze(found.chunks, job, key, model=model, tier=tier)

    result = run_with_service(cfg, _analyze)
    if result is None:
        console.print("[yellow]No matches.[/] Ingest resumes first:  cvsift ingest --source <path>")
        return

    if as_json:
        payload = {
            "candidates": [
                {**c.to_dict(), "cached": c.cached} for c in result.candidates
            ],
            "summary": result.summary,
            "model": result.model,
            "degraded": result.degraded,
        }
        typer.echo(json.dumps(payload, indent=2))
        return

    if result.candidates:
        table = Table(title="Candidates", show_header=True, header_style="bold")
        table.add_column("Source")
        table.add_column("Score", justify="right")
        table.add_column("Suitable")
        table.add_column("Justification")
        for c in result.candidates:
            flag = "[green]yes[/]" if c.suitable else "[red]no[/]"
            cached = " [dim](cached)[/]" if c.cached else ""
            table.add_row(c.source + cached, f"{c.score:g}", flag, c.justification)
        console.print(table)

    title = "[bold]Summary[/]"
    if result.model:
        title += f" [dim]({result.model})[/]"
    if result.degraded:
        console.print("[yellow]⚠ The model did not return structured JSON; raw answer below.[/]")
    console.print(Panel(result.summary or "(empty)", title=title, expand=False))
