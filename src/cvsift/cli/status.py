"""cvsift status / models: database overview, quota windows and known models."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from cvsift.cli._runtime import load_cli_config, require_api_key, run_with_service
from cvsift.cli.errors import err_no_db, render_error
from cvsift.db.models import Source
from cvsift.errors import CvSiftError
from cvsift.rate.quota import RateState
from cvsift.service import ServiceStatus, SiftService

console = Console()


def status_cmd(
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to .cvsift.db."),
    ] = None,
    sources: Annotated[
        bool,
        typer.Option("--sources", help="List every known source with its id."),
    ] = False,
) -> None:
    """Show documents, vectors, cached analyses and provider quota state."""
    cfg = load_cli_config(db)
    db_path = Path(cfg.storage.db_path)
    if not db_path.exists():
        console.print(
            Panel(
                err_no_db(str(db_path)),
                title="[bold]Database[/]",
                expand=False,
            )
        )
        raise typer.Exit(1)

    async def _status(sift: SiftService) -> tuple[ServiceStatus, list[Source]]:
        return sift.status(), sift.registry.list_sources()

    st, known = run_with_service(cfg, _status)

    size_mb = db_path.stat().st_size / (1024 * 1024)
    dims = st.dimensions if st.dimensions is not None else "-"
    lines = [
        f"Database:   {db_path} ({size_mb:.1f} MB, schema v{st.schema_version})",
        f"Sources:    [bold]{st.sources}[/]",
        f"Documents:  [bold]{st.documents}[/]  |  Indexed: [bold]{st.indexed}[/]",
        f"Vectors:    [bold]{st.vectors:,}[/]  |  Dimensions: {dims}",
        f"Analyses:   [bold]{st.analyses}[/] cached",
    ]
    console.print(Panel("\n".join(lines), title="[bold]Knowledge Base[/]", expand=False))

    if st.rate:
        console.print(_rate_table(st.rate))

    if sources:
        table = Table(title="Sources", show_header=True, header_style="bold")
        table.add_column("Id")
        table.add_column("Kind")
        table.add_column("Location")
        for s in known:
            table.add_row(s.id[:12], s.kind, s.value)
        console.print(table)


def _rate_table(states: dict[str, RateState]) -> Table:
    now = time.time()
    table = Table(title="Provider quota", show_header=True, header_style="bold")
    table.add_column("Scope")
    table.add_column("Requests", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Total tokens", justify="right")
    table.add_column("Cooldown")
    for scope, st in sorted(states.items()):
        remaining = st.cooldown_until - now
        cooldown = f"[yellow]{remaining:.0f}s[/]" if remaining > 0 else "[dim]-[/]"
        table.add_row(
            scope,
            str(st.requests_this_window),
            f"{st.tokens_this_window:,}",
            f"{st.total_tokens:,}",
            cooldown,
        )
    return table


def models_cmd(
    api_key: Annotated[
        str | None,
        typer.Option("--api-key", envvar="CVSIFT_API_KEY", help="Provider API key."),
    ] = None,
) -> None:
    """List the chat models known for the provider behind the API key."""
    key = require_api_key(api_key)
    try:
        provider, models = SiftService.list_models(key)
    except CvSiftError as exc:
        console.print(render_error(exc))
        raise typer.Exit(1) from exc
    console.print(f"Provider: [bold]{provider}[/]")
    if not models:
        console.print("[dim]No models listed by litellm for this provider.[/]")
        return
    for m in models:
        console.print(f"  {m}")
