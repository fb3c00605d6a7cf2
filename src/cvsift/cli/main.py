"""cvsift CLI entry point."""

from __future__ import annotations

import importlib.metadata
import logging
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler

from cvsift.cli.ingest import ingest_cmd, preview_cmd
from cvsift.cli.init import init_cmd
from cvsift.cli.query import analyze_cmd, query_cmd
from cvsift.cli.remove import remove_cmd, reset_cmd
from cvsift.cli.status import models_cmd, status_cmd


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"cvsift {_installed_version()}")
        raise typer.Exit()


def _installed_version() -> str:
    try:
        return importlib.metadata.version("cvsift")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False, markup=False)],
        force=True,
    )
    # litellm and httpx are chatty at DEBUG; keep them at WARNING.
    for name in ("LiteLLM", "litellm", "httpx"):
        logging.getLogger(name).setLevel(logging.WARNING)


app = typer.Typer(
    name="cvsift",
    help=(
        "cvsift: resume ingestion, retrieval and LLM suitability analysis.\n\n"
        "  cvsift ingest   Index PDFs (file, directory, zip or URL).\n"
        "  cvsift analyze  Rank matching resumes and assess them against a role."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log debug output (rate limits, fallbacks)."),
    ] = False,
) -> None:
    """cvsift: resume ingestion, retrieval and LLM suitability analysis."""
    _configure_logging(verbose)


app.command("init")(init_cmd)
app.command("ingest")(ingest_cmd)
app.command("preview")(preview_cmd)
app.command("query")(query_cmd)
app.command("analyze")(analyze_cmd)
app.command("status")(status_cmd)
app.command("models")(models_cmd)
app.command("remove")(remove_cmd)
app.command("reset")(reset_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed cvsift version."""
    typer.echo(f"cvsift {_installed_version()}")


if __name__ == "__main__":
    app()
