"""Actionable rich error messages for the cvsift CLI.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from cvsift.cli.errors import err_no_api_key, render_error
    console.print(err_no_api_key())
    raise typer.Exit(1)
"""

from __future__ import annotations

from cvsift.errors import (
    AnalysisFailed,
    CvSiftError,
    EmbeddingFailed,
    EmptyDocument,
    ExtractionFailed,
    IngestError,
    InvalidQuery,
    RateLimited,
    StorageFailed,
)
from cvsift.ingest.loader import SsrfError


def err_no_api_key() -> str:
    """No API key given on the command line or in the environment."""
    return (
        "[red]Error:[/] No API key provided.\n"
        "  Pass:  --api-key <key>\n"
        "  Or set:  export CVSIFT_API_KEY=<key>   (Gemini AIza…, OpenAI sk-…, Anthropic sk-ant-…)"
    )


def err_no_db(db_path: str = ".cvsift.db") -> str:
    """No database at the configured path."""
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Run:  cvsift ingest --source <path-or-url>"
    )


def err_config(message: str) -> str:
    """Config file is invalid or contains an API key."""
    return (
        f"[red]Error:[/] Invalid configuration.\n"
        f"  {message}\n"
        "  Fix cvsift.yaml or ~/.cvsift/config.yaml and retry."
    )


def err_rate_limited(exc: RateLimited) -> str:
    """Provider quota exhausted or local cooldown active."""
    who = f"'{exc.provider}'" if exc.provider else "The provider"
    return (
        f"[yellow]Rate limited:[/] {who} is out of quota.\n"
        f"  Retry in {exc.retry_after}s. No request was sent while the cooldown lasts."
    )


def err_empty_query() -> str:
    return (
        "[red]Error:[/] Query text is empty.\n"
        '  Example:  cvsift query "senior backend engineer"'
    )


def err_ingest_failed(exc: IngestError) -> str:
    where = f" '{exc.location}'" if exc.location else ""
    if isinstance(exc, ExtractionFailed):
        hint = "Check that the file is a readable, non-encrypted PDF."
    elif isinstance(exc, EmptyDocument):
        hint = "The PDF contains no extractable text (scanned image?)."
    elif isinstance(exc, EmbeddingFailed):
        hint = "Check the API key and provider status, then re-run the same ingest."
    elif isinstance(exc, StorageFailed):
        hint = "Run:  cvsift reset  if the embedding provider changed, then re-ingest."
    else:
        hint = "Re-run the same ingest; indexed documents are skipped."
    return f"[red]Error:[/] Ingest failed{where}: {exc}\n  {hint}"


def err_analysis_failed(exc: AnalysisFailed) -> str:
    return (
        f"[red]Error:[/] Analysis failed: {exc.reason}\n"
        "  Check the API key, or pick another model with --model (see: cvsift models)."
    )


def err_source_not_found(source: str) -> str:
    """Source not found in database."""
    return (
        f"[yellow]Source not found:[/] '{source}' is not in the database.\n"
        "  Run:  cvsift status --sources  to see all known sources."
    )


def render_error(exc: CvSiftError) -> str:
    """Map any core error to its user-facing message."""
    if isinstance(exc, RateLimited):
        return err_rate_limited(exc)
    if isinstance(exc, InvalidQuery):
        return err_empty_query()
    if isinstance(exc, SsrfError):
        return f"[red]Error:[/] {exc}\n  Use a publicly reachable URL."
    if isinstance(exc, IngestError):
        return err_ingest_failed(exc)
    if isinstance(exc, AnalysisFailed):
        return err_analysis_failed(exc)
    return f"[red]Error:[/] {exc}"
