"""Shared command plumbing: config loading, service lifetime, error mapping."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

import typer
from rich.console import Console

from cvsift.cli.errors import err_config, err_no_api_key, render_error
from cvsift.config import ConfigError, CvSiftConfig, load_config
from cvsift.errors import CvSiftError
from cvsift.service import SiftService

T = TypeVar("T")

console = Console()


def load_cli_config(db: Path | None = None) -> CvSiftConfig:
    """Load layered config; a --db flag overrides every other layer."""
    try:
        cfg = load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from exc
    if db is not None:
        cfg.storage.db_path = str(db)
    return cfg


def require_api_key(api_key: str | None) -> str:
    if not api_key or not api_key.strip():
        console.print(err_no_api_key())
        raise typer.Exit(1)
    return api_key.strip()


def run_with_service(cfg: CvSiftConfig, fn: Callable[[SiftService], Awaitable[T]]) -> T:
    """Open the service, await ``fn(service)``, close it; core errors exit 1."""

    async def _main() -> T:
        async with SiftService.open(cfg) as sift:
            return await fn(sift)

    try:
        return asyncio.run(_main())
    except CvSiftError as exc:
        console.print(render_error(exc))
        raise typer.Exit(1) from exc
