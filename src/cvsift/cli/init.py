"""cvsift init: project scaffold.

Creates:
  .cvsift.db               empty database with schema
  cvsift.yaml              project config with the defaults spelled out
  ~/.cvsift/config.yaml    global config (created once, mode 0o600)

and adds the local state files to an existing .gitignore.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from cvsift.config import ensure_global_config
from cvsift.db.connection import Database
from cvsift.db.schema import initialize

console = Console()

_DEFAULT_PROJECT_DIR = Path(".")

_PROJECT_YAML = """\
# cvsift project configuration. API keys do NOT belong here:
# pass --api-key or export CVSIFT_API_KEY.

storage:
  db_path: .cvsift.db
  rate_state_path: .cvsift/rate_state.json

ingest:
  chunk_size: 512      # tokens (approx. 4 chars per token)
  overlap: 50
  max_download_mb: 20

retrieval:
  top_k: 30

analysis:
  tier: basic          # basic | pro
  # model: gemini-1.5-flash

rate_limit:
  min_interval_ms: 250
  default_retry_seconds: 60
  completion:
    rpm: 5
    tpm: 30000
  embedding:
    rpm: 1500
    tpm: 1000000
"""


def init_cmd(
    project_dir: Annotated[
        Path,
        typer.Argument(help="Directory to initialize. Defaults to current directory."),
    ] = _DEFAULT_PROJECT_DIR,
    global_config: Annotated[
        Path | None,
        typer.Option("--global-config", hidden=True, help="Override global config path (for testing)."),
    ] = None,
) -> None:
    """Create the database and config files for a new cvsift project."""
    project_dir = project_dir.resolve()
    project_dir.mkdir(parents=True, exist_ok=True)

    console.print(f"\n[bold]Initializing cvsift in {project_dir} …[/]\n")

    db_path = project_dir / ".cvsift.db"
    conn = Database(db_path).connect()
    initialize(conn)
    conn.close()
    console.print("  [green]✓[/] .cvsift.db")

    cfg_path = project_dir / "cvsift.yaml"
    if cfg_path.exists():
        console.print("  [dim]↷ cvsift.yaml already exists, kept[/]")
    else:
        cfg_path.write_text(_PROJECT_YAML, encoding="utf-8")
        console.print("  [green]✓[/] cvsift.yaml")

    _update_gitignore(project_dir)

    global_path = ensure_global_config(global_config)
    console.print(f"  [green]✓[/] {global_path} (global config)")

    console.print("\nNext steps:")
    console.print("  1. export CVSIFT_API_KEY=<key>")
    console.print("  2. cvsift ingest --source <pdf|dir|zip|url>")
    console.print('  3. cvsift analyze "backend engineer" --job "Senior Python backend role"')


def _update_gitignore(project_dir: Path) -> None:
    """Add cvsift entries to .gitignore if it already exists."""
    gitignore = project_dir / ".gitignore"
    entries = [".cvsift.db", ".cvsift.db-wal", ".cvsift.db-shm", ".cvsift/"]

    if gitignore.exists():
        existing = gitignore.read_text(encoding="utf-8")
        to_add = [e for e in entries if e not in existing]
        if to_add:
            with gitignore.open("a", encoding="utf-8") as f:
                f.write("\n# cvsift\n")
                for entry in to_add:
                    f.write(f"{entry}\n")
            console.print("  [green]✓[/] .gitignore (updated with cvsift entries)")
