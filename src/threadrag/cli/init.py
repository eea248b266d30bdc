"""threadrag init — scaffold a working directory.

Creates:
  .threadrag.db            — empty store with schema
  threadrag.yaml           — project config with the defaults spelled out
  ~/.threadrag/config.yaml — global model config (created once, mode 0o600)
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from threadrag.cli.common import console
from threadrag.config import ensure_global_config
from threadrag.db.connection import Database

_DEFAULT_PROJECT_DIR = Path(".")

_PROJECT_TEMPLATE = """\
# threadrag project configuration — no secrets.
# Secrets come from environment variables:
#   export OPENAI_API_KEY=sk-...
#   export THREADRAG_RATE_LIMIT_SALT=<random string>

database:
  path: .threadrag.db

dataset:
  dataset: {dataset}
  config: default
  split: train
  page_size: 100

chunking:
  max_chars: 2000
  overlap_chars: 200

embedding:
  model: openai/text-embedding-3-small
  batch_size: 64
  delay_ms: 250

retrieval:
  top_k: 8
  token_budget: 6000

generation:
  model: openai/gpt-4o-mini

rate_limit:
  window_seconds: 60
  max_requests: 30
  retrieve_max_requests: 60
"""


def init_cmd(
    project_dir: Annotated[
        Path,
        typer.Argument(help="Directory to initialize. Defaults to current directory."),
    ] = _DEFAULT_PROJECT_DIR,
    dataset: Annotated[
        str,
        typer.Option("--dataset", help="Dataset identifier written to threadrag.yaml."),
    ] = "notesbymuneeb/epstein-emails",
    global_config: Annotated[
        Path | None,
        typer.Option("--global-config", hidden=True, help="Override global config path."),
    ] = None,
) -> None:
    """Create the database and a threadrag.yaml in PROJECT_DIR."""
    project_dir = project_dir.resolve()
    project_dir.mkdir(parents=True, exist_ok=True)

    yaml_path = project_dir / "threadrag.yaml"
    if yaml_path.exists():
        console.print("  [dim]threadrag.yaml already exists — kept[/]")
    else:
        yaml_path.write_text(_PROJECT_TEMPLATE.format(dataset=dataset), encoding="utf-8")
        console.print("  [green]✓[/] threadrag.yaml")

    db_path = project_dir / ".threadrag.db"
    with Database(db_path):
        pass
    console.print("  [green]✓[/] .threadrag.db")

    global_path = ensure_global_config(global_config)
    console.print(f"  [green]✓[/] {global_path}")

    console.print(
        "\n[bold]Next:[/]\n"
        "  export THREADRAG_RATE_LIMIT_SALT=<random string>\n"
        "  threadrag ingest && threadrag chunk && threadrag embed"
    )
