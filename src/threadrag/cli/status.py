"""threadrag status command.

Shows pipeline progress: database stats, per-stage backlog, vector indexes,
chunking parameters in use and rate-limit buckets.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Annotated

import typer
from rich.panel import Panel
from rich.table import Table

from threadrag.cli.common import console
from threadrag.cli.errors import warn_stale_chunks
from threadrag.config import ConfigError, ThreadragConfig, load_config
from threadrag.db.connection import Database
from threadrag.db.repository import Repository
from threadrag.db.schema import schema_version
from threadrag.ingest.chunker import chunker_params


def status_cmd(
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the threadrag database."),
    ] = None,
) -> None:
    """Show pipeline status: threads, messages, chunks, vectors and backlog."""
    # status still reports with a broken threadrag.yaml
    try:
        cfg = load_config()
    except ConfigError:
        cfg = ThreadragConfig()
    db_path = db if db is not None else Path(cfg.database.path)

    _show_database_panel(db_path, cfg)
    if not db_path.exists():
        console.print(
            Panel(
                "[yellow]No database found.[/]\n"
                "  Run:  threadrag ingest",
                title="[bold]Pipeline[/]",
                expand=False,
            )
        )
        return

    database = Database(db_path)
    conn = database.open()
    try:
        repo = Repository(conn)
        _show_pipeline_panel(repo)
        _show_vector_panel(conn)
        _show_chunking_panel(repo, cfg)
        _show_rate_limit_line(conn)
    finally:
        database.close()


# ---------------------------------------------------------------------------
# Panel renderers
# ---------------------------------------------------------------------------


def _show_database_panel(db_path: Path, cfg: ThreadragConfig) -> None:
    db_info = f"{db_path}"
    if db_path.exists():
        size_mb = db_path.stat().st_size / (1024 * 1024)
        db_info = f"{db_path} ({size_mb:.1f} MB)"

    lines = [
        f"Database:   {db_info}",
        f"Dataset:    [bold]{cfg.dataset.dataset}[/] [dim]({cfg.dataset.split})[/]",
        f"Embedding:  {cfg.embedding.model}",
        f"Generation: {cfg.generation.model}",
    ]
    console.print(Panel("\n".join(lines), title="[bold]threadrag[/]", expand=False))


def _show_pipeline_panel(repo: Repository) -> None:
    table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
    table.add_column("Stage")
    table.add_column("Stored", justify="right")
    table.add_column("Pending", justify="right")

    table.add_row("Threads", f"{repo.count_threads():,}", "")
    table.add_row(
        "Messages", f"{repo.count_messages():,}", _pending(repo.count_pending_messages())
    )
    table.add_row(
        "Chunks", f"{repo.count_chunks():,}", _pending(repo.count_pending_chunks())
    )
    table.add_row("Embedded", f"{repo.count_embedded_chunks():,}", "")

    version = schema_version(repo.conn)
    console.print(
        Panel(table, title=f"[bold]Pipeline[/] [dim](schema v{version})[/]", expand=False)
    )


def _show_vector_panel(conn: sqlite3.Connection) -> None:
    rows = conn.execute(
        "SELECT model, dimensions, table_name FROM vec_indexes ORDER BY model"
    ).fetchall()
    if not rows:
        console.print(
            Panel(
                "[dim]No vector indexes yet.[/]\n"
                "  Run:  threadrag embed",
                title="[bold]Vectors[/]",
                expand=False,
            )
        )
        return

    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column("Model", style="bold")
    table.add_column("Dims", style="dim")
    table.add_column("Vectors", justify="right")
    for row in rows:
        count = conn.execute(
            f"SELECT COUNT(*) FROM [{row['table_name']}]"  # noqa: S608
        ).fetchone()[0]
        table.add_row(row["model"], f"{row['dimensions']}d", f"{count:,} vectors")
    console.print(Panel(table, title="[bold]Vectors[/]", expand=False))


def _show_chunking_panel(repo: Repository, cfg: ThreadragConfig) -> None:
    by_params = repo.count_chunks_by_params()
    if not by_params:
        return
    current = chunker_params(cfg.chunking.max_chars, cfg.chunking.overlap_chars)

    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column("Status", style="bold", width=3)
    table.add_column("Params")
    table.add_column("Chunks", justify="right")
    for params, n in sorted(by_params.items()):
        mark = "[green]✓[/]" if params == current else "[yellow]✗[/]"
        table.add_row(mark, params, f"{n:,}")
    console.print(
        Panel(table, title="[bold]Chunking[/] [dim](max:overlap)[/]", expand=False)
    )

    stale = sum(n for params, n in by_params.items() if params != current)
    if stale:
        console.print(warn_stale_chunks(stale, current))


def _show_rate_limit_line(conn: sqlite3.Connection) -> None:
    row = conn.execute("SELECT COUNT(*) FROM rate_limits").fetchone()
    count = row[0] if row else 0
    if count:
        console.print(f"[dim]Rate-limit buckets stored: {count:,}[/]")


def _pending(n: int) -> str:
    return f"[yellow]{n:,}[/]" if n else "[green]0[/]"
