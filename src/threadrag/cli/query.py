"""threadrag retrieve / ask / purge-rate-limits — the retrieval boundary from the shell.

retrieve and ask go through RetrievalService so the CLI sees exactly what the
UI sees: the per-client rate limit runs first and every outcome carries an
explicit status.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated

import typer
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from threadrag.cli.common import check_settings, console, load_settings, open_db
from threadrag.cli.errors import err_missing_salt, err_rate_limited, err_request_failed
from threadrag.config import ConfigError, ThreadragConfig, require_salt
from threadrag.db.connection import Database
from threadrag.db.models import ChunkFilter
from threadrag.db.repository import Repository
from threadrag.rag.rate_limit import RateLimiter, purge_expired
from threadrag.rag.service import STATUS_RATE_LIMITED, RetrievalService


def _build_service(cfg: ThreadragConfig) -> tuple[Database, RetrievalService]:
    try:
        salt = require_salt(cfg)
    except ConfigError as exc:
        console.print(err_missing_salt())
        raise typer.Exit(1) from exc
    database = open_db(cfg)
    conn = database.conn
    return database, RetrievalService(Repository(conn), RateLimiter(conn, salt), cfg)


def _fail(status: str, error: str | None) -> None:
    if status == STATUS_RATE_LIMITED:
        console.print(err_rate_limited())
    else:
        console.print(err_request_failed(status, error))
    raise typer.Exit(1)


def retrieve_cmd(
    query: Annotated[str, typer.Argument(help="Free-text query.")],
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the threadrag database."),
    ] = None,
    top_k: Annotated[
        int | None,
        typer.Option("--top-k", help="Number of hits to return (1-20)."),
    ] = None,
    num_candidates: Annotated[
        int | None,
        typer.Option("--num-candidates", help="Neighbours considered before truncation."),
    ] = None,
    thread_key: Annotated[
        str | None,
        typer.Option("--thread-key", help="Only search chunks of this thread."),
    ] = None,
    message_key: Annotated[
        str | None,
        typer.Option("--message-key", help="Only search chunks of this message."),
    ] = None,
    client_id: Annotated[
        str,
        typer.Option("--client-id", help="Client identifier used for rate limiting."),
    ] = "cli",
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print the raw response as JSON."),
    ] = False,
) -> None:
    """Retrieve the chunks most similar to QUERY."""
    cfg = load_settings(db)
    check_settings(cfg)
    database, service = _build_service(cfg)
    try:
        chunk_filter = ChunkFilter(thread_key=thread_key, message_key=message_key)
        response = service.retrieve(
            client_id,
            query,
            top_k=top_k,
            num_candidates=num_candidates,
            chunk_filter=chunk_filter or None,
        )
    finally:
        database.close()

    if as_json:
        typer.echo(json.dumps(response.to_dict(), ensure_ascii=False, indent=2))
        if not response.ok:
            raise typer.Exit(1)
        return
    if not response.ok:
        _fail(response.status, response.error)

    if not response.hits:
        console.print("[dim]No matching chunks.[/]")
    else:
        table = Table(show_header=True, header_style="bold", padding=(0, 1))
        table.add_column("#", style="dim", width=3)
        table.add_column("Score", justify="right")
        table.add_column("From")
        table.add_column("Subject")
        table.add_column("Text")
        for i, hit in enumerate(response.hits, start=1):
            meta = hit.metadata
            snippet = " ".join(hit.text.split())[:120]
            table.add_row(
                str(i),
                f"{hit.score:.3f}",
                escape(meta.get("sender") or ""),
                escape(meta.get("subject") or ""),
                escape(snippet),
            )
        console.print(table)
    console.print(
        f"[dim]top_k={response.meta['top_k']} "
        f"num_candidates={response.meta['num_candidates']} "
        f"model={response.meta['embed_model']} · {response.remaining} requests left[/]"
    )


def ask_cmd(
    question: Annotated[str, typer.Argument(help="Question about the corpus.")],
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the threadrag database."),
    ] = None,
    client_id: Annotated[
        str,
        typer.Option("--client-id", help="Client identifier used for rate limiting."),
    ] = "cli",
) -> None:
    """Answer QUESTION from retrieved chunks with the generation model."""
    cfg = load_settings(db)
    check_settings(cfg)
    database, service = _build_service(cfg)
    try:
        response = service.chat(client_id, question)
    finally:
        database.close()

    if not response.ok:
        _fail(response.status, response.error)

    console.print(Panel(escape(response.text), title="[bold]Answer[/]", expand=False))
    if response.citations:
        console.print("[bold]Sources[/]")
        for c in response.citations:
            header = " | ".join(
                part for part in (c.sender or "", c.subject or "", c.timestamp or "") if part
            )
            console.print(f"  [{c.index}] {escape(header)}")
            console.print(f"      [dim]{escape(c.snippet)}[/]")


def purge_rate_limits_cmd(
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the threadrag database."),
    ] = None,
) -> None:
    """Delete rate-limit buckets whose window has passed."""
    cfg = load_settings(db)
    database = open_db(cfg)
    try:
        removed = purge_expired(database.conn)
    finally:
        database.close()
    console.print(f"  [green]✓[/] Removed {removed:,} expired rate-limit buckets")
