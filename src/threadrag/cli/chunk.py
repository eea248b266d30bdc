"""threadrag chunk / prune-chunks — split pending messages into retrieval chunks."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from threadrag.cli.common import check_settings, console, load_settings, open_db
from threadrag.db.repository import Repository
from threadrag.ingest.chunker import MessageChunker, chunker_params


def chunk_cmd(
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the threadrag database."),
    ] = None,
    max_chars: Annotated[
        int | None,
        typer.Option("--max-chars", help="Maximum characters per chunk before overlap."),
    ] = None,
    overlap_chars: Annotated[
        int | None,
        typer.Option("--overlap-chars", help="Characters carried over from the previous chunk."),
    ] = None,
    batch_size: Annotated[
        int | None,
        typer.Option("--batch-size", help="Messages per batch."),
    ] = None,
    max_messages: Annotated[
        int,
        typer.Option("--max-messages", help="Stop after this many messages (0 = all)."),
    ] = 0,
    reset: Annotated[
        bool,
        typer.Option("--reset", help="Re-queue every message before chunking."),
    ] = False,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompts."),
    ] = False,
) -> None:
    """Chunk every message that has not been chunked yet."""
    cfg = load_settings(db)
    ch = cfg.chunking
    if max_chars is not None:
        ch.max_chars = max_chars
    if overlap_chars is not None:
        ch.overlap_chars = overlap_chars
    if batch_size is not None:
        ch.batch_messages = batch_size
    check_settings(cfg)

    database = open_db(cfg)
    try:
        repo = Repository(database.conn)
        if reset:
            if not yes and not typer.confirm(
                "  Re-queue all messages for chunking?", default=False
            ):
                console.print("  [dim]Skipped.[/]")
                raise typer.Exit(0)
            n = repo.reset_chunking()
            console.print(f"  [yellow]↻[/] Re-queued {n:,} messages")

        params = chunker_params(ch.max_chars, ch.overlap_chars)
        console.print(f"[bold]→ Chunking[/] [dim](max:overlap {params})[/]")
        stats = MessageChunker(
            repo,
            max_chars=ch.max_chars,
            overlap_chars=ch.overlap_chars,
            batch_size=ch.batch_messages,
            max_messages=max_messages,
        ).run()
    finally:
        database.close()

    console.print(
        f"  [green]✓[/] {stats.messages:,} messages → {stats.chunks:,} chunks "
        f"({stats.batches} batches)"
    )
    if stats.empty_messages:
        console.print(f"  [dim]{stats.empty_messages} messages had no text to chunk[/]")


def prune_chunks_cmd(
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the threadrag database."),
    ] = None,
    max_chars: Annotated[
        int | None,
        typer.Option("--max-chars", help="Chunking max_chars to keep."),
    ] = None,
    overlap_chars: Annotated[
        int | None,
        typer.Option("--overlap-chars", help="Chunking overlap_chars to keep."),
    ] = None,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompts."),
    ] = False,
) -> None:
    """Delete chunks (and their vectors) made with other chunking parameters."""
    cfg = load_settings(db)
    if max_chars is not None:
        cfg.chunking.max_chars = max_chars
    if overlap_chars is not None:
        cfg.chunking.overlap_chars = overlap_chars
    check_settings(cfg)
    keep = chunker_params(cfg.chunking.max_chars, cfg.chunking.overlap_chars)

    database = open_db(cfg)
    try:
        repo = Repository(database.conn)
        by_params = repo.count_chunks_by_params()
        stale = sum(n for p, n in by_params.items() if p != keep)
        if stale == 0:
            console.print(f"  [green]✓[/] No stale chunks (all chunks use {keep})")
            return
        if not yes and not typer.confirm(
            f"  Delete {stale:,} chunks not produced with {keep}?", default=False
        ):
            console.print("  [dim]Skipped.[/]")
            return
        deleted = repo.prune_chunks(keep)
    finally:
        database.close()

    console.print(f"  [green]✓[/] Deleted {deleted:,} stale chunks")
