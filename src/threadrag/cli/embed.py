"""threadrag embed — backfill vectors for chunks that have none."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.progress import Progress, SpinnerColumn, TextColumn

from threadrag.cli.common import check_settings, console, load_settings, open_db
from threadrag.cli.errors import (
    err_dimension_mismatch,
    err_embedding_failed,
    err_invalid_config,
    err_no_api_key,
)
from threadrag.db.repository import Repository
from threadrag.db.vectors import DimensionMismatchError
from threadrag.ingest.embed_backfill import BackfillStats, EmbeddingBackfiller
from threadrag.rag.llm_client import EmbeddingError, provider_of, validate_api_key


def _parse_filters(values: list[str]) -> dict[str, str | int]:
    """Parse repeated ``--filter key=value`` options."""
    result: dict[str, str | int] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid --filter '{item}'. Use key=value.")
        key = key.strip()
        result[key] = int(value) if key == "chunk_index" else value
    return result


def embed_cmd(
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the threadrag database."),
    ] = None,
    model: Annotated[
        str | None,
        typer.Option("--model", help="LiteLLM embedding model (provider/model)."),
    ] = None,
    batch_size: Annotated[
        int | None,
        typer.Option("--batch-size", help="Chunks per provider call."),
    ] = None,
    delay_ms: Annotated[
        int | None,
        typer.Option("--delay-ms", help="Pause between batches in milliseconds."),
    ] = None,
    max_chunks: Annotated[
        int | None,
        typer.Option("--max-chunks", help="Stop after this many chunks (0 = all)."),
    ] = None,
    filters: Annotated[
        list[str] | None,
        typer.Option("--filter", help="Only embed chunks matching key=value (repeatable)."),
    ] = None,
) -> None:
    """Embed every chunk that has no vector yet."""
    cfg = load_settings(db)
    em = cfg.embedding
    if model is not None:
        em.model = model
    if batch_size is not None:
        em.batch_size = batch_size
    if delay_ms is not None:
        em.delay_ms = delay_ms
    if max_chunks is not None:
        em.max_chunks = max_chunks
    if filters:
        try:
            em.filter = {**em.filter, **_parse_filters(filters)}
        except ValueError as exc:
            console.print(err_invalid_config(str(exc)))
            raise typer.Exit(1) from exc
    check_settings(cfg)

    try:
        validate_api_key(em.model)
    except EnvironmentError as exc:
        console.print(err_no_api_key(provider_of(em.model)))
        raise typer.Exit(1) from exc

    console.print(f"[bold]→ Embedding[/] [dim]({em.model}, batch {em.batch_size})[/]")
    database = open_db(cfg)
    try:
        backfiller = EmbeddingBackfiller(
            Repository(database.conn),
            em.model,
            batch_size=em.batch_size,
            delay=em.delay_ms / 1000,
            max_chunks=em.max_chunks,
            extra_filter=em.filter or None,
        )
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
            console=console,
        ) as prog:
            task = prog.add_task("Embedding…", total=None)

            def _on_batch(stats: BackfillStats) -> None:
                prog.update(task, description=f"Embedded {stats.processed:,} chunks")

            try:
                stats = backfiller.run(on_batch=_on_batch)
            except EmbeddingError as exc:
                console.print(err_embedding_failed(str(exc)))
                raise typer.Exit(1) from exc
            except DimensionMismatchError as exc:
                console.print(err_dimension_mismatch(str(exc)))
                raise typer.Exit(1) from exc
    finally:
        database.close()

    console.print(f"  [green]✓[/] {stats.processed:,} chunks embedded ({stats.batches} batches)")
    if stats.last_dims is not None:
        console.print(
            f"  Last observed embedding dimensions: [bold]{stats.last_dims}[/] "
            f"[dim]({stats.vec_table})[/]"
        )
    else:
        console.print("  [dim]No chunks were missing embeddings.[/]")
