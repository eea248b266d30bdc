"""threadrag ingest — mirror dataset rows into threads and messages.

Pages are fetched by offset from the dataset server and upserted; re-running
over the same rows is a no-op apart from refreshed timestamps.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.progress import Progress, SpinnerColumn, TextColumn

from threadrag.cli.common import check_settings, console, load_settings, open_db
from threadrag.cli.errors import err_dataset_fetch
from threadrag.db.repository import Repository
from threadrag.ingest.dataset_client import DatasetClient, DatasetFetchError
from threadrag.ingest.ingester import DatasetIngester, IngestStats


def ingest_cmd(
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the threadrag database (created if missing)."),
    ] = None,
    dataset: Annotated[
        str | None,
        typer.Option("--dataset", help="Dataset identifier on the dataset server."),
    ] = None,
    split: Annotated[
        str | None,
        typer.Option("--split", help="Dataset split."),
    ] = None,
    offset: Annotated[
        int | None,
        typer.Option("--offset", help="Row offset to start at."),
    ] = None,
    max_rows: Annotated[
        int | None,
        typer.Option("--max-rows", help="Stop after this many rows (0 = all)."),
    ] = None,
    page_size: Annotated[
        int | None,
        typer.Option("--page-size", help="Rows per page (1-100)."),
    ] = None,
    page_delay_ms: Annotated[
        int | None,
        typer.Option("--page-delay-ms", help="Pause between pages in milliseconds."),
    ] = None,
    store_raw: Annotated[
        bool | None,
        typer.Option("--store-raw/--no-store-raw", help="Keep each message's raw JSON."),
    ] = None,
) -> None:
    """Ingest dataset rows into threads and messages."""
    cfg = load_settings(db)
    ds = cfg.dataset
    if dataset is not None:
        ds.dataset = dataset
    if split is not None:
        ds.split = split
    if offset is not None:
        ds.start_offset = offset
    if max_rows is not None:
        ds.max_rows = max_rows
    if page_size is not None:
        ds.page_size = page_size
    if page_delay_ms is not None:
        ds.page_delay_ms = page_delay_ms
    if store_raw is not None:
        ds.store_raw = store_raw
    check_settings(cfg)

    console.print(
        f"[bold]→ {ds.dataset}[/] [dim]({ds.config}/{ds.split}, offset {ds.start_offset})[/]"
    )

    database = open_db(cfg)
    try:
        client = DatasetClient(ds.base_url, ds.dataset, ds.config, ds.split)
        ingester = DatasetIngester(
            Repository(database.conn),
            client,
            page_size=ds.page_size,
            start_offset=ds.start_offset,
            max_rows=ds.max_rows,
            page_delay=ds.page_delay_ms / 1000,
            store_raw=ds.store_raw,
        )
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
            console=console,
        ) as prog:
            task = prog.add_task("Fetching rows…", total=None)

            def _on_page(stats: IngestStats) -> None:
                total = f"/{stats.total_rows:,}" if stats.total_rows else ""
                prog.update(task, description=f"Rows {stats.last_offset:,}{total}")

            try:
                stats = ingester.run(on_page=_on_page)
            except DatasetFetchError as exc:
                console.print(err_dataset_fetch(str(exc), exc.offset))
                raise typer.Exit(1) from exc
    finally:
        database.close()

    console.print(
        f"  [green]✓[/] {stats.rows:,} rows · {stats.threads:,} threads · "
        f"{stats.messages:,} messages · {stats.pages} pages"
    )
    if stats.skipped_rows:
        console.print(f"  [yellow]✗ Skipped {stats.skipped_rows} malformed rows[/]")
    if stats.degraded_messages:
        console.print(
            f"  [yellow]✗ {stats.degraded_messages} messages stored with an empty body[/]"
        )
    console.print(f"  [dim]Next offset: {stats.last_offset}[/]")
