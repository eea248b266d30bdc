"""threadrag CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from threadrag.cli.chunk import chunk_cmd, prune_chunks_cmd
from threadrag.cli.common import setup_logging
from threadrag.cli.embed import embed_cmd
from threadrag.cli.ingest import ingest_cmd
from threadrag.cli.init import init_cmd
from threadrag.cli.query import ask_cmd, purge_rate_limits_cmd, retrieve_cmd
from threadrag.cli.status import status_cmd


def _installed_version() -> str:
    try:
        return importlib.metadata.version("threadrag")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"threadrag {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="threadrag",
    help=(
        "threadrag — email-thread retrieval pipeline.\n\n"
        "  threadrag ingest   Mirror dataset rows into threads and messages.\n"
        "  threadrag chunk    Split messages into overlapping chunks.\n"
        "  threadrag embed    Backfill vectors for new chunks.\n"
        "  threadrag retrieve Nearest chunks for a query."
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
        typer.Option("--verbose", "-v", help="Show debug logging."),
    ] = False,
) -> None:
    """threadrag — email-thread retrieval pipeline."""
    setup_logging(verbose)


app.command("init")(init_cmd)
app.command("ingest")(ingest_cmd)
app.command("chunk")(chunk_cmd)
app.command("embed")(embed_cmd)
app.command("retrieve")(retrieve_cmd)
app.command("ask")(ask_cmd)
app.command("status")(status_cmd)
app.command("prune-chunks")(prune_chunks_cmd)
app.command("purge-rate-limits")(purge_rate_limits_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed threadrag version."""
    typer.echo(f"threadrag {_installed_version()}")


if __name__ == "__main__":
    app()
