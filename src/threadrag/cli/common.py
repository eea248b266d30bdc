"""Helpers shared by the threadrag CLI commands: settings, store handle, logging."""

from __future__ import annotations

import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from threadrag.cli.errors import err_invalid_config
from threadrag.config import ConfigError, ThreadragConfig, load_config, validate_config
from threadrag.db.connection import Database

console = Console()

_NOISY_LOGGERS = ("LiteLLM", "litellm", "httpx", "httpcore", "openai")


def setup_logging(verbose: bool = False) -> None:
    """Route library logging through rich. ``verbose`` switches to DEBUG."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def load_settings(db: Path | None = None) -> ThreadragConfig:
    """Load layered config, apply ``--db`` and validate. Exits 1 on invalid config."""
    try:
        cfg = load_config()
    except ConfigError as exc:
        console.print(err_invalid_config(str(exc)))
        raise typer.Exit(1) from exc
    if db is not None:
        cfg.database.path = str(db)
    return cfg


def check_settings(cfg: ThreadragConfig) -> None:
    """Validate *cfg* after CLI overrides are applied. Exits 1 on invalid config."""
    try:
        validate_config(cfg)
    except ConfigError as exc:
        console.print(err_invalid_config(str(exc)))
        raise typer.Exit(1) from exc


def open_db(cfg: ThreadragConfig) -> Database:
    """Open (or create) the configured database and run migrations."""
    db = Database(Path(cfg.database.path))
    db.open()
    return db
