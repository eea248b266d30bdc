"""Schema initialization and table introspection."""

from __future__ import annotations

import sqlite3

CURRENT_VERSION = 1

PIPELINE_TABLES: tuple[str, ...] = ("threads", "messages", "chunks", "rate_limits")


def initialize(conn: sqlite3.Connection) -> None:
    """Initialize the database schema via the migration runner (idempotent)."""
    from threadrag.db.migrations import run_migrations

    run_migrations(conn)


def schema_version(conn: sqlite3.Connection) -> int:
    """Return the highest applied migration version (0 for a fresh file)."""
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row and row[0] is not None else 0


def list_vec_tables(conn: sqlite3.Connection) -> list[str]:
    """Return the names of all registered vec_chunks_* virtual tables."""
    rows = conn.execute("SELECT table_name FROM vec_indexes ORDER BY table_name").fetchall()
    return [r[0] for r in rows]
