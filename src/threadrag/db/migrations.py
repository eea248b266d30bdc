"""Forward-only migration runner for the threadrag schema.

Vec tables (vec_chunks_*) are NOT migration-managed — use ensure_vec_table().
"""

from __future__ import annotations

import sqlite3

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_V1_SQL = """
CREATE TABLE IF NOT EXISTS threads (
    thread_key      TEXT PRIMARY KEY,
    thread_id       TEXT NOT NULL,
    source_file     TEXT NOT NULL,
    subject         TEXT,
    message_count   INTEGER,
    participants    TEXT NOT NULL DEFAULT '[]',
    created_at      DATETIME NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS messages (
    message_key     TEXT PRIMARY KEY,
    thread_key      TEXT NOT NULL,
    order_index     INTEGER NOT NULL,
    sender          TEXT,
    recipients      TEXT NOT NULL DEFAULT '[]',
    timestamp       TEXT,
    timestamp_raw   TEXT,
    subject         TEXT,
    body            TEXT NOT NULL DEFAULT '',
    raw             TEXT,
    chunked_at      TEXT,
    chunk_count     INTEGER,
    created_at      DATETIME NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_messages_thread_order ON messages (thread_key, order_index);
CREATE INDEX IF NOT EXISTS idx_messages_thread_ts ON messages (thread_key, timestamp);
CREATE INDEX IF NOT EXISTS idx_messages_chunked_at ON messages (chunked_at);

CREATE TABLE IF NOT EXISTS chunks (
    id              INTEGER PRIMARY KEY,
    chunk_key       TEXT NOT NULL UNIQUE,
    thread_key      TEXT NOT NULL,
    message_key     TEXT NOT NULL,
    chunk_index     INTEGER NOT NULL,
    text            TEXT NOT NULL,
    metadata        TEXT NOT NULL DEFAULT '{}',
    chunker_params  TEXT NOT NULL DEFAULT '',
    embedding       BLOB,
    embedding_model TEXT,
    embedding_dims  INTEGER,
    embedded_at     TEXT,
    created_at      DATETIME NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_chunks_owner ON chunks (thread_key, message_key, chunk_index);
CREATE INDEX IF NOT EXISTS idx_chunks_embedded_at ON chunks (embedded_at);

CREATE TABLE IF NOT EXISTS rate_limits (
    bucket_key      TEXT PRIMARY KEY,
    count           INTEGER NOT NULL,
    created_at      REAL NOT NULL,
    expires_at      REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_rate_limits_expires_at ON rate_limits (expires_at);

CREATE TABLE IF NOT EXISTS vec_indexes (
    model           TEXT PRIMARY KEY,
    dimensions      INTEGER NOT NULL,
    table_name      TEXT NOT NULL UNIQUE,
    created_at      DATETIME NOT NULL DEFAULT (datetime('now'))
);
"""

# Append-only. Each entry: (version: int, sql: str).
# executescript() issues an implicit COMMIT before running.
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
]


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply all pending migrations in ascending version order.

    Idempotent: safe to call on a database at any version, and from several
    pipeline instances at once (every statement is IF NOT EXISTS).
    """
    conn.execute(_CREATE_SCHEMA_VERSION)
    conn.commit()

    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    current = row[0] if row[0] is not None else 0

    for version, sql in MIGRATIONS:
        if version > current:
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
            conn.commit()
