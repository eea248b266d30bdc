"""Tests for the forward-only migration runner."""

from __future__ import annotations

from threadrag.db.connection import Database
from threadrag.db.migrations import MIGRATIONS, run_migrations


def _fresh_conn(tmp_path):
    """Open a new connection without running migrations."""
    return Database(tmp_path / "test.db").connect()


def _table_exists(conn, name: str) -> bool:
    return conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (name,)
    ).fetchone() is not None


def test_run_migrations_creates_schema_version(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    assert _table_exists(conn, "schema_version")
    conn.close()


def test_run_migrations_creates_pipeline_tables(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    for table in ("threads", "messages", "chunks", "rate_limits", "vec_indexes"):
        assert _table_exists(conn, table), table
    conn.close()


def test_run_migrations_records_each_version_once(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    run_migrations(conn)
    versions = [r[0] for r in conn.execute("SELECT version FROM schema_version")]
    assert versions == [v for v, _ in MIGRATIONS]
    conn.close()


def test_migrations_are_ascending():
    versions = [v for v, _ in MIGRATIONS]
    assert versions == sorted(versions)
    assert len(versions) == len(set(versions))


def test_rerun_keeps_data(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    conn.execute(
        "INSERT INTO threads (thread_key, thread_id, source_file) VALUES ('k', 't', 'f')"
    )
    conn.commit()
    run_migrations(conn)
    assert conn.execute("SELECT COUNT(*) FROM threads").fetchone()[0] == 1
    conn.close()
