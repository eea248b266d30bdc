"""Tests for the Database store handle."""

from __future__ import annotations

import sqlite3

import pytest

from threadrag.db.connection import Database


def test_connect_creates_file(tmp_path):
    db_path = tmp_path / ".threadrag.db"
    conn = Database(db_path).connect()
    conn.close()
    assert db_path.exists()


def test_sqlite_vec_loads(tmp_path):
    conn = Database(tmp_path / ".threadrag.db").connect()
    version = conn.execute("SELECT vec_version()").fetchone()[0]
    conn.close()
    assert version.startswith("v")


def test_foreign_keys_enabled(tmp_path):
    conn = Database(tmp_path / ".threadrag.db").connect()
    result = conn.execute("PRAGMA foreign_keys").fetchone()[0]
    conn.close()
    assert result == 1


def test_wal_journal_mode(tmp_path):
    conn = Database(tmp_path / ".threadrag.db").connect()
    mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
    conn.close()
    assert mode == "wal"


def test_row_factory_set(tmp_path):
    conn = Database(tmp_path / ".threadrag.db").connect()
    conn.execute("CREATE TABLE t (x INTEGER)")
    conn.execute("INSERT INTO t VALUES (42)")
    row = conn.execute("SELECT x FROM t").fetchone()
    conn.close()
    assert row["x"] == 42


def test_open_runs_migrations_and_is_idempotent(tmp_path):
    db = Database(tmp_path / ".threadrag.db")
    first = db.open()
    second = db.open()
    assert first is second
    tables = {
        r[0] for r in first.execute("SELECT name FROM sqlite_master WHERE type='table'")
    }
    assert {"threads", "messages", "chunks", "rate_limits", "vec_indexes"} <= tables
    db.close()


def test_conn_before_open_raises(tmp_path):
    db = Database(tmp_path / ".threadrag.db")
    with pytest.raises(RuntimeError, match="not open"):
        _ = db.conn


def test_close_is_safe_twice(tmp_path):
    db = Database(tmp_path / ".threadrag.db")
    db.open()
    db.close()
    db.close()
    with pytest.raises(RuntimeError):
        _ = db.conn


def test_context_manager_closes(tmp_path):
    db = Database(tmp_path / ".threadrag.db")
    with db as conn:
        conn.execute("SELECT COUNT(*) FROM threads").fetchone()
    with pytest.raises(sqlite3.ProgrammingError):
        conn.execute("SELECT 1")


def test_two_handles_share_one_file(tmp_path):
    path = tmp_path / ".threadrag.db"
    with Database(path) as a, Database(path) as b:
        with a:
            a.execute(
                "INSERT INTO rate_limits (bucket_key, count, created_at, expires_at) "
                "VALUES ('k', 1, 0, 10)"
            )
        assert b.execute("SELECT count FROM rate_limits WHERE bucket_key='k'").fetchone()[0] == 1
