"""Tests for schema initialization and introspection."""

from __future__ import annotations

from threadrag.db.schema import (
    CURRENT_VERSION,
    PIPELINE_TABLES,
    initialize,
    list_vec_tables,
    schema_version,
)
from threadrag.db.vectors import ensure_vec_table


def _table_columns(conn, table: str) -> set[str]:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {row["name"] for row in rows}


def _index_names(conn, table: str) -> set[str]:
    rows = conn.execute(f"PRAGMA index_list({table})").fetchall()
    return {row["name"] for row in rows}


def test_pipeline_tables_exist(tmp_db):
    for table in PIPELINE_TABLES:
        assert _table_columns(tmp_db, table), table


def test_messages_columns(tmp_db):
    cols = _table_columns(tmp_db, "messages")
    assert {
        "message_key", "thread_key", "order_index", "sender", "recipients", "timestamp",
        "timestamp_raw", "subject", "body", "raw", "chunked_at", "chunk_count",
    } <= cols


def test_chunks_columns(tmp_db):
    cols = _table_columns(tmp_db, "chunks")
    assert {
        "id", "chunk_key", "thread_key", "message_key", "chunk_index", "text", "metadata",
        "chunker_params", "embedding", "embedding_model", "embedding_dims", "embedded_at",
    } <= cols


def test_secondary_indexes(tmp_db):
    assert {
        "idx_messages_thread_order",
        "idx_messages_thread_ts",
        "idx_messages_chunked_at",
    } <= _index_names(tmp_db, "messages")
    assert {"idx_chunks_owner", "idx_chunks_embedded_at"} <= _index_names(tmp_db, "chunks")
    assert "idx_rate_limits_expires_at" in _index_names(tmp_db, "rate_limits")


def test_schema_version_current(tmp_db):
    assert schema_version(tmp_db) == CURRENT_VERSION


def test_initialize_idempotent(tmp_db):
    initialize(tmp_db)
    initialize(tmp_db)
    assert schema_version(tmp_db) == CURRENT_VERSION


def test_list_vec_tables(tmp_db):
    assert list_vec_tables(tmp_db) == []
    ensure_vec_table(tmp_db, "openai/text-embedding-3-small", 4)
    assert list_vec_tables(tmp_db) == ["vec_chunks_openai_text_embedding_3_small"]
