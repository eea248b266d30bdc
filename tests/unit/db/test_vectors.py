"""Tests for per-model sqlite-vec virtual tables."""

from __future__ import annotations

import pytest

from threadrag.db.models import VecIndex
from threadrag.db.vectors import (
    DimensionMismatchError,
    check_query_dimensions,
    ensure_vec_table,
    get_vec_index,
    model_to_slug,
    vec_table_name,
)

MODEL = "openai/text-embedding-3-small"


# --- model_to_slug ---

@pytest.mark.parametrize("model,expected", [
    ("openai/text-embedding-3-small", "openai_text_embedding_3_small"),
    ("openai/text-embedding-3-large", "openai_text_embedding_3_large"),
    ("cohere/embed-english-v3.0", "cohere_embed_english_v3_0"),
    ("local/all-MiniLM-L6-v2", "local_all_minilm_l6_v2"),
])
def test_model_to_slug(model, expected):
    assert model_to_slug(model) == expected


def test_vec_table_name():
    assert vec_table_name(model_to_slug(MODEL)) == "vec_chunks_openai_text_embedding_3_small"


# --- ensure_vec_table ---

def test_ensure_vec_table_creates_and_registers(tmp_db):
    table = ensure_vec_table(tmp_db, MODEL, dimensions=1536)
    assert table == "vec_chunks_openai_text_embedding_3_small"
    row = tmp_db.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,)
    ).fetchone()
    assert row is not None
    assert get_vec_index(tmp_db, MODEL) == VecIndex(MODEL, 1536, table)


def test_ensure_vec_table_idempotent(tmp_db):
    assert ensure_vec_table(tmp_db, MODEL, 1536) == ensure_vec_table(tmp_db, MODEL, 1536)
    count = tmp_db.execute("SELECT COUNT(*) FROM vec_indexes").fetchone()[0]
    assert count == 1


def test_ensure_vec_table_dimension_mismatch(tmp_db):
    ensure_vec_table(tmp_db, MODEL, 1536)
    with pytest.raises(DimensionMismatchError, match="1536"):
        ensure_vec_table(tmp_db, MODEL, 768)


def test_ensure_vec_table_multiple_models(tmp_db):
    ensure_vec_table(tmp_db, MODEL, 1536)
    ensure_vec_table(tmp_db, "openai/text-embedding-3-large", 3072)
    assert get_vec_index(tmp_db, "openai/text-embedding-3-large").dimensions == 3072
    assert get_vec_index(tmp_db, MODEL).dimensions == 1536


def test_ensure_vec_table_insert_and_filtered_lookup(tmp_db):
    table = ensure_vec_table(tmp_db, MODEL, dimensions=4)
    tmp_db.execute(
        f"INSERT INTO {table}(rowid, embedding, thread_key, message_key) VALUES (?, ?, ?, ?)",
        (42, "[0.1, 0.2, 0.3, 0.4]", "t1", "m1"),
    )
    tmp_db.execute(
        f"INSERT INTO {table}(rowid, embedding, thread_key, message_key) VALUES (?, ?, ?, ?)",
        (43, "[0.1, 0.2, 0.3, 0.4]", "t2", "m2"),
    )
    row = tmp_db.execute(
        f"SELECT rowid FROM {table} WHERE embedding MATCH ? AND k = 5 AND thread_key = ?",
        ("[0.1, 0.2, 0.3, 0.4]", "t2"),
    ).fetchone()
    assert row[0] == 43


def test_ensure_vec_table_invalid_dimensions(tmp_db):
    with pytest.raises(ValueError, match="dimensions"):
        ensure_vec_table(tmp_db, MODEL, dimensions=0)


def test_get_vec_index_missing(tmp_db):
    assert get_vec_index(tmp_db, "nobody/none") is None


# --- check_query_dimensions ---

def test_check_query_dimensions():
    index = VecIndex(MODEL, 3, "vec_chunks_x")
    check_query_dimensions(index, [0.0, 1.0, 0.0])
    with pytest.raises(DimensionMismatchError, match="2 dimensions"):
        check_query_dimensions(index, [0.0, 1.0])
