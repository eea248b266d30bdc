"""Tests for the embedding backfill."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from threadrag import hashing
from threadrag.db.models import Chunk
from threadrag.db.vectors import DimensionMismatchError, ensure_vec_table, get_vec_index
from threadrag.ingest.embed_backfill import EmbeddingBackfiller
from threadrag.rag.llm_client import EmbeddingError

MODEL = "openai/text-embedding-3-small"


def _seed_chunks(repo, n: int, message_key: str = "m1", thread_key: str = "t1") -> list[Chunk]:
    chunks = [
        Chunk(
            chunk_key=hashing.chunk_key(message_key, i, f"text {i}"),
            thread_key=thread_key,
            message_key=message_key,
            chunk_index=i,
            text=f"text {i}",
            chunker_params="2000:200",
        )
        for i in range(n)
    ]
    repo.upsert_chunks(chunks)
    return chunks


def _fake_embed(dims: int = 3):
    def _embed(model, texts):
        return [[float(len(t)), 1.0] + [0.0] * (dims - 2) for t in texts]

    return _embed


@pytest.fixture(autouse=True)
def _api_key():
    with patch("threadrag.ingest.embed_backfill.validate_api_key"):
        yield


def test_backfill_embeds_all_pending(repo):
    chunks = _seed_chunks(repo, 5)
    sleep = MagicMock()
    with patch("threadrag.ingest.embed_backfill.embed_texts", side_effect=_fake_embed(4)) as emb:
        stats = EmbeddingBackfiller(repo, MODEL, batch_size=2, delay=0.1, sleep=sleep).run()

    assert stats.processed == 5
    assert stats.batches == 3
    assert stats.last_dims == 4
    assert stats.vec_table == "vec_chunks_openai_text_embedding_3_small"
    assert emb.call_count == 3
    assert sleep.call_count == 3
    assert repo.count_pending_chunks() == 0
    assert get_vec_index(repo.conn, MODEL).dimensions == 4
    stored = repo.get_chunk(chunks[0].chunk_key)
    assert stored.embedding_model == MODEL
    assert stored.embedding_dims == 4


def test_vectors_match_chunks_positionally(repo):
    chunks = _seed_chunks(repo, 3)

    def _embed(model, texts):
        return [[float(i + 1), 0.0, 0.0] for i, _ in enumerate(texts)]

    with patch("threadrag.ingest.embed_backfill.embed_texts", side_effect=_embed):
        EmbeddingBackfiller(repo, MODEL, batch_size=10, delay=0).run()
    for i, chunk in enumerate(chunks):
        assert repo.get_embedding(chunk.chunk_key) == pytest.approx([float(i + 1), 0.0, 0.0])


def test_second_run_is_noop(repo):
    _seed_chunks(repo, 3)
    with patch("threadrag.ingest.embed_backfill.embed_texts", side_effect=_fake_embed()) as emb:
        EmbeddingBackfiller(repo, MODEL, delay=0).run()
        stats = EmbeddingBackfiller(repo, MODEL, delay=0).run()
    assert stats.processed == 0
    assert stats.last_dims is None
    assert emb.call_count == 1


def test_max_chunks_cap(repo):
    _seed_chunks(repo, 5)
    with patch("threadrag.ingest.embed_backfill.embed_texts", side_effect=_fake_embed()):
        stats = EmbeddingBackfiller(repo, MODEL, batch_size=2, delay=0, max_chunks=3).run()
    assert stats.processed == 3
    assert repo.count_pending_chunks() == 2


def test_extra_filter_narrows_selection(repo):
    _seed_chunks(repo, 2, message_key="m1")
    _seed_chunks(repo, 2, message_key="m2")
    with patch("threadrag.ingest.embed_backfill.embed_texts", side_effect=_fake_embed()):
        stats = EmbeddingBackfiller(
            repo, MODEL, delay=0, extra_filter={"message_key": "m2"}
        ).run()
    assert stats.processed == 2
    assert {c.message_key for c in repo.pending_chunks(10)} == {"m1"}


def test_dimension_mismatch_with_registered_index(repo):
    _seed_chunks(repo, 2)
    ensure_vec_table(repo.conn, MODEL, 8)
    with patch("threadrag.ingest.embed_backfill.embed_texts", side_effect=_fake_embed(3)):
        with pytest.raises(DimensionMismatchError):
            EmbeddingBackfiller(repo, MODEL, delay=0).run()
    assert repo.count_embedded_chunks() == 0


def test_mixed_dimensions_in_one_response(repo):
    _seed_chunks(repo, 2)
    with patch(
        "threadrag.ingest.embed_backfill.embed_texts",
        return_value=[[1.0, 0.0, 0.0], [1.0, 0.0]],
    ):
        with pytest.raises(DimensionMismatchError):
            EmbeddingBackfiller(repo, MODEL, delay=0).run()


def test_embedding_error_keeps_earlier_batches(repo):
    _seed_chunks(repo, 4)
    side_effect = [[[1.0, 0.0, 0.0]] * 2, EmbeddingError("boom", status=400)]
    with patch("threadrag.ingest.embed_backfill.embed_texts", side_effect=side_effect):
        with pytest.raises(EmbeddingError):
            EmbeddingBackfiller(repo, MODEL, batch_size=2, delay=0).run()
    assert repo.count_embedded_chunks() == 2
    assert repo.count_pending_chunks() == 2


def test_missing_api_key_is_fatal(repo):
    _seed_chunks(repo, 1)
    with patch(
        "threadrag.ingest.embed_backfill.validate_api_key",
        side_effect=EnvironmentError("OPENAI_API_KEY"),
    ), patch("threadrag.ingest.embed_backfill.embed_texts") as emb:
        with pytest.raises(EnvironmentError):
            EmbeddingBackfiller(repo, MODEL).run()
    emb.assert_not_called()


def test_invalid_batch_size(repo):
    with pytest.raises(ValueError):
        EmbeddingBackfiller(repo, MODEL, batch_size=0)
