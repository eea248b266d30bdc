"""Tests for the dense retriever."""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from threadrag import hashing
from threadrag.db.models import Chunk, ChunkFilter
from threadrag.db.vectors import DimensionMismatchError, ensure_vec_table
from threadrag.rag.llm_client import EmbeddingError
from threadrag.rag.retriever import (
    RetrievalError,
    RetrieverConfig,
    default_num_candidates,
    distance_to_score,
    retrieve,
    search,
)

_MODEL = "openai/text-embedding-3-small"

# (thread_key, message_key, text, vector)
_CORPUS = [
    ("t1", "m1", "budget meeting notes", [1.0, 0.0, 0.0]),
    ("t1", "m2", "flight to the island", [0.0, 1.0, 0.0]),
    ("t2", "m3", "dinner reservation", [0.0, 0.0, 1.0]),
    ("t2", "m4", "budget follow-up", [0.9, 0.1, 0.0]),
]


def _populate(repo) -> dict[str, Chunk]:
    chunks = []
    for thread_key, message_key, text, _ in _CORPUS:
        chunks.append(
            Chunk(
                chunk_key=hashing.chunk_key(message_key, 0, text),
                thread_key=thread_key,
                message_key=message_key,
                chunk_index=0,
                text=text,
                metadata=json.dumps({"sender": f"{message_key}@x.com", "subject": text}),
                chunker_params="2000:200",
            )
        )
    repo.upsert_chunks(chunks)
    table = ensure_vec_table(repo.conn, _MODEL, 3)
    stored = [repo.get_chunk(c.chunk_key) for c in chunks]
    repo.set_chunk_embeddings(table, _MODEL, [(c, v[3]) for c, v in zip(stored, _CORPUS)])
    return {c.text: c for c in stored}


def _config(**kwargs) -> RetrieverConfig:
    return RetrieverConfig(embedding_model=_MODEL, **kwargs)


# ------------------------------------------------------------------
# Config
# ------------------------------------------------------------------


@pytest.mark.parametrize(
    ("top_k", "mode", "expected"),
    [(1, "retrieve", 20), (8, "retrieve", 160), (20, "retrieve", 200),
     (1, "chat", 50), (8, "chat", 400), (20, "chat", 400)],
)
def test_default_num_candidates(top_k, mode, expected):
    assert default_num_candidates(top_k, mode) == expected


def test_default_num_candidates_unknown_mode():
    with pytest.raises(ValueError, match="mode"):
        default_num_candidates(5, "browse")


def test_config_candidates_explicit_wins():
    assert _config(top_k=5, num_candidates=42).candidates == 42
    assert _config(top_k=5).candidates == 100


@pytest.mark.parametrize(
    "kwargs",
    [{"top_k": 0}, {"top_k": 21}, {"num_candidates": 9}, {"num_candidates": 2001},
     {"top_k": 15, "num_candidates": 10}],
)
def test_config_validation(kwargs):
    with pytest.raises(ValueError):
        _config(**kwargs).validate()


def test_distance_to_score():
    assert distance_to_score(0.0) == 1.0
    assert distance_to_score(1.0) == 0.5
    assert distance_to_score(2.0) == 0.0


# ------------------------------------------------------------------
# search / retrieve
# ------------------------------------------------------------------


def test_top1_returns_closest_chunk(repo):
    _populate(repo)
    hits = search([0.0, 0.95, 0.05], repo, _config(top_k=1))
    assert len(hits) == 1
    assert hits[0].text == "flight to the island"

    all_hits = search([0.0, 0.95, 0.05], repo, _config(top_k=4))
    assert all_hits[0].chunk_key == hits[0].chunk_key
    assert all(hits[0].score > h.score for h in all_hits[1:])


def test_hits_sorted_by_score(repo):
    _populate(repo)
    hits = search([1.0, 0.0, 0.0], repo, _config(top_k=4))
    scores = [h.score for h in hits]
    assert scores == sorted(scores, reverse=True)
    assert hits[0].text == "budget meeting notes"
    assert hits[1].text == "budget follow-up"
    assert hits[0].score == pytest.approx(1.0, abs=1e-6)


def test_hit_carries_metadata(repo):
    _populate(repo)
    hit = search([0.0, 0.0, 1.0], repo, _config(top_k=1))[0]
    assert hit.thread_key == "t2"
    assert hit.message_key == "m3"
    assert hit.chunk_index == 0
    assert hit.metadata["sender"] == "m3@x.com"
    assert hit.to_dict()["score"] == hit.score


def test_filter_by_thread(repo):
    _populate(repo)
    hits = search([1.0, 0.0, 0.0], repo, _config(top_k=4), ChunkFilter(thread_key="t2"))
    assert {h.thread_key for h in hits} == {"t2"}
    assert hits[0].text == "budget follow-up"


def test_retrieve_embeds_query(repo):
    _populate(repo)
    with patch(
        "threadrag.rag.retriever.embed_texts", return_value=[[0.0, 0.0, 1.0]]
    ) as emb:
        hits = retrieve("  dinner?  ", repo, _config(top_k=2))
    emb.assert_called_once_with(_MODEL, ["dinner?"])
    assert hits[0].text == "dinner reservation"


def test_retrieve_empty_query(repo):
    _populate(repo)
    with pytest.raises(RetrievalError, match="empty"):
        retrieve("   ", repo, _config())


def test_retrieve_too_long_query(repo):
    _populate(repo)
    with pytest.raises(RetrievalError, match="8000"):
        retrieve("x" * 8001, repo, _config())


def test_retrieve_without_index(repo):
    with patch("threadrag.rag.retriever.embed_texts") as emb:
        with pytest.raises(RetrievalError, match="No vector index"):
            retrieve("anything", repo, _config())
    emb.assert_not_called()


def test_query_dimension_mismatch(repo):
    _populate(repo)
    with patch("threadrag.rag.retriever.embed_texts", return_value=[[1.0, 0.0]]):
        with pytest.raises(DimensionMismatchError):
            retrieve("budget", repo, _config())


def test_embedding_failure_propagates(repo):
    _populate(repo)
    with patch(
        "threadrag.rag.retriever.embed_texts", side_effect=EmbeddingError("down", status=503)
    ):
        with pytest.raises(EmbeddingError):
            retrieve("budget", repo, _config())
