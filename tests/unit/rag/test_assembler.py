"""Tests for the context assembler."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from threadrag.rag.assembler import assemble, build_messages
from threadrag.rag.retriever import ChunkHit

_MODEL = "openai/gpt-4o-mini"


def _hit(n: int, text: str = "", **meta) -> ChunkHit:
    return ChunkHit(
        chunk_key=f"c{n}",
        thread_key="t1",
        message_key=f"m{n}",
        chunk_index=0,
        text=text or f"chunk number {n}",
        metadata=meta,
        score=1.0 - n / 10,
    )


@pytest.fixture(autouse=True)
def _word_tokens():
    """One token per whitespace-separated word."""
    with patch(
        "threadrag.rag.assembler.count_tokens",
        side_effect=lambda model, text: len(text.split()),
    ):
        yield


def test_assemble_empty():
    ctx = assemble([], _MODEL, 100)
    assert ctx.hits == []
    assert ctx.citations == []
    assert ctx.total_tokens == 0


def test_budget_keeps_best_first_prefix():
    hits = [_hit(1), _hit(2), _hit(3)]  # 3 tokens each
    ctx = assemble(hits, _MODEL, 7)
    assert [h.chunk_key for h in ctx.hits] == ["c1", "c2"]
    assert ctx.total_tokens == 6


def test_budget_stops_at_first_overflow():
    hits = [_hit(1), _hit(2, text="a b c d e f g h"), _hit(3, text="x")]
    ctx = assemble(hits, _MODEL, 5)
    assert [h.chunk_key for h in ctx.hits] == ["c1"]


def test_budget_exact_fit():
    ctx = assemble([_hit(1), _hit(2)], _MODEL, 6)
    assert len(ctx.hits) == 2
    assert ctx.total_tokens == 6


def test_citations_numbered_from_one():
    ctx = assemble([_hit(1, sender="a@x.com", subject="Hi"), _hit(2)], _MODEL, 100)
    assert [c.index for c in ctx.citations] == [1, 2]
    first = ctx.citations[0]
    assert first.sender == "a@x.com"
    assert first.subject == "Hi"
    assert first.chunk_key == "c1"
    assert first.score == pytest.approx(0.9)
    assert ctx.citations[1].sender is None


def test_citation_timestamp_prefers_parsed_value():
    ctx = assemble(
        [_hit(1, timestamp="2020-01-01T00:00:00Z", timestamp_raw="Jan 1 2020")], _MODEL, 100
    )
    assert ctx.citations[0].timestamp == "2020-01-01T00:00:00Z"


def test_citation_timestamp_falls_back_to_raw():
    ctx = assemble([_hit(1, timestamp=None, timestamp_raw="sometime in 2020")], _MODEL, 100)
    assert ctx.citations[0].timestamp == "sometime in 2020"


def test_snippet_collapses_whitespace_and_truncates():
    long_text = "word\n\n  " * 200
    ctx = assemble([_hit(1, text=long_text)], _MODEL, 10_000)
    snippet = ctx.citations[0].snippet
    assert "\n" not in snippet
    assert "  " not in snippet
    assert len(snippet) <= 240
    assert snippet.endswith("…")


def test_build_messages_numbers_sources():
    ctx = assemble(
        [_hit(1, "first body", sender="a@x.com", subject="Plans"), _hit(2, "second body")],
        _MODEL,
        100,
    )
    messages = build_messages("What plans?", ctx)
    assert [m["role"] for m in messages] == ["system", "user"]
    user = messages[1]["content"]
    assert "[1] From: a@x.com | Subject: Plans\nfirst body" in user
    assert "[2]\nsecond body" in user
    assert user.endswith("Question: What plans?")


def test_build_messages_without_sources():
    messages = build_messages("Anything?", assemble([], _MODEL, 100))
    assert "(no sources found)" in messages[1]["content"]
