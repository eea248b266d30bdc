"""Retrieval boundary consumed by the UI: rate limit → validate → retrieve / answer.

The rate-limit check always runs first so no paid embedding or generation
work is done for a rejected request. Every outcome carries an explicit
status; a failure is never reported as an empty hit list.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from typing import Any

from threadrag.config import ThreadragConfig
from threadrag.db.models import ChunkFilter
from threadrag.db.repository import Repository
from threadrag.db.vectors import DimensionMismatchError
from threadrag.rag.assembler import Citation, assemble, build_messages
from threadrag.rag.llm_client import EmbeddingError, complete
from threadrag.rag.rate_limit import RateLimiter
from threadrag.rag.retriever import (
    MAX_QUERY_CHARS,
    ChunkHit,
    RetrievalError,
    RetrieverConfig,
    retrieve,
)

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_RATE_LIMITED = "rate_limited"
STATUS_INVALID = "invalid"
STATUS_ERROR = "error"

RETRIEVE_BUCKET = "retrieve"
CHAT_BUCKET = "chat"

_RETRIEVAL_FAILURES = (
    EmbeddingError,
    DimensionMismatchError,
    RetrievalError,
    EnvironmentError,
    sqlite3.Error,
)


@dataclass
class RetrieveResponse:
    status: str
    hits: list[ChunkHit] = field(default_factory=list)
    remaining: int = 0
    meta: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ChatResponse:
    status: str
    text: str = ""
    citations: list[Citation] = field(default_factory=list)
    remaining: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class RetrievalService:
    """Rate-limited retrieval and answer generation.

    Args:
        repo: Open Repository.
        limiter: Rate limiter sharing the same store.
        settings: Loaded configuration (embedding, retrieval, generation, rate_limit).
    """

    def __init__(
        self, repo: Repository, limiter: RateLimiter, settings: ThreadragConfig
    ) -> None:
        self._repo = repo
        self._limiter = limiter
        self._settings = settings

    def retrieve(
        self,
        client_id: str,
        query: str,
        top_k: int | None = None,
        num_candidates: int | None = None,
        chunk_filter: ChunkFilter | None = None,
    ) -> RetrieveResponse:
        rl = self._settings.rate_limit
        check = self._limiter.check(
            client_id, RETRIEVE_BUCKET, rl.window_seconds, rl.retrieve_max_requests
        )
        if not check.allowed:
            return RetrieveResponse(status=STATUS_RATE_LIMITED, error="Rate limit exceeded.")

        config = RetrieverConfig(
            embedding_model=self._settings.embedding.model,
            top_k=top_k if top_k is not None else self._settings.retrieval.top_k,
            num_candidates=(
                num_candidates
                if num_candidates is not None
                else self._settings.retrieval.num_candidates
            ),
            mode="retrieve",
        )
        problem = _validate_text(query, "query") or _validate_config(config)
        if problem:
            return RetrieveResponse(
                status=STATUS_INVALID, remaining=check.remaining, error=problem
            )

        try:
            hits = retrieve(query, self._repo, config, chunk_filter)
        except _RETRIEVAL_FAILURES as exc:
            logger.error("Retrieval failed: %s", exc)
            return RetrieveResponse(
                status=STATUS_ERROR, remaining=check.remaining, error=str(exc)
            )

        filter_dict = chunk_filter.as_dict() if chunk_filter else {}
        return RetrieveResponse(
            status=STATUS_OK,
            hits=hits,
            remaining=check.remaining,
            meta={
                "top_k": config.top_k,
                "num_candidates": config.candidates,
                "embed_model": config.embedding_model,
                "filter": filter_dict or None,
            },
        )

    def chat(self, client_id: str, message: str) -> ChatResponse:
        """Answer *message* from retrieved context with the generation model."""
        rl = self._settings.rate_limit
        check = self._limiter.check(client_id, CHAT_BUCKET, rl.window_seconds, rl.max_requests)
        if not check.allowed:
            return ChatResponse(status=STATUS_RATE_LIMITED, error="Rate limit exceeded.")

        problem = _validate_text(message, "message")
        if problem:
            return ChatResponse(status=STATUS_INVALID, remaining=check.remaining, error=problem)

        config = RetrieverConfig(
            embedding_model=self._settings.embedding.model,
            top_k=self._settings.retrieval.top_k,
            mode="chat",
        )
        try:
            hits = retrieve(message, self._repo, config)
        except _RETRIEVAL_FAILURES as exc:
            logger.error("Chat retrieval failed: %s", exc)
            return ChatResponse(status=STATUS_ERROR, remaining=check.remaining, error=str(exc))

        gen_model = self._settings.generation.model
        context = assemble(hits, gen_model, self._settings.retrieval.token_budget)
        try:
            text = complete(gen_model, build_messages(message, context))
        except Exception as exc:
            logger.error("Generation failed: %s", exc)
            return ChatResponse(
                status=STATUS_ERROR,
                citations=context.citations,
                remaining=check.remaining,
                error=f"Generation failed: {exc}",
            )

        return ChatResponse(
            status=STATUS_OK,
            text=text,
            citations=context.citations,
            remaining=check.remaining,
        )


def _validate_text(value: str, name: str) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return f"{name} must be a non-empty string."
    if len(value) > MAX_QUERY_CHARS:
        return f"{name} must be at most {MAX_QUERY_CHARS} characters."
    return None


def _validate_config(config: RetrieverConfig) -> str | None:
    try:
        config.validate()
    except ValueError as exc:
        return str(exc)
    return None
