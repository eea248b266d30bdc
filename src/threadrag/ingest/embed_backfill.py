"""Embedding backfill — fill in vectors for chunks that have none.

Pending work is derived from stored data (``embedding IS NULL``), so a run
can stop at any point and the next run resumes where it left off. Vectors
are matched to chunks by position in the provider response.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from threadrag.db.models import ChunkFilter
from threadrag.db.repository import Repository
from threadrag.db.vectors import DimensionMismatchError, ensure_vec_table
from threadrag.rag.llm_client import embed_texts, validate_api_key

logger = logging.getLogger(__name__)


@dataclass
class BackfillStats:
    """Totals for one backfill run. ``last_dims`` feeds the vector index size."""

    processed: int = 0
    batches: int = 0
    last_dims: int | None = None
    vec_table: str | None = None


class EmbeddingBackfiller:
    """Embed pending chunks in batches and store the vectors.

    Args:
        repo: Open Repository.
        model: LiteLLM embedding model string.
        batch_size: Chunks per provider call.
        delay: Seconds to pause between batches.
        max_chunks: Stop after this many chunks (0 = no cap).
        extra_filter: Optional equality filter narrowing the pending set.
        sleep: Sleep function (injectable for tests).
    """

    def __init__(
        self,
        repo: Repository,
        model: str,
        batch_size: int = 64,
        delay: float = 0.25,
        max_chunks: int = 0,
        extra_filter: ChunkFilter | Mapping[str, Any] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if delay < 0 or max_chunks < 0:
            raise ValueError("delay and max_chunks must be >= 0")
        self._repo = repo
        self.model = model
        self.batch_size = batch_size
        self.delay = delay
        self.max_chunks = max_chunks
        self.extra_filter = extra_filter
        self._sleep = sleep

    def run(self, on_batch: Callable[[BackfillStats], None] | None = None) -> BackfillStats:
        """Embed until no pending chunks remain or ``max_chunks`` is reached.

        Raises:
            EnvironmentError: If the provider API key is missing.
            EmbeddingError: If a provider call fails for good.
            DimensionMismatchError: If the provider returns vectors whose size
                differs from the registered index for this model.
        """
        validate_api_key(self.model)
        stats = BackfillStats()

        while True:
            limit = self.batch_size
            if self.max_chunks > 0:
                remaining = self.max_chunks - stats.processed
                if remaining <= 0:
                    logger.info("Reached max_chunks=%d; stopping", self.max_chunks)
                    break
                limit = min(limit, remaining)

            chunks = self._repo.pending_chunks(limit, self.extra_filter)
            if not chunks:
                logger.info("No more chunks missing embeddings")
                break

            vectors = embed_texts(self.model, [c.text for c in chunks])
            dims = len(vectors[0])
            if any(len(v) != dims for v in vectors):
                raise DimensionMismatchError(
                    f"Provider returned vectors of mixed sizes for model '{self.model}'."
                )

            table = ensure_vec_table(self._repo.conn, self.model, dims)
            self._repo.set_chunk_embeddings(table, self.model, list(zip(chunks, vectors)))

            stats.processed += len(chunks)
            stats.batches += 1
            stats.last_dims = dims
            stats.vec_table = table
            logger.info("processed=%d (+%d) dims=%d", stats.processed, len(chunks), dims)
            if on_batch is not None:
                on_batch(stats)

            if self.delay > 0:
                self._sleep(self.delay)

        return stats
