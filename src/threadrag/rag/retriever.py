"""Dense retriever over chunk vectors (sqlite-vec KNN with metadata filter).

The query is embedded with the same model as the corpus, ``num_candidates``
neighbours are fetched from the model's vec table, and the best ``top_k``
are returned as hits with ``score = 1 - cosine_distance / 2`` (1.0 = same
direction, 0.0 = opposite). Hits keep the engine's native order on ties.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any

from threadrag.db.models import ChunkFilter, VecIndex
from threadrag.db.repository import Repository
from threadrag.db.vectors import check_query_dimensions, get_vec_index
from threadrag.rag.llm_client import embed_texts

TOP_K_RANGE = (1, 20)
NUM_CANDIDATES_RANGE = (10, 2000)
MAX_QUERY_CHARS = 8000

# mode → (cap, multiplier) for the default candidate pool
_CANDIDATE_POLICY: dict[str, tuple[int, int]] = {
    "retrieve": (200, 20),
    "chat": (400, 50),
}


class RetrievalError(RuntimeError):
    """Raised when a query cannot be answered (as opposed to matching nothing)."""


def default_num_candidates(top_k: int, mode: str = "retrieve") -> int:
    """Candidate pool size: ``min(200, top_k*20)``, or ``min(400, top_k*50)`` for chat."""
    try:
        cap, multiplier = _CANDIDATE_POLICY[mode]
    except KeyError:
        raise ValueError(
            f"Unknown retrieval mode '{mode}'. Expected one of: {', '.join(_CANDIDATE_POLICY)}"
        ) from None
    return max(NUM_CANDIDATES_RANGE[0], min(cap, top_k * multiplier))


@dataclass
class RetrieverConfig:
    """Configuration for the retriever.

    Attributes:
        embedding_model: LiteLLM embedding model string; must match the corpus model.
        top_k: Number of hits to return (1–20).
        num_candidates: Neighbours fetched before truncating to top_k (10–2000).
            None derives it from top_k and mode.
        mode: 'retrieve' for plain retrieval, 'chat' for chat-integrated retrieval.
    """

    embedding_model: str = "openai/text-embedding-3-small"
    top_k: int = 8
    num_candidates: int | None = None
    mode: str = "retrieve"

    @property
    def candidates(self) -> int:
        if self.num_candidates is not None:
            return self.num_candidates
        return default_num_candidates(self.top_k, self.mode)

    def validate(self) -> None:
        """Raise ValueError if top_k or num_candidates is out of range."""
        lo, hi = TOP_K_RANGE
        if not lo <= self.top_k <= hi:
            raise ValueError(f"top_k must be in {lo}..{hi}, got {self.top_k}")
        lo, hi = NUM_CANDIDATES_RANGE
        candidates = self.candidates
        if not lo <= candidates <= hi:
            raise ValueError(f"num_candidates must be in {lo}..{hi}, got {candidates}")
        if candidates < self.top_k:
            raise ValueError(
                f"num_candidates ({candidates}) must be >= top_k ({self.top_k})"
            )


@dataclass
class ChunkHit:
    """One retrieved chunk with its similarity score."""

    chunk_key: str
    thread_key: str
    message_key: str
    chunk_index: int
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)
    score: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def retrieve(
    query: str,
    repo: Repository,
    config: RetrieverConfig,
    chunk_filter: ChunkFilter | None = None,
) -> list[ChunkHit]:
    """Embed *query* and return the best ``top_k`` chunks, best-first.

    Raises:
        ValueError: If the configuration is out of range.
        RetrievalError: If the query is empty or too long, or no vector index
            exists for the configured model.
        DimensionMismatchError: If the query vector size differs from the corpus.
        EmbeddingError: If the query cannot be embedded.
    """
    config.validate()
    text = (query or "").strip()
    if not text:
        raise RetrievalError("Query is empty.")
    if len(text) > MAX_QUERY_CHARS:
        raise RetrievalError(f"Query exceeds {MAX_QUERY_CHARS} characters.")

    _require_index(repo, config.embedding_model)
    vector = embed_texts(config.embedding_model, [text])[0]
    return search(vector, repo, config, chunk_filter)


def search(
    vector: list[float],
    repo: Repository,
    config: RetrieverConfig,
    chunk_filter: ChunkFilter | None = None,
) -> list[ChunkHit]:
    """Nearest-neighbour search for a precomputed query vector."""
    config.validate()
    index = _require_index(repo, config.embedding_model)
    check_query_dimensions(index, vector)

    results = repo.search_vec(index.table_name, vector, config.candidates, chunk_filter)
    hits = [
        ChunkHit(
            chunk_key=chunk.chunk_key,
            thread_key=chunk.thread_key,
            message_key=chunk.message_key,
            chunk_index=chunk.chunk_index,
            text=chunk.text,
            metadata=_load_metadata(chunk.metadata),
            score=distance_to_score(distance),
        )
        for chunk, distance in results
    ]
    return hits[: config.top_k]


def distance_to_score(distance: float) -> float:
    """Map cosine distance (0..2) to a similarity score (1..0)."""
    return 1.0 - distance / 2.0


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _require_index(repo: Repository, model: str) -> VecIndex:
    index = get_vec_index(repo.conn, model)
    if index is None:
        raise RetrievalError(
            f"No vector index for embedding model '{model}'. "
            "Run 'threadrag embed' first, or use the model the corpus was embedded with."
        )
    return index


def _load_metadata(raw: str) -> dict[str, Any]:
    try:
        value = json.loads(raw or "{}")
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}
