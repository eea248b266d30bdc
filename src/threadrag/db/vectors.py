"""Per-model sqlite-vec virtual table management.

Each embedding model gets its own ``vec_chunks_<slug>`` table, sized to the
dimensionality first observed for that model and registered in
``vec_indexes``. Rows use ``chunks.id`` as their rowid and carry the owning
thread/message keys as metadata columns so KNN queries can filter on them.
"""

from __future__ import annotations

import re
import sqlite3

from threadrag.db.models import VecIndex


class DimensionMismatchError(RuntimeError):
    """Raised when a vector's size disagrees with the registered index size."""


def model_to_slug(model: str) -> str:
    """Convert a provider/model string to a valid table name suffix.

    Examples:
        "openai/text-embedding-3-small" -> "openai_text_embedding_3_small"
        "text-embedding-3-large"        -> "text_embedding_3_large"
    """
    return re.sub(r"[^a-z0-9]", "_", model.lower())


def vec_table_name(model_slug: str) -> str:
    """Return the full vec table name for a model slug."""
    return f"vec_chunks_{model_slug}"


def get_vec_index(conn: sqlite3.Connection, model: str) -> VecIndex | None:
    """Return the registered vector index for *model*, or None."""
    row = conn.execute(
        "SELECT model, dimensions, table_name FROM vec_indexes WHERE model = ?",
        (model,),
    ).fetchone()
    if row is None:
        return None
    return VecIndex(model=row["model"], dimensions=row["dimensions"], table_name=row["table_name"])


def ensure_vec_table(conn: sqlite3.Connection, model: str, dimensions: int) -> str:
    """Create and register vec_chunks_{slug} for *model* if it doesn't exist yet.

    Args:
        conn: Active database connection (sqlite-vec must be loaded).
        model: Embedding model identifier as passed to the provider.
        dimensions: Embedding vector dimensions (e.g. 1536 for text-embedding-3-small).

    Returns:
        The table name (vec_chunks_{slug}).

    Raises:
        DimensionMismatchError: If the model is already registered with a
            different dimensionality.
    """
    if dimensions < 1:
        raise ValueError(f"dimensions must be >= 1, got {dimensions}")
    slug = model_to_slug(model)
    if not re.fullmatch(r"[a-z0-9_]+", slug):
        raise ValueError(f"Invalid model_slug '{slug}' derived from model '{model}'.")

    existing = get_vec_index(conn, model)
    if existing is not None:
        if existing.dimensions != dimensions:
            raise DimensionMismatchError(
                f"Vector index '{existing.table_name}' for model '{model}' has "
                f"{existing.dimensions} dimensions, got vectors with {dimensions}."
            )
        return existing.table_name

    table = vec_table_name(slug)
    conn.execute(
        f"CREATE VIRTUAL TABLE IF NOT EXISTS {table} USING vec0("
        f"embedding float[{dimensions}] distance_metric=cosine, "
        "thread_key text, message_key text)"
    )
    conn.execute(
        "INSERT OR IGNORE INTO vec_indexes (model, dimensions, table_name) VALUES (?, ?, ?)",
        (model, dimensions, table),
    )
    conn.commit()

    # Another instance may have registered the model between our read and write.
    registered = get_vec_index(conn, model)
    if registered is not None and registered.dimensions != dimensions:
        raise DimensionMismatchError(
            f"Vector index for model '{model}' was registered concurrently with "
            f"{registered.dimensions} dimensions, got vectors with {dimensions}."
        )
    return table


def check_query_dimensions(index: VecIndex, vector: list[float]) -> None:
    """Raise DimensionMismatchError if *vector* cannot be searched against *index*."""
    if len(vector) != index.dimensions:
        raise DimensionMismatchError(
            f"Query vector has {len(vector)} dimensions but the corpus index "
            f"'{index.table_name}' ({index.model}) has {index.dimensions}."
        )
