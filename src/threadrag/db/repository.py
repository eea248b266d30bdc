"""Repository pattern for all pipeline database operations.

Single interface for: threads, messages, chunks, vec embeddings and vec search.
Every write is an idempotent upsert or update keyed by a content hash, so
concurrent pipeline instances can run against the same file. Batches are
written in one transaction each; thread and message batches are independent.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

import sqlite_vec

from threadrag.db.models import Chunk, ChunkFilter, Message, Thread

# Columns a caller may narrow pending-chunk selection by.
_CHUNK_FILTER_COLUMNS = frozenset({"thread_key", "message_key", "chunk_index", "chunker_params"})
# Metadata columns present on every vec table.
_VEC_FILTER_COLUMNS = frozenset({"thread_key", "message_key"})

_MESSAGE_COLUMNS = (
    "message_key, thread_key, order_index, sender, recipients, timestamp, timestamp_raw, "
    "subject, body, raw, chunked_at, chunk_count, created_at, updated_at"
)
_CHUNK_COLUMNS = (
    "id, chunk_key, thread_key, message_key, chunk_index, text, metadata, chunker_params, "
    "embedding_model, embedding_dims, embedded_at, created_at, updated_at"
)


def utcnow() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class Repository:
    """Data access layer for threads, messages, chunks and vec embeddings.

    Wraps an open sqlite3.Connection. The connection is owned by the caller
    (normally a ``Database`` handle) and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see threadrag.db.schema.initialize).
        """
        self._conn = conn

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    def upsert_threads(self, threads: Iterable[Thread]) -> int:
        """Upsert a batch of threads keyed by thread_key. Returns rows written.

        A non-empty participants list replaces the stored one; an empty list
        leaves it untouched.
        """
        now = utcnow()
        rows = [
            (
                t.thread_key,
                t.thread_id,
                t.source_file,
                t.subject,
                t.message_count,
                json.dumps(t.participants, ensure_ascii=False),
                now,
            )
            for t in threads
        ]
        if not rows:
            return 0
        with self._conn:
            self._conn.executemany(
                """
                INSERT INTO threads (thread_key, thread_id, source_file, subject,
                                     message_count, participants, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(thread_key) DO UPDATE SET
                    thread_id     = excluded.thread_id,
                    source_file   = excluded.source_file,
                    subject       = excluded.subject,
                    message_count = excluded.message_count,
                    participants  = CASE WHEN excluded.participants != '[]'
                                         THEN excluded.participants
                                         ELSE threads.participants END,
                    updated_at    = excluded.updated_at
                """,
                rows,
            )
        return len(rows)

    def get_thread(self, thread_key: str) -> Thread | None:
        """Return a thread by key, or None if not found."""
        row = self._conn.execute(
            "SELECT thread_key, thread_id, source_file, subject, message_count, participants, "
            "created_at, updated_at FROM threads WHERE thread_key = ?",
            (thread_key,),
        ).fetchone()
        return _row_to_thread(row) if row else None

    def list_thread_keys(self) -> set[str]:
        return {r[0] for r in self._conn.execute("SELECT thread_key FROM threads").fetchall()}

    def count_threads(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM threads").fetchone()[0]

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def upsert_messages(self, messages: Iterable[Message]) -> int:
        """Upsert a batch of messages keyed by message_key. Returns rows written.

        Never touches chunked_at / chunk_count: the same message_key means the
        same content, so an already-chunked message stays chunked.
        """
        now = utcnow()
        rows = [
            (
                m.message_key,
                m.thread_key,
                m.order_index,
                m.sender,
                json.dumps(m.recipients, ensure_ascii=False),
                m.timestamp,
                m.timestamp_raw,
                m.subject,
                m.body,
                m.raw,
                now,
            )
            for m in messages
        ]
        if not rows:
            return 0
        with self._conn:
            self._conn.executemany(
                """
                INSERT INTO messages (message_key, thread_key, order_index, sender, recipients,
                                      timestamp, timestamp_raw, subject, body, raw, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(message_key) DO UPDATE SET
                    thread_key    = excluded.thread_key,
                    order_index   = excluded.order_index,
                    sender        = excluded.sender,
                    recipients    = excluded.recipients,
                    timestamp     = excluded.timestamp,
                    timestamp_raw = excluded.timestamp_raw,
                    subject       = excluded.subject,
                    body          = excluded.body,
                    raw           = COALESCE(excluded.raw, messages.raw),
                    updated_at    = excluded.updated_at
                """,
                rows,
            )
        return len(rows)

    def get_message(self, message_key: str) -> Message | None:
        row = self._conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE message_key = ?", (message_key,)
        ).fetchone()
        return _row_to_message(row) if row else None

    def list_messages(self, thread_key: str) -> list[Message]:
        """Return a thread's messages in canonical order (order_index ascending)."""
        rows = self._conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE thread_key = ? ORDER BY order_index",
            (thread_key,),
        ).fetchall()
        return [_row_to_message(r) for r in rows]

    def latest_message(self, thread_key: str) -> Message | None:
        """Return the thread's last message by order_index (timestamps may be missing)."""
        row = self._conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE thread_key = ? "
            "ORDER BY order_index DESC LIMIT 1",
            (thread_key,),
        ).fetchone()
        return _row_to_message(row) if row else None

    def list_message_keys(self, thread_key: str | None = None) -> set[str]:
        if thread_key is None:
            rows = self._conn.execute("SELECT message_key FROM messages").fetchall()
        else:
            rows = self._conn.execute(
                "SELECT message_key FROM messages WHERE thread_key = ?", (thread_key,)
            ).fetchall()
        return {r[0] for r in rows}

    def pending_messages(self, limit: int) -> list[Message]:
        """Messages not yet chunked that have a non-empty body."""
        rows = self._conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages "
            "WHERE chunked_at IS NULL AND body != '' ORDER BY rowid LIMIT ?",
            (limit,),
        ).fetchall()
        return [_row_to_message(r) for r in rows]

    def mark_messages_chunked(self, results: Iterable[tuple[str, int]]) -> int:
        """Set chunked_at / chunk_count for each (message_key, chunk_count) pair."""
        now = utcnow()
        rows = [(now, count, now, key) for key, count in results]
        if not rows:
            return 0
        with self._conn:
            self._conn.executemany(
                "UPDATE messages SET chunked_at = ?, chunk_count = ?, updated_at = ? "
                "WHERE message_key = ?",
                rows,
            )
        return len(rows)

    def reset_chunking(self, message_keys: Iterable[str] | None = None) -> int:
        """Clear chunked_at so the Chunker picks messages up again.

        Args:
            message_keys: Messages to reset; None resets every message.

        Returns:
            Number of messages reset.
        """
        with self._conn:
            if message_keys is None:
                cur = self._conn.execute(
                    "UPDATE messages SET chunked_at = NULL, chunk_count = NULL "
                    "WHERE chunked_at IS NOT NULL"
                )
                return cur.rowcount
            total = 0
            for key in message_keys:
                cur = self._conn.execute(
                    "UPDATE messages SET chunked_at = NULL, chunk_count = NULL "
                    "WHERE message_key = ?",
                    (key,),
                )
                total += cur.rowcount
            return total

    def count_messages(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]

    def count_pending_messages(self) -> int:
        return self._conn.execute(
            "SELECT COUNT(*) FROM messages WHERE chunked_at IS NULL AND body != ''"
        ).fetchone()[0]

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def upsert_chunks(self, chunks: Iterable[Chunk]) -> int:
        """Upsert a batch of chunks keyed by chunk_key. Returns rows written.

        Existing embeddings are preserved: a chunk_key always maps to the same
        text, so its vector stays valid.
        """
        now = utcnow()
        rows = [
            (
                c.chunk_key,
                c.thread_key,
                c.message_key,
                c.chunk_index,
                c.text,
                c.metadata,
                c.chunker_params,
                now,
            )
            for c in chunks
        ]
        if not rows:
            return 0
        with self._conn:
            self._conn.executemany(
                """
                INSERT INTO chunks (chunk_key, thread_key, message_key, chunk_index, text,
                                    metadata, chunker_params, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(chunk_key) DO UPDATE SET
                    thread_key     = excluded.thread_key,
                    message_key    = excluded.message_key,
                    chunk_index    = excluded.chunk_index,
                    text           = excluded.text,
                    metadata       = excluded.metadata,
                    chunker_params = excluded.chunker_params,
                    updated_at     = excluded.updated_at
                """,
                rows,
            )
        return len(rows)

    def get_chunk(self, chunk_key: str) -> Chunk | None:
        row = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE chunk_key = ?", (chunk_key,)
        ).fetchone()
        return _row_to_chunk(row) if row else None

    def get_chunks_by_ids(self, ids: list[int]) -> dict[int, Chunk]:
        """Return {chunk id: Chunk} for the given ids (missing ids are omitted)."""
        if not ids:
            return {}
        placeholders = ",".join("?" * len(ids))
        rows = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE id IN ({placeholders})", ids
        ).fetchall()
        return {r["id"]: _row_to_chunk(r) for r in rows}

    def get_embedding(self, chunk_key: str) -> list[float] | None:
        """Return the stored vector for *chunk_key*, or None if not embedded."""
        row = self._conn.execute(
            "SELECT vec_to_json(embedding) AS v FROM chunks "
            "WHERE chunk_key = ? AND embedding IS NOT NULL",
            (chunk_key,),
        ).fetchone()
        return json.loads(row["v"]) if row else None

    def list_chunk_keys(self, message_key: str | None = None) -> set[str]:
        if message_key is None:
            rows = self._conn.execute("SELECT chunk_key FROM chunks").fetchall()
        else:
            rows = self._conn.execute(
                "SELECT chunk_key FROM chunks WHERE message_key = ?", (message_key,)
            ).fetchall()
        return {r[0] for r in rows}

    def pending_chunks(
        self,
        limit: int,
        extra_filter: ChunkFilter | Mapping[str, Any] | None = None,
    ) -> list[Chunk]:
        """Chunks without an embedding and with non-empty text, oldest first.

        Args:
            limit: Maximum number of chunks to return.
            extra_filter: Optional equality filter on thread_key, message_key,
                chunk_index or chunker_params.
        """
        clauses = ["embedding IS NULL", "text != ''"]
        params: list[Any] = []
        for col, val in _filter_items(extra_filter, _CHUNK_FILTER_COLUMNS):
            clauses.append(f"{col} = ?")
            params.append(val)
        params.append(limit)
        rows = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE {' AND '.join(clauses)} "
            "ORDER BY id LIMIT ?",
            params,
        ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def count_chunks(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]

    def count_embedded_chunks(self) -> int:
        return self._conn.execute(
            "SELECT COUNT(*) FROM chunks WHERE embedding IS NOT NULL"
        ).fetchone()[0]

    def count_pending_chunks(self) -> int:
        return self._conn.execute(
            "SELECT COUNT(*) FROM chunks WHERE embedding IS NULL AND text != ''"
        ).fetchone()[0]

    def count_chunks_by_params(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT chunker_params, COUNT(*) AS n FROM chunks GROUP BY chunker_params"
        ).fetchall()
        return {r["chunker_params"]: r["n"] for r in rows}

    def prune_chunks(self, keep_params: str) -> int:
        """Delete chunks (and their vectors) produced with other chunking parameters.

        Returns:
            Number of chunks deleted.
        """
        ids = [
            r[0]
            for r in self._conn.execute(
                "SELECT id FROM chunks WHERE chunker_params != ?", (keep_params,)
            ).fetchall()
        ]
        if not ids:
            return 0
        vec_tables = [
            r[0] for r in self._conn.execute("SELECT table_name FROM vec_indexes").fetchall()
        ]
        with self._conn:
            for start in range(0, len(ids), 500):
                batch = ids[start : start + 500]
                placeholders = ",".join("?" * len(batch))
                for table in vec_tables:
                    self._conn.execute(
                        f"DELETE FROM {table} WHERE rowid IN ({placeholders})",  # noqa: S608
                        batch,
                    )
                self._conn.execute(
                    f"DELETE FROM chunks WHERE id IN ({placeholders})", batch  # noqa: S608
                )
        return len(ids)

    # ------------------------------------------------------------------
    # Vec embeddings
    # ------------------------------------------------------------------

    def set_chunk_embeddings(
        self,
        table: str,
        model: str,
        updates: list[tuple[Chunk, list[float]]],
    ) -> int:
        """Store vectors for existing chunks. Update-only: never creates a chunk.

        Each pair is (chunk, vector) with chunk.id set, as returned by
        pending_chunks(). The chunk row and its vec table row are written in
        one transaction.

        Returns:
            Number of chunks updated (chunks deleted in the meantime are skipped).
        """
        now = utcnow()
        updated = 0
        with self._conn:
            for chunk, vector in updates:
                blob = sqlite_vec.serialize_float32(vector)
                cur = self._conn.execute(
                    """
                    UPDATE chunks SET embedding = ?, embedding_model = ?, embedding_dims = ?,
                                      embedded_at = ?, updated_at = ?
                    WHERE chunk_key = ?
                    """,
                    (blob, model, len(vector), now, now, chunk.chunk_key),
                )
                if cur.rowcount == 0:
                    continue
                chunk_id = chunk.id
                if chunk_id is None:
                    chunk_id = self._conn.execute(
                        "SELECT id FROM chunks WHERE chunk_key = ?", (chunk.chunk_key,)
                    ).fetchone()[0]
                # vec0 has no upsert; replace the row explicitly.
                self._conn.execute(f"DELETE FROM {table} WHERE rowid = ?", (chunk_id,))
                self._conn.execute(
                    f"INSERT INTO {table}(rowid, embedding, thread_key, message_key) "
                    "VALUES (?, ?, ?, ?)",
                    (chunk_id, blob, chunk.thread_key, chunk.message_key),
                )
                updated += 1
        return updated

    def search_vec(
        self,
        table: str,
        embedding: list[float],
        k: int,
        chunk_filter: ChunkFilter | Mapping[str, Any] | None = None,
    ) -> list[tuple[Chunk, float]]:
        """Nearest-neighbour search. Returns (chunk, cosine distance), nearest first.

        Args:
            table: vec table to search.
            embedding: Query vector (same dimensionality as the table).
            k: Number of neighbours to return.
            chunk_filter: Optional equality filter on thread_key / message_key.
        """
        sql = f"SELECT rowid, distance FROM {table} WHERE embedding MATCH ? AND k = ?"
        params: list[Any] = [sqlite_vec.serialize_float32(embedding), k]
        for col, val in _filter_items(chunk_filter, _VEC_FILTER_COLUMNS):
            sql += f" AND {col} = ?"
            params.append(val)
        sql += " ORDER BY distance"
        vec_rows = self._conn.execute(sql, params).fetchall()

        chunk_map = self.get_chunks_by_ids([r["rowid"] for r in vec_rows])
        results: list[tuple[Chunk, float]] = []
        for vec_row in vec_rows:
            chunk = chunk_map.get(vec_row["rowid"])
            if chunk is not None:
                results.append((chunk, vec_row["distance"]))
        return results


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------


def _filter_items(
    chunk_filter: ChunkFilter | Mapping[str, Any] | None,
    allowed: frozenset[str],
) -> list[tuple[str, Any]]:
    if chunk_filter is None:
        return []
    items = chunk_filter.as_dict() if isinstance(chunk_filter, ChunkFilter) else dict(chunk_filter)
    unknown = set(items) - allowed
    if unknown:
        raise ValueError(
            f"Unsupported filter field(s): {', '.join(sorted(unknown))}. "
            f"Allowed: {', '.join(sorted(allowed))}."
        )
    return sorted(items.items())


def _row_to_thread(row: sqlite3.Row) -> Thread:
    return Thread(
        thread_key=row["thread_key"],
        thread_id=row["thread_id"],
        source_file=row["source_file"],
        subject=row["subject"],
        message_count=row["message_count"],
        participants=json.loads(row["participants"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        message_key=row["message_key"],
        thread_key=row["thread_key"],
        order_index=row["order_index"],
        sender=row["sender"],
        recipients=json.loads(row["recipients"]),
        timestamp=row["timestamp"],
        timestamp_raw=row["timestamp_raw"],
        subject=row["subject"],
        body=row["body"],
        raw=row["raw"],
        chunked_at=row["chunked_at"],
        chunk_count=row["chunk_count"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        chunk_key=row["chunk_key"],
        thread_key=row["thread_key"],
        message_key=row["message_key"],
        chunk_index=row["chunk_index"],
        text=row["text"],
        metadata=row["metadata"],
        chunker_params=row["chunker_params"],
        embedding_model=row["embedding_model"],
        embedding_dims=row["embedding_dims"],
        embedded_at=row["embedded_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
