"""Message chunker — split message bodies into overlapping retrieval chunks.

Paragraph-packing splitter with raw slicing for oversized paragraphs and a
forward-compounding overlap prefix. Chunk rows are written before the
source messages are marked, so a crash in between only causes a harmless
re-chunk with identical keys.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass

from threadrag import hashing
from threadrag.db.models import Chunk, Message
from threadrag.db.repository import Repository

logger = logging.getLogger(__name__)

_PARAGRAPH_SPLIT = re.compile(r"\n{2,}")
_PARAGRAPH_JOIN = "\n\n"


def _validate(max_chars: int, overlap_chars: int) -> None:
    if max_chars <= 0:
        raise ValueError(f"max_chars must be > 0, got {max_chars}")
    if overlap_chars < 0 or overlap_chars >= max_chars:
        raise ValueError(
            f"overlap_chars must be in [0, max_chars), got {overlap_chars} "
            f"with max_chars={max_chars}"
        )


def chunk_text(text: str, max_chars: int, overlap_chars: int) -> list[str]:
    """Split *text* into ordered chunks of at most ``max_chars + overlap_chars`` chars.

    Paragraphs (blank-line separated) are packed greedily up to *max_chars*.
    A paragraph longer than *max_chars* is sliced into *max_chars* windows
    advancing by ``max_chars - overlap_chars``. Chunks 2..N are then prefixed
    with the last *overlap_chars* characters of the previous output chunk.

    Raises:
        ValueError: If ``max_chars <= 0`` or *overlap_chars* is outside
            ``[0, max_chars)``.
    """
    _validate(max_chars, overlap_chars)
    clean = (text or "").strip()
    if not clean:
        return []

    paragraphs = [p.strip() for p in _PARAGRAPH_SPLIT.split(clean)]
    paragraphs = [p for p in paragraphs if p] or [clean]

    chunks: list[str] = []
    buffer = ""

    def flush() -> None:
        nonlocal buffer
        trimmed = buffer.strip()
        if trimmed:
            chunks.append(trimmed)
        buffer = ""

    step = max(1, max_chars - overlap_chars)
    for para in paragraphs:
        if len(para) > max_chars:
            flush()
            start = 0
            while start < len(para):
                end = min(len(para), start + max_chars)
                piece = para[start:end].strip()
                if piece:
                    chunks.append(piece)
                if end >= len(para):
                    break
                start += step
            continue

        if not buffer:
            buffer = para
        elif len(buffer) + len(_PARAGRAPH_JOIN) + len(para) <= max_chars:
            buffer = f"{buffer}{_PARAGRAPH_JOIN}{para}"
        else:
            flush()
            buffer = para
    flush()

    if overlap_chars > 0 and len(chunks) > 1:
        overlapped = [chunks[0]]
        for chunk in chunks[1:]:
            overlapped.append(overlapped[-1][-overlap_chars:] + chunk)
        return overlapped
    return chunks


def chunker_params(max_chars: int, overlap_chars: int) -> str:
    """Signature of the parameters a chunk was produced with, e.g. ``"2000:200"``."""
    return f"{max_chars}:{overlap_chars}"


@dataclass
class ChunkStats:
    """Totals for one chunking run."""

    messages: int = 0
    chunks: int = 0
    empty_messages: int = 0
    batches: int = 0


class MessageChunker:
    """Chunk every pending message (``chunked_at`` unset, non-empty body).

    Args:
        repo: Open Repository.
        max_chars: Maximum characters per packed chunk (before overlap).
        overlap_chars: Characters carried over from the previous chunk.
        batch_size: Messages selected per batch.
        max_messages: Stop after this many messages (0 = no cap).
    """

    def __init__(
        self,
        repo: Repository,
        max_chars: int = 2000,
        overlap_chars: int = 200,
        batch_size: int = 200,
        max_messages: int = 0,
    ) -> None:
        _validate(max_chars, overlap_chars)
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self._repo = repo
        self.max_chars = max_chars
        self.overlap_chars = overlap_chars
        self.batch_size = batch_size
        self.max_messages = max_messages
        self.params = chunker_params(max_chars, overlap_chars)

    def build_chunks(self, message: Message) -> list[Chunk]:
        """Chunk one message. Metadata is a snapshot of the message at this moment."""
        metadata = json.dumps(
            {
                "order_index": message.order_index,
                "sender": message.sender,
                "recipients": message.recipients,
                "timestamp": message.timestamp,
                "timestamp_raw": message.timestamp_raw,
                "subject": message.subject,
            },
            ensure_ascii=False,
        )
        return [
            Chunk(
                chunk_key=hashing.chunk_key(message.message_key, i, text),
                thread_key=message.thread_key,
                message_key=message.message_key,
                chunk_index=i,
                text=text,
                metadata=metadata,
                chunker_params=self.params,
            )
            for i, text in enumerate(chunk_text(message.body, self.max_chars, self.overlap_chars))
        ]

    def run(self) -> ChunkStats:
        """Process pending messages batch by batch until none remain or the cap is hit."""
        stats = ChunkStats()
        while True:
            limit = self.batch_size
            if self.max_messages > 0:
                limit = min(limit, self.max_messages - stats.messages)
                if limit <= 0:
                    break

            messages = self._repo.pending_messages(limit)
            if not messages:
                logger.info("No more messages to chunk")
                break

            chunks: list[Chunk] = []
            results: list[tuple[str, int]] = []
            for message in messages:
                built = self.build_chunks(message)
                if not built:
                    stats.empty_messages += 1
                chunks.extend(built)
                results.append((message.message_key, len(built)))

            self._repo.upsert_chunks(chunks)
            self._repo.mark_messages_chunked(results)

            stats.batches += 1
            stats.messages += len(messages)
            stats.chunks += len(chunks)
            logger.info(
                "processed_messages=%d (+%d) chunks=%d (+%d)",
                stats.messages, len(messages), stats.chunks, len(chunks),
            )
        return stats
