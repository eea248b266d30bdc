"""Domain models for the threadrag database layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field


@dataclass
class Thread:
    thread_key: str
    thread_id: str
    source_file: str
    subject: str | None = None
    message_count: int | None = None
    participants: list[str] = field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Message:
    thread_key: str
    message_key: str
    order_index: int
    sender: str | None = None
    recipients: list[str] = field(default_factory=list)
    timestamp: str | None = None       # ISO-8601 UTC, None when unparseable
    timestamp_raw: str | None = None   # always the original string
    subject: str | None = None
    body: str = ""
    raw: str | None = None             # canonical JSON, only when store_raw is on
    chunked_at: str | None = None
    chunk_count: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Chunk:
    chunk_key: str
    thread_key: str
    message_key: str
    chunk_index: int
    text: str
    metadata: str = field(default_factory=lambda: "{}")
    chunker_params: str = ""
    embedding_model: str | None = None
    embedding_dims: int | None = None
    embedded_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    id: int | None = None  # set after insert; doubles as the vec table rowid

    @property
    def metadata_dict(self) -> dict:
        return json.loads(self.metadata)

    @property
    def is_embedded(self) -> bool:
        return self.embedded_at is not None


@dataclass
class RateLimitBucket:
    bucket_key: str
    count: int
    created_at: float
    expires_at: float


@dataclass
class VecIndex:
    model: str
    dimensions: int
    table_name: str


@dataclass
class ChunkFilter:
    """Equality filter on chunk ownership. Empty fields are ignored."""

    thread_key: str | None = None
    message_key: str | None = None

    def as_dict(self) -> dict[str, str]:
        out: dict[str, str] = {}
        if self.thread_key:
            out["thread_key"] = self.thread_key
        if self.message_key:
            out["message_key"] = self.message_key
        return out

    def __bool__(self) -> bool:
        return bool(self.as_dict())
