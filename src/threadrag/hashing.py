"""Content-addressed identity for threads, messages, chunks and rate-limit buckets.

Every key is a SHA-256 digest (64 lowercase hex chars) over ``::``-joined
components. Identical semantic input always yields the identical key, which
is what makes every downstream upsert idempotent.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

_SEP = "::"


def sha256_hex(text: str) -> str:
    """Return the lowercase hex SHA-256 digest of *text* (UTF-8)."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def canonical_json(obj: Any) -> str:
    """Serialize *obj* deterministically (sorted keys, compact separators)."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def thread_key(source_file: str, thread_id: str) -> str:
    return sha256_hex(_SEP.join([str(source_file), str(thread_id)]))


def message_key(thread_key: str, order_index: int, raw_message: Any) -> str:
    """Identity of one message: owning thread + position + canonical raw content.

    Stable even when the source message carries no natural id.
    """
    raw = raw_message if isinstance(raw_message, str) else canonical_json(raw_message)
    return sha256_hex(_SEP.join([thread_key, str(order_index), raw]))


def chunk_key(message_key: str, chunk_index: int, text: str) -> str:
    """Identity of one chunk. Changes whenever chunking parameters change the text."""
    return sha256_hex(_SEP.join([message_key, str(chunk_index), text]))


def bucket_key(salt: str, bucket_name: str, client_id: str, window_seconds: int) -> str:
    """Rate-limit bucket identity; the salt keeps keys unguessable across deployments."""
    return sha256_hex(_SEP.join([salt, bucket_name, client_id, str(window_seconds)]))
