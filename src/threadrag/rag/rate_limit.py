"""Fixed-window request rate limiter backed by the shared SQLite store.

One bucket per (salt, bucket name, client, window length). ``check`` is a
single ``INSERT … ON CONFLICT DO UPDATE … RETURNING`` statement run under
``BEGIN IMMEDIATE``, so concurrent callers in any process serialize on the
write lock and each sees its own post-increment count.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable
from dataclasses import dataclass

from threadrag import hashing
from threadrag.config import ConfigError
from threadrag.db.models import RateLimitBucket

logger = logging.getLogger(__name__)

_CHECK_SQL = """
INSERT INTO rate_limits (bucket_key, count, created_at, expires_at)
VALUES (:key, 1, :now, :expires)
ON CONFLICT(bucket_key) DO UPDATE SET
    count      = CASE WHEN rate_limits.expires_at > :now
                      THEN rate_limits.count + 1 ELSE 1 END,
    created_at = CASE WHEN rate_limits.expires_at > :now
                      THEN rate_limits.created_at ELSE :now END,
    expires_at = CASE WHEN rate_limits.expires_at > :now
                      THEN rate_limits.expires_at ELSE :expires END
RETURNING count, expires_at
"""


@dataclass
class RateLimitResult:
    """Outcome of one rate-limit check."""

    allowed: bool
    remaining: int
    count: int
    reset_at: float


class RateLimiter:
    """Count requests per client and bucket within a fixed window.

    Args:
        conn: Open connection to the shared store.
        salt: Server-side secret mixed into every bucket key.
        clock: Returns the current time in epoch seconds (injectable for tests).

    Raises:
        ConfigError: If *salt* is empty.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        salt: str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not salt:
            raise ConfigError(
                "Rate-limit salt is empty. Set THREADRAG_RATE_LIMIT_SALT to a random string."
            )
        self._conn = conn
        self._salt = salt
        self._clock = clock

    def check(
        self,
        client_id: str,
        bucket_name: str,
        window_seconds: int,
        max_requests: int,
    ) -> RateLimitResult:
        """Count this request and report whether it is within the limit.

        ``allowed`` is ``count <= max_requests``; ``remaining`` is
        ``max(0, max_requests - count)``.
        """
        if window_seconds < 1:
            raise ValueError(f"window_seconds must be >= 1, got {window_seconds}")
        if max_requests < 1:
            raise ValueError(f"max_requests must be >= 1, got {max_requests}")

        key = hashing.bucket_key(self._salt, bucket_name, client_id, window_seconds)
        now = self._clock()
        params = {"key": key, "now": now, "expires": now + window_seconds}

        if self._conn.in_transaction:
            self._conn.commit()
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            row = self._conn.execute(_CHECK_SQL, params).fetchall()[0]
            self._conn.commit()
        except BaseException:
            self._conn.rollback()
            raise

        count, reset_at = row[0], row[1]
        allowed = count <= max_requests
        if not allowed:
            logger.debug(
                "Rate limited: bucket=%s count=%d max=%d", bucket_name, count, max_requests
            )
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, max_requests - count),
            count=count,
            reset_at=reset_at,
        )

    def get_bucket(
        self, client_id: str, bucket_name: str, window_seconds: int
    ) -> RateLimitBucket | None:
        """Return the stored bucket for this client, or None (expired buckets included)."""
        key = hashing.bucket_key(self._salt, bucket_name, client_id, window_seconds)
        row = self._conn.execute(
            "SELECT bucket_key, count, created_at, expires_at FROM rate_limits "
            "WHERE bucket_key = ?",
            (key,),
        ).fetchone()
        if row is None:
            return None
        return RateLimitBucket(
            bucket_key=row["bucket_key"],
            count=row["count"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    def purge_expired(self) -> int:
        """Delete buckets whose window has passed. Returns the number removed."""
        return purge_expired(self._conn, self._clock())


def purge_expired(conn: sqlite3.Connection, now: float | None = None) -> int:
    """Delete every bucket with ``expires_at <= now``. Returns the number removed."""
    now = time.time() if now is None else now
    with conn:
        cur = conn.execute("DELETE FROM rate_limits WHERE expires_at <= ?", (now,))
    return cur.rowcount
