"""Paginated row client for the remote dataset server.

Fetches ``{rows, num_rows_total}`` pages by offset/length with bounded,
iterative retry. Exhausted retries raise ``DatasetFetchError`` so a missing
page is never mistaken for the end of the dataset.
"""

from __future__ import annotations

import http.client
import json
import logging
import random
import time
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from threadrag.config import MAX_PAGE_SIZE

logger = logging.getLogger(__name__)

_USER_AGENT = "threadrag/0.1 (+dataset ingestion)"
_TIMEOUT = 30.0

_THROTTLE_STEP = 1.5    # seconds per attempt on HTTP 429 without Retry-After
_THROTTLE_JITTER = 0.5
_ERROR_STEP = 0.75      # seconds per attempt on any other failure


class DatasetFetchError(RuntimeError):
    """Raised when a page cannot be fetched after all retry attempts."""

    def __init__(self, offset: int, attempts: int, reason: str) -> None:
        super().__init__(
            f"Failed to fetch dataset rows at offset {offset} after {attempts} attempts: {reason}"
        )
        self.offset = offset
        self.attempts = attempts
        self.reason = reason


@dataclass
class RowsPage:
    """One page of dataset rows."""

    rows: list[dict[str, Any]] = field(default_factory=list)
    num_rows_total: int | None = None


class DatasetClient:
    """Fetch pages of rows from a datasets-server style ``/rows`` endpoint.

    Args:
        base_url: Rows endpoint, e.g. ``https://datasets-server.huggingface.co/rows``.
        dataset: Dataset identifier.
        config: Dataset configuration name.
        split: Dataset split.
        max_attempts: Attempts per page before giving up.
        timeout: Socket timeout per request in seconds.
        sleep: Sleep function (injectable for tests).
    """

    def __init__(
        self,
        base_url: str,
        dataset: str,
        config: str = "default",
        split: str = "train",
        max_attempts: int = 6,
        timeout: float = _TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.base_url = base_url
        self.dataset = dataset
        self.config = config
        self.split = split
        self.max_attempts = max_attempts
        self.timeout = timeout
        self._sleep = sleep

    def rows_url(self, offset: int, length: int) -> str:
        query = urllib.parse.urlencode(
            {
                "dataset": self.dataset,
                "config": self.config,
                "split": self.split,
                "offset": offset,
                "length": length,
            }
        )
        return f"{self.base_url}?{query}"

    def fetch_rows(self, offset: int, length: int = MAX_PAGE_SIZE) -> RowsPage:
        """Fetch one page starting at *offset*.

        *length* is clamped to 1..100 (the provider maximum).

        Raises:
            DatasetFetchError: After ``max_attempts`` failed attempts.
        """
        length = max(1, min(MAX_PAGE_SIZE, length))
        url = self.rows_url(offset, length)
        reason = "no attempt made"

        for attempt in range(1, self.max_attempts + 1):
            try:
                payload = json.loads(self._get(url))
                return _parse_page(payload)
            except urllib.error.HTTPError as exc:
                reason = f"HTTP {exc.code}"
                if exc.code == 429:
                    retry_after = exc.headers.get("Retry-After") if exc.headers else None
                    delay = _throttle_delay(attempt, retry_after)
                else:
                    delay = attempt * _ERROR_STEP
            except (urllib.error.URLError, OSError, http.client.HTTPException) as exc:
                reason = f"network error: {exc}"
                delay = attempt * _ERROR_STEP
            except ValueError as exc:
                reason = f"invalid response: {exc}"
                delay = attempt * _ERROR_STEP

            if attempt < self.max_attempts:
                logger.warning(
                    "Dataset fetch at offset %d failed (%s); retry %d/%d in %.2fs",
                    offset, reason, attempt, self.max_attempts - 1, delay,
                )
                self._sleep(delay)

        raise DatasetFetchError(offset, self.max_attempts, reason)

    def _get(self, url: str) -> bytes:
        request = urllib.request.Request(
            url, headers={"User-Agent": _USER_AGENT, "Accept": "application/json"}
        )
        with urllib.request.urlopen(request, timeout=self.timeout) as response:
            return response.read()


def _throttle_delay(attempt: int, retry_after: str | None) -> float:
    """Delay after HTTP 429: Retry-After seconds (min 1) or linear backoff, plus jitter."""
    jitter = random.uniform(0, _THROTTLE_JITTER)
    if retry_after:
        try:
            return max(1.0, float(retry_after)) + jitter
        except ValueError:
            pass  # HTTP-date form; fall back to linear backoff
    return attempt * _THROTTLE_STEP + jitter


def _parse_page(payload: Any) -> RowsPage:
    if not isinstance(payload, dict):
        raise ValueError(f"expected a JSON object, got {type(payload).__name__}")
    rows: list[dict[str, Any]] = []
    for item in payload.get("rows") or []:
        if isinstance(item, dict):
            row = item.get("row", item)
            if isinstance(row, dict):
                rows.append(row)
    total = payload.get("num_rows_total")
    return RowsPage(rows=rows, num_rows_total=total if isinstance(total, int) else None)
