"""Dataset ingester — mirror remote dataset rows into threads and messages.

Each page is normalized and written as two independent batches: threads,
then messages. Re-ingesting a page upserts the same keys and never
duplicates. Progress is not checkpointed; a re-run simply upserts again.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from threadrag.config import MAX_PAGE_SIZE
from threadrag.db.models import Message, Thread
from threadrag.db.repository import Repository
from threadrag.ingest.dataset_client import DatasetClient, RowsPage
from threadrag.ingest.normalize import normalize_row

logger = logging.getLogger(__name__)


@dataclass
class IngestStats:
    """Totals for one ingestion run."""

    rows: int = 0
    threads: int = 0
    messages: int = 0
    pages: int = 0
    skipped_rows: int = 0
    degraded_messages: int = 0
    last_offset: int = 0
    total_rows: int | None = None


class DatasetIngester:
    """Page through the dataset and upsert every row.

    Args:
        repo: Open Repository.
        client: Dataset row client.
        page_size: Rows per page (clamped to 1..100).
        start_offset: First row offset.
        max_rows: Stop after this many rows (0 = no cap).
        page_delay: Seconds to pause between pages.
        store_raw: Keep each message's canonical JSON on the message row.
        sleep: Sleep function (injectable for tests).
    """

    def __init__(
        self,
        repo: Repository,
        client: DatasetClient,
        page_size: int = MAX_PAGE_SIZE,
        start_offset: int = 0,
        max_rows: int = 0,
        page_delay: float = 0.0,
        store_raw: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if start_offset < 0 or max_rows < 0 or page_delay < 0:
            raise ValueError("start_offset, max_rows and page_delay must be >= 0")
        self._repo = repo
        self._client = client
        self.page_size = max(1, min(MAX_PAGE_SIZE, page_size))
        self.start_offset = start_offset
        self.max_rows = max_rows
        self.page_delay = page_delay
        self.store_raw = store_raw
        self._sleep = sleep

    def run(self, on_page: Callable[[IngestStats], None] | None = None) -> IngestStats:
        """Ingest pages until an empty page, the known total, or the row cap.

        Args:
            on_page: Optional callback invoked with the running stats after each page.

        Raises:
            DatasetFetchError: If a page cannot be fetched after all retries.
        """
        stats = IngestStats(last_offset=self.start_offset)
        offset = self.start_offset

        while True:
            length = self.page_size
            if self.max_rows > 0:
                remaining = self.max_rows - (offset - self.start_offset)
                if remaining <= 0:
                    break
                length = min(length, remaining)

            page = self._client.fetch_rows(offset, length)
            if page.num_rows_total is not None:
                stats.total_rows = page.num_rows_total
            if not page.rows:
                logger.info("No rows returned at offset %d; done", offset)
                break

            self.ingest_page(page, stats)
            offset += len(page.rows)
            stats.last_offset = offset
            stats.pages += 1
            logger.info(
                "offset=%d (+%d rows) threads=%d messages=%d",
                offset, len(page.rows), stats.threads, stats.messages,
            )
            if on_page is not None:
                on_page(stats)

            if stats.total_rows is not None and offset >= stats.total_rows:
                break
            if self.page_delay > 0:
                self._sleep(self.page_delay)

        return stats

    def ingest_page(self, page: RowsPage, stats: IngestStats | None = None) -> IngestStats:
        """Normalize and write one page: thread batch, then message batch."""
        stats = stats if stats is not None else IngestStats()
        threads: list[Thread] = []
        messages: list[Message] = []

        for row in page.rows:
            stats.rows += 1
            try:
                normalized = normalize_row(row, store_raw=self.store_raw)
            except ValueError as exc:
                logger.warning("Skipping row: %s", exc)
                stats.skipped_rows += 1
                continue
            threads.append(normalized.thread)
            messages.extend(normalized.messages)
            stats.degraded_messages += normalized.skipped

        # Separate transactions: a failed message batch does not roll back threads.
        stats.threads += self._repo.upsert_threads(threads)
        stats.messages += self._repo.upsert_messages(messages)
        return stats
