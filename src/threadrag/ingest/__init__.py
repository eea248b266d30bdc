"""threadrag ingest pipeline — dataset ingestion, chunking, embedding backfill."""

from threadrag.ingest.chunker import ChunkStats, MessageChunker, chunk_text, chunker_params
from threadrag.ingest.dataset_client import DatasetClient, DatasetFetchError, RowsPage
from threadrag.ingest.embed_backfill import BackfillStats, EmbeddingBackfiller
from threadrag.ingest.ingester import DatasetIngester, IngestStats

__all__ = [
    "BackfillStats",
    "ChunkStats",
    "DatasetClient",
    "DatasetFetchError",
    "DatasetIngester",
    "EmbeddingBackfiller",
    "IngestStats",
    "MessageChunker",
    "RowsPage",
    "chunk_text",
    "chunker_params",
]
