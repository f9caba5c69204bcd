"""Database models package."""
from catalog_ingest.db.models.batch import BatchLogEntry, BatchStatus, IngestBatch
from catalog_ingest.db.models.chunk import ChunkStatus, IngestChunk
from catalog_ingest.db.models.target_record import TargetRecord

__all__ = [
    "BatchLogEntry",
    "BatchStatus",
    "ChunkStatus",
    "IngestBatch",
    "IngestChunk",
    "TargetRecord",
]
