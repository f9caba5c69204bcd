"""One bounded contiguous slice of a batch's rows."""

from sqlalchemy import JSON, Column, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from catalog_ingest.db.base import Base


class ChunkStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = frozenset({COMPLETED, FAILED})


class IngestChunk(Base):
    __tablename__ = "ingest_chunks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(
        String(36),
        ForeignKey("ingest_batches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    chunk_number = Column(Integer, nullable=False)
    row_start = Column(Integer, nullable=False)
    row_end = Column(Integer, nullable=False)
    status = Column(String(32), nullable=False, default=ChunkStatus.PENDING)
    rows_total = Column(Integer, nullable=False, default=0)
    rows_processed = Column(Integer, nullable=False, default=0)
    records_created = Column(Integer, nullable=False, default=0)
    records_updated = Column(Integer, nullable=False, default=0)
    rows_failed = Column(Integer, nullable=False, default=0)
    error_details = Column(JSON().with_variant(JSONB, "postgresql"), default=list)
    attempts = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    batch = relationship("IngestBatch", back_populates="chunks")

    __table_args__ = (
        UniqueConstraint("batch_id", "chunk_number", name="uq_ingest_chunks_batch_number"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in ChunkStatus.TERMINAL

    @property
    def row_range(self) -> tuple[int, int]:
        return (self.row_start, self.row_end)
