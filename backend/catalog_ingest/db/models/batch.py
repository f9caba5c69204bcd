"""Track one logical source-file ingestion end to end."""

import uuid

from sqlalchemy import Column, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from catalog_ingest.db.base import Base


class BatchStatus:
    PENDING = "pending"
    ANALYZING = "analyzing"
    CHUNKED = "chunked"
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"

    ORDER = (
        PENDING,
        ANALYZING,
        CHUNKED,
        PROCESSING,
        COMPLETED,
        COMPLETED_WITH_ERRORS,
        FAILED,
    )
    TERMINAL = frozenset({COMPLETED, COMPLETED_WITH_ERRORS, FAILED})

    @classmethod
    def rank(cls, status: str) -> int:
        # All terminal states share one rank: none may follow another.
        if status in cls.TERMINAL:
            return len(cls.ORDER)
        return cls.ORDER.index(status)


class IngestBatch(Base):
    __tablename__ = "ingest_batches"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    source_filename = Column(String(255), nullable=False, index=True)
    # Shared by every batch created from one upload
    submission_id = Column(String(36), index=True)
    content_type = Column(String(16), nullable=False, default="csv")
    archive_name = Column(String(255))
    archive_member = Column(Text)
    stored_file_path = Column(Text)
    configured_unique_column = Column(String(255))
    status = Column(String(32), nullable=False, default=BatchStatus.PENDING, index=True)
    total_rows = Column(Integer, nullable=False, default=0)
    chunk_count = Column(Integer, nullable=False, default=0)
    records_created = Column(Integer, nullable=False, default=0)
    records_updated = Column(Integer, nullable=False, default=0)
    records_deactivated = Column(Integer, nullable=False, default=0)
    rows_failed = Column(Integer, nullable=False, default=0)
    chunks_completed = Column(Integer, nullable=False, default=0)
    chunks_failed = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True))
    finalized_at = Column(DateTime(timezone=True))
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    chunks = relationship(
        "IngestChunk",
        back_populates="batch",
        order_by="IngestChunk.chunk_number",
        cascade="all, delete-orphan",
    )
    log_entries = relationship(
        "BatchLogEntry",
        order_by="BatchLogEntry.id",
        cascade="all, delete-orphan",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in BatchStatus.TERMINAL

    @property
    def processing_log(self) -> list[str]:
        return [entry.render() for entry in self.log_entries]


class BatchLogEntry(Base):
    """Append-only trace entry; writers only insert, readers merge by id."""

    __tablename__ = "ingest_batch_log_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(
        String(36), ForeignKey("ingest_batches.id", ondelete="CASCADE"), nullable=False
    )
    chunk_number = Column(Integer)
    level = Column(String(16), nullable=False, default="info")
    message = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("ix_batch_log_entries_batch_id", batch_id, id),)

    def render(self) -> str:
        prefix = f"[{self.level.upper()}]"
        if self.chunk_number is not None:
            prefix = f"{prefix} [chunk {self.chunk_number}]"
        return f"{prefix} {self.message}"
