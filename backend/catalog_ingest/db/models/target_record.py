"""SQLAlchemy model for ingested catalog records."""

from sqlalchemy import JSON, Boolean, Column, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from catalog_ingest.db.base import Base


class TargetRecord(Base):
    __tablename__ = "target_records"

    id = Column(Integer, primary_key=True)
    business_key = Column(String(255), nullable=False, unique=True)
    attributes = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict)
    source_filename = Column(String(255), nullable=False)
    source_batch_id = Column(String(36), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    deactivated_by_batch_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_target_records_source_active", source_filename, is_active),
        Index("ix_target_records_source_batch", source_batch_id),
    )
