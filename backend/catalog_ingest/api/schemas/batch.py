"""Batch and chunk status payloads."""

from datetime import datetime

from pydantic import BaseModel, Field


class PerformanceMetrics(BaseModel):
    avg_chunk_seconds: float | None = None
    total_processing_seconds: float | None = None
    chunks_per_minute: float | None = None
    estimated_seconds_remaining: float | None = None
    estimated_time_remaining: str | None = Field(None, description="e.g. 45s, 12m, 2h 5m")


class BatchStatusResponse(BaseModel):
    batch_id: str
    source_filename: str
    submission_id: str | None = None
    status: str = Field(
        ..., description="pending|analyzing|chunked|processing|completed|completed_with_errors|failed"
    )
    total_rows: int = 0
    chunk_count: int = 0
    chunks_completed: int = 0
    chunks_failed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_deactivated: int = 0
    rows_failed: int = 0
    progress_percentage: float = Field(0.0, description="0-100 range for UI progress bars")
    performance: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    processing_log: list[str] = Field(default_factory=list)
    error_message: str | None = None
    created_at: datetime | None = None
    finalized_at: datetime | None = None


class SubmissionResponse(BaseModel):
    submission_id: str | None = None
    batches: list[BatchStatusResponse]


class SubmissionSummaryResponse(BaseModel):
    """Parent view over every batch created from one upload."""

    submission_id: str
    status: str
    batch_count: int
    batches_by_status: dict[str, int] = Field(default_factory=dict)
    total_rows: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_deactivated: int = 0
    rows_failed: int = 0
    batches: list[BatchStatusResponse] = Field(default_factory=list)


class StuckBatchResponse(BaseModel):
    batch_id: str
    source_filename: str
    status: str
    last_activity: datetime | None = None
    stuck_for_seconds: float


class RowErrorDetail(BaseModel):
    row_index: int | None = None
    reason: str


class ChunkStatusResponse(BaseModel):
    batch_id: str
    chunk_number: int
    status: str = Field(..., description="pending|processing|completed|failed")
    row_start: int
    row_end: int
    rows_total: int = 0
    rows_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    rows_failed: int = 0
    error_count: int = 0
    attempts: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    processing_time_seconds: float | None = None


class ChunkDetailResponse(ChunkStatusResponse):
    error_details: list[RowErrorDetail] = Field(default_factory=list)


class RecordStatsResponse(BaseModel):
    source_filename: str
    total_records: int
    active_records: int
    inactive_records: int
