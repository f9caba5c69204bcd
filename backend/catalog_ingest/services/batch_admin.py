"""Operator-facing queries and actions on batches and chunks."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from catalog_ingest.core.config import get_settings
from catalog_ingest.core.errors import (
    BatchNotFoundError,
    BatchStateError,
    ChunkNotFoundError,
    SubmissionNotFoundError,
)
from catalog_ingest.db.models import BatchStatus, ChunkStatus, IngestBatch, IngestChunk
from catalog_ingest.services import job_queue, progress_store
from catalog_ingest.services.batch_state import (
    append_log,
    fail_batch,
    reopen_batch,
    reset_for_retry,
    utcnow,
)
from catalog_ingest.services.dispatcher import load_source
from catalog_ingest.storage.upload_store import load_upload
from catalog_ingest.utils.timing import as_utc

logger = logging.getLogger(__name__)

IN_FLIGHT = (BatchStatus.CHUNKED, BatchStatus.PROCESSING)


def _get_batch(session: Session, batch_id: str) -> IngestBatch:
    batch = session.get(IngestBatch, batch_id, populate_existing=True)
    if batch is None:
        raise BatchNotFoundError(f"Batch {batch_id} not found")
    return batch


def _get_chunk(session: Session, batch_id: str, chunk_number: int) -> IngestChunk:
    chunk = session.scalar(
        select(IngestChunk)
        .where(IngestChunk.batch_id == batch_id, IngestChunk.chunk_number == chunk_number)
        .execution_options(populate_existing=True)
    )
    if chunk is None:
        raise ChunkNotFoundError(f"Chunk {chunk_number} of batch {batch_id} not found")
    return chunk


def get_batch_status(session: Session, batch_id: str) -> dict[str, Any]:
    summary = progress_store.get_batch_summary(session, batch_id)
    if summary is None:
        raise BatchNotFoundError(f"Batch {batch_id} not found")
    return summary


def list_chunks(session: Session, batch_id: str) -> list[dict[str, Any]]:
    batch = _get_batch(session, batch_id)
    return progress_store.get_all_chunk_statuses(session, batch_id, batch.chunk_count)


def get_chunk_detail(session: Session, batch_id: str, chunk_number: int) -> dict[str, Any]:
    """Chunk status plus the full per-row error list from the database."""
    _get_batch(session, batch_id)
    chunk = _get_chunk(session, batch_id, chunk_number)
    detail = progress_store.chunk_payload(chunk)
    detail["error_details"] = list(chunk.error_details or [])
    return detail


def last_activity(session: Session, batch: IngestBatch) -> datetime | None:
    """Most recent write to the batch or any of its chunks."""
    latest_chunk = session.scalar(
        select(func.max(IngestChunk.updated_at)).where(IngestChunk.batch_id == batch.id)
    )
    candidates = [as_utc(v) for v in (batch.updated_at, latest_chunk) if v is not None]
    return max(candidates) if candidates else None


def is_stuck(session: Session, batch: IngestBatch, now: datetime | None = None) -> bool:
    if batch.status not in IN_FLIGHT:
        return False
    activity = last_activity(session, batch)
    if activity is None:
        return False
    now = now or utcnow()
    return now - activity > timedelta(seconds=get_settings().stuck_after_seconds)


def retry_batch(session: Session, batch_id: str, *, now: datetime | None = None) -> dict[str, Any]:
    """Re-run a failed or stuck batch from its stored upload."""
    batch = _get_batch(session, batch_id)
    if batch.status != BatchStatus.FAILED and not is_stuck(session, batch, now):
        raise BatchStateError(
            f"Batch {batch_id} is {batch.status}; only failed or stuck batches can be retried"
        )
    # Raises SourceFileUnavailableError before anything is reset
    load_upload(batch.stored_file_path)

    previous_status = batch.status
    previous_chunks = batch.chunk_count
    reset_for_retry(session, batch)
    append_log(session, batch_id, f"Retry requested (was {previous_status})", level="warning")
    session.commit()

    progress_store.clear_cancelled(batch_id)
    progress_store.forget_batch(batch_id, previous_chunks)
    job_queue.enqueue_source_file(batch_id)
    logger.info(f"Batch {batch_id} reset from {previous_status} and re-queued")
    return progress_store.get_batch_summary(session, batch_id)


def retry_chunk(session: Session, batch_id: str, chunk_number: int) -> dict[str, Any]:
    """Re-run one failed chunk, then reconcile the batch again.

    The chunk resumes after the rows it already committed. A finalized
    batch is reopened so the next reconcile can settle a new status.
    """
    batch = _get_batch(session, batch_id)
    if batch.status == BatchStatus.FAILED:
        raise BatchStateError(f"Batch {batch_id} is failed; retry the whole batch instead")
    chunk = _get_chunk(session, batch_id, chunk_number)
    if chunk.status != ChunkStatus.FAILED:
        raise BatchStateError(
            f"Chunk {chunk_number} of batch {batch_id} is {chunk.status}; only failed chunks can be retried"
        )

    parsed = load_source(batch)
    rows = parsed.rows[chunk.row_start : chunk.row_end]

    chunk.status = ChunkStatus.PENDING
    chunk.started_at = None
    chunk.completed_at = None
    # Row errors stay with the committed rows; attempt-level reasons go
    chunk.error_details = [e for e in (chunk.error_details or []) if e.get("row_index") is not None]
    reopen_batch(session, batch, f"retry of chunk {chunk_number}")
    append_log(
        session,
        batch_id,
        f"Retry requested for rows {chunk.row_start + chunk.rows_processed}-{chunk.row_end}",
        level="warning",
        chunk_number=chunk_number,
    )
    session.commit()

    progress_store.forget_chunk(batch_id, chunk_number)
    progress_store.force_refresh(session, batch_id)
    job_queue.enqueue_chunk(
        batch_id,
        chunk_number,
        rows,
        parsed.headers,
        batch.source_filename,
        batch.configured_unique_column,
        chunk_count=batch.chunk_count,
    )
    job_queue.enqueue_reconcile(batch_id, countdown=get_settings().reconcile_grace_seconds)
    session.commit()
    return get_chunk_detail(session, batch_id, chunk_number)


def list_stuck_batches(session: Session, now: datetime | None = None) -> list[dict[str, Any]]:
    """In-flight batches with no writes for ``stuck_after_seconds``."""
    now = now or utcnow()
    candidates = session.scalars(
        select(IngestBatch)
        .where(IngestBatch.status.in_(IN_FLIGHT))
        .order_by(IngestBatch.created_at)
    ).all()
    stuck = []
    for batch in candidates:
        if not is_stuck(session, batch, now):
            continue
        activity = last_activity(session, batch)
        stuck.append(
            {
                "batch_id": batch.id,
                "source_filename": batch.source_filename,
                "status": batch.status,
                "last_activity": activity,
                "stuck_for_seconds": round((now - activity).total_seconds(), 1),
            }
        )
    if stuck:
        logger.warning(f"{len(stuck)} batch(es) stuck with no progress")
    return stuck


def submission_status(statuses: list[str], records_processed: int) -> str:
    """One status for an upload from the statuses of its batches.

    Failed entries only fail the whole upload when nothing was stored.
    """
    if not statuses:
        return BatchStatus.PENDING
    if any(s not in BatchStatus.TERMINAL for s in statuses):
        return BatchStatus.PROCESSING
    failed = sum(1 for s in statuses if s == BatchStatus.FAILED)
    if failed and (failed == len(statuses) or records_processed == 0):
        return BatchStatus.FAILED
    if failed or BatchStatus.COMPLETED_WITH_ERRORS in statuses:
        return BatchStatus.COMPLETED_WITH_ERRORS
    return BatchStatus.COMPLETED


def get_submission_summary(session: Session, submission_id: str) -> dict[str, Any]:
    """Aggregate every batch created from one upload (one per ZIP entry)."""
    batch_ids = session.scalars(
        select(IngestBatch.id)
        .where(IngestBatch.submission_id == submission_id)
        .order_by(IngestBatch.created_at, IngestBatch.source_filename)
    ).all()
    if not batch_ids:
        raise SubmissionNotFoundError(f"Submission {submission_id} not found")

    summaries = [progress_store.get_batch_summary(session, batch_id) for batch_id in batch_ids]
    summaries = [s for s in summaries if s]
    statuses = [s["status"] for s in summaries]
    by_status: dict[str, int] = {}
    for s in statuses:
        by_status[s] = by_status.get(s, 0) + 1

    def total(field: str) -> int:
        return sum(s.get(field) or 0 for s in summaries)

    return {
        "submission_id": submission_id,
        "status": submission_status(
            statuses, total("records_created") + total("records_updated")
        ),
        "batch_count": len(summaries),
        "batches_by_status": by_status,
        "total_rows": total("total_rows"),
        "records_created": total("records_created"),
        "records_updated": total("records_updated"),
        "records_deactivated": total("records_deactivated"),
        "rows_failed": total("rows_failed"),
        "batches": summaries,
    }


def cancel_batch(session: Session, batch_id: str) -> dict[str, Any]:
    """Stop a processing batch. Running chunks stop at their next check."""
    batch = _get_batch(session, batch_id)
    if batch.status != BatchStatus.PROCESSING:
        raise BatchStateError(
            f"Batch {batch_id} is {batch.status}; only processing batches can be cancelled"
        )

    progress_store.mark_cancelled(batch_id)
    fail_batch(session, batch, "Cancelled by operator")

    pending = session.scalars(
        select(IngestChunk).where(
            IngestChunk.batch_id == batch_id, IngestChunk.status == ChunkStatus.PENDING
        )
    ).all()
    for chunk in pending:
        chunk.status = ChunkStatus.FAILED
        chunk.completed_at = utcnow()
        chunk.error_details = [{"row_index": None, "reason": "cancelled"}]
    session.commit()
    logger.info(f"Batch {batch_id} cancelled; {len(pending)} pending chunks will not run")
    return progress_store.force_refresh(session, batch_id)
