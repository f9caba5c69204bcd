"""Row loop and lifecycle for one chunk of a batch."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from sqlalchemy import select
from sqlalchemy.exc import DataError, IntegrityError
from sqlalchemy.orm import Session

from catalog_ingest.core.config import get_settings
from catalog_ingest.core.errors import ChunkNotFoundError, RowError
from catalog_ingest.db.models import BatchStatus, ChunkStatus, IngestBatch, IngestChunk
from catalog_ingest.services import progress_store
from catalog_ingest.services.batch_state import append_log, claim_processing, utcnow
from catalog_ingest.services.matcher import Matcher, default_matcher
from catalog_ingest.services.record_upsert import CREATED, upsert_record
from catalog_ingest.utils.csv_validator import normalize_row
from catalog_ingest.utils.memory_monitor import (
    check_memory_exceeded,
    force_gc,
    log_memory_status,
)

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"


@dataclass
class RowLoopResult:
    rows_total: int
    rows_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    rows_failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    cancelled: bool = False

    @classmethod
    def resume(cls, chunk: IngestChunk) -> "RowLoopResult":
        """Start from the counters a previous attempt committed."""
        return cls(
            rows_total=chunk.rows_total,
            rows_processed=chunk.rows_processed or 0,
            records_created=chunk.records_created or 0,
            records_updated=chunk.records_updated or 0,
            rows_failed=chunk.rows_failed or 0,
            errors=[e for e in (chunk.error_details or []) if e.get("row_index") is not None],
        )

    def record_error(self, row_index: int, reason: str) -> None:
        self.rows_failed += 1
        self.errors.append({"row_index": row_index, "reason": reason})


def process_rows(
    session: Session,
    rows: Sequence[Sequence[str]],
    headers: Sequence[str],
    key_index: int,
    *,
    batch_id: str,
    source_filename: str,
    row_offset: int = 0,
    is_cancelled: Callable[[], bool] | None = None,
    result: RowLoopResult | None = None,
    checkpoint: Callable[[RowLoopResult], None] | None = None,
) -> RowLoopResult:
    """Validate and upsert ``rows``; row-level problems are collected, not raised.

    ``checkpoint`` runs before every commit so progress counters land in the
    same transaction as the upserts they describe. Database errors other
    than per-row data/constraint errors propagate so the caller can retry
    the whole attempt.
    """
    settings = get_settings()
    if result is None:
        result = RowLoopResult(rows_total=len(rows))

    def commit() -> None:
        if checkpoint is not None:
            checkpoint(result)
        session.commit()

    for offset, row in enumerate(rows):
        if (
            is_cancelled is not None
            and offset % settings.cancel_check_every == 0
            and is_cancelled()
        ):
            logger.info(f"Batch {batch_id} cancelled, stopping at row {row_offset + offset}")
            result.cancelled = True
            break

        row_index = row_offset + offset
        try:
            business_key, attributes = normalize_row(
                row, headers, key_index, max_length=settings.max_value_length
            )
            with session.begin_nested():
                outcome = upsert_record(
                    session,
                    business_key,
                    attributes,
                    batch_id=batch_id,
                    source_filename=source_filename,
                )
        except RowError as e:
            logger.warning(f"Row {row_index} of {source_filename} rejected: {e.reason}")
            result.record_error(row_index, e.reason)
        except (DataError, IntegrityError) as e:
            reason = str(getattr(e, "orig", None) or e)
            logger.warning(f"Row {row_index} of {source_filename} failed to store: {reason}")
            result.record_error(row_index, f"Database rejected row: {reason}")
        else:
            if outcome == CREATED:
                result.records_created += 1
            else:
                result.records_updated += 1

        result.rows_processed += 1
        if (offset + 1) % settings.chunk_commit_every == 0:
            commit()

    commit()
    return result


def _store_progress(chunk: IngestChunk, result: RowLoopResult) -> None:
    chunk.rows_processed = result.rows_processed
    chunk.records_created = result.records_created
    chunk.records_updated = result.records_updated
    chunk.rows_failed = result.rows_failed
    chunk.error_details = list(result.errors)


def _load_chunk(session: Session, batch_id: str, chunk_number: int) -> IngestChunk:
    chunk = session.scalar(
        select(IngestChunk)
        .where(IngestChunk.batch_id == batch_id, IngestChunk.chunk_number == chunk_number)
        .execution_options(populate_existing=True)
    )
    if chunk is None:
        raise ChunkNotFoundError(f"Chunk {chunk_number} of batch {batch_id} not found")
    return chunk


def _finish_cancelled(session: Session, chunk: IngestChunk) -> dict[str, Any]:
    chunk.status = ChunkStatus.FAILED
    chunk.completed_at = utcnow()
    chunk.error_details = list(chunk.error_details or []) + [
        {"row_index": None, "reason": CANCELLED_REASON}
    ]
    append_log(
        session,
        chunk.batch_id,
        f"Chunk {chunk.chunk_number} stopped: batch cancelled",
        level="warning",
        chunk_number=chunk.chunk_number,
    )
    session.commit()
    progress_store.publish_chunk_status(chunk)
    return progress_store.chunk_payload(chunk)


def run_chunk(
    session: Session,
    *,
    batch_id: str,
    chunk_number: int,
    rows: Sequence[Sequence[str]],
    headers: Sequence[str],
    source_filename: str,
    unique_column: str | None = None,
    matcher: Matcher = default_matcher,
) -> dict[str, Any]:
    """Process one chunk end to end and return its published status.

    A chunk that is already terminal is left untouched; its stored stats are
    republished so a duplicate delivery converges on the same answer. A
    retried chunk resumes after the rows its earlier attempts committed.
    """
    chunk = _load_chunk(session, batch_id, chunk_number)
    if chunk.is_terminal:
        logger.info(
            f"Chunk {chunk_number} of batch {batch_id} already {chunk.status}, skipping"
        )
        progress_store.publish_chunk_status(chunk)
        return progress_store.chunk_payload(chunk)

    batch = session.get(IngestBatch, batch_id, populate_existing=True)
    if batch is None or batch.status == BatchStatus.FAILED or progress_store.is_cancelled(batch_id):
        return _finish_cancelled(session, chunk)

    if claim_processing(session, batch_id):
        append_log(session, batch_id, "Chunk processing started")
        logger.info(f"Batch {batch_id} moved to processing by chunk {chunk_number}")

    chunk.status = ChunkStatus.PROCESSING
    chunk.attempts = (chunk.attempts or 0) + 1
    if chunk.started_at is None:
        chunk.started_at = utcnow()
    result = RowLoopResult.resume(chunk)
    session.commit()

    is_exceeded, current, limit = check_memory_exceeded()
    if is_exceeded:
        raise MemoryError(
            f"Memory limit exceeded: {current / 1024 / 1024:.1f}MB >= "
            f"{limit / 1024 / 1024:.1f}MB before chunk {chunk_number}"
        )
    log_memory_status(f"Chunk {chunk_number} start")

    done = result.rows_processed
    if done:
        logger.info(f"Chunk {chunk_number} of batch {batch_id} resuming after row {done}")

    key_index = matcher.resolve(headers, unique_column)
    result = process_rows(
        session,
        rows[done:],
        headers,
        key_index,
        batch_id=batch_id,
        source_filename=source_filename,
        row_offset=chunk.row_start + done,
        is_cancelled=lambda: progress_store.is_cancelled(batch_id),
        result=result,
        checkpoint=lambda r: _store_progress(chunk, r),
    )

    if result.cancelled:
        return _finish_cancelled(session, chunk)

    chunk.status = ChunkStatus.COMPLETED
    chunk.completed_at = utcnow()
    append_log(
        session,
        batch_id,
        f"Chunk {chunk_number} completed: {result.rows_processed} rows, "
        f"{result.records_created} created, {result.records_updated} updated, "
        f"{result.rows_failed} failed",
        level="warning" if result.rows_failed else "info",
        chunk_number=chunk_number,
    )
    session.commit()

    force_gc()
    progress_store.publish_chunk_status(chunk)
    logger.info(
        f"Chunk {chunk_number} of batch {batch_id} completed "
        f"({result.records_created} created, {result.records_updated} updated, "
        f"{result.rows_failed} failed)"
    )
    return progress_store.chunk_payload(chunk)


def record_attempt_failure(
    session: Session,
    *,
    batch_id: str,
    chunk_number: int,
    error: BaseException,
    final: bool,
) -> dict[str, Any] | None:
    """Record a failed attempt. The last attempt marks the chunk failed.

    Counters keep whatever the attempt committed before it failed, so they
    always match the records that actually reached the database.
    """
    session.rollback()
    chunk = session.scalar(
        select(IngestChunk)
        .where(IngestChunk.batch_id == batch_id, IngestChunk.chunk_number == chunk_number)
        .execution_options(populate_existing=True)
    )
    if chunk is None or chunk.is_terminal:
        return None

    detail = f"{type(error).__name__}: {error}"
    if not final:
        chunk.status = ChunkStatus.PENDING
        append_log(
            session,
            batch_id,
            f"Chunk {chunk_number} attempt {chunk.attempts} failed after "
            f"{chunk.rows_processed} committed rows, retrying: {detail}",
            level="warning",
            chunk_number=chunk_number,
        )
        session.commit()
        return None

    chunk.status = ChunkStatus.FAILED
    chunk.completed_at = utcnow()
    chunk.error_details = list(chunk.error_details or []) + [
        {"row_index": None, "reason": detail}
    ]
    append_log(
        session,
        batch_id,
        f"Chunk {chunk_number} failed after {chunk.attempts} attempt(s) with "
        f"{chunk.rows_processed} of {chunk.rows_total} rows committed: {detail}",
        level="error",
        chunk_number=chunk_number,
    )
    session.commit()
    log_memory_status(f"Chunk {chunk_number} failed")
    progress_store.publish_chunk_status(chunk)
    return progress_store.chunk_payload(chunk)
