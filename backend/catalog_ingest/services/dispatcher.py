"""Analyze a pending batch and route it inline or into chunks."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from catalog_ingest.core.config import get_settings
from catalog_ingest.core.errors import BatchNotFoundError, ParseError, SourceFileUnavailableError
from catalog_ingest.db.models import BatchStatus, ChunkStatus, IngestBatch, IngestChunk
from catalog_ingest.services import job_queue, progress_store
from catalog_ingest.services.batch_state import advance_status, append_log, fail_batch, utcnow
from catalog_ingest.services.chunk_worker import process_rows
from catalog_ingest.services.matcher import Matcher, default_matcher
from catalog_ingest.services.parser import ParseResult, parse_archive_member, parse_csv_bytes
from catalog_ingest.services.reconciler import BatchTotals, deactivate_for_batch, finalize
from catalog_ingest.storage.upload_store import load_upload
from catalog_ingest.utils.batching import chunk_ranges

logger = logging.getLogger(__name__)

# Inline batches have no chunk rows to hold error details
MAX_LOGGED_ROW_ERRORS = 20


def load_source(batch: IngestBatch) -> ParseResult:
    """Re-read the stored upload and parse this batch's CSV out of it."""
    content = load_upload(batch.stored_file_path)
    if batch.archive_member:
        return parse_archive_member(content, batch.archive_member)
    return parse_csv_bytes(content, batch.source_filename)


def ingest_batch(
    session: Session, batch_id: str, *, matcher: Matcher = default_matcher
) -> dict[str, Any] | None:
    """Entry point for a pending batch: parse its source and dispatch it."""
    batch = session.get(IngestBatch, batch_id, populate_existing=True)
    if batch is None:
        raise BatchNotFoundError(f"Batch {batch_id} not found")
    if batch.status != BatchStatus.PENDING:
        logger.info(f"Batch {batch_id} is {batch.status}, not dispatching again")
        return progress_store.force_refresh(session, batch_id)

    advance_status(session, batch, BatchStatus.ANALYZING)
    append_log(session, batch_id, f"Analyzing {batch.source_filename}")
    session.commit()

    try:
        parsed = load_source(batch)
    except (ParseError, SourceFileUnavailableError) as e:
        fail_batch(session, batch, str(e))
        session.commit()
        return progress_store.force_refresh(session, batch_id)

    return dispatch(session, batch, parsed, matcher=matcher)


def dispatch(
    session: Session,
    batch: IngestBatch,
    parsed: ParseResult,
    *,
    matcher: Matcher = default_matcher,
) -> dict[str, Any]:
    settings = get_settings()
    batch.total_rows = parsed.total_rows
    append_log(
        session,
        batch.id,
        f"Found {parsed.total_rows} data rows in {parsed.source_filename} "
        f"(headers: {', '.join(parsed.headers)})",
    )

    if parsed.total_rows == 0:
        append_log(session, batch.id, "No data rows; nothing to ingest")
        advance_status(session, batch, BatchStatus.COMPLETED)
        session.commit()
        return progress_store.force_refresh(session, batch.id)

    try:
        key_index = matcher.resolve(parsed.headers, batch.configured_unique_column)
    except ParseError as e:
        fail_batch(session, batch, str(e))
        session.commit()
        return progress_store.force_refresh(session, batch.id)
    append_log(session, batch.id, f"Business key column: {parsed.headers[key_index]}")

    if parsed.total_rows <= settings.chunk_threshold:
        return _process_inline(session, batch, parsed, key_index)
    return _dispatch_chunks(session, batch, parsed)


def _process_inline(
    session: Session, batch: IngestBatch, parsed: ParseResult, key_index: int
) -> dict[str, Any]:
    advance_status(session, batch, BatchStatus.PROCESSING)
    append_log(session, batch.id, f"Processing {parsed.total_rows} rows inline")
    session.commit()

    result = process_rows(
        session,
        parsed.rows,
        parsed.headers,
        key_index,
        batch_id=batch.id,
        source_filename=batch.source_filename,
        is_cancelled=lambda: progress_store.is_cancelled(batch.id),
    )
    for error in result.errors[:MAX_LOGGED_ROW_ERRORS]:
        append_log(session, batch.id, f"Row {error['row_index']}: {error['reason']}", level="warning")
    if len(result.errors) > MAX_LOGGED_ROW_ERRORS:
        append_log(
            session,
            batch.id,
            f"{len(result.errors) - MAX_LOGGED_ROW_ERRORS} more row errors not shown",
            level="warning",
        )
    session.commit()

    totals = BatchTotals(
        records_created=result.records_created,
        records_updated=result.records_updated,
        rows_failed=result.rows_failed,
    )
    if result.cancelled:
        session.refresh(batch)
        return finalize(session, batch, totals)

    deactivation_ok = deactivate_for_batch(session, batch)
    return finalize(session, batch, totals, deactivation_ok=deactivation_ok)


def _dispatch_chunks(session: Session, batch: IngestBatch, parsed: ParseResult) -> dict[str, Any]:
    settings = get_settings()
    ranges = list(chunk_ranges(parsed.total_rows, settings.chunk_size))
    for number, (start, end) in enumerate(ranges, start=1):
        session.add(
            IngestChunk(
                batch_id=batch.id,
                chunk_number=number,
                row_start=start,
                row_end=end,
                rows_total=end - start,
                status=ChunkStatus.PENDING,
            )
        )
    batch.chunk_count = len(ranges)
    advance_status(session, batch, BatchStatus.CHUNKED)
    append_log(
        session,
        batch.id,
        f"Split {parsed.total_rows} rows into {len(ranges)} chunks of up to "
        f"{settings.chunk_size} rows",
    )
    session.commit()
    progress_store.force_refresh(session, batch.id)
    session.commit()

    # Chunks must be committed before any worker can pick them up
    queued = 0
    try:
        for number, (start, end) in enumerate(ranges, start=1):
            job_queue.enqueue_chunk(
                batch.id,
                number,
                parsed.rows[start:end],
                parsed.headers,
                batch.source_filename,
                batch.configured_unique_column,
                chunk_count=len(ranges),
            )
            queued = number
    except Exception as e:
        _fail_unqueued(session, batch.id, queued, e)
        raise
    finally:
        # Every chunked batch gets a reconciler, even a partially queued one
        job_queue.enqueue_reconcile(batch.id, countdown=settings.reconcile_grace_seconds)
    logger.info(f"Batch {batch.id}: dispatched {len(ranges)} chunks")

    return progress_store.get_batch_summary(session, batch.id)


def _fail_unqueued(session: Session, batch_id: str, queued: int, error: Exception) -> None:
    """Mark chunks that never reached the queue as failed so reconcile can settle."""
    session.rollback()
    reason = f"Could not be queued: {type(error).__name__}: {error}"
    unqueued = session.scalars(
        select(IngestChunk).where(
            IngestChunk.batch_id == batch_id,
            IngestChunk.chunk_number > queued,
            IngestChunk.status == ChunkStatus.PENDING,
        )
    ).all()
    for chunk in unqueued:
        chunk.status = ChunkStatus.FAILED
        chunk.completed_at = utcnow()
        chunk.error_details = [{"row_index": None, "reason": reason}]
    append_log(
        session,
        batch_id,
        f"Queueing stopped after chunk {queued}; {len(unqueued)} chunk(s) failed: {reason}",
        level="error",
    )
    session.commit()
    for chunk in unqueued:
        progress_store.publish_chunk_status(chunk)
    logger.error(f"Batch {batch_id}: {len(unqueued)} chunk(s) could not be queued: {error}")
