"""Finalize a batch once its chunks are done.

The reconciler waits for every chunk to reach a terminal state (bounded by
``reconcile_max_wait_seconds``), recomputes the batch totals from durable
chunk rows and, when every chunk completed, retires records of the same
source file that the batch did not touch. Everything it writes is derived
from current state, so running it twice yields the same summary.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from catalog_ingest.core.config import get_settings
from catalog_ingest.core.errors import BatchNotFoundError
from catalog_ingest.db.models import BatchStatus, ChunkStatus, IngestBatch, IngestChunk
from catalog_ingest.services import progress_store
from catalog_ingest.services.batch_state import advance_status, append_log
from catalog_ingest.services.record_upsert import count_deactivated_by, deactivate_stale_records

logger = logging.getLogger(__name__)

TERMINAL_CHUNK_STATES = tuple(ChunkStatus.TERMINAL)


@dataclass
class BatchTotals:
    records_created: int = 0
    records_updated: int = 0
    rows_failed: int = 0
    chunks_completed: int = 0
    chunks_failed: int = 0


def wait_for_chunks(
    session: Session,
    batch: IngestBatch,
    *,
    poll_interval: float | None = None,
    max_wait: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Poll until all chunks are terminal. Returns False on timeout."""
    settings = get_settings()
    poll_interval = settings.reconcile_poll_interval_seconds if poll_interval is None else poll_interval
    max_wait = settings.reconcile_max_wait_seconds if max_wait is None else max_wait
    deadline = clock() + max_wait

    while True:
        statuses = progress_store.get_all_chunk_statuses(session, batch.id, batch.chunk_count)
        done = sum(1 for status in statuses if status.get("status") in TERMINAL_CHUNK_STATES)
        if done >= batch.chunk_count:
            return True

        remaining = deadline - clock()
        if remaining <= 0:
            logger.warning(
                f"Batch {batch.id}: timed out with {done}/{batch.chunk_count} chunks finished"
            )
            return False

        logger.info(f"Batch {batch.id}: {done}/{batch.chunk_count} chunks finished, waiting")
        # End the read transaction so workers' commits become visible
        session.commit()
        sleep(min(poll_interval, remaining))


def aggregate_chunks(session: Session, batch_id: str) -> BatchTotals:
    """Sum chunk statistics from durable rows."""
    created, updated, failed_rows = session.execute(
        select(
            func.coalesce(func.sum(IngestChunk.records_created), 0),
            func.coalesce(func.sum(IngestChunk.records_updated), 0),
            func.coalesce(func.sum(IngestChunk.rows_failed), 0),
        ).where(IngestChunk.batch_id == batch_id)
    ).one()
    by_status = dict(
        session.execute(
            select(IngestChunk.status, func.count(IngestChunk.id))
            .where(IngestChunk.batch_id == batch_id)
            .group_by(IngestChunk.status)
        ).all()
    )
    return BatchTotals(
        records_created=int(created),
        records_updated=int(updated),
        rows_failed=int(failed_rows),
        chunks_completed=by_status.get(ChunkStatus.COMPLETED, 0),
        chunks_failed=by_status.get(ChunkStatus.FAILED, 0),
    )


def _superseded(session: Session, batch: IngestBatch) -> bool:
    """True when a newer, non-failed batch exists for the same source file."""
    if batch.created_at is None:
        return False
    newer = session.scalar(
        select(func.count(IngestBatch.id)).where(
            IngestBatch.source_filename == batch.source_filename,
            IngestBatch.id != batch.id,
            IngestBatch.created_at > batch.created_at,
            IngestBatch.status != BatchStatus.FAILED,
        )
    )
    return bool(newer)


def deactivate_for_batch(session: Session, batch: IngestBatch, *, complete: bool = True) -> bool:
    """Retire stale records for the batch's source file. Returns False on error.

    An incomplete batch (failed or unfinished chunks) never saw every key of
    the upload, so nothing is retired on its behalf.
    """
    if batch.status == BatchStatus.FAILED:
        return True
    if not complete:
        logger.warning(f"Batch {batch.id} is incomplete, skipping deactivation")
        if not batch.is_terminal:
            append_log(
                session,
                batch.id,
                "Skipped deactivation: not every chunk completed",
                level="warning",
            )
            session.commit()
        return True
    if _superseded(session, batch):
        logger.info(f"Batch {batch.id} superseded for {batch.source_filename}, skipping deactivation")
        return True
    try:
        retired = deactivate_stale_records(
            session, batch_id=batch.id, source_filename=batch.source_filename
        )
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Deactivation failed for batch {batch.id}: {e}", exc_info=True)
        append_log(session, batch.id, f"Deactivation failed: {e}", level="error")
        session.commit()
        return False
    if retired:
        append_log(
            session,
            batch.id,
            f"Deactivated {retired} records of {batch.source_filename} not present in this upload",
        )
        session.commit()
    return True


def is_degraded(totals: BatchTotals, total_rows: int, *, timed_out: bool, deactivation_ok: bool) -> bool:
    threshold = get_settings().row_failure_threshold
    row_failure_ratio = totals.rows_failed / total_rows if total_rows else 0.0
    return (
        totals.chunks_failed > 0
        or timed_out
        or not deactivation_ok
        or row_failure_ratio > threshold
    )


def finalize(
    session: Session,
    batch: IngestBatch,
    totals: BatchTotals,
    *,
    timed_out: bool = False,
    deactivation_ok: bool = True,
) -> dict[str, Any]:
    """Write totals, settle the terminal status once, and publish the summary."""
    batch.records_created = totals.records_created
    batch.records_updated = totals.records_updated
    batch.rows_failed = totals.rows_failed
    batch.chunks_completed = totals.chunks_completed
    batch.chunks_failed = totals.chunks_failed
    batch.records_deactivated = count_deactivated_by(session, batch.id)

    if not batch.is_terminal:
        degraded = is_degraded(
            totals, batch.total_rows, timed_out=timed_out, deactivation_ok=deactivation_ok
        )
        final_status = BatchStatus.COMPLETED_WITH_ERRORS if degraded else BatchStatus.COMPLETED
        advance_status(session, batch, final_status)
        append_log(
            session,
            batch.id,
            f"Batch {final_status}: {totals.records_created} created, "
            f"{totals.records_updated} updated, {batch.records_deactivated} deactivated, "
            f"{totals.rows_failed} rows failed",
            level="warning" if degraded else "info",
        )
    session.commit()

    summary = progress_store.force_refresh(session, batch.id)
    logger.info(f"Batch {batch.id} reconciled: {batch.status}")
    return summary


def reconcile(
    session: Session,
    batch_id: str,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> dict[str, Any] | None:
    """Reconcile a chunked batch. Safe to call more than once."""
    batch = session.get(IngestBatch, batch_id, populate_existing=True)
    if batch is None:
        raise BatchNotFoundError(f"Batch {batch_id} not found")

    if batch.status in (BatchStatus.PENDING, BatchStatus.ANALYZING):
        # A re-dispatch is under way and will schedule its own reconcile
        logger.info(f"Batch {batch_id} is {batch.status}, nothing to reconcile yet")
        return None
    if batch.chunk_count == 0:
        logger.info(f"Batch {batch_id} has no chunks; summary republished")
        return progress_store.force_refresh(session, batch_id)

    timed_out = False
    if not batch.is_terminal:
        timed_out = not wait_for_chunks(session, batch, sleep=sleep, clock=clock)
        session.refresh(batch)
        if timed_out:
            append_log(
                session,
                batch_id,
                f"Reconciliation timed out waiting for chunks after "
                f"{get_settings().reconcile_max_wait_seconds:.0f}s",
                level="warning",
            )
            session.commit()

    totals = aggregate_chunks(session, batch_id)
    complete = (
        not timed_out
        and totals.chunks_failed == 0
        and totals.chunks_completed == batch.chunk_count
    )
    deactivation_ok = deactivate_for_batch(session, batch, complete=complete)
    return finalize(
        session, batch, totals, timed_out=timed_out, deactivation_ok=deactivation_ok
    )
