"""Status transitions and append-only trace entries for batches."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.orm import Session

from catalog_ingest.core.errors import InvalidTransitionError
from catalog_ingest.db.models import BatchLogEntry, BatchStatus, IngestBatch

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def append_log(
    session: Session,
    batch_id: str,
    message: str,
    *,
    level: str = "info",
    chunk_number: int | None = None,
) -> None:
    """Add a processing-log entry. Entries are only ever inserted."""
    session.add(
        BatchLogEntry(
            batch_id=batch_id,
            chunk_number=chunk_number,
            level=level,
            message=message,
        )
    )


def advance_status(session: Session, batch: IngestBatch, new_status: str) -> None:
    """Move a batch forward. Terminal statuses are written exactly once."""
    current = batch.status
    if current == new_status:
        return
    if current in BatchStatus.TERMINAL:
        raise InvalidTransitionError(
            f"Batch {batch.id} is already {current}; cannot move to {new_status}"
        )
    if BatchStatus.rank(new_status) < BatchStatus.rank(current):
        raise InvalidTransitionError(
            f"Batch {batch.id} cannot move backwards from {current} to {new_status}"
        )

    batch.status = new_status
    if new_status == BatchStatus.ANALYZING and batch.started_at is None:
        batch.started_at = utcnow()
    if new_status in BatchStatus.TERMINAL:
        batch.finalized_at = utcnow()
    logger.info(f"Batch {batch.id} {current} -> {new_status}")


def claim_processing(session: Session, batch_id: str) -> bool:
    """Compare-and-set chunked -> processing; only the first chunk wins."""
    result = session.execute(
        update(IngestBatch)
        .where(IngestBatch.id == batch_id, IngestBatch.status == BatchStatus.CHUNKED)
        .values(status=BatchStatus.PROCESSING)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def fail_batch(session: Session, batch: IngestBatch, reason: str) -> None:
    """Mark a batch failed with an error entry; no-op if it is already terminal."""
    if batch.is_terminal:
        logger.warning(f"Batch {batch.id} already {batch.status}; not failing with: {reason}")
        return
    batch.error_message = reason
    advance_status(session, batch, BatchStatus.FAILED)
    append_log(session, batch.id, reason, level="error")
    logger.error(f"Batch {batch.id} ({batch.source_filename}) failed: {reason}")


def reset_for_retry(session: Session, batch: IngestBatch) -> None:
    """Operator retry: the only transition allowed to move a batch backwards."""
    batch.status = BatchStatus.PENDING
    batch.total_rows = 0
    batch.chunk_count = 0
    batch.records_created = 0
    batch.records_updated = 0
    batch.records_deactivated = 0
    batch.rows_failed = 0
    batch.chunks_completed = 0
    batch.chunks_failed = 0
    batch.error_message = None
    batch.started_at = None
    batch.finalized_at = None
    batch.chunks.clear()


def reopen_batch(session: Session, batch: IngestBatch, reason: str) -> bool:
    """Operator chunk retry: put a finalized batch back to processing.

    The next reconcile writes the terminal status again from the updated
    chunk outcomes. Returns False when the batch was not terminal.
    """
    if not batch.is_terminal:
        return False
    previous = batch.status
    batch.status = BatchStatus.PROCESSING
    batch.finalized_at = None
    append_log(session, batch.id, f"Reopened from {previous}: {reason}", level="warning")
    logger.warning(f"Batch {batch.id} reopened from {previous}: {reason}")
    return True
