"""Celery task for one chunk of a batch."""

from __future__ import annotations

import logging

from catalog_ingest.core.config import get_settings
from catalog_ingest.core.errors import ChunkNotFoundError
from catalog_ingest.db.session import get_fresh_session
from catalog_ingest.services import chunk_worker
from catalog_ingest.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

settings = get_settings()


def _result(payload: dict | None) -> dict | None:
    # Task results go through the JSON result backend
    if payload is None:
        return None
    return {
        "batch_id": payload["batch_id"],
        "chunk_number": payload["chunk_number"],
        "status": payload["status"],
        "rows_failed": payload["rows_failed"],
    }


@celery_app.task(
    bind=True,
    name="catalog_ingest.workers.tasks.process_chunk",
    max_retries=settings.chunk_max_attempts - 1,
    time_limit=settings.chunk_time_limit_seconds,
    soft_time_limit=max(settings.chunk_time_limit_seconds - 30, 1),
)
def process_chunk_task(
    self,
    batch_id: str,
    chunk_number: int,
    rows: list[list[str]],
    headers: list[str],
    source_filename: str,
    unique_column: str | None = None,
    chunk_count: int | None = None,
):
    """Upsert one slice of rows; failed attempts are retried, then recorded.

    Eager runs (local mode) have no broker to redeliver a retry, so the
    attempts run in place and the last failure is recorded like a worker's.
    """
    logger.info(f"Batch {batch_id}: chunk {chunk_number}/{chunk_count or '?'} picked up")
    session = get_fresh_session()
    retries = self.request.retries or 0
    try:
        while True:
            try:
                payload = chunk_worker.run_chunk(
                    session,
                    batch_id=batch_id,
                    chunk_number=chunk_number,
                    rows=rows,
                    headers=headers,
                    source_filename=source_filename,
                    unique_column=unique_column,
                )
                return _result(payload)
            except ChunkNotFoundError:
                # The batch was reset for a retry after this message was queued
                logger.warning(f"Chunk {chunk_number} of batch {batch_id} no longer exists, dropping")
                return None
            except Exception as exc:
                final = retries >= self.max_retries
                logger.error(
                    f"Chunk {chunk_number} of batch {batch_id} attempt "
                    f"{retries + 1} failed: {exc}",
                    exc_info=True,
                )
                payload = chunk_worker.record_attempt_failure(
                    session,
                    batch_id=batch_id,
                    chunk_number=chunk_number,
                    error=exc,
                    final=final,
                )
                if final:
                    return _result(payload)
                if not self.request.is_eager:
                    raise self.retry(exc=exc, countdown=settings.chunk_retry_delay_seconds)
                retries += 1
    finally:
        session.close()
