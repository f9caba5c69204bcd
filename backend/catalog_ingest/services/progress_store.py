"""Redis-backed read cache for batch and chunk progress.

Durable ``IngestBatch``/``IngestChunk`` rows are authoritative; this cache
only spares pollers (the status API and the reconciler) a database round
trip. Every read falls back to the database on a miss or a Redis outage.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.orm import Session

from catalog_ingest.core.config import get_settings
from catalog_ingest.db.models import BatchStatus, IngestBatch, IngestChunk
from catalog_ingest.utils.redis_client import create_redis_client
from catalog_ingest.utils.timing import format_duration, parse_timestamp, seconds_between

logger = logging.getLogger(__name__)

settings = get_settings()
redis_client = create_redis_client(settings.redis_url, decode_responses=True)

CHUNK_PREFIX = "ingest:chunk:"
BATCH_PREFIX = "ingest:batch:"
CANCEL_PREFIX = "ingest:cancel:"


def _chunk_key(batch_id: str, chunk_number: int) -> str:
    return f"{CHUNK_PREFIX}{batch_id}:{chunk_number}"


def _batch_key(batch_id: str) -> str:
    return f"{BATCH_PREFIX}{batch_id}"


def _cancel_key(batch_id: str) -> str:
    return f"{CANCEL_PREFIX}{batch_id}"


def _dumps(payload: dict[str, Any]) -> str:
    return json.dumps(payload, default=str)


def _loads(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarding undecodable progress payload")
        return None


def chunk_payload(chunk: IngestChunk) -> dict[str, Any]:
    return {
        "batch_id": chunk.batch_id,
        "chunk_number": chunk.chunk_number,
        "status": chunk.status,
        "row_start": chunk.row_start,
        "row_end": chunk.row_end,
        "rows_total": chunk.rows_total,
        "rows_processed": chunk.rows_processed,
        "records_created": chunk.records_created,
        "records_updated": chunk.records_updated,
        "rows_failed": chunk.rows_failed,
        "error_count": len(chunk.error_details or []),
        "attempts": chunk.attempts,
        "started_at": chunk.started_at,
        "completed_at": chunk.completed_at,
        "processing_time_seconds": seconds_between(chunk.started_at, chunk.completed_at),
    }


def progress_percentage(batch: IngestBatch, chunk_statuses: list[dict[str, Any]]) -> float:
    if batch.status in BatchStatus.TERMINAL:
        return 100.0
    if not batch.chunk_count:
        return 0.0
    done = sum(1 for status in chunk_statuses if status.get("status") in ("completed", "failed"))
    return round(done / batch.chunk_count * 100, 1)


def performance_metrics(
    batch: IngestBatch, chunk_statuses: list[dict[str, Any]]
) -> dict[str, Any]:
    """Throughput and time-remaining estimate from finished chunks.

    Chunks per minute is measured over the wall-clock span from the first
    chunk start to the latest completion, so parallel workers count. Without
    a measurable span the estimate falls back to the average chunk time.
    """
    metrics: dict[str, Any] = {
        "avg_chunk_seconds": None,
        "total_processing_seconds": None,
        "chunks_per_minute": None,
        "estimated_seconds_remaining": None,
        "estimated_time_remaining": None,
    }
    completed = [c for c in chunk_statuses if c.get("status") == "completed"]
    durations = [
        c["processing_time_seconds"]
        for c in completed
        if c.get("processing_time_seconds") is not None
    ]
    if not durations:
        return metrics

    avg = sum(durations) / len(durations)
    metrics["avg_chunk_seconds"] = round(avg, 2)
    metrics["total_processing_seconds"] = round(sum(durations), 2)

    starts = [t for t in (parse_timestamp(c.get("started_at")) for c in chunk_statuses) if t]
    ends = [t for t in (parse_timestamp(c.get("completed_at")) for c in completed) if t]
    span = seconds_between(min(starts), max(ends)) if starts and ends else None
    per_minute = len(completed) / (span / 60) if span else None
    if per_minute is not None:
        metrics["chunks_per_minute"] = round(per_minute, 2)

    finished = sum(1 for c in chunk_statuses if c.get("status") in ("completed", "failed"))
    remaining = (batch.chunk_count or 0) - finished
    if batch.status not in BatchStatus.TERMINAL and remaining > 0:
        eta = remaining / per_minute * 60 if per_minute else avg * remaining
        metrics["estimated_seconds_remaining"] = round(eta, 1)
        metrics["estimated_time_remaining"] = format_duration(eta)
    return metrics


def batch_payload(
    batch: IngestBatch, chunk_statuses: list[dict[str, Any]] | None = None
) -> dict[str, Any]:
    if batch.status in BatchStatus.TERMINAL or chunk_statuses is None:
        chunks_completed = batch.chunks_completed
        chunks_failed = batch.chunks_failed
    else:
        chunks_completed = sum(1 for c in chunk_statuses if c.get("status") == "completed")
        chunks_failed = sum(1 for c in chunk_statuses if c.get("status") == "failed")
    return {
        "batch_id": batch.id,
        "source_filename": batch.source_filename,
        "submission_id": batch.submission_id,
        "status": batch.status,
        "total_rows": batch.total_rows,
        "chunk_count": batch.chunk_count,
        "chunks_completed": chunks_completed,
        "chunks_failed": chunks_failed,
        "records_created": batch.records_created,
        "records_updated": batch.records_updated,
        "records_deactivated": batch.records_deactivated,
        "rows_failed": batch.rows_failed,
        "progress_percentage": progress_percentage(batch, chunk_statuses or []),
        "performance": performance_metrics(batch, chunk_statuses or []),
        "processing_log": batch.processing_log,
        "error_message": batch.error_message,
        "created_at": batch.created_at,
        "finalized_at": batch.finalized_at,
    }


def publish_chunk_status(chunk: IngestChunk) -> None:
    """Cache a chunk snapshot; called by workers on completion or failure."""
    try:
        redis_client.set(
            _chunk_key(chunk.batch_id, chunk.chunk_number),
            _dumps(chunk_payload(chunk)),
            ex=settings.chunk_status_ttl_seconds,
        )
    except RedisError as e:
        # Redis availability should not break ingestion.
        logger.warning(f"Failed to publish chunk {chunk.batch_id}:{chunk.chunk_number}: {e}")


def publish_batch_summary(batch: IngestBatch, chunk_statuses: list[dict[str, Any]] | None = None) -> dict[str, Any]:
    payload = batch_payload(batch, chunk_statuses)
    ttl = (
        settings.batch_summary_ttl_seconds
        if batch.status in BatchStatus.TERMINAL
        else settings.chunk_status_ttl_seconds
    )
    try:
        redis_client.set(_batch_key(batch.id), _dumps(payload), ex=ttl)
    except RedisError as e:
        logger.warning(f"Failed to publish batch summary {batch.id}: {e}")
    return payload


def _load_chunk(session: Session, batch_id: str, chunk_number: int) -> IngestChunk | None:
    return session.scalar(
        select(IngestChunk).where(
            IngestChunk.batch_id == batch_id, IngestChunk.chunk_number == chunk_number
        )
    )


def get_chunk_status(session: Session, batch_id: str, chunk_number: int) -> dict[str, Any] | None:
    try:
        cached = _loads(redis_client.get(_chunk_key(batch_id, chunk_number)))
    except RedisError as e:
        logger.warning(f"Progress store unavailable, reading chunk from database: {e}")
        cached = None
    if cached is not None:
        return cached

    chunk = _load_chunk(session, batch_id, chunk_number)
    if chunk is None:
        return None
    if chunk.is_terminal:
        publish_chunk_status(chunk)
    return chunk_payload(chunk)


def get_all_chunk_statuses(session: Session, batch_id: str, chunk_count: int) -> list[dict[str, Any]]:
    """Return one status per chunk number, cache first, database for misses.

    Only terminal states read from the database are written back, so a
    pending chunk is never frozen in the cache.
    """
    if chunk_count <= 0:
        return []
    numbers = list(range(1, chunk_count + 1))
    try:
        raw_values = redis_client.mget([_chunk_key(batch_id, n) for n in numbers])
    except RedisError as e:
        logger.warning(f"Progress store unavailable, reading chunks from database: {e}")
        raw_values = [None] * len(numbers)

    statuses: dict[int, dict[str, Any]] = {}
    missing: list[int] = []
    for number, raw in zip(numbers, raw_values):
        payload = _loads(raw)
        if payload is None:
            missing.append(number)
        else:
            statuses[number] = payload

    if missing:
        rows = session.scalars(
            select(IngestChunk)
            .where(IngestChunk.batch_id == batch_id, IngestChunk.chunk_number.in_(missing))
            .execution_options(populate_existing=True)
        ).all()
        for chunk in rows:
            if chunk.is_terminal:
                publish_chunk_status(chunk)
            statuses[chunk.chunk_number] = chunk_payload(chunk)

    return [statuses[n] for n in numbers if n in statuses]


def get_batch_summary(session: Session, batch_id: str) -> dict[str, Any] | None:
    """Cached summary for terminal batches, live overlay otherwise."""
    try:
        cached = _loads(redis_client.get(_batch_key(batch_id)))
    except RedisError as e:
        logger.warning(f"Progress store unavailable, reading batch from database: {e}")
        cached = None
    if cached is not None and cached.get("status") in BatchStatus.TERMINAL:
        return cached

    # In flight: batch row is cheap, chunk progress comes from the cache
    batch = session.get(IngestBatch, batch_id)
    if batch is None:
        return None
    session.refresh(batch)
    if batch.is_terminal:
        return force_refresh(session, batch_id)
    chunk_statuses = get_all_chunk_statuses(session, batch_id, batch.chunk_count)
    return publish_batch_summary(batch, chunk_statuses)


def force_refresh(session: Session, batch_id: str) -> dict[str, Any] | None:
    """Recompute the batch summary and chunk entries from durable state."""
    batch = session.get(IngestBatch, batch_id)
    if batch is None:
        return None
    session.refresh(batch)
    chunks = session.scalars(
        select(IngestChunk)
        .where(IngestChunk.batch_id == batch_id)
        .order_by(IngestChunk.chunk_number)
        .execution_options(populate_existing=True)
    ).all()
    chunk_statuses = []
    for chunk in chunks:
        if chunk.is_terminal:
            publish_chunk_status(chunk)
        chunk_statuses.append(chunk_payload(chunk))
    return publish_batch_summary(batch, chunk_statuses)


def forget_batch(batch_id: str, chunk_count: int) -> None:
    """Drop cached entries for a batch that is being re-dispatched."""
    keys = [_batch_key(batch_id)] + [_chunk_key(batch_id, n) for n in range(1, chunk_count + 1)]
    try:
        redis_client.delete(*keys)
    except RedisError as e:
        logger.warning(f"Failed to clear cached progress for {batch_id}: {e}")


def forget_chunk(batch_id: str, chunk_number: int) -> None:
    try:
        redis_client.delete(_chunk_key(batch_id, chunk_number))
    except RedisError as e:
        logger.warning(f"Failed to clear cached chunk {batch_id}:{chunk_number}: {e}")


def mark_cancelled(batch_id: str) -> None:
    try:
        redis_client.set(_cancel_key(batch_id), "1", ex=settings.chunk_status_ttl_seconds)
    except RedisError as e:
        logger.warning(f"Failed to set cancellation flag for {batch_id}: {e}")


def clear_cancelled(batch_id: str) -> None:
    try:
        redis_client.delete(_cancel_key(batch_id))
    except RedisError as e:
        logger.warning(f"Failed to clear cancellation flag for {batch_id}: {e}")


def is_cancelled(batch_id: str) -> bool:
    """Cheap flag check for workers between rows."""
    try:
        return bool(redis_client.exists(_cancel_key(batch_id)))
    except RedisError as e:
        logger.warning(f"Could not read cancellation flag for {batch_id}: {e}")
        return False
