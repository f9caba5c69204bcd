"""Enqueue pipeline tasks without importing Celery tasks at module load."""

from __future__ import annotations

import logging
from typing import Sequence

logger = logging.getLogger(__name__)


def enqueue_source_file(batch_id: str) -> None:
    from catalog_ingest.workers.tasks.ingest_source_file import ingest_source_file_task

    ingest_source_file_task.apply_async(args=[batch_id])
    logger.info(f"Queued ingestion of batch {batch_id}")


def enqueue_chunk(
    batch_id: str,
    chunk_number: int,
    rows: Sequence[Sequence[str]],
    headers: Sequence[str],
    source_filename: str,
    unique_column: str | None,
    chunk_count: int | None = None,
) -> None:
    from catalog_ingest.workers.tasks.process_chunk import process_chunk_task

    process_chunk_task.apply_async(
        args=[batch_id, chunk_number],
        kwargs={
            "chunk_count": chunk_count,
            "rows": [list(row) for row in rows],
            "headers": list(headers),
            "source_filename": source_filename,
            "unique_column": unique_column,
        },
    )


def enqueue_reconcile(batch_id: str, countdown: float = 0) -> None:
    from catalog_ingest.workers.tasks.reconcile_batch import reconcile_batch_task

    reconcile_batch_task.apply_async(args=[batch_id], countdown=countdown)
    logger.info(f"Queued reconciliation of batch {batch_id} in {countdown}s")
