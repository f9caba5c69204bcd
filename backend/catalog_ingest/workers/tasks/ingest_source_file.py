"""Celery task that analyzes a pending batch and dispatches it."""

from __future__ import annotations

import logging

from catalog_ingest.core.errors import BatchNotFoundError
from catalog_ingest.db.models import IngestBatch
from catalog_ingest.db.session import get_fresh_session
from catalog_ingest.services import progress_store
from catalog_ingest.services.batch_state import fail_batch
from catalog_ingest.services.dispatcher import ingest_batch
from catalog_ingest.utils.memory_monitor import force_gc, log_memory_status
from catalog_ingest.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name="catalog_ingest.workers.tasks.ingest_source_file")
def ingest_source_file_task(self, batch_id: str):
    """Parse the batch's source CSV, then process it inline or fan out chunks."""
    session = get_fresh_session()
    try:
        log_memory_status(f"Batch {batch_id} start")
        summary = ingest_batch(session, batch_id)
        return {"batch_id": batch_id, "status": summary["status"] if summary else None}
    except BatchNotFoundError:
        logger.warning(f"Batch {batch_id} disappeared before ingestion")
        return None
    except Exception as exc:
        logger.error(f"Ingestion of batch {batch_id} failed: {exc}", exc_info=True)
        session.rollback()
        batch = session.get(IngestBatch, batch_id, populate_existing=True)
        if batch is not None and not batch.is_terminal:
            fail_batch(session, batch, f"{type(exc).__name__}: {exc}")
            session.commit()
            progress_store.force_refresh(session, batch_id)
        raise
    finally:
        force_gc()
        session.close()
