"""Celery task that finalizes a chunked batch."""

from __future__ import annotations

import logging

from catalog_ingest.core.config import get_settings
from catalog_ingest.core.errors import BatchNotFoundError
from catalog_ingest.db.session import get_fresh_session
from catalog_ingest.services.reconciler import reconcile
from catalog_ingest.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

settings = get_settings()


@celery_app.task(
    bind=True,
    name="catalog_ingest.workers.tasks.reconcile_batch",
    time_limit=int(settings.reconcile_max_wait_seconds) + 300,
)
def reconcile_batch_task(self, batch_id: str):
    session = get_fresh_session()
    try:
        summary = reconcile(session, batch_id)
        return {"batch_id": batch_id, "status": summary["status"] if summary else None}
    except BatchNotFoundError:
        logger.warning(f"Batch {batch_id} not found, nothing to reconcile")
        return None
    except Exception as exc:
        session.rollback()
        logger.error(f"Reconciliation of batch {batch_id} failed: {exc}", exc_info=True)
        raise
    finally:
        session.close()
