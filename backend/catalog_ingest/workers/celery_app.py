"""Celery application factory for the ingestion pipeline."""

import ssl

from celery import Celery
from celery.signals import worker_init

from catalog_ingest.core.config import get_settings
from catalog_ingest.core.logging_config import configure_logging
from catalog_ingest.db.session import init_db

settings = get_settings()

# Get broker and backend URLs
broker_url = settings.effective_broker_url
backend_url = settings.effective_result_url

# Convert redis:// to rediss:// for Upstash domains to enable SSL
is_ssl = False
if ".upstash.io" in broker_url and broker_url.startswith("redis://"):
    broker_url = broker_url.replace("redis://", "rediss://", 1)
if ".upstash.io" in backend_url and backend_url.startswith("redis://"):
    backend_url = backend_url.replace("redis://", "rediss://", 1)
if broker_url.startswith("rediss://") or backend_url.startswith("rediss://"):
    is_ssl = True

# The Redis result backend reads ssl_cert_reqs from the URL during init
if is_ssl:
    ssl_param = "ssl_cert_reqs=none"
    if "ssl_cert_reqs" not in broker_url:
        separator = "&" if "?" in broker_url else "?"
        broker_url = f"{broker_url}{separator}{ssl_param}"
    if "ssl_cert_reqs" not in backend_url:
        separator = "&" if "?" in backend_url else "?"
        backend_url = f"{backend_url}{separator}{ssl_param}"

celery_app = Celery(
    "catalog_ingest",
    broker=broker_url,
    backend=backend_url,
)

INGEST_QUEUE = "ingest"
CHUNK_QUEUE = "chunks"
RECONCILE_QUEUE = "reconcile"

# Task routing by queue; chunk workers scale separately from the dispatcher
celery_app.conf.task_routes = {
    "catalog_ingest.workers.tasks.ingest_source_file": {"queue": INGEST_QUEUE},
    "catalog_ingest.workers.tasks.process_chunk": {"queue": CHUNK_QUEUE},
    "catalog_ingest.workers.tasks.reconcile_batch": {"queue": RECONCILE_QUEUE},
}
# Set default queue (fallback if routing doesn't match)
celery_app.conf.task_default_queue = INGEST_QUEUE

celery_config = {
    "task_serializer": "json",
    "accept_content": ["json"],
    "result_serializer": "json",
    "timezone": "UTC",
    "enable_utc": True,
    "task_acks_late": True,  # Acknowledge after task completion
    "task_reject_on_worker_lost": True,  # Re-queue if worker dies
    "worker_prefetch_multiplier": 1,  # Fair task distribution
    "result_expires": 3600,  # Results expire after 1 hour
    "broker_connection_retry_on_startup": True,
    "worker_hijack_root_logger": False,
    "result_backend_always_retry": True,
    "result_backend_max_retries": 3,
    # Tests and single-process runs execute tasks in-process
    "task_always_eager": settings.celery_task_always_eager,
    "task_eager_propagates": settings.celery_task_always_eager,
}

if is_ssl:
    ssl_dict = {"ssl_cert_reqs": ssl.CERT_NONE}
    celery_config["broker_use_ssl"] = ssl_dict
    celery_config["redis_backend_use_ssl"] = ssl_dict
    celery_config["broker_transport_options"] = ssl_dict.copy()
    celery_config["result_backend_transport_options"] = ssl_dict.copy()

celery_app.conf.update(celery_config)


@worker_init.connect
def _prepare_worker(**kwargs):
    configure_logging(settings.log_level)
    init_db()


# Explicitly import tasks to ensure they're registered with celery_app
from catalog_ingest.workers.tasks import (  # noqa: E402,F401
    ingest_source_file,
    process_chunk,
    reconcile_batch,
)
