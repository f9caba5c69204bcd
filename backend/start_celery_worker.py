#!/usr/bin/env python3
"""Start a Celery worker for the ingestion queues.

Extra arguments are passed through, e.g. ``--queues=chunks --concurrency=4``
to run a dedicated chunk worker.
"""

import sys
import warnings

from celery.bin import worker

# Suppress the superuser privilege warning in containers
warnings.filterwarnings('ignore', category=UserWarning, message='.*superuser privileges.*')
warnings.filterwarnings('ignore', category=RuntimeWarning, message='.*superuser privileges.*')

from catalog_ingest.workers.celery_app import (  # noqa: E402
    CHUNK_QUEUE,
    INGEST_QUEUE,
    RECONCILE_QUEUE,
    celery_app,
)

if __name__ == '__main__':
    worker_app = worker.worker(app=celery_app)

    sys.argv = [
        'celery',
        '-A', 'catalog_ingest.workers.celery_app.celery_app',
        'worker',
        '--loglevel=info',
        f'--queues={INGEST_QUEUE},{CHUNK_QUEUE},{RECONCILE_QUEUE}',
        '--without-mingle',
        '--without-gossip',
    ] + sys.argv[1:]

    worker_app.run()
