"""Shared fixtures: SQLite database, fakeredis progress store, eager Celery."""

import os
import tempfile

_TMP_DIR = tempfile.mkdtemp(prefix="catalog-ingest-tests-")

# Settings are cached on first import, so the environment is prepared first
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR}/ingest.db"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_URL"] = "cache+memory://"
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"
os.environ["UPLOADS_DIR"] = os.path.join(_TMP_DIR, "uploads")
os.environ["RECONCILE_POLL_INTERVAL_SECONDS"] = "0"

import fakeredis  # noqa: E402
import pytest  # noqa: E402

from catalog_ingest.core.config import get_settings  # noqa: E402
from catalog_ingest.db.base import Base  # noqa: E402
from catalog_ingest.db import models  # noqa: E402,F401
from catalog_ingest.db.session import SessionLocal, engine  # noqa: E402
from catalog_ingest.services import job_queue, progress_store  # noqa: E402
import catalog_ingest.workers.celery_app  # noqa: E402,F401


def make_csv(rows, headers=("sku", "name", "price")) -> bytes:
    lines = [",".join(headers)]
    lines.extend(",".join(str(value) for value in row) for row in rows)
    return ("\n".join(lines) + "\n").encode("utf-8")


def product_rows(count, start=0, prefix="SKU"):
    return [(f"{prefix}-{i:05d}", f"Product {i}", f"{i}.99") for i in range(start, start + count)]


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    client = fakeredis.FakeRedis(decode_responses=True)
    monkeypatch.setattr(progress_store, "redis_client", client)
    yield client
    client.flushall()


@pytest.fixture
def settings():
    """The live settings object; tests override fields with monkeypatch."""
    current = get_settings()
    yield current


@pytest.fixture
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def queued(monkeypatch):
    """Capture enqueued work instead of running it eagerly."""
    calls = {"source_files": [], "chunks": [], "reconciles": []}

    def fake_source_file(batch_id):
        calls["source_files"].append(batch_id)

    def fake_chunk(
        batch_id, chunk_number, rows, headers, source_filename, unique_column, chunk_count=None
    ):
        calls["chunks"].append(
            {
                "batch_id": batch_id,
                "chunk_number": chunk_number,
                "chunk_count": chunk_count,
                "rows": [list(row) for row in rows],
                "headers": list(headers),
                "source_filename": source_filename,
                "unique_column": unique_column,
            }
        )

    def fake_reconcile(batch_id, countdown=0):
        calls["reconciles"].append((batch_id, countdown))

    monkeypatch.setattr(job_queue, "enqueue_source_file", fake_source_file)
    monkeypatch.setattr(job_queue, "enqueue_chunk", fake_chunk)
    monkeypatch.setattr(job_queue, "enqueue_reconcile", fake_reconcile)
    return calls

