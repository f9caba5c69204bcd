import io
import os
import zipfile
from datetime import timedelta

import pytest
from sqlalchemy import select

from catalog_ingest.core.errors import (
    BatchNotFoundError,
    BatchStateError,
    ChunkNotFoundError,
    SourceFileUnavailableError,
    SubmissionNotFoundError,
)
from catalog_ingest.db.models import BatchStatus, ChunkStatus, IngestBatch, IngestChunk, TargetRecord
from catalog_ingest.services import (
    batch_admin,
    chunk_worker,
    dispatcher,
    job_queue,
    progress_store,
    record_upsert,
)
from catalog_ingest.services.batch_state import utcnow
from catalog_ingest.services.reconciler import reconcile
from catalog_ingest.services.submission import submit_upload

from conftest import make_csv, product_rows


@pytest.fixture
def small_chunks(settings, monkeypatch):
    monkeypatch.setattr(settings, "chunk_threshold", 5)
    monkeypatch.setattr(settings, "chunk_size", 4)


def _submit_queued(session, rows, filename="catalog.csv"):
    (batch,) = submit_upload(session, io.BytesIO(make_csv(rows)), filename)
    return batch


def _run_queued_chunks(session, queued, numbers=None):
    for call in queued["chunks"]:
        if numbers is None or call["chunk_number"] in numbers:
            chunk_worker.run_chunk(
                session,
                batch_id=call["batch_id"],
                chunk_number=call["chunk_number"],
                rows=call["rows"],
                headers=call["headers"],
                source_filename=call["source_filename"],
                unique_column=call["unique_column"],
            )


def _dispatched(session, queued, rows):
    batch = _submit_queued(session, rows)
    assert queued["source_files"] == [batch.id]
    dispatcher.ingest_batch(session, batch.id)
    return batch


def test_submission_queues_pending_batch(db_session, queued):
    batch = _submit_queued(db_session, product_rows(3))

    assert batch.status == BatchStatus.PENDING
    assert os.path.exists(batch.stored_file_path)
    assert queued["source_files"] == [batch.id]


def test_chunked_dispatch_queues_slices_and_reconcile(db_session, queued, small_chunks, settings):
    rows = product_rows(10)
    batch = _dispatched(db_session, queued, rows)

    assert [c["chunk_number"] for c in queued["chunks"]] == [1, 2, 3]
    assert queued["chunks"][2]["rows"] == [list(r) for r in rows[8:10]]
    assert {c["chunk_count"] for c in queued["chunks"]} == {3}
    assert queued["reconciles"] == [(batch.id, settings.reconcile_grace_seconds)]
    db_session.expire_all()
    assert db_session.get(IngestBatch, batch.id).status == BatchStatus.CHUNKED


def test_status_reports_progress_while_in_flight(db_session, queued, small_chunks):
    batch = _dispatched(db_session, queued, product_rows(10))
    _run_queued_chunks(db_session, queued, numbers={1})

    summary = batch_admin.get_batch_status(db_session, batch.id)

    assert summary["status"] == BatchStatus.PROCESSING
    assert summary["chunks_completed"] == 1
    assert summary["progress_percentage"] == pytest.approx(33.3)
    assert [c["status"] for c in batch_admin.list_chunks(db_session, batch.id)] == [
        ChunkStatus.COMPLETED,
        ChunkStatus.PENDING,
        ChunkStatus.PENDING,
    ]


def test_get_chunk_detail_includes_row_errors(db_session, queued, small_chunks):
    rows = product_rows(10)
    rows[5] = ("", "Broken", "0")
    batch = _dispatched(db_session, queued, rows)
    _run_queued_chunks(db_session, queued)

    detail = batch_admin.get_chunk_detail(db_session, batch.id, 2)

    assert detail["rows_failed"] == 1
    assert detail["error_details"][0]["row_index"] == 5
    with pytest.raises(ChunkNotFoundError):
        batch_admin.get_chunk_detail(db_session, batch.id, 7)


def test_unknown_batch(db_session):
    with pytest.raises(BatchNotFoundError):
        batch_admin.get_batch_status(db_session, "nope")


def test_cancel_processing_batch(db_session, queued, small_chunks):
    batch = _dispatched(db_session, queued, product_rows(10))
    _run_queued_chunks(db_session, queued, numbers={1})

    summary = batch_admin.cancel_batch(db_session, batch.id)

    assert summary["status"] == BatchStatus.FAILED
    assert any("Cancelled by operator" in line for line in summary["processing_log"])
    assert progress_store.is_cancelled(batch.id)
    statuses = [c["status"] for c in batch_admin.list_chunks(db_session, batch.id)]
    assert statuses == [ChunkStatus.COMPLETED, ChunkStatus.FAILED, ChunkStatus.FAILED]

    # A chunk message delivered after the cancel does nothing
    _run_queued_chunks(db_session, queued, numbers={2})
    assert batch_admin.get_chunk_detail(db_session, batch.id, 2)["records_created"] == 0


def test_cancel_rejected_unless_processing(db_session, queued):
    batch = _submit_queued(db_session, product_rows(3))
    with pytest.raises(BatchStateError):
        batch_admin.cancel_batch(db_session, batch.id)


def test_retry_failed_batch_redispatches(db_session, queued, small_chunks):
    batch = _dispatched(db_session, queued, product_rows(10))
    _run_queued_chunks(db_session, queued, numbers={1})
    batch_admin.cancel_batch(db_session, batch.id)

    summary = batch_admin.retry_batch(db_session, batch.id)

    assert summary["status"] == BatchStatus.PENDING
    assert summary["chunk_count"] == 0
    assert queued["source_files"] == [batch.id, batch.id]
    assert not progress_store.is_cancelled(batch.id)
    assert db_session.scalars(select(IngestChunk).where(IngestChunk.batch_id == batch.id)).all() == []

    queued["chunks"].clear()
    dispatcher.ingest_batch(db_session, batch.id)
    _run_queued_chunks(db_session, queued)
    final = reconcile(db_session, batch.id)
    assert final["status"] == BatchStatus.COMPLETED
    assert final["records_created"] + final["records_updated"] == 10


def test_retry_rejected_for_healthy_batch(db_session, queued, small_chunks):
    batch = _dispatched(db_session, queued, product_rows(10))
    _run_queued_chunks(db_session, queued, numbers={1})

    with pytest.raises(BatchStateError):
        batch_admin.retry_batch(db_session, batch.id)


def test_retry_allowed_for_stuck_batch(db_session, queued, small_chunks, settings):
    batch = _dispatched(db_session, queued, product_rows(10))
    _run_queued_chunks(db_session, queued, numbers={1})
    later = utcnow() + timedelta(seconds=settings.stuck_after_seconds + 60)

    summary = batch_admin.retry_batch(db_session, batch.id, now=later)

    assert summary["status"] == BatchStatus.PENDING


def test_retry_without_source_file(db_session, queued):
    batch = _submit_queued(db_session, product_rows(3))
    db_session.get(IngestBatch, batch.id).status = BatchStatus.FAILED
    db_session.commit()
    os.remove(batch.stored_file_path)

    with pytest.raises(SourceFileUnavailableError):
        batch_admin.retry_batch(db_session, batch.id)
    db_session.expire_all()
    assert db_session.get(IngestBatch, batch.id).status == BatchStatus.FAILED


def test_retry_failed_chunk(db_session, queued, small_chunks):
    rows = product_rows(10)
    batch = _dispatched(db_session, queued, rows)
    _run_queued_chunks(db_session, queued, numbers={1, 3})
    chunk_worker.record_attempt_failure(
        db_session, batch_id=batch.id, chunk_number=2, error=RuntimeError("db down"), final=True
    )
    degraded = reconcile(db_session, batch.id)
    assert degraded["status"] == BatchStatus.COMPLETED_WITH_ERRORS
    assert degraded["chunks_failed"] == 1

    queued["chunks"].clear()
    queued["reconciles"].clear()
    detail = batch_admin.retry_chunk(db_session, batch.id, 2)

    assert detail["status"] == ChunkStatus.PENDING
    assert queued["chunks"][0]["rows"] == [list(r) for r in rows[4:8]]
    assert len(queued["reconciles"]) == 1
    assert batch_admin.get_batch_status(db_session, batch.id)["status"] == BatchStatus.PROCESSING
    _run_queued_chunks(db_session, queued)
    summary = reconcile(db_session, batch.id)

    assert summary["status"] == BatchStatus.COMPLETED
    assert summary["chunks_failed"] == 0
    assert summary["records_created"] == 10


def test_retry_chunk_rejects_completed_chunk(db_session, queued, small_chunks):
    batch = _dispatched(db_session, queued, product_rows(10))
    _run_queued_chunks(db_session, queued, numbers={1})

    with pytest.raises(BatchStateError):
        batch_admin.retry_chunk(db_session, batch.id, 1)


def test_deactivation_waits_for_every_chunk(db_session, queued, settings, monkeypatch):
    monkeypatch.setattr(settings, "chunk_threshold", 5)
    monkeypatch.setattr(settings, "chunk_size", 10)
    first = _dispatched(db_session, queued, product_rows(20))
    _run_queued_chunks(db_session, queued)
    assert reconcile(db_session, first.id)["status"] == BatchStatus.COMPLETED

    queued["chunks"].clear()
    second = _submit_queued(db_session, product_rows(18))
    dispatcher.ingest_batch(db_session, second.id)
    _run_queued_chunks(db_session, queued, numbers={1})
    chunk_worker.record_attempt_failure(
        db_session, batch_id=second.id, chunk_number=2, error=RuntimeError("db down"), final=True
    )
    degraded = reconcile(db_session, second.id)

    # Keys 10-17 were never reached, so nothing may be retired yet
    assert degraded["status"] == BatchStatus.COMPLETED_WITH_ERRORS
    assert degraded["records_deactivated"] == 0
    assert _inactive_keys(db_session) == []
    assert any("Skipped deactivation" in line for line in degraded["processing_log"])

    queued["chunks"].clear()
    batch_admin.retry_chunk(db_session, second.id, 2)
    _run_queued_chunks(db_session, queued)
    final = reconcile(db_session, second.id)

    assert final["status"] == BatchStatus.COMPLETED
    assert final["records_updated"] == 18
    assert final["records_deactivated"] == 2
    assert _inactive_keys(db_session) == ["SKU-00018", "SKU-00019"]


def _inactive_keys(session):
    return sorted(
        session.scalars(
            select(TargetRecord.business_key).where(TargetRecord.is_active.is_(False))
        ).all()
    )


def test_chunk_retry_resumes_after_committed_rows(db_session, queued, small_chunks):
    batch = _dispatched(db_session, queued, product_rows(10))
    _run_queued_chunks(db_session, queued, numbers={1, 3})
    # A worker stored rows 4 and 5, then lost its connection
    for key in ("SKU-00004", "SKU-00005"):
        record_upsert.upsert_record(
            db_session, key, {"name": key}, batch_id=batch.id, source_filename="catalog.csv"
        )
    chunk = db_session.scalars(
        select(IngestChunk).where(IngestChunk.batch_id == batch.id, IngestChunk.chunk_number == 2)
    ).one()
    chunk.rows_processed = 2
    chunk.records_created = 2
    db_session.commit()
    chunk_worker.record_attempt_failure(
        db_session, batch_id=batch.id, chunk_number=2, error=RuntimeError("db down"), final=True
    )
    reconcile(db_session, batch.id)

    queued["chunks"].clear()
    batch_admin.retry_chunk(db_session, batch.id, 2)
    _run_queued_chunks(db_session, queued)

    detail = batch_admin.get_chunk_detail(db_session, batch.id, 2)
    assert detail["status"] == ChunkStatus.COMPLETED
    assert detail["rows_processed"] == 4
    # Rows 4 and 5 were not upserted a second time
    assert detail["records_created"] == 4
    assert detail["records_updated"] == 0
    assert detail["error_details"] == []
    stored = db_session.scalar(select(TargetRecord).where(TargetRecord.business_key == "SKU-00004"))
    assert stored.attributes == {"name": "SKU-00004"}


def test_broker_failure_mid_dispatch_still_schedules_reconcile(db_session, queued, small_chunks, monkeypatch):
    enqueued = []

    def flaky_enqueue(batch_id, chunk_number, *args, **kwargs):
        if chunk_number == 2:
            raise ConnectionError("broker unreachable")
        enqueued.append(chunk_number)

    monkeypatch.setattr(job_queue, "enqueue_chunk", flaky_enqueue)
    batch = _submit_queued(db_session, product_rows(10))

    with pytest.raises(ConnectionError):
        dispatcher.ingest_batch(db_session, batch.id)

    assert enqueued == [1]
    assert [b for b, _ in queued["reconciles"]] == [batch.id]
    chunks = batch_admin.list_chunks(db_session, batch.id)
    assert [c["status"] for c in chunks] == [
        ChunkStatus.PENDING,
        ChunkStatus.FAILED,
        ChunkStatus.FAILED,
    ]
    detail = batch_admin.get_chunk_detail(db_session, batch.id, 3)
    assert detail["error_details"][0]["reason"].startswith("Could not be queued: ConnectionError")


def test_list_stuck_batches(db_session, queued, small_chunks, settings):
    stuck = _dispatched(db_session, queued, product_rows(10))
    healthy = _submit_queued(db_session, product_rows(3), filename="other.csv")

    assert batch_admin.list_stuck_batches(db_session) == []

    later = utcnow() + timedelta(seconds=settings.stuck_after_seconds + 60)
    listed = batch_admin.list_stuck_batches(db_session, now=later)

    assert [item["batch_id"] for item in listed] == [stuck.id]
    assert listed[0]["status"] == BatchStatus.CHUNKED
    assert listed[0]["stuck_for_seconds"] >= settings.stuck_after_seconds + 60
    assert healthy.id not in {item["batch_id"] for item in listed}


def test_submission_summary_combines_zip_entries(db_session, queued):
    archive = io.BytesIO()
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("a.csv", make_csv(product_rows(3, prefix="A")))
        zf.writestr("b.csv", make_csv(product_rows(2, prefix="B")))
    batches = submit_upload(db_session, io.BytesIO(archive.getvalue()), "bundle.zip")
    submission_id = batches[0].submission_id

    assert {b.submission_id for b in batches} == {submission_id}
    pending = batch_admin.get_submission_summary(db_session, submission_id)
    assert pending["status"] == BatchStatus.PROCESSING
    assert pending["batch_count"] == 2
    assert pending["batches_by_status"] == {BatchStatus.PENDING: 2}

    for batch in batches:
        dispatcher.ingest_batch(db_session, batch.id)
    done = batch_admin.get_submission_summary(db_session, submission_id)

    assert done["status"] == BatchStatus.COMPLETED
    assert done["records_created"] == 5
    assert done["total_rows"] == 5
    assert sorted(b["source_filename"] for b in done["batches"]) == ["a.csv", "b.csv"]
    with pytest.raises(SubmissionNotFoundError):
        batch_admin.get_submission_summary(db_session, "no-such-upload")


@pytest.mark.parametrize(
    "statuses, records, expected",
    [
        ([BatchStatus.COMPLETED, BatchStatus.PROCESSING], 5, BatchStatus.PROCESSING),
        ([BatchStatus.COMPLETED, BatchStatus.COMPLETED], 5, BatchStatus.COMPLETED),
        ([BatchStatus.COMPLETED, BatchStatus.COMPLETED_WITH_ERRORS], 5, BatchStatus.COMPLETED_WITH_ERRORS),
        ([BatchStatus.COMPLETED, BatchStatus.FAILED], 5, BatchStatus.COMPLETED_WITH_ERRORS),
        ([BatchStatus.COMPLETED, BatchStatus.FAILED], 0, BatchStatus.FAILED),
        ([BatchStatus.FAILED, BatchStatus.FAILED], 0, BatchStatus.FAILED),
    ],
)
def test_submission_status(statuses, records, expected):
    assert batch_admin.submission_status(statuses, records) == expected
