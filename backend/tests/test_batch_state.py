import pytest

from catalog_ingest.core.errors import InvalidTransitionError
from catalog_ingest.db.models import BatchStatus, IngestBatch
from catalog_ingest.services.batch_state import (
    advance_status,
    claim_processing,
    fail_batch,
    reopen_batch,
)


def _batch(session, status=BatchStatus.PENDING):
    batch = IngestBatch(source_filename="catalog.csv", status=status)
    session.add(batch)
    session.commit()
    return batch


def test_advance_forward_sets_timestamps(db_session):
    batch = _batch(db_session)

    advance_status(db_session, batch, BatchStatus.ANALYZING)
    assert batch.started_at is not None
    advance_status(db_session, batch, BatchStatus.COMPLETED)
    assert batch.finalized_at is not None


def test_advance_backwards_is_rejected(db_session):
    batch = _batch(db_session, BatchStatus.PROCESSING)
    with pytest.raises(InvalidTransitionError):
        advance_status(db_session, batch, BatchStatus.CHUNKED)


def test_terminal_status_is_written_once(db_session):
    batch = _batch(db_session, BatchStatus.COMPLETED)
    with pytest.raises(InvalidTransitionError):
        advance_status(db_session, batch, BatchStatus.COMPLETED_WITH_ERRORS)


def test_fail_batch_ignores_terminal(db_session):
    batch = _batch(db_session, BatchStatus.COMPLETED)
    fail_batch(db_session, batch, "late failure")
    assert batch.status == BatchStatus.COMPLETED
    assert batch.error_message is None


def test_claim_processing_only_once(db_session):
    batch = _batch(db_session, BatchStatus.CHUNKED)

    assert claim_processing(db_session, batch.id) is True
    assert claim_processing(db_session, batch.id) is False
    db_session.commit()
    db_session.refresh(batch)
    assert batch.status == BatchStatus.PROCESSING


def test_reopen_clears_terminal_status(db_session):
    batch = _batch(db_session, BatchStatus.PROCESSING)
    advance_status(db_session, batch, BatchStatus.COMPLETED_WITH_ERRORS)
    db_session.commit()

    assert reopen_batch(db_session, batch, "retry of chunk 2") is True
    db_session.commit()

    assert batch.status == BatchStatus.PROCESSING
    assert batch.finalized_at is None
    assert batch.processing_log[-1] == "[WARNING] Reopened from completed_with_errors: retry of chunk 2"
    advance_status(db_session, batch, BatchStatus.COMPLETED)
    assert batch.finalized_at is not None


def test_reopen_leaves_in_flight_batch_alone(db_session):
    batch = _batch(db_session, BatchStatus.PROCESSING)

    assert reopen_batch(db_session, batch, "retry of chunk 1") is False
    assert batch.status == BatchStatus.PROCESSING
