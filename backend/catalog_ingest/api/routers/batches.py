"""Endpoints for submitting uploads and operating on batches."""

from __future__ import annotations

import logging

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    HTTPException,
    UploadFile,
    status,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from catalog_ingest.api.dependencies.db import get_session
from catalog_ingest.api.schemas.batch import (
    BatchStatusResponse,
    ChunkDetailResponse,
    ChunkStatusResponse,
    RecordStatsResponse,
    StuckBatchResponse,
    SubmissionResponse,
    SubmissionSummaryResponse,
)
from catalog_ingest.core.errors import (
    BatchNotFoundError,
    BatchStateError,
    ChunkNotFoundError,
    IngestError,
    ParseError,
    SourceFileUnavailableError,
    SubmissionNotFoundError,
)
from catalog_ingest.db.models import IngestBatch
from catalog_ingest.services import batch_admin, progress_store
from catalog_ingest.services.record_upsert import source_file_stats
from catalog_ingest.services.submission import submit_upload

logger = logging.getLogger(__name__)

router = APIRouter()


def _to_http(exc: IngestError) -> HTTPException:
    """Map pipeline errors onto HTTP status codes."""
    if isinstance(exc, (BatchNotFoundError, ChunkNotFoundError, SubmissionNotFoundError)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, BatchStateError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, SourceFileUnavailableError):
        code = status.HTTP_410_GONE
    elif isinstance(exc, ParseError):
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=str(exc))


def _unexpected(action: str, exc: Exception) -> HTTPException:
    logger.error(f"Unexpected error while {action}: {exc}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="An unexpected error occurred",
    )


@router.post(
    "",
    summary="Submit a CSV or ZIP upload",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SubmissionResponse,
)
async def submit_batch(
    file: UploadFile = File(...),
    unique_column: str | None = Form(None, description="Business-key column override"),
    db: Session = Depends(get_session),
) -> SubmissionResponse:
    """Store the upload and queue one batch per source CSV."""
    if not file.filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Filename is required",
        )
    try:
        await file.seek(0)
        batches = submit_upload(
            db,
            file.file,
            file.filename,
            content_type=file.content_type,
            unique_column=unique_column or None,
        )
        db.commit()
        summaries = [
            progress_store.get_batch_summary(db, batch.id) for batch in batches
        ]
    except IngestError as exc:
        db.rollback()
        raise _to_http(exc) from exc
    except OSError as exc:
        db.rollback()
        logger.error(f"OS error staging upload {file.filename}: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save uploaded file",
        ) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise _unexpected("creating batches", exc) from exc

    logger.info(f"Accepted {file.filename}: {len(summaries)} batch(es)")
    return SubmissionResponse(
        submission_id=batches[0].submission_id if batches else None,
        batches=[BatchStatusResponse(**summary) for summary in summaries if summary]
    )


@router.get(
    "/stuck",
    summary="In-flight batches with no recent progress",
    response_model=list[StuckBatchResponse],
)
async def list_stuck(db: Session = Depends(get_session)) -> list[StuckBatchResponse]:
    try:
        return [StuckBatchResponse(**item) for item in batch_admin.list_stuck_batches(db)]
    except SQLAlchemyError as exc:
        raise _unexpected("listing stuck batches", exc) from exc


@router.get(
    "/submissions/{submission_id}",
    summary="Combined status of every batch from one upload",
    response_model=SubmissionSummaryResponse,
)
async def get_submission(
    submission_id: str, db: Session = Depends(get_session)
) -> SubmissionSummaryResponse:
    try:
        return SubmissionSummaryResponse(**batch_admin.get_submission_summary(db, submission_id))
    except IngestError as exc:
        raise _to_http(exc) from exc
    except SQLAlchemyError as exc:
        raise _unexpected(f"fetching submission {submission_id}", exc) from exc


@router.get(
    "/{batch_id}",
    summary="Batch status and processing log",
    response_model=BatchStatusResponse,
)
async def get_batch(batch_id: str, db: Session = Depends(get_session)) -> BatchStatusResponse:
    try:
        return BatchStatusResponse(**batch_admin.get_batch_status(db, batch_id))
    except IngestError as exc:
        raise _to_http(exc) from exc
    except SQLAlchemyError as exc:
        raise _unexpected(f"fetching batch {batch_id}", exc) from exc


@router.get(
    "/{batch_id}/chunks",
    summary="Status of every chunk in a batch",
    response_model=list[ChunkStatusResponse],
)
async def list_chunks(
    batch_id: str, db: Session = Depends(get_session)
) -> list[ChunkStatusResponse]:
    try:
        return [ChunkStatusResponse(**c) for c in batch_admin.list_chunks(db, batch_id)]
    except IngestError as exc:
        raise _to_http(exc) from exc
    except SQLAlchemyError as exc:
        raise _unexpected(f"listing chunks of {batch_id}", exc) from exc


@router.get(
    "/{batch_id}/chunks/{chunk_number}",
    summary="One chunk with its row errors",
    response_model=ChunkDetailResponse,
)
async def get_chunk(
    batch_id: str, chunk_number: int, db: Session = Depends(get_session)
) -> ChunkDetailResponse:
    try:
        return ChunkDetailResponse(**batch_admin.get_chunk_detail(db, batch_id, chunk_number))
    except IngestError as exc:
        raise _to_http(exc) from exc
    except SQLAlchemyError as exc:
        raise _unexpected(f"fetching chunk {chunk_number} of {batch_id}", exc) from exc


@router.post(
    "/{batch_id}/retry",
    summary="Re-run a failed or stuck batch",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=BatchStatusResponse,
)
async def retry_batch(batch_id: str, db: Session = Depends(get_session)) -> BatchStatusResponse:
    try:
        return BatchStatusResponse(**batch_admin.retry_batch(db, batch_id))
    except IngestError as exc:
        db.rollback()
        raise _to_http(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise _unexpected(f"retrying batch {batch_id}", exc) from exc


@router.post(
    "/{batch_id}/chunks/{chunk_number}/retry",
    summary="Re-run one failed chunk",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=ChunkDetailResponse,
)
async def retry_chunk(
    batch_id: str, chunk_number: int, db: Session = Depends(get_session)
) -> ChunkDetailResponse:
    try:
        return ChunkDetailResponse(**batch_admin.retry_chunk(db, batch_id, chunk_number))
    except IngestError as exc:
        db.rollback()
        raise _to_http(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise _unexpected(f"retrying chunk {chunk_number} of {batch_id}", exc) from exc


@router.post(
    "/{batch_id}/cancel",
    summary="Cancel a processing batch",
    response_model=BatchStatusResponse,
)
async def cancel_batch(batch_id: str, db: Session = Depends(get_session)) -> BatchStatusResponse:
    try:
        return BatchStatusResponse(**batch_admin.cancel_batch(db, batch_id))
    except IngestError as exc:
        db.rollback()
        raise _to_http(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise _unexpected(f"cancelling batch {batch_id}", exc) from exc


@router.get(
    "/{batch_id}/records/stats",
    summary="Record counts for the batch's source file",
    response_model=RecordStatsResponse,
)
async def record_stats(batch_id: str, db: Session = Depends(get_session)) -> RecordStatsResponse:
    batch = db.get(IngestBatch, batch_id)
    if not batch:
        raise HTTPException(status_code=404, detail="Batch not found")
    try:
        stats = source_file_stats(db, batch.source_filename)
    except SQLAlchemyError as exc:
        raise _unexpected(f"counting records for {batch_id}", exc) from exc
    return RecordStatsResponse(source_filename=batch.source_filename, **stats)
