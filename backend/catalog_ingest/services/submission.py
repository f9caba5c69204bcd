"""Accept an upload and create one pending batch per source CSV."""

from __future__ import annotations

import logging
import posixpath
import uuid
from typing import BinaryIO

from sqlalchemy.orm import Session

from catalog_ingest.core.errors import ParseError
from catalog_ingest.db.models import BatchStatus, IngestBatch
from catalog_ingest.services import job_queue, progress_store
from catalog_ingest.services.batch_state import append_log, fail_batch
from catalog_ingest.services.parser import CSV, detect_content_type, list_archive_members
from catalog_ingest.storage.upload_store import load_upload, save_upload

logger = logging.getLogger(__name__)


def _new_batch(
    session: Session,
    *,
    source_filename: str,
    content_type: str,
    stored_path: str,
    unique_column: str | None,
    submission_id: str,
    archive_name: str | None = None,
    archive_member: str | None = None,
) -> IngestBatch:
    batch = IngestBatch(
        source_filename=source_filename,
        submission_id=submission_id,
        content_type=content_type,
        stored_file_path=stored_path,
        configured_unique_column=unique_column,
        archive_name=archive_name,
        archive_member=archive_member,
        status=BatchStatus.PENDING,
    )
    session.add(batch)
    session.flush()
    origin = f" from {archive_name}" if archive_name else ""
    append_log(session, batch.id, f"Received {source_filename}{origin}")
    return batch


def submit_upload(
    session: Session,
    file_obj: BinaryIO,
    filename: str,
    *,
    content_type: str | None = None,
    unique_column: str | None = None,
) -> list[IngestBatch]:
    """Store the upload, create batches and queue them for analysis.

    A ZIP yields one batch per CSV entry, all sharing one ``submission_id``
    so the upload can be tracked as a whole. An archive that cannot be opened
    or holds no CSV entries yields a single failed batch so the problem is
    visible through the status API.
    """
    kind = detect_content_type(filename, content_type)
    stored_path = str(save_upload(file_obj, filename))
    submission_id = str(uuid.uuid4())
    logger.info(f"Stored upload {filename} at {stored_path} (submission {submission_id})")

    batches: list[IngestBatch] = []
    if kind == CSV:
        batches.append(
            _new_batch(
                session,
                source_filename=filename,
                content_type=kind,
                stored_path=stored_path,
                unique_column=unique_column,
                submission_id=submission_id,
            )
        )
    else:
        try:
            members = list_archive_members(load_upload(stored_path))
            if not members:
                raise ParseError(f"No CSV files found in {filename}")
        except ParseError as e:
            batch = _new_batch(
                session,
                source_filename=filename,
                content_type=kind,
                stored_path=stored_path,
                unique_column=unique_column,
                submission_id=submission_id,
                archive_name=filename,
            )
            fail_batch(session, batch, str(e))
            session.commit()
            progress_store.publish_batch_summary(batch)
            return [batch]

        for member in members:
            batches.append(
                _new_batch(
                    session,
                    source_filename=posixpath.basename(member),
                    content_type=CSV,
                    stored_path=stored_path,
                    unique_column=unique_column,
                    submission_id=submission_id,
                    archive_name=filename,
                    archive_member=member,
                )
            )

    # Workers must see the batch rows before they are queued
    session.commit()
    for batch in batches:
        job_queue.enqueue_source_file(batch.id)
    return batches
