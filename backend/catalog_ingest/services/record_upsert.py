"""Per-key atomic upserts and retirement of target records."""

from __future__ import annotations

import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from catalog_ingest.db.models import TargetRecord

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"


def _locked_lookup(session: Session, business_key: str) -> TargetRecord | None:
    # FOR UPDATE is dropped by dialects without row locks (SQLite)
    return session.scalar(
        select(TargetRecord)
        .where(TargetRecord.business_key == business_key)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


def upsert_record(
    session: Session,
    business_key: str,
    attributes: dict[str, str],
    *,
    batch_id: str,
    source_filename: str,
) -> str:
    """Create or update the record for ``business_key``.

    Returns ``"created"`` when no active record existed (a retired record
    coming back counts as created) and ``"updated"`` otherwise. Two workers
    racing on the same new key both reach the update path: the loser's
    insert hits the unique index inside its savepoint and re-reads.
    """
    record = _locked_lookup(session, business_key)
    if record is None:
        try:
            with session.begin_nested():
                session.add(
                    TargetRecord(
                        business_key=business_key,
                        attributes=attributes,
                        source_filename=source_filename,
                        source_batch_id=batch_id,
                        is_active=True,
                    )
                )
            return CREATED
        except IntegrityError:
            logger.info(f"Concurrent insert for key {business_key!r}, updating instead")
            record = _locked_lookup(session, business_key)
            if record is None:
                raise

    outcome = UPDATED if record.is_active else CREATED
    record.attributes = attributes
    record.source_filename = source_filename
    record.source_batch_id = batch_id
    record.is_active = True
    record.deactivated_by_batch_id = None
    session.flush()
    return outcome


def deactivate_stale_records(session: Session, *, batch_id: str, source_filename: str) -> int:
    """Retire active records of the same source file not touched by ``batch_id``."""
    result = session.execute(
        update(TargetRecord)
        .where(
            TargetRecord.source_filename == source_filename,
            TargetRecord.source_batch_id != batch_id,
            TargetRecord.is_active.is_(True),
        )
        .values(is_active=False, deactivated_by_batch_id=batch_id, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def count_deactivated_by(session: Session, batch_id: str) -> int:
    return session.scalar(
        select(func.count(TargetRecord.id)).where(
            TargetRecord.deactivated_by_batch_id == batch_id,
            TargetRecord.is_active.is_(False),
        )
    ) or 0


def source_file_stats(session: Session, source_filename: str) -> dict[str, int]:
    """Record counts for one source file (total / active / inactive)."""
    total = session.scalar(
        select(func.count(TargetRecord.id)).where(TargetRecord.source_filename == source_filename)
    ) or 0
    active = session.scalar(
        select(func.count(TargetRecord.id)).where(
            TargetRecord.source_filename == source_filename,
            TargetRecord.is_active.is_(True),
        )
    ) or 0
    return {
        "total_records": total,
        "active_records": active,
        "inactive_records": total - active,
    }
