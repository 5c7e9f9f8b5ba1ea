"""Scheduled housekeeping for the document pipeline.

Two Celery beat tasks, both on a sync session:

    sweep_orphaned_income_entries     daily; removes income entries whose
                                      document is missing or on another return
    fail_stale_processing_documents   every 15 min; a document left in
                                      PROCESSING by a crashed worker is marked
                                      FAILED so the user can retry it
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine, delete, exists, select, update
from sqlalchemy.orm import Session

from taxprep.core.config import settings
from taxprep.models.document import Document, IncomeEntry, ProcessingStatus
from taxprep.worker import celery_app

logger = logging.getLogger(__name__)

_engine = create_engine(settings.database_url_sync, pool_pre_ping=True)


# ─── Core operations (sync) ─────────────────────────────────────────────────────

def sweep_orphans(db: Session) -> tuple[int, int]:
    """Delete orphaned income entries across every return. Returns (null, dangling)."""
    nulls = db.execute(
        delete(IncomeEntry)
        .where(IncomeEntry.document_id.is_(None))
        .execution_options(synchronize_session=False)
    ).rowcount or 0

    owned = exists(
        select(Document.id).where(
            Document.id == IncomeEntry.document_id,
            Document.tax_return_id == IncomeEntry.tax_return_id,
        )
    )
    dangling = db.execute(
        delete(IncomeEntry)
        .where(~owned)
        .execution_options(synchronize_session=False)
    ).rowcount or 0

    db.commit()
    return nulls, dangling


def fail_stale_documents(db: Session, now: datetime | None = None) -> int:
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(minutes=settings.stale_processing_minutes)
    count = db.execute(
        update(Document)
        .where(
            Document.processing_status == ProcessingStatus.PROCESSING.value,
            Document.updated_at < cutoff,
        )
        .values(processing_status=ProcessingStatus.FAILED.value, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    ).rowcount or 0
    db.commit()
    return count


# ─── Celery tasks ───────────────────────────────────────────────────────────────

@celery_app.task(name="taxprep.services.maintenance.sweep_orphaned_income_entries")
def sweep_orphaned_income_entries():
    """Daily orphan sweep (runs at `orphan_sweep_hour` UTC)."""
    with Session(_engine) as db:
        nulls, dangling = sweep_orphans(db)

    if nulls or dangling:
        logger.warning(
            "Orphan sweep removed %d income entries (%d without document, %d with missing document)",
            nulls + dangling, nulls, dangling,
        )
    else:
        logger.info("Orphan sweep: no orphaned income entries")
    return {"nullDocument": nulls, "invalidDocument": dangling}


@celery_app.task(name="taxprep.services.maintenance.fail_stale_processing_documents")
def fail_stale_processing_documents():
    with Session(_engine) as db:
        count = fail_stale_documents(db)
    if count:
        logger.warning(
            "Marked %d documents FAILED after %d minutes in PROCESSING",
            count, settings.stale_processing_minutes,
        )
    return count
