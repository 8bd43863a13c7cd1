import logging
from datetime import datetime, timedelta
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from . import celery_app
from .config import Settings
from .database import make_engine, make_session_factory
from .errors import StorageFailure
from .models.archive import ArchiveRecord, as_utc, utcnow
from .services.audit import AuditTrail
from .services.blob_store import make_blob_store

logger = logging.getLogger(__name__)


def removal_reason(rec: ArchiveRecord, now: datetime) -> str:
    if not rec.is_active:
        return "user_deleted"
    if rec.expiry_at is not None and as_utc(rec.expiry_at) <= now:
        return "expired"
    return "max_downloads_reached"


def sweep(
    db: Session,
    blob_store,
    now: datetime | None = None,
    batch_size: int = 500,
    orphan_grace: timedelta = timedelta(minutes=60),
) -> dict:
    """Hard-delete archives that can no longer be downloaded, then orphaned blobs."""
    now = now or utcnow()
    removable = or_(
        ArchiveRecord.is_active.is_(False),
        ArchiveRecord.expiry_at <= now,
        and_(
            ArchiveRecord.max_downloads.isnot(None),
            ArchiveRecord.download_count >= ArchiveRecord.max_downloads,
        ),
    )
    removed = []
    # Delete in batches to avoid long locks; loop until a short batch
    while True:
        batch = (
            db.query(ArchiveRecord)
            .filter(removable)
            .order_by(ArchiveRecord.id)
            .limit(batch_size)
            .all()
        )
        for rec in batch:
            removed.append((rec.id, rec.name, removal_reason(rec, now)))
            try:
                blob_store.delete(rec.blob_id)
            except StorageFailure:
                logger.warning("Could not delete blob %s of archive %s", rec.blob_id, rec.id)
            db.delete(rec)
        db.commit()
        if len(batch) < batch_size:
            break

    audit = AuditTrail(db)
    for archive_id, name, reason in removed:
        audit.record("archive_deleted", archive_id, filename=name, reason=reason)

    referenced = {row[0] for row in db.query(ArchiveRecord.blob_id)}
    orphans = [
        blob_id
        for blob_id in blob_store.stale_ids(now - orphan_grace)
        if blob_id not in referenced
    ]
    for blob_id in orphans:
        try:
            blob_store.delete(blob_id)
        except StorageFailure:
            logger.warning("Could not delete orphaned blob %s", blob_id)

    logger.info("Sweep removed %d archives and %d orphaned blobs", len(removed), len(orphans))
    return {"deleted": len(removed), "orphans": len(orphans)}


@celery_app.task(name="bundlebox.cleanup.cleanup_expired")
def cleanup_expired():
    settings = Settings.from_env()
    engine = make_engine(settings.database_url)
    session_factory = make_session_factory(engine)
    blob_store = make_blob_store(settings, session_factory)
    try:
        with session_factory() as db:
            return sweep(
                db,
                blob_store,
                batch_size=settings.cleanup_batch_size,
                orphan_grace=timedelta(minutes=settings.orphan_grace_minutes),
            )
    finally:
        engine.dispose()
