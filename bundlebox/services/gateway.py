import logging
import posixpath
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Sequence

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bundlebox.errors import (
    AuthFailedError,
    ExpiredError,
    LimitExceededError,
    NotFoundError,
    PasswordRequiredError,
    StorageFailure,
)
from bundlebox.models.archive import ARCHIVE_MIME_TYPE, ArchiveRecord, as_utc, utcnow
from bundlebox.services.packer import pack, select, unpack
from bundlebox.services.passwords import verify_password
from bundlebox.services.tokens import tokens_match

logger = logging.getLogger(__name__)


class AccessState(str, Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    LIMIT_EXCEEDED = "limit_exceeded"
    PASSWORD_REQUIRED = "password_required"
    AUTH_FAILED = "auth_failed"
    AUTHORIZED = "authorized"


STATE_ERRORS = {
    AccessState.NOT_FOUND: NotFoundError,
    AccessState.EXPIRED: ExpiredError,
    AccessState.LIMIT_EXCEEDED: LimitExceededError,
    AccessState.PASSWORD_REQUIRED: PasswordRequiredError,
    AccessState.AUTH_FAILED: AuthFailedError,
}


def is_expired(rec: ArchiveRecord, now: datetime | None = None) -> bool:
    if rec.expiry_at is None:
        return False
    return as_utc(rec.expiry_at) <= (now or utcnow())


def is_exhausted(rec: ArchiveRecord) -> bool:
    return rec.max_downloads is not None and rec.download_count >= rec.max_downloads


def evaluate(rec: ArchiveRecord | None, password: str | None = None, now: datetime | None = None) -> AccessState:
    """Access decision for a resolved record; the first matching rule wins."""
    if rec is None or not rec.is_active:
        return AccessState.NOT_FOUND
    if is_expired(rec, now):
        return AccessState.EXPIRED
    if is_exhausted(rec):
        return AccessState.LIMIT_EXCEEDED
    if rec.password_hash:
        if not password:
            return AccessState.PASSWORD_REQUIRED
        if not verify_password(password, rec.password_hash):
            return AccessState.AUTH_FAILED
    return AccessState.AUTHORIZED


def require_access(rec: ArchiveRecord | None, password: str | None = None, now: datetime | None = None) -> ArchiveRecord:
    state = evaluate(rec, password, now)
    if state is not AccessState.AUTHORIZED:
        raise STATE_ERRORS[state]()
    return rec


@dataclass
class ArchiveInfo:
    archive: ArchiveRecord
    unlocked: bool


@dataclass
class DownloadedArchive:
    filename: str
    content: bytes
    media_type: str = ARCHIVE_MIME_TYPE


class AccessGateway:
    def __init__(self, db_session: Session, blob_store, token_cache, cipher, audit, cache_ttl: int = 3600):
        self.db_session = db_session
        self.blob_store = blob_store
        self.token_cache = token_cache
        self.cipher = cipher
        self.audit = audit
        self.cache_ttl = cache_ttl

    def resolve(self, token: str) -> ArchiveRecord | None:
        """Find the archive behind a download token, cache first."""
        archive_id = self.token_cache.get(token)
        if archive_id is not None:
            rec = self.db_session.get(ArchiveRecord, archive_id)
            if rec is not None and tokens_match(rec.download_token, token):
                return rec
            self.token_cache.delete(token)

        rec = self.db_session.query(ArchiveRecord).filter_by(download_token=token).first()
        if rec is not None and rec.is_active and not is_expired(rec):
            ttl = self.cache_ttl
            if rec.expiry_at is not None:
                ttl = min(ttl, int((as_utc(rec.expiry_at) - utcnow()).total_seconds()))
            self.token_cache.set(token, rec.id, ttl)
        return rec

    def info(self, token: str, password: str | None = None) -> ArchiveInfo:
        """Summary for the landing page; never counts as a download.

        The member list is only unlocked by the right password, but a missing
        password still returns the summary.
        """
        rec = self.resolve(token)
        if rec is None or not rec.is_active:
            raise NotFoundError()
        if is_expired(rec):
            raise ExpiredError()
        unlocked = True
        if rec.password_hash:
            if not password:
                unlocked = False
            elif not verify_password(password, rec.password_hash):
                raise AuthFailedError("Invalid password")
        return ArchiveInfo(archive=rec, unlocked=unlocked)

    def check_access(self, token: str, password: str | None = None) -> ArchiveRecord:
        return require_access(self.resolve(token), password)

    def download(self, token: str, password: str | None = None) -> DownloadedArchive:
        rec = self.check_access(token, password)
        container = self._open(rec)
        if rec.has_pruned_members:
            listed = {s.path for s in rec.subfiles}
            members = unpack(container)
            container = pack((path, data) for path, data in members.items() if path in listed)

        self._claim(rec)
        self.audit.record("archive_download", rec.id, filename=rec.name, download_count=rec.download_count)
        return DownloadedArchive(filename=rec.name, content=container)

    def download_members(self, token: str, paths: Sequence[str], password: str | None = None) -> DownloadedArchive:
        """Pull selected files or folders out of an archive."""
        rec = self.check_access(token, password)
        listed = {s.path: s for s in rec.subfiles}
        members = {p: d for p, d in unpack(self._open(rec)).items() if p in listed}
        chosen = select(members, paths)
        if not chosen:
            raise NotFoundError("No matching files in archive")

        if len(chosen) == 1:
            path, content = next(iter(chosen.items()))
            result = DownloadedArchive(
                filename=posixpath.basename(path),
                content=content,
                media_type=listed[path].mime_type or "application/octet-stream",
            )
        else:
            stem = rec.name[:-4] if rec.name.endswith(".zip") else rec.name
            result = DownloadedArchive(filename=f"{stem}_partial.zip", content=pack(chosen.items()))

        now = self._claim(rec)
        for path in chosen:
            listed[path].extracted = True
            listed[path].downloaded_at = now
        try:
            self.db_session.commit()
        except SQLAlchemyError as exc:
            self.db_session.rollback()
            logger.warning("Could not mark extracted members of archive %s: %s", rec.id, exc)
        self.audit.record(
            "archive_download_partial",
            rec.id,
            filename=rec.name,
            selected=list(paths),
            download_count=rec.download_count,
        )
        return result

    def _open(self, rec: ArchiveRecord) -> bytes:
        return self.cipher.decrypt(self.blob_store.get(rec.blob_id), rec.key_material)

    def _claim(self, rec: ArchiveRecord) -> datetime:
        now = utcnow()
        if not self.claim_download(rec.id, now):
            self.db_session.refresh(rec)
            if is_expired(rec, now):
                raise ExpiredError()
            raise LimitExceededError()
        self.db_session.refresh(rec)
        return now

    def claim_download(self, archive_id: int, now: datetime | None = None) -> bool:
        """Atomically take one download slot.

        The count is only bumped while the archive is still active, unexpired
        and under its limit, so two racing requests for the last slot cannot
        both succeed.
        """
        now = now or utcnow()
        stmt = (
            update(ArchiveRecord)
            .where(
                ArchiveRecord.id == archive_id,
                ArchiveRecord.is_active.is_(True),
                or_(ArchiveRecord.expiry_at.is_(None), ArchiveRecord.expiry_at > now),
                or_(
                    ArchiveRecord.max_downloads.is_(None),
                    ArchiveRecord.download_count < ArchiveRecord.max_downloads,
                ),
            )
            .values(download_count=ArchiveRecord.download_count + 1, last_downloaded_at=now)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db_session.execute(stmt)
            self.db_session.commit()
        except SQLAlchemyError as exc:
            self.db_session.rollback()
            raise StorageFailure() from exc
        return result.rowcount == 1
