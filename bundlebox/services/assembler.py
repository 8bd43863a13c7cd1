import logging
import mimetypes
import posixpath
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Mapping, Sequence

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from bundlebox.errors import ExpiredError, StorageFailure, ValidationError, VirusError
from bundlebox.models.archive import ArchiveRecord, SubfileEntry, as_utc, utcnow
from bundlebox.services.edit_authorization import authorize_edit
from bundlebox.services.packer import pack, unpack
from bundlebox.services.passwords import hash_password
from bundlebox.services.tokens import new_download_token, new_edit_token, new_file_token

logger = logging.getLogger(__name__)

TOKEN_ATTEMPTS = 5


@dataclass
class Upload:
    path: str
    content: bytes
    mime_type: str | None = None

    @property
    def name(self) -> str:
        return posixpath.basename(self.path)

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class CreatedArchive:
    archive: ArchiveRecord
    # only ever handed out here, right after creation
    edit_token: str


def normalize_path(path: str) -> str:
    cleaned = (path or "").replace("\\", "/").strip()
    if cleaned.startswith("/"):
        raise ValidationError(f"Absolute paths are not allowed: {path}", filename=path)
    parts = cleaned.split("/")
    if any(part in ("", ".", "..") for part in parts):
        raise ValidationError(f"Invalid relative path: {path}", filename=path)
    return "/".join(parts)


def is_allowed_type(filename: str, mime_type: str, allowed_types: Sequence[str]) -> bool:
    """Match against extensions (``pdf``), MIME types and ``type/*`` wildcards."""
    extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    mime_type = (mime_type or "").lower()
    for allowed in allowed_types:
        allowed = allowed.strip().lower()
        if "/" in allowed:
            if allowed.endswith("/*"):
                if mime_type.startswith(allowed[:-1]):
                    return True
            elif mime_type == allowed:
                return True
        elif extension and extension == allowed.lstrip("."):
            return True
    return False


def parent_folders(path: str) -> list[str]:
    parts = path.split("/")
    return ["/".join(parts[:i]) for i in range(1, len(parts))]


def folder_clash(new_paths: Iterable[str], existing_paths: Iterable[str] = ()) -> str | None:
    """Return a new path that is also used as a folder, or sits under a file."""
    new_paths = list(new_paths)
    taken = set(new_paths) | set(existing_paths)
    folders = {folder for path in taken for folder in parent_folders(path)}
    for path in new_paths:
        if path in folders or any(folder in taken for folder in parent_folders(path)):
            return path
    return None


def archive_name(now: datetime) -> str:
    return f"archive_{int(now.timestamp() * 1000)}.zip"


class ArchiveAssembler:
    """Creates and edits archives: validate, scan, pack, encrypt, persist."""

    def __init__(self, db_session: Session, blob_store, token_cache, scan_gate, cipher, audit, settings):
        self.db_session = db_session
        self.blob_store = blob_store
        self.token_cache = token_cache
        self.scan_gate = scan_gate
        self.cipher = cipher
        self.audit = audit
        self.settings = settings

    # -- validation -----------------------------------------------------

    def validate(self, uploads: Sequence[Upload], existing: Mapping[str, int] | None = None) -> list[Upload]:
        """Check a batch of uploads, optionally against members already stored.

        ``existing`` maps the paths of members that stay in the archive to
        their sizes; an upload at one of those paths replaces it.
        """
        existing = existing or {}
        if not uploads:
            raise ValidationError("No files provided")
        seen = set()
        checked = []
        for upload in uploads:
            path = normalize_path(upload.path)
            if path in seen:
                raise ValidationError(f"Duplicate path in upload: {path}", filename=path)
            seen.add(path)
            name = posixpath.basename(path)
            mime_type = upload.mime_type
            if not mime_type or mime_type == "application/octet-stream":
                mime_type = mimetypes.guess_type(name)[0] or "application/octet-stream"
            if not is_allowed_type(name, mime_type, self.settings.allowed_file_types):
                raise ValidationError(f"File type not allowed: {name}", filename=name)
            if upload.size > self.settings.max_file_size:
                raise ValidationError(f"File size exceeds limit: {name}", filename=name)
            checked.append(Upload(path=path, content=upload.content, mime_type=mime_type))
        kept = {path: size for path, size in existing.items() if path not in seen}
        clash = folder_clash(seen, kept)
        if clash is not None:
            raise ValidationError(f"Path conflicts with a file or folder of the same name: {clash}", filename=clash)
        total = sum(kept.values()) + sum(u.size for u in checked)
        if total > self.settings.max_archive_size:
            raise ValidationError("Archive size exceeds limit")
        return checked

    def _scan(self, uploads: Sequence[Upload]) -> None:
        verdict = self.scan_gate.scan([(u.path, u.content) for u in uploads])
        if not verdict.clean:
            raise VirusError(posixpath.basename(verdict.rejected_name), verdict.signature)

    # -- create ---------------------------------------------------------

    def create(self, uploads: Sequence[Upload], options, uploaded_by: str | None = None) -> CreatedArchive:
        uploads = self.validate(uploads)
        self._scan(uploads)

        container = pack((u.path, u.content) for u in uploads)
        ciphertext, key_material = self.cipher.encrypt(container)
        blob_id = self.blob_store.put(ciphertext)

        now = utcnow()
        expiry_at = None
        if options.expires_in_hours is not None:
            expiry_at = now + timedelta(hours=options.expires_in_hours)
        rec = ArchiveRecord(
            name=archive_name(now),
            edit_token=new_edit_token(),
            password_hash=hash_password(options.password) if options.password else None,
            size_bytes=len(container),
            created_at=now,
            updated_at=now,
            expiry_at=expiry_at,
            max_downloads=options.max_downloads,
            download_count=0,
            is_active=True,
            blob_id=blob_id,
            key_material=key_material,
            uploaded_by=uploaded_by,
        )
        self._persist_new(rec, uploads)
        self.remember(rec)

        total_size = sum(u.size for u in uploads)
        logger.info("Created archive %s with %d files (%d bytes)", rec.id, len(uploads), total_size)
        self.audit.record(
            "archive_upload",
            rec.id,
            filename=rec.name,
            files=len(uploads),
            total_size=total_size,
            stored_size=len(ciphertext),
        )
        return CreatedArchive(archive=rec, edit_token=rec.edit_token)

    def _persist_new(self, rec: ArchiveRecord, uploads: Sequence[Upload]) -> None:
        for _ in range(TOKEN_ATTEMPTS):  # retry on rare token collisions
            rec.download_token = new_download_token()
            rec.subfiles = [self._subfile_row(u) for u in uploads]
            self.db_session.add(rec)
            try:
                self.db_session.commit()
                self.db_session.refresh(rec)
                return
            except IntegrityError:
                self.db_session.rollback()
            except SQLAlchemyError as exc:
                self.db_session.rollback()
                logger.error("Archive metadata write failed, blob %s left for sweep: %s", rec.blob_id, exc)
                raise StorageFailure() from exc
        raise StorageFailure("Failed to generate unique archive tokens")

    @staticmethod
    def _subfile_row(upload: Upload) -> SubfileEntry:
        return SubfileEntry(
            file_token=new_file_token(),
            name=upload.name,
            path=upload.path,
            size_bytes=upload.size,
            mime_type=upload.mime_type,
            extracted=False,
        )

    def remember(self, rec: ArchiveRecord) -> None:
        ttl = self.settings.cache_ttl_seconds
        if rec.expiry_at is not None:
            remaining = int((as_utc(rec.expiry_at) - utcnow()).total_seconds())
            ttl = min(ttl, remaining)
        self.token_cache.set(rec.download_token, rec.id, ttl)

    # -- update ---------------------------------------------------------

    def update(
        self,
        archive_id: int,
        edit_token: str,
        uploads: Sequence[Upload] = (),
        file_tokens_to_delete: Sequence[str] = (),
        uploaded_by: str | None = None,
    ) -> ArchiveRecord:
        rec = authorize_edit(self.db_session, archive_id, edit_token)
        if rec.expiry_at is not None and as_utc(rec.expiry_at) <= utcnow():
            raise ExpiredError()

        delete_tokens = set(file_tokens_to_delete or ())
        doomed = [s for s in rec.subfiles if s.file_token in delete_tokens]
        deleted_tokens = [s.file_token for s in doomed]

        if uploads:
            kept = {s.path: s.size_bytes for s in rec.subfiles if s not in doomed}
            uploads = self.validate(uploads, existing=kept)
            self._scan(uploads)
            self._rebuild(rec, uploads, delete_tokens, uploaded_by)
        elif doomed:
            for subfile in doomed:
                rec.subfiles.remove(subfile)
            # the blob still holds these members until the next rebuild
            rec.has_pruned_members = True
            self._commit()
        else:
            return rec

        logger.info(
            "Updated archive %s: %d added, %d removed", rec.id, len(uploads), len(deleted_tokens)
        )
        self.audit.record(
            "archive_update",
            rec.id,
            added=[u.path for u in uploads],
            deleted=deleted_tokens,
            blob_rebuilt=bool(uploads),
        )
        return rec

    def _rebuild(self, rec: ArchiveRecord, uploads: list[Upload], delete_tokens: set, uploaded_by) -> None:
        new_paths = {u.path for u in uploads}
        survivors = [
            s for s in rec.subfiles
            if s.file_token not in delete_tokens and s.path not in new_paths
        ]

        members = unpack(self.cipher.decrypt(self.blob_store.get(rec.blob_id), rec.key_material))
        carried = []
        for subfile in list(survivors):
            if subfile.path not in members:
                logger.warning("Archive %s lists %s but the blob lacks it; dropping", rec.id, subfile.path)
                survivors.remove(subfile)
                continue
            carried.append((subfile.path, members[subfile.path]))

        container = pack(carried + [(u.path, u.content) for u in uploads])
        ciphertext, key_material = self.cipher.encrypt(container)
        new_blob_id = self.blob_store.put(ciphertext)
        old_blob_id = rec.blob_id

        rows = [
            SubfileEntry(
                file_token=s.file_token,
                name=s.name,
                path=s.path,
                size_bytes=s.size_bytes,
                mime_type=s.mime_type,
                extracted=s.extracted,
                downloaded_at=s.downloaded_at,
            )
            for s in survivors
        ] + [self._subfile_row(u) for u in uploads]

        try:
            rec.subfiles.clear()
            # deletes must reach the database before tokens are reinserted
            self.db_session.flush()
            rec.subfiles.extend(rows)
            rec.blob_id = new_blob_id
            rec.key_material = key_material
            rec.size_bytes = len(container)
            rec.name = archive_name(utcnow())
            rec.has_pruned_members = False
            if uploaded_by:
                rec.uploaded_by = uploaded_by
            self.db_session.commit()
        except SQLAlchemyError as exc:
            self.db_session.rollback()
            logger.error("Archive %s metadata update failed, blob %s left for sweep: %s", rec.id, new_blob_id, exc)
            raise StorageFailure() from exc

        self._discard_blob(old_blob_id)

    def _commit(self) -> None:
        try:
            self.db_session.commit()
        except SQLAlchemyError as exc:
            self.db_session.rollback()
            raise StorageFailure() from exc

    def _discard_blob(self, blob_id: str) -> None:
        try:
            self.blob_store.delete(blob_id)
        except StorageFailure:
            logger.warning("Could not delete blob %s, leaving it for the sweep", blob_id)

    # -- delete ---------------------------------------------------------

    def delete(self, archive_id: int, edit_token: str) -> None:
        rec = authorize_edit(self.db_session, archive_id, edit_token)
        blob_id = rec.blob_id
        rec.is_active = False
        rec.subfiles.clear()
        self._commit()
        self.token_cache.delete(rec.download_token)
        self._discard_blob(blob_id)
        logger.info("Deleted archive %s", rec.id)
        self.audit.record("archive_deleted", rec.id, filename=rec.name, reason="user_deleted")
