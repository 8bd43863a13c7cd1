import logging
import os
from datetime import datetime
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from bundlebox.errors import StorageFailure
from bundlebox.models.blob import StoredBlob
from bundlebox.services.tokens import new_blob_id

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    def put(self, data: bytes) -> str: ...

    def get(self, blob_id: str) -> bytes: ...

    def delete(self, blob_id: str) -> None: ...

    def stale_ids(self, older_than: datetime) -> list[str]: ...


class SqlBlobStore:
    """Keeps encrypted archives in their own table, one session per call.

    Each call commits on its own, so a blob is durable before any archive
    metadata that points at it is written.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def put(self, data: bytes) -> str:
        blob_id = new_blob_id()
        with self.session_factory() as session:
            try:
                session.add(StoredBlob(id=blob_id, content=data))
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                logger.error("Blob upload failed: %s", exc)
                raise StorageFailure() from exc
        return blob_id

    def get(self, blob_id: str) -> bytes:
        with self.session_factory() as session:
            try:
                blob = session.get(StoredBlob, blob_id)
            except SQLAlchemyError as exc:
                logger.error("Blob fetch failed for %s: %s", blob_id, exc)
                raise StorageFailure() from exc
            if blob is None:
                raise StorageFailure(f"Archive content {blob_id} is missing from storage")
            return blob.content

    def delete(self, blob_id: str) -> None:
        with self.session_factory() as session:
            try:
                blob = session.get(StoredBlob, blob_id)
                if blob is not None:
                    session.delete(blob)
                    session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise StorageFailure() from exc

    def stale_ids(self, older_than: datetime) -> list[str]:
        with self.session_factory() as session:
            rows = session.execute(
                select(StoredBlob.id).where(StoredBlob.created_at < older_than)
            )
            return [row[0] for row in rows]


class LocalBlobStore:
    """Stores each blob as a file under ``directory``."""

    def __init__(self, directory: str):
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def _path(self, blob_id: str) -> str:
        if os.sep in blob_id or blob_id.startswith("."):
            raise StorageFailure(f"Invalid blob id {blob_id!r}")
        return os.path.join(self.directory, blob_id)

    def put(self, data: bytes) -> str:
        blob_id = new_blob_id()
        tmp_path = self._path(blob_id) + ".part"
        try:
            with open(tmp_path, "wb") as fh:
                fh.write(data)
            os.replace(tmp_path, self._path(blob_id))
        except OSError as exc:
            logger.error("Blob upload failed: %s", exc)
            raise StorageFailure() from exc
        return blob_id

    def get(self, blob_id: str) -> bytes:
        try:
            with open(self._path(blob_id), "rb") as fh:
                return fh.read()
        except FileNotFoundError as exc:
            raise StorageFailure(f"Archive content {blob_id} is missing from storage") from exc
        except OSError as exc:
            raise StorageFailure() from exc

    def delete(self, blob_id: str) -> None:
        try:
            os.remove(self._path(blob_id))
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise StorageFailure() from exc

    def stale_ids(self, older_than: datetime) -> list[str]:
        cutoff = older_than.timestamp()
        out = []
        for entry in os.scandir(self.directory):
            if entry.is_file() and not entry.name.endswith(".part") and entry.stat().st_mtime < cutoff:
                out.append(entry.name)
        return out


def make_blob_store(settings, session_factory) -> BlobStore:
    if settings.blob_backend == "filesystem":
        return LocalBlobStore(settings.blob_dir)
    return SqlBlobStore(session_factory)
