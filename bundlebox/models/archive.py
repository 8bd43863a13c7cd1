from datetime import datetime, timezone
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    BigInteger,
    LargeBinary,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from bundlebox.database import Base

ARCHIVE_MIME_TYPE = "application/zip"


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ArchiveRecord(Base):
    __tablename__ = "archives"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    download_token = Column(String(64), unique=True, index=True, nullable=False)
    edit_token = Column(String(64), nullable=False)
    password_hash = Column(String(255), nullable=True)
    size_bytes = Column(BigInteger, nullable=False, default=0)
    mime_type = Column(String(100), nullable=False, default=ARCHIVE_MIME_TYPE)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    expiry_at = Column(DateTime(timezone=True), nullable=True, index=True)
    max_downloads = Column(Integer, nullable=True)
    download_count = Column(Integer, default=0, nullable=False)
    last_downloaded_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    blob_id = Column(String(64), nullable=False)
    key_material = Column(LargeBinary, nullable=False)
    has_pruned_members = Column(Boolean, default=False, nullable=False)
    uploaded_by = Column(String(64), nullable=True)

    subfiles = relationship(
        "SubfileEntry",
        back_populates="archive",
        cascade="all, delete-orphan",
        order_by="SubfileEntry.path",
    )

    @property
    def downloads_remaining(self) -> int | None:
        if self.max_downloads is None:
            return None
        return max(self.max_downloads - self.download_count, 0)


class SubfileEntry(Base):
    __tablename__ = "archive_subfiles"
    __table_args__ = (UniqueConstraint("archive_id", "path", name="uq_archive_subfiles_path"),)

    id = Column(Integer, primary_key=True, index=True)
    archive_id = Column(Integer, ForeignKey("archives.id", ondelete="CASCADE"), index=True, nullable=False)
    file_token = Column(String(64), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=False)
    path = Column(String(1024), nullable=False)
    size_bytes = Column(BigInteger, nullable=False, default=0)
    mime_type = Column(String(255), nullable=False, default="application/octet-stream")
    extracted = Column(Boolean, default=False, nullable=False)
    downloaded_at = Column(DateTime(timezone=True), nullable=True)

    archive = relationship("ArchiveRecord", back_populates="subfiles")
