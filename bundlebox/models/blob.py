from sqlalchemy import Column, DateTime, LargeBinary, String
from bundlebox.database import Base
from bundlebox.models.archive import utcnow


class StoredBlob(Base):
    __tablename__ = "archive_blobs"

    id = Column(String(64), primary_key=True)
    content = Column(LargeBinary, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
