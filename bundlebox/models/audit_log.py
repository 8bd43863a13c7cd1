from sqlalchemy import Column, DateTime, Integer, JSON, String
from bundlebox.database import Base
from bundlebox.models.archive import utcnow


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    action = Column(String(64), nullable=False, index=True)
    resource_type = Column(String(32), nullable=False, default="archive")
    resource_id = Column(String(1024), nullable=True)
    ip_address = Column(String(64), nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
