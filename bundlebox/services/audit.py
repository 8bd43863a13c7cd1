import logging
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from bundlebox.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


class AuditTrail:
    """Writes audit events to the ``audit_logs`` table.

    Audit failures never fail the operation being audited; they are logged
    and the session is rolled back.
    """

    def __init__(self, db_session: Session, ip_address: str | None = None):
        self.db_session = db_session
        self.ip_address = ip_address

    def record(self, action: str, resource_id=None, resource_type: str = "archive", **details) -> None:
        logger.info("audit %s resource=%s %s", action, resource_id, details)
        entry = AuditLog(
            action=action,
            resource_type=resource_type,
            resource_id=None if resource_id is None else str(resource_id),
            ip_address=self.ip_address,
            details=details,
        )
        self.db_session.add(entry)
        try:
            self.db_session.commit()
        except SQLAlchemyError:
            logger.exception("Failed to write audit event %s", action)
            self.db_session.rollback()
