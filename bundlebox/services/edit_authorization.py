import logging
from sqlalchemy.orm import Session

from bundlebox.errors import AuthFailedError, NotFoundError
from bundlebox.models.archive import ArchiveRecord
from bundlebox.services.tokens import tokens_match

logger = logging.getLogger(__name__)


def authorize_edit(db_session: Session, archive_id: int, edit_token: str | None) -> ArchiveRecord:
    """Load an archive by its id and check the supplied edit token.

    The lookup never goes through the secret token itself; the stored token
    is compared in constant time once the row is in hand.
    """
    rec = db_session.get(ArchiveRecord, archive_id)
    if rec is None or not rec.is_active:
        raise NotFoundError()
    if not tokens_match(rec.edit_token, edit_token):
        logger.info("Rejected edit token for archive %s", archive_id)
        raise AuthFailedError("Invalid edit token")
    return rec
