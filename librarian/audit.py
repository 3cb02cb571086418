import logging
from datetime import datetime, timezone
from typing import Optional

from librarian.models import LOGS, LogEntry, UserContext
from librarian.store import RecordStore, StoreError

logger = logging.getLogger(__name__)

BOOK_ADDED = "book_added"
BOOK_UPDATED = "book_updated"
BOOK_DELETED = "book_deleted"
BORROWER_ADDED = "borrower_added"
BORROWER_UPDATED = "borrower_updated"
BORROWER_DELETED = "borrower_deleted"
BOOK_RETURNED = "book_returned"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def append_log(store: RecordStore, user: UserContext, type: str, details: str,
                     book_id: Optional[str] = None, borrower_id: Optional[str] = None) -> Optional[LogEntry]:
    """Append an audit entry for ``user``.

    The audit trail never blocks the action it describes: a failed write is
    logged and None is returned.
    """
    entry = LogEntry(type=type, details=details, book_id=book_id, borrower_id=borrower_id, timestamp=utcnow())
    try:
        entry.id = await store.create_record(user.collection_path(LOGS), entry.to_record())
    except StoreError as exc:
        logger.warning(f"Could not write audit log '{type}': {exc}")
        return None
    logger.info(f"Audit log added: {type} ({details})")
    return entry
