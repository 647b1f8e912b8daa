import logging
import sqlite3

from database.db import insert_activity_log

logger = logging.getLogger(__name__)


def record_activity(
    action: str,
    *,
    user_id: int | None = None,
    details: dict | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> int | None:
    """
    Append to the activity log. A failed write is logged and swallowed so it
    never blocks or rolls back the operation being audited.
    """
    try:
        return insert_activity_log(
            action,
            user_id=user_id,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
        )
    except sqlite3.Error:
        logger.exception("Audit write failed: action=%s user_id=%s", action, user_id)
        return None
