"""
Datetime helper utilities to ensure consistent timezone handling across the application.

All model columns use timezone-naive UTC datetimes (DateTime(timezone=False)).
Deadlines are compared against get_naive_utc_now(), so anything coming in from a
request must pass through ensure_naive_datetime() before it is stored.
"""

from datetime import datetime, timezone
from typing import Optional
import logging

logger = logging.getLogger(__name__)


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Args:
        dt: Datetime that may be timezone-aware or naive

    Returns:
        Naive datetime in UTC, or None if input is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """Get current UTC time as naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_client_datetime(value) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp supplied by a client into a naive UTC datetime.

    A trailing 'Z' is accepted. Unparseable values are logged and dropped.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_naive_datetime(value)
    try:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return ensure_naive_datetime(datetime.fromisoformat(text))
    except ValueError:
        logger.warning(f"⚠️ DATETIME_PARSE: Ignoring unparseable timestamp {value!r}")
        return None


def isoformat_or_none(dt: Optional[datetime]) -> Optional[str]:
    """Render a naive UTC datetime as ISO-8601 with a Z suffix"""
    if dt is None:
        return None
    return ensure_naive_datetime(dt).isoformat() + "Z"
