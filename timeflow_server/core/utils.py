from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    SQLite hands back naive datetimes for DateTime(timezone=True) columns.
    Everything is stored in UTC, so a missing tzinfo means UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def ms_to_datetime(timestamp_ms: Optional[int]) -> datetime:
    """Convert a client timestamp (milliseconds since epoch) to an aware UTC datetime."""
    if timestamp_ms is None:
        return utcnow()
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
