"""Datetime utilities for timezone-aware UTC timestamps.

Usage:
    from src.utils.datetime_utils import utc_now, to_iso

    # For SQLAlchemy Column defaults
    created_at = Column(DateTime, default=utc_now)

    # For timestamps stored inside JSON section records
    record["updated_at"] = to_iso(utc_now())
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime.

    Returns:
        Current UTC datetime with timezone info
    """
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to ISO-8601, or pass None through."""
    if value is None:
        return None
    return value.isoformat()


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC.

    SQLite drops tzinfo on round-trip, so values read back from the
    database are naive even though they were written as UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes elapsed between two timestamps, never negative."""
    delta = ensure_aware(end) - ensure_aware(start)
    return max(0, int(round(delta.total_seconds() / 60)))
