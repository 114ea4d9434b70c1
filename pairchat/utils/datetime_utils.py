"""
Timezone helpers.

Timestamps are stored and compared as UTC. Some backends (SQLite) hand back
naive datetimes, so everything read from the database passes through
ensure_utc before it is compared or serialized.
"""
from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """
    Normalize a datetime to aware UTC.

    Args:
        dt: Naive (treated as UTC) or aware datetime, or None

    Returns:
        Aware UTC datetime, or None when given None
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
