"""Timezone helpers: a single place to ask for the current UTC time.

Database columns store *naive* UTC datetimes, so most callers want
:func:`utc_now_naive`.
"""

from datetime import datetime
from datetime import timezone


def utc_now() -> datetime:  # noqa: D401 - simple utility
    """Return *aware* current time in UTC."""

    return datetime.now(timezone.utc)


def utc_now_naive() -> datetime:  # noqa: D401 - simple utility
    """Return *naive* current time in UTC for database compatibility."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def duration_ms(started_at: datetime, finished_at: datetime) -> int:
    """Milliseconds between two datetimes of the same awareness, never negative."""
    if started_at.tzinfo is not None and finished_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=None)
    elif started_at.tzinfo is None and finished_at.tzinfo is not None:
        finished_at = finished_at.replace(tzinfo=None)
    return max(0, int((finished_at - started_at).total_seconds() * 1000))


__all__ = ["utc_now", "utc_now_naive", "duration_ms"]
