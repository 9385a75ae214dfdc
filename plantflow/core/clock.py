"""Time source seam so deadlines can be driven deterministically in tests."""

from __future__ import annotations

from datetime import datetime, timezone


class SystemClock:
    """Wall clock, always UTC-aware."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def to_utc(dt: datetime | None) -> datetime | None:
    """Normalise a datetime to UTC-aware.

    SQLite hands back naive datetimes; everything the engine compares must be
    aware.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
