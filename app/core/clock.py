from __future__ import annotations
from datetime import datetime, timezone


def as_utc(dt: datetime) -> datetime:
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class Clock:
    """Wall clock. Everything that compares against expiry takes one of these."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


system_clock = Clock()
