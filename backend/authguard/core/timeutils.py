# backend/authguard/core/timeutils.py
"""Small helpers for timezone-aware UTC timestamps."""

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def minutes_until(value: datetime, now: datetime | None = None) -> int:
    """Whole minutes remaining until ``value``, rounded up, never negative."""
    now = now or utc_now()
    remaining = (ensure_utc(value) - now).total_seconds()
    if remaining <= 0:
        return 0
    return int(remaining // 60) + (1 if remaining % 60 else 0)
