"""
core/clock.py -- Injectable source of the current UTC instant.

Services take a `clock` argument instead of calling datetime.now() directly so
tests can freeze time for expiration and token-duration assertions.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from the database.

    SQLite drops tzinfo on round-trip, so every timestamp leaving the store
    passes through here before it is compared against the clock.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
