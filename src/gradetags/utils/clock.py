"""UTC time helpers shared by the state machines and jobs."""

from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Return ``value`` as an aware UTC datetime.

    SQLite drops timezone info on round trips, so naive values read back
    from the database are taken to be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_minutes(value: datetime, minutes: int) -> datetime:
    """Shift ``value`` forward by whole minutes, normalized to UTC."""
    return ensure_utc(value) + timedelta(minutes=minutes)


def minutes_since(earlier: Optional[datetime], now: datetime) -> Optional[float]:
    """Minutes elapsed between ``earlier`` and ``now`` (None if unknown)."""
    if earlier is None:
        return None
    return (ensure_utc(now) - ensure_utc(earlier)).total_seconds() / 60
