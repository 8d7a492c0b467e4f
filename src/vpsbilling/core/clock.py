"""
Clock and timestamp helpers.

All billing timestamps are timezone-aware UTC datetimes. They are persisted as
fixed-width ISO 8601 strings so that lexical order equals chronological order
in SQLite.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Optional

Clock = Callable[[], datetime]

_MICROS_PER_HOUR = Decimal(3_600_000_000)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and normalize aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp (ISO string from SQLite, datetime from PostgreSQL)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value)))


def elapsed_hours(start: datetime, end: datetime) -> Decimal:
    """Exact elapsed hours between two instants, as a Decimal (fractional, no rounding)."""
    delta = ensure_utc(end) - ensure_utc(start)
    return Decimal(delta // timedelta(microseconds=1)) / _MICROS_PER_HOUR


class ManualClock:
    """
    A settable clock for simulations and tests.

    Usage:
        clock = ManualClock(datetime(2025, 1, 1, tzinfo=timezone.utc))
        clock.advance(hours=3.5)
        engine = SweepEngine(..., clock=clock)
    """

    def __init__(self, start: datetime):
        self.now = ensure_utc(start)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = ensure_utc(value)
        return self.now
