"""Time helpers.

All instants handled by the service are naive UTC datetimes, which is what the
SQLite backend stores and returns. Services take a ``clock`` callable so that
lifecycle rules can be evaluated at any instant.
"""
import math
from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]

SECONDS_PER_DAY = 24 * 60 * 60


def utcnow() -> datetime:
    """Current UTC time as a naive datetime"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values are assumed UTC"""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def to_timestamp(value: datetime) -> int:
    """Seconds since the epoch for a naive UTC datetime"""
    return int(value.replace(tzinfo=timezone.utc).timestamp())


def from_timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


def add_days(value: datetime, days: int) -> datetime:
    return value + timedelta(days=days)


def days_between(start: datetime, end: datetime) -> int:
    """Whole days from ``start`` to ``end``, rounded up (negative when past)"""
    return math.ceil((end - start).total_seconds() / SECONDS_PER_DAY)


class FrozenClock:
    """Manually advanced clock, used by the test-suite and by replay tooling"""

    def __init__(self, now: datetime):
        self._now = to_naive_utc(now)

    def __call__(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        self._now = to_naive_utc(now)

    def advance(self, **delta) -> datetime:
        self._now = self._now + timedelta(**delta)
        return self._now
