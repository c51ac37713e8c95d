"""Naive-UTC time helpers.

Every timestamp column in the store is a naive UTC ``datetime``. Services
take a ``clock`` callable defaulting to :func:`utcnow` so tests can pin time.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Return the current UTC time as a naive (tzinfo=None) datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utcfromtimestamp(ts: float) -> datetime:
    """Convert a POSIX timestamp (seconds) to a naive UTC datetime."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def hours_between(start: datetime, end: datetime) -> float:
    """Elapsed hours from ``start`` to ``end`` (negative spans clamp to 0)."""
    return max((end - start) / timedelta(hours=1), 0.0)
