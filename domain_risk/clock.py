"""
Domain Risk Engine - Clock.

============================================================
RESPONSIBILITY
============================================================
Time source for profile TTLs, reputation freshness and alert
throttling. The engine works in epoch seconds; datetimes are
only built at the edges (assessment timestamps, alert text).

- UTC only
- Replaceable by MockClock in tests

============================================================
"""

import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional, Union


class ClockProtocol(ABC):
    """Epoch-seconds time source."""

    @abstractmethod
    def timestamp(self) -> float:
        """Current Unix timestamp."""
        pass

    def now(self) -> datetime:
        """Current time as an aware UTC datetime."""
        return from_epoch(self.timestamp())

    def seconds_since(self, ts: float) -> float:
        return self.timestamp() - ts


class SystemClock(ClockProtocol):
    """Wall clock."""

    def timestamp(self) -> float:
        return time.time()


class MockClock(ClockProtocol):
    """
    Manually driven clock for deterministic tests.

    Example:
        clock = MockClock(datetime(2026, 3, 2, tzinfo=timezone.utc))
        clock.advance(days=91)   # past the profile TTL
    """

    def __init__(self, start: Optional[Union[datetime, float]] = None):
        self._ts = _as_epoch(start) if start is not None else time.time()

    def timestamp(self) -> float:
        return self._ts

    def set_time(self, value: Union[datetime, float]) -> None:
        self._ts = _as_epoch(value)

    def advance(self, seconds: float = 0, **kwargs) -> None:
        """
        Move forward.

        Args:
            seconds: Seconds to add
            **kwargs: Extra timedelta units (minutes, hours, days)
        """
        self._ts += timedelta(seconds=seconds, **kwargs).total_seconds()


# ============================================================
# CONVERSIONS
# ============================================================


def to_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken as UTC; aware ones are converted."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def from_epoch(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _as_epoch(value: Union[datetime, float]) -> float:
    if isinstance(value, datetime):
        return to_utc(value).timestamp()
    return float(value)


__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "to_utc",
    "from_epoch",
]
