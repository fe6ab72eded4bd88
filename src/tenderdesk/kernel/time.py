"""
Time provider abstraction

Deadlines are the whole point of this system, so "now" is injected
everywhere instead of read from the wall clock. Tests drive a
TestTimeProvider past deadlines without sleeping.
"""

from datetime import datetime, timedelta, timezone
from typing import Protocol


class TimeProvider(Protocol):
    """Protocol for time providers - allows deterministic testing"""

    def now(self) -> datetime:
        """Return current UTC datetime"""
        ...


class RealTimeProvider:
    """Production time provider using system clock"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class TestTimeProvider:
    """
    Controllable clock for tests

    Starts at a fixed instant and only moves when told to.
    """

    __test__ = False  # not a pytest test class

    def __init__(self, initial_time: datetime | None = None) -> None:
        self._current_time = initial_time or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._current_time

    def set_time(self, dt: datetime) -> None:
        self._current_time = dt

    def advance(self, delta: timedelta) -> None:
        self._current_time += delta

    def advance_minutes(self, minutes: int) -> None:
        self.advance(timedelta(minutes=minutes))

    def advance_hours(self, hours: int) -> None:
        self.advance(timedelta(hours=hours))

    def advance_days(self, days: int) -> None:
        self.advance(timedelta(days=days))


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


default_time_provider: TimeProvider = RealTimeProvider()
