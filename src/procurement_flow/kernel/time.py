"""
Time provider abstraction

Completion dates and event timestamps come from an injectable clock so that
tests can pin "today" and replay produces identical records.
"""

from datetime import date, datetime, timedelta, timezone
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
    Controllable time provider for deterministic tests

    Starts at a fixed instant and only moves when told to.
    """

    __test__ = False  # not a pytest test class

    def __init__(self, initial_time: datetime | None = None) -> None:
        self._current_time = initial_time or datetime(1970, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._current_time

    def advance_days(self, days: int) -> None:
        self._current_time += timedelta(days=days)


def today(time_provider: TimeProvider) -> date:
    """Calendar date (UTC) according to the given provider"""
    return time_provider.now().date()
