"""
Time provider abstraction for deterministic testing

Planned disbursement dates, transaction timestamps and the "current academic
year" all derive from an injectable clock, so schedules and rollovers can be
tested without waiting for a real semester to pass.
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
    Controllable time provider for deterministic tests

    Allows tests to freeze time and advance it by whole days, which is the
    granularity disbursement schedules care about.
    """

    __test__ = False  # not a pytest test class

    def __init__(self, initial_time: datetime | None = None) -> None:
        """
        Initialize with optional fixed time

        Args:
            initial_time: Starting time (defaults to 2025-09-01, start of a cycle)
        """
        self._current_time = initial_time or datetime(2025, 9, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._current_time

    def set_time(self, dt: datetime) -> None:
        self._current_time = dt

    def advance_seconds(self, seconds: int) -> None:
        self._current_time += timedelta(seconds=seconds)

    def advance_days(self, days: int) -> None:
        self._current_time += timedelta(days=days)


def academic_year_for(moment: datetime, start_month: int = 9) -> str:
    """
    Academic year label for a moment in time

    A cycle starting in September 2025 is labelled "2025/2026".
    """
    start = moment.year if moment.month >= start_month else moment.year - 1
    return f"{start}/{start + 1}"
