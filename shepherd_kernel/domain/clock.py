"""
Clock -- injectable time abstraction.

Services, the dispatcher and the outcome recorder never call
``datetime.now()`` directly; they receive a Clock.  Tests drive lease
expiry and retry backoff by advancing a DeterministicClock.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """
    Abstract clock interface.

    Guarantees:
        ``now()`` returns a timezone-aware UTC ``datetime``.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current time."""
        ...


class SystemClock(Clock):
    """Production clock returning actual system time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    ``now()`` returns the same value until ``advance()`` or ``set_time()``
    is called.  Safe to share between worker threads.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._time = fixed_time or datetime(
            2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc
        )

    def now(self) -> datetime:
        return self._time

    def set_time(self, time: datetime) -> None:
        """Set the clock to a specific time."""
        self._time = time

    def advance(self, seconds: float = 1.0) -> datetime:
        """Advance the clock and return the new time."""
        self._time = self._time + timedelta(seconds=seconds)
        return self._time
