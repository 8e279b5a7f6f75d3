"""
Clock -- injectable source of the current time.

Responsibility:
    Every timestamp the kernel writes comes from a Clock: the numbering
    year of a child waybill, history ``changed_at``, batch issue dates,
    loan and return dates, and loyalty expiry.  Code never calls
    ``datetime.now()`` directly.

Architecture position:
    Kernel > Domain.  ``SystemClock`` is the only place that reads the
    wall clock.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timezone


class Clock(ABC):
    """Time source handed to services through their constructor."""

    @abstractmethod
    def now(self) -> datetime:
        """Timezone-aware current time."""
        ...

    def today(self) -> date:
        return self.now().date()

    def current_year(self) -> int:
        """Year used to scope year-based child waybill numbers."""
        return self.now().year


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Fixed clock for tests and replays.

    Starts at 2026-03-02 12:00 UTC unless told otherwise; ``set_time``
    moves it, e.g. across a new year to roll numbering scopes.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._now = fixed_time or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def set_time(self, moment: datetime) -> None:
        self._now = moment
