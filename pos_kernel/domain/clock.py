"""
Clock -- injectable time source for the ledger and the audit log.

Responsibility:
    Every ``created_at`` that ends up inside an audit hash, and every year
    used as a receipt/invoice counter period, comes from a Clock.  Nothing
    in the kernel calls ``datetime.now()`` directly.

Architecture position:
    Kernel > Domain.  SystemClock is the one sanctioned I/O boundary for
    time; DeterministicClock makes hashes and document numbers
    reproducible in tests.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

DEFAULT_TEST_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class Clock(ABC):
    """``now()`` always returns an aware UTC datetime."""

    @abstractmethod
    def now(self) -> datetime: ...

    def current_year(self) -> int:
        """Counter period for receipts and invoices."""
        return self.now().year


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Frozen clock for tests.

    Returns the same instant on every call until moved with ``advance()``,
    ``tick()`` or ``set_time()``.  Naive datetimes are taken as UTC.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._now = _as_utc(fixed_time or DEFAULT_TEST_TIME)

    def now(self) -> datetime:
        return self._now

    def set_time(self, time: datetime) -> None:
        self._now = _as_utc(time)

    def advance(self, seconds: float = 1) -> None:
        if seconds < 0:
            raise ValueError("DeterministicClock only moves forward")
        self._now += timedelta(seconds=seconds)

    def tick(self) -> datetime:
        """Advance one second and return the new instant."""
        self.advance(1)
        return self._now


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
