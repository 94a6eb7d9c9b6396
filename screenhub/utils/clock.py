"""
Injectable time source.

Services take a Clock so tests can control wall time and elapsed time
independently.
"""

from datetime import datetime, timedelta, timezone
import time


class Clock:
    """System clock returning aware UTC datetimes"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    def epoch_ms(self) -> int:
        return int(self.now().timestamp() * 1000)


class FrozenClock(Clock):
    """Manually advanced clock for tests and simulations"""

    def __init__(self, start: datetime | None = None, monotonic_start: float = 1000.0):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._monotonic = monotonic_start

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        self._now = self._now + timedelta(seconds=seconds)
        self._monotonic += seconds


system_clock = Clock()
