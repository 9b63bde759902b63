"""
Clock Module

Injectable time source. All timestamps are timezone-aware UTC.
"""

from datetime import datetime, timedelta, timezone


class SystemClock:
    """Wall clock"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """Clock that only moves when told to; used by tests and simulations"""

    def __init__(self, now: datetime = None):
        self._now = now or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        self._now = now

    def advance(self, hours: float = 0, minutes: float = 0, seconds: float = 0) -> datetime:
        self._now = self._now + timedelta(hours=hours, minutes=minutes, seconds=seconds)
        return self._now
