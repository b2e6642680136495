"""
Time sources used by background tasks and services
"""

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in the database"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Clock:
    """Source of the current time"""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return utcnow()


class ManualClock(Clock):
    """Clock that only moves when told to"""

    def __init__(self, start: datetime = None):
        self._now = start or utcnow()

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime):
        self._now = value

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self._now = self._now + timedelta(seconds=seconds, **kwargs)
        return self._now


system_clock = SystemClock()
