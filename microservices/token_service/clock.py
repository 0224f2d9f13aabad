"""
Clock used by the token service

All business code asks an injected clock for the time so that tests can
freeze it.
"""

from datetime import datetime, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo


class SystemClock:
    """Wall clock in a fixed time zone"""

    def __init__(self, tz: Optional[tzinfo] = None):
        self.tz = tz or timezone.utc

    @classmethod
    def for_zone(cls, zone_name: str) -> "SystemClock":
        return cls(ZoneInfo(zone_name))

    def now(self) -> datetime:
        return datetime.now(self.tz)


__all__ = ["SystemClock"]
