"""Failed-attempt lockout policy."""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ..config import LockoutSettings


@dataclass(frozen=True)
class LockoutPolicy:
    """
    How many wrong answers an employee gets and how long a lock lasts.

    Attributes:
        max_attempts: Wrong answers allowed before the account locks
        duration: Lock length for timed locks, None for permanent locks
    """
    max_attempts: int = 2
    duration: Optional[timedelta] = None

    @classmethod
    def from_settings(cls, settings: LockoutSettings) -> "LockoutPolicy":
        duration = None
        if settings.policy == "timed":
            duration = timedelta(minutes=settings.duration_minutes)
        return cls(max_attempts=settings.max_attempts, duration=duration)

    @property
    def is_permanent(self) -> bool:
        return self.duration is None

    def lock_elapsed(self, locked_at: Optional[datetime], now: datetime) -> bool:
        """True if a timed lock has run out. Permanent locks never elapse."""
        if self.is_permanent:
            return False
        if locked_at is None:
            return True
        return now >= locked_at + self.duration

    def minutes_remaining(self, locked_at: Optional[datetime], now: datetime) -> Optional[int]:
        """Whole minutes left on a timed lock (rounded up), None for permanent locks."""
        if self.is_permanent:
            return None
        if locked_at is None:
            return 0
        remaining = (locked_at + self.duration - now).total_seconds()
        return max(0, math.ceil(remaining / 60))
