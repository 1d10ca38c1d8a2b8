"""
Clock abstraction.

Time-dependent components take a clock so windows and budgets can be
exercised deterministically.
"""

import time
from datetime import datetime, timedelta, timezone


class Clock:
    """Source of wall-clock and monotonic time."""

    def now(self) -> datetime:
        """Current time as a timezone-aware UTC datetime."""
        raise NotImplementedError

    def monotonic(self) -> float:
        """Monotonic seconds, for latency measurement."""
        raise NotImplementedError


class SystemClock(Clock):
    """Clock backed by the operating system."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


def start_of_utc_day(moment: datetime) -> datetime:
    """Return UTC midnight of the calendar day containing moment."""
    utc = moment.astimezone(timezone.utc)
    return utc.replace(hour=0, minute=0, second=0, microsecond=0)


def next_utc_midnight(moment: datetime) -> datetime:
    """Return the UTC midnight that ends the day containing moment."""
    return start_of_utc_day(moment) + timedelta(days=1)
