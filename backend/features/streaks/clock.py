"""
Clock and calendar-day resolution for the streak engine.

All day comparisons route through ``DayBoundaryResolver`` so that a single
timezone decides where midnight falls.
"""

from __future__ import annotations

from datetime import date, datetime, timezone, tzinfo
from typing import Protocol, Union
from zoneinfo import ZoneInfo


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock, always timezone-aware (UTC)."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def normalize_instant(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC; aware ones are converted to UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


class DayBoundaryResolver:
    """Maps instants to calendar days in a fixed timezone."""

    def __init__(self, tz: Union[str, tzinfo, None] = None):
        if tz is None:
            tz = timezone.utc
        elif isinstance(tz, str):
            tz = ZoneInfo(tz)
        self._tz = tz

    def day_of(self, moment: datetime) -> date:
        return normalize_instant(moment).astimezone(self._tz).date()


    def start_of_day(self, day: date) -> datetime:
        """Midnight of ``day`` in the configured timezone, as a UTC instant."""
        return datetime(day.year, day.month, day.day, tzinfo=self._tz).astimezone(timezone.utc)
