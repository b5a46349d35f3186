# careportal/services/time_window.py
"""Half-open time intervals.

``overlaps`` is the only interval comparison in the code base. Slot
availability, the booking guard and the conflict endpoint all go through it.
"""
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo


@dataclass(frozen=True)
class TimeInterval:
    """``[start, end)`` with timezone-aware bounds and ``start < end``."""

    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("TimeInterval bounds must be timezone-aware")
        if not self.start < self.end:
            raise ValueError(f"TimeInterval start {self.start} must be before end {self.end}")

    @classmethod
    def from_duration(cls, start: datetime, minutes: int) -> "TimeInterval":
        return cls(start, add_minutes(start, minutes))

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


def overlaps(a: TimeInterval, b: TimeInterval) -> bool:
    # Touching boundaries do not overlap
    return a.start < b.end and b.start < a.end


def add_minutes(instant: datetime, minutes: int) -> datetime:
    return instant + timedelta(minutes=minutes)


def as_utc(value: datetime) -> datetime:
    """Normalize to UTC. Naive values come back from SQLite and are stored as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def local_datetime(day: date, at: time, tz: tzinfo) -> datetime:
    """Wall-clock ``day`` + ``at`` in the clinic's timezone."""
    return datetime.combine(day, at).replace(tzinfo=tz)


def is_same_calendar_day(a: datetime, b: datetime, tz: tzinfo) -> bool:
    # Compare civil date components in the doctor's calendar, not timestamps
    la = as_utc(a).astimezone(tz)
    lb = as_utc(b).astimezone(tz)
    return (la.year, la.month, la.day) == (lb.year, lb.month, lb.day)
