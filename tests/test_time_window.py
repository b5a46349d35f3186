# tests/test_time_window.py
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from careportal.services.time_window import (
    TimeInterval, add_minutes, as_utc, is_same_calendar_day, local_datetime, overlaps,
)


def at(hour, minute=0):
    return datetime(2030, 1, 15, hour, minute, tzinfo=timezone.utc)


def test_overlaps_is_symmetric():
    a = TimeInterval(at(9), at(10))
    b = TimeInterval(at(9, 30), at(11))
    assert overlaps(a, b) is True
    assert overlaps(b, a) is True


def test_interval_overlaps_itself():
    a = TimeInterval(at(9), at(9, 30))
    assert overlaps(a, a)


def test_adjacent_intervals_do_not_overlap():
    a = TimeInterval(at(9), at(10))
    b = TimeInterval(at(10), at(11))
    assert not overlaps(a, b)
    assert not overlaps(b, a)


def test_contained_interval_overlaps():
    outer = TimeInterval(at(8), at(12))
    inner = TimeInterval(at(9), at(9, 15))
    assert overlaps(outer, inner) and overlaps(inner, outer)


@pytest.mark.parametrize("start,end", [(at(10), at(10)), (at(11), at(10))])
def test_interval_requires_start_before_end(start, end):
    with pytest.raises(ValueError):
        TimeInterval(start, end)


def test_interval_rejects_naive_bounds():
    with pytest.raises(ValueError):
        TimeInterval(datetime(2030, 1, 15, 9), datetime(2030, 1, 15, 10))


def test_from_duration_and_duration_minutes():
    interval = TimeInterval.from_duration(at(9), 45)
    assert interval.end == at(9, 45)
    assert interval.duration_minutes == 45
    assert add_minutes(at(23, 30), 60) == at(23, 30) + timedelta(hours=1)


def test_as_utc_treats_naive_values_as_utc():
    naive = datetime(2030, 1, 15, 9, 0)
    assert as_utc(naive) == at(9)
    kolkata = datetime(2030, 1, 15, 14, 30, tzinfo=ZoneInfo("Asia/Kolkata"))
    assert as_utc(kolkata) == at(9)


def test_same_calendar_day_uses_clinic_timezone():
    tz = ZoneInfo("Asia/Kolkata")
    late_utc = datetime(2030, 1, 15, 20, 0, tzinfo=timezone.utc)  # 01:30 next day in Kolkata
    evening_utc = datetime(2030, 1, 15, 10, 0, tzinfo=timezone.utc)
    assert is_same_calendar_day(late_utc, evening_utc, timezone.utc)
    assert not is_same_calendar_day(late_utc, evening_utc, tz)


def test_local_datetime_attaches_zone():
    tz = ZoneInfo("Asia/Kolkata")
    value = local_datetime(date(2030, 1, 15), time(8, 0), tz)
    assert value.utcoffset() == timedelta(hours=5, minutes=30)
