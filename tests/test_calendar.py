"""
Work calendar — timezone resolution, working-day sets and reporting windows.
"""

from datetime import date, datetime, time, timezone

import pytest

from geoattend.models.company import Company
from geoattend.services.calendar import (WorkCalendarResolver,
                                         normalise_working_days,
                                         parse_time_of_day)


def _company(**fields) -> Company:
    fields.setdefault("timezone", "UTC")
    fields.setdefault("working_days", [1, 2, 3, 4, 5])
    return Company(id=1, name="Cal Co", **fields)


def _resolver(now: datetime) -> WorkCalendarResolver:
    return WorkCalendarResolver(lambda: now)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ([1, 2, 3, 4, 5], {1, 2, 3, 4, 5}),
        ([0, 6], {6, 7}),
        ({"1": True, "2": False, "3": True}, {1, 3}),
        ("[1, 3, 5]", {1, 3, 5}),
        ('{"6": true}', {6}),
        ([], {1, 2, 3, 4, 5}),
        (None, {1, 2, 3, 4, 5}),
        ("not json", {1, 2, 3, 4, 5}),
        (["x", 9, 2], {2}),
    ],
)
def test_normalise_working_days(raw, expected):
    """Every stored shape becomes a set of ISO weekdays, defaulting to Mon-Fri."""
    assert normalise_working_days(raw) == frozenset(expected)


def test_parse_time_of_day():
    """HH:MM and HH:MM:SS parse; garbage falls back to the default."""
    assert parse_time_of_day("08:30", time(9)) == time(8, 30)
    assert parse_time_of_day("17:00:30", time(9)) == time(17, 0, 30)
    assert parse_time_of_day("late", time(9)) == time(9)
    assert parse_time_of_day(None, time(17)) == time(17)


def test_unknown_timezone_falls_back_to_utc():
    """A bad timezone never blocks: local time is UTC."""
    now = datetime(2024, 6, 3, 23, 30, tzinfo=timezone.utc)
    company = _company(timezone="Mars/Olympus_Mons")
    assert _resolver(now).local_date(company) == date(2024, 6, 3)


def test_local_date_crosses_midnight():
    """23:30 UTC Monday is already Tuesday in Lagos (UTC+1)."""
    now = datetime(2024, 6, 3, 23, 30, tzinfo=timezone.utc)
    company = _company(timezone="Africa/Lagos")
    calendar = _resolver(now)
    assert calendar.local_date(company) == date(2024, 6, 4)
    assert calendar.local_time(company) == time(0, 30)


def test_is_working_day_uses_company_zone():
    """Friday 23:30 UTC is Saturday in Lagos, so not a working day there."""
    friday_night = datetime(2024, 6, 7, 23, 30, tzinfo=timezone.utc)
    calendar = _resolver(friday_night)
    assert calendar.is_working_day(friday_night, _company()) is True
    assert calendar.is_working_day(friday_night, _company(timezone="Africa/Lagos")) is False


def test_is_working_day_accepts_dates():
    """Plain dates are checked against the set directly."""
    calendar = _resolver(datetime(2024, 6, 3, tzinfo=timezone.utc))
    company = _company(working_days=[0, 6])
    assert calendar.is_working_day(date(2024, 6, 9), company) is True  # Sunday
    assert calendar.is_working_day(date(2024, 6, 10), company) is False


def test_local_bounds_are_utc():
    """Lagos day bounds start at 23:00 UTC the day before."""
    company = _company(timezone="Africa/Lagos")
    start, end = _resolver(datetime(2024, 6, 3, tzinfo=timezone.utc)).local_bounds(company, date(2024, 6, 3))
    assert start == datetime(2024, 6, 2, 23, 0, tzinfo=timezone.utc)
    assert end == datetime(2024, 6, 3, 23, 0, tzinfo=timezone.utc)


def test_reporting_window_defaults():
    """Default window is the last N days ending today, inclusive."""
    calendar = _resolver(datetime(2024, 6, 30, 12, tzinfo=timezone.utc))
    company = _company()
    assert calendar.resolve_reporting_window(company) == (date(2024, 6, 1), date(2024, 6, 30))
    assert calendar.resolve_reporting_window(company, default_days=1) == (date(2024, 6, 30), date(2024, 6, 30))
    assert calendar.resolve_reporting_window(company, explicit_end=date(2024, 6, 10), default_days=10) == (
        date(2024, 6, 1),
        date(2024, 6, 10),
    )


def test_expected_work_days():
    """June 2024 has 20 weekdays; an inverted range has none."""
    calendar = _resolver(datetime(2024, 6, 30, tzinfo=timezone.utc))
    company = _company()
    assert calendar.expected_work_days(company, date(2024, 6, 1), date(2024, 6, 30)) == 20
    assert calendar.expected_work_days(company, date(2024, 6, 30), date(2024, 6, 1)) == 0
    assert calendar.expected_work_days(_company(working_days=[6, 7]), date(2024, 6, 1), date(2024, 6, 30)) == 10


def test_work_hours_fallback():
    """Malformed work hours fall back to 09:00-17:00."""
    calendar = _resolver(datetime(2024, 6, 3, tzinfo=timezone.utc))
    company = _company(work_start_time="??", work_end_time="")
    assert calendar.work_start(company) == time(9)
    assert calendar.work_end(company) == time(17)
