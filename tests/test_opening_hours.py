"""
Tests for the Opening Hours Resolver

Precedence: one-off override > dated weekly schedule > default week > closed.
"""

import pytest
from datetime import date, datetime, time
from zoneinfo import ZoneInfo

from kitdesk.models.opening_hours import (
    OpeningHoursDefault,
    OpeningHoursOverride,
    OpeningHoursSchedule,
    OpeningHoursScheduleDay,
    OverrideKind
)
from kitdesk.services.opening_hours import OpeningHoursResolver

from conftest import UTC

SUNDAY = date(2026, 3, 8)
MONDAY = date(2026, 3, 9)


@pytest.fixture
def weekdays_only(db):
    """Mon-Fri 09:00-17:00, weekend closed"""
    for weekday in range(1, 8):
        if weekday <= 5:
            db.add(OpeningHoursDefault(weekday=weekday, open_time=time(9, 0), close_time=time(17, 0)))
        else:
            db.add(OpeningHoursDefault(weekday=weekday, is_closed=True))
    db.commit()


def add_schedule(db, start, end, days, name="Term"):
    schedule = OpeningHoursSchedule(name=name, start_date=start, end_date=end)
    for weekday, open_t, close_t in days:
        schedule.days.append(OpeningHoursScheduleDay(
            weekday=weekday,
            open_time=open_t,
            close_time=close_t,
            is_closed=open_t is None
        ))
    db.add(schedule)
    db.commit()
    return schedule


def add_override(db, start, end, kind, reason=None):
    override = OpeningHoursOverride(start_datetime=start, end_datetime=end, kind=kind, reason=reason)
    db.add(override)
    db.commit()
    return override


class TestPrecedence:
    """Each layer only applies when the one above says nothing"""

    def test_default_week(self, db, weekdays_only):
        hours = OpeningHoursResolver(db, tz=UTC).resolve(MONDAY)

        assert not hours.is_closed
        assert hours.open_time == time(9, 0)
        assert hours.close_time == time(17, 0)
        assert hours.source == "default"

    def test_no_rows_means_closed(self, db):
        assert OpeningHoursResolver(db, tz=UTC).resolve(MONDAY).is_closed

    def test_sunday_one_off_open_override(self, db, weekdays_only):
        """Closed Sunday + schedule opening Sundays 09-17 + one-off open 10:00-14:00 -> 10:00-14:00"""
        add_schedule(db, date(2026, 3, 1), date(2026, 3, 31), [(7, time(9, 0), time(17, 0))])
        add_override(db, datetime(2026, 3, 8, 10, 0), datetime(2026, 3, 8, 14, 0), OverrideKind.OPEN.value)

        hours = OpeningHoursResolver(db, tz=UTC).resolve(SUNDAY)

        assert hours.is_closed is False
        assert hours.open_time == time(10, 0)
        assert hours.close_time == time(14, 0)
        assert hours.to_dict() == {"is_closed": False, "open_time": "10:00", "close_time": "14:00"}

    def test_closed_override_beats_schedule(self, db, weekdays_only):
        add_schedule(db, date(2026, 3, 1), date(2026, 3, 31), [(1, time(8, 0), time(20, 0))])
        add_override(db, datetime(2026, 3, 9, 0, 0), datetime(2026, 3, 10, 0, 0), OverrideKind.CLOSED.value, "Staff training")

        hours = OpeningHoursResolver(db, tz=UTC).resolve(MONDAY)

        assert hours.is_closed
        assert "Staff training" in hours.source

    def test_latest_override_wins(self, db, weekdays_only):
        add_override(db, datetime(2026, 3, 9, 0, 0), datetime(2026, 3, 10, 0, 0), OverrideKind.CLOSED.value)
        add_override(db, datetime(2026, 3, 9, 12, 0), datetime(2026, 3, 9, 15, 0), OverrideKind.OPEN.value)

        hours = OpeningHoursResolver(db, tz=UTC).resolve(MONDAY)

        assert hours.open_time == time(12, 0)
        assert hours.close_time == time(15, 0)

    def test_override_ending_at_midnight_does_not_touch_next_day(self, db, weekdays_only):
        """Half-open: an override ending at 00:00 Monday leaves Monday alone"""
        add_override(db, datetime(2026, 3, 8, 0, 0), datetime(2026, 3, 9, 0, 0), OverrideKind.CLOSED.value)

        assert OpeningHoursResolver(db, tz=UTC).resolve(MONDAY).source == "default"

    def test_multi_day_open_override_clipped_per_day(self, db, weekdays_only):
        add_override(db, datetime(2026, 3, 7, 18, 0), datetime(2026, 3, 8, 11, 0), OverrideKind.OPEN.value)
        resolver = OpeningHoursResolver(db, tz=UTC)

        saturday = resolver.resolve(date(2026, 3, 7))
        sunday = resolver.resolve(SUNDAY)

        assert (saturday.open_time, saturday.close_time) == (time(18, 0), time(23, 59))
        assert (sunday.open_time, sunday.close_time) == (time(0, 0), time(11, 0))


class TestSchedules:
    """Dated weekly schedules"""

    def test_range_is_inclusive(self, db, weekdays_only):
        add_schedule(db, MONDAY, MONDAY, [(1, time(7, 0), time(12, 0))])

        assert OpeningHoursResolver(db, tz=UTC).resolve(MONDAY).open_time == time(7, 0)

    def test_outside_range_falls_back_to_default(self, db, weekdays_only):
        add_schedule(db, date(2026, 4, 1), date(2026, 4, 30), [(1, time(7, 0), time(12, 0))])

        assert OpeningHoursResolver(db, tz=UTC).resolve(MONDAY).source == "default"

    def test_missing_weekday_falls_through(self, db, weekdays_only):
        add_schedule(db, date(2026, 3, 1), date(2026, 3, 31), [(2, time(7, 0), time(12, 0))])

        assert OpeningHoursResolver(db, tz=UTC).resolve(MONDAY).source == "default"

    def test_highest_id_wins_on_overlap(self, db, weekdays_only):
        add_schedule(db, date(2026, 3, 1), date(2026, 3, 31), [(1, time(7, 0), time(12, 0))], name="Term")
        newer = add_schedule(db, date(2026, 3, 9), date(2026, 3, 15), [(1, time(10, 0), time(16, 0))], name="Exams")

        hours = OpeningHoursResolver(db, tz=UTC).resolve(MONDAY)

        assert hours.open_time == time(10, 0)
        assert hours.source == f"schedule #{newer.id}"

    def test_schedule_can_close_a_day(self, db, weekdays_only):
        add_schedule(db, date(2026, 3, 1), date(2026, 3, 31), [(1, None, None)], name="Holidays")

        assert OpeningHoursResolver(db, tz=UTC).resolve(MONDAY).is_closed


class TestWindowValidation:
    """Collection and return must both fall inside opening hours"""

    def test_valid_window(self, db, weekdays_only):
        errors = OpeningHoursResolver(db, tz=UTC).validate_window(
            datetime(2026, 3, 9, 9, 0), datetime(2026, 3, 10, 17, 0)
        )
        assert errors == []

    def test_closed_return_day_reported(self, db, weekdays_only):
        errors = OpeningHoursResolver(db, tz=UTC).validate_window(
            datetime(2026, 3, 6, 10, 0), datetime(2026, 3, 7, 10, 0)
        )
        assert len(errors) == 1
        assert errors[0].startswith("Return date")

    def test_both_outside_hours(self, db, weekdays_only):
        errors = OpeningHoursResolver(db, tz=UTC).validate_window(
            datetime(2026, 3, 9, 8, 0), datetime(2026, 3, 9, 18, 0)
        )
        assert len(errors) == 2

    def test_bypass_skips_checks(self, db):
        assert OpeningHoursResolver(db, tz=UTC).validate_window(
            datetime(2026, 3, 8, 3, 0), datetime(2026, 3, 8, 4, 0), bypass=True
        ) == []


class TestTimezones:
    """Overrides are stored as UTC instants and read back in facility time"""

    def test_summer_override_in_local_time(self, db):
        jersey = ZoneInfo("Europe/Jersey")
        # 10:00-14:00 BST == 09:00-13:00 UTC
        add_override(db, datetime(2026, 7, 5, 9, 0), datetime(2026, 7, 5, 13, 0), OverrideKind.OPEN.value)

        hours = OpeningHoursResolver(db, tz=jersey).resolve(date(2026, 7, 5))

        assert hours.open_time == time(10, 0)
        assert hours.close_time == time(14, 0)

    def test_month_lists_every_day(self, db, weekdays_only):
        days = OpeningHoursResolver(db, tz=UTC).month(2026, 2)

        assert len(days) == 28
        assert days[date(2026, 2, 1)].is_closed
        assert not days[date(2026, 2, 2)].is_closed
