"""
Opening Hours Resolver

Resolves a facility-local calendar date to open/closed + hours using three tiers,
highest precedence first:
1. One-off overrides (closed or open span) overlapping the date, latest wins
2. Named schedules whose inclusive date range contains the date, latest wins
3. The default weekly schedule (Mon=1..Sun=7)

A date with no matching row at any tier is closed.
"""

import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from ..models.opening_hours import (
    OpeningHoursDefault,
    OpeningHoursOverride,
    OpeningHoursSchedule,
    OpeningHoursScheduleDay,
    OverrideKind
)
from ..utils.datetime_helpers import facility_tz, local_to_utc, utc_to_local

logger = logging.getLogger(__name__)

END_OF_DAY = time(23, 59)


def _minute(t: Optional[time]) -> Optional[time]:
    """Drop seconds, resolution is minutes"""
    if t is None:
        return None
    return time(t.hour, t.minute)


@dataclass
class DayHours:
    day: date
    is_closed: bool
    open_time: Optional[time] = None
    close_time: Optional[time] = None
    source: str = "none"

    def to_dict(self) -> Dict:
        return {
            "is_closed": self.is_closed,
            "open_time": self.open_time.strftime("%H:%M") if self.open_time else None,
            "close_time": self.close_time.strftime("%H:%M") if self.close_time else None,
        }

    @property
    def has_hours(self) -> bool:
        return not self.is_closed and self.open_time is not None and self.close_time is not None

    def contains(self, t: time) -> bool:
        """Inclusive on both ends, like the front desk's posted hours"""
        if not self.has_hours:
            return False
        t = _minute(t)
        return self.open_time <= t <= self.close_time

    @classmethod
    def closed(cls, day: date, source: str = "none") -> "DayHours":
        return cls(day=day, is_closed=True, source=source)

    @classmethod
    def full_day(cls, day: date, source: str) -> "DayHours":
        return cls(day=day, is_closed=False, open_time=time(0, 0), close_time=END_OF_DAY, source=source)


class OpeningHoursResolver:
    """
    Read-only resolver over the opening hours tables.

    Results are memoized per instance; create one per request.
    """

    def __init__(self, db: Session, tz: Optional[ZoneInfo] = None):
        self.db = db
        self.tz = tz or facility_tz()
        self._memo: Dict[date, DayHours] = {}

    def resolve(self, day: date) -> DayHours:
        if day not in self._memo:
            self._memo[day] = (
                self._from_one_off(day)
                or self._from_schedule(day)
                or self._from_default(day)
                or DayHours.closed(day)
            )
        return self._memo[day]

    def _from_one_off(self, day: date) -> Optional[DayHours]:
        day_start_utc = local_to_utc(day, time(0, 0), self.tz)
        next_day_utc = local_to_utc(day + timedelta(days=1), time(0, 0), self.tz)

        override = self.db.query(OpeningHoursOverride).filter(
            OpeningHoursOverride.start_datetime < next_day_utc,
            OpeningHoursOverride.end_datetime > day_start_utc
        ).order_by(OpeningHoursOverride.id.desc()).first()

        if override is None:
            return None

        source = f"override: {override.reason or f'one-off #{override.id}'}"
        if override.kind == OverrideKind.CLOSED.value:
            return DayHours.closed(day, source=source)

        # Open override: its span clipped to this local day
        local_start = utc_to_local(override.start_datetime, self.tz)
        local_end = utc_to_local(override.end_datetime, self.tz)

        open_t = local_start.time() if local_start.date() == day else time(0, 0)
        close_t = local_end.time() if local_end.date() == day else END_OF_DAY
        if open_t >= close_t:
            return DayHours.full_day(day, source=source)

        return DayHours(
            day=day,
            is_closed=False,
            open_time=_minute(open_t),
            close_time=_minute(close_t),
            source=source
        )

    def _from_schedule(self, day: date) -> Optional[DayHours]:
        row = self.db.query(OpeningHoursScheduleDay).join(
            OpeningHoursSchedule,
            OpeningHoursSchedule.id == OpeningHoursScheduleDay.schedule_id
        ).filter(
            OpeningHoursSchedule.start_date <= day,
            OpeningHoursSchedule.end_date >= day,
            OpeningHoursScheduleDay.weekday == day.isoweekday()
        ).order_by(OpeningHoursSchedule.id.desc()).first()

        if row is None:
            return None
        return self._row_to_hours(day, row, source=f"schedule #{row.schedule_id}")

    def _from_default(self, day: date) -> Optional[DayHours]:
        row = self.db.query(OpeningHoursDefault).filter(
            OpeningHoursDefault.weekday == day.isoweekday()
        ).first()

        if row is None:
            return None
        return self._row_to_hours(day, row, source="default")

    @staticmethod
    def _row_to_hours(day: date, row, source: str) -> DayHours:
        if row.is_closed or row.open_time is None or row.close_time is None:
            return DayHours.closed(day, source=source)
        return DayHours(
            day=day,
            is_closed=False,
            open_time=_minute(row.open_time),
            close_time=_minute(row.close_time),
            source=source
        )

    def month(self, year: int, month: int) -> Dict[date, DayHours]:
        days_in_month = calendar.monthrange(year, month)[1]
        return {
            date(year, month, d): self.resolve(date(year, month, d))
            for d in range(1, days_in_month + 1)
        }

    def is_open_at(self, instant_utc: datetime) -> bool:
        local = utc_to_local(instant_utc, self.tz)
        return self.resolve(local.date()).contains(local.time())

    def validate_window(self, start_utc: datetime, end_utc: datetime, bypass: bool = False) -> List[str]:
        """
        Check that both collection and return fall inside opening hours.

        Returns a list of human-readable problems (empty = valid).
        """
        if bypass:
            return []

        errors = []
        for label, instant in (("Collection", start_utc), ("Return", end_utc)):
            local = utc_to_local(instant, self.tz)
            hours = self.resolve(local.date())
            day_label = local.strftime("%A %d %b %Y")
            if not hours.has_hours:
                errors.append(f"{label} date ({day_label}) is outside opening hours, the facility is closed.")
            elif not hours.contains(local.time()):
                errors.append(
                    f"{label} time ({local.strftime('%H:%M')}) is outside opening hours on "
                    f"{local.strftime('%A')} ({hours.open_time.strftime('%H:%M')} - {hours.close_time.strftime('%H:%M')})."
                )
        return errors
