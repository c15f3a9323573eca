"""
Datetime helpers.

Storage is naive UTC throughout the ledger. Opening hours and slots are
expressed in facility-local time (settings.timezone).
"""

from datetime import date, datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from ..config import settings


def utcnow() -> datetime:
    """Naive UTC now, the format stored in DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def facility_tz(tz_name: Optional[str] = None) -> ZoneInfo:
    return ZoneInfo(tz_name or settings.timezone)


def to_utc_naive(value: datetime) -> datetime:
    """
    Normalize any datetime to naive UTC.
    Naive input is interpreted as already being UTC.
    """
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def utc_to_local(value: datetime, tz: ZoneInfo) -> datetime:
    """Naive UTC -> aware facility-local"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(tz)


def local_to_utc(local_date: date, local_time: time, tz: ZoneInfo) -> datetime:
    """Facility-local wall clock -> naive UTC"""
    aware = datetime.combine(local_date, local_time).replace(tzinfo=tz)
    return aware.astimezone(timezone.utc).replace(tzinfo=None)


def minutes_of(t: time) -> int:
    return t.hour * 60 + t.minute


def time_from_minutes(minutes: int) -> time:
    minutes = max(0, min(minutes, 23 * 60 + 59))
    return time(minutes // 60, minutes % 60)


def hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600.0
