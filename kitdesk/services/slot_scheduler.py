"""
Slot Scheduler

Builds the bookable pickup/return grid for a day.

Capacity models front-desk throughput, not inventory: every booking is counted
once in the slot holding its start and once in the slot holding its end
("event bucketing"). A booking spanning many slots never touches the ones in
between.

The last `cooldown_slots` slots of a day run at ceil(capacity / 2).
Capacity <= 0 means unlimited (remaining = None).
"""

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..config import settings
from ..models.checkout import ACTIVE_CHECKOUT_STATUSES, Checkout
from ..models.reservation import ACTIVE_RESERVATION_STATUSES, Reservation
from ..schemas.booking import BookingContext
from ..utils.datetime_helpers import (
    facility_tz,
    local_to_utc,
    minutes_of,
    time_from_minutes,
    to_utc_naive,
    utc_to_local
)
from .opening_hours import DayHours, OpeningHoursResolver

logger = logging.getLogger(__name__)


@dataclass
class Slot:
    time: datetime            # facility-local, tz-aware
    capacity: int             # effective capacity, 0 = unlimited
    booked: int
    remaining: Optional[int]  # None = unlimited
    cooldown: bool = False

    @property
    def is_available(self) -> bool:
        return self.remaining is None or self.remaining > 0

    def to_dict(self) -> Dict:
        return {
            "time": self.time.isoformat(),
            "capacity": self.capacity,
            "booked": self.booked,
            "remaining": self.remaining,
            "cooldown": self.cooldown,
        }


def effective_capacity(base_capacity: int, index: int, slot_count: int, cooldown_slots: int) -> int:
    """Capacity of slot `index` (0-based) in a day of `slot_count` slots"""
    if base_capacity <= 0:
        return 0
    if cooldown_slots > 0 and index >= slot_count - cooldown_slots:
        return math.ceil(base_capacity / 2)
    return base_capacity


def slot_count_for(open_time: time, close_time: time, interval_minutes: int) -> int:
    """Slots run from open to close inclusive"""
    span = minutes_of(close_time) - minutes_of(open_time)
    if span < 0:
        return 0
    return span // interval_minutes + 1


def bucket_events(
    bookings: Iterable[Tuple[datetime, datetime]],
    day: date,
    open_time: time,
    close_time: time,
    interval_minutes: int,
    tz: ZoneInfo
) -> Dict[int, int]:
    """
    Count booking boundary events per slot index.

    Each (start, end) pair (naive UTC) contributes one event for its start and
    one for its end. An event outside this local date or outside open..close is
    ignored. Events floor into the slot at or before them.
    """
    open_m = minutes_of(open_time)
    close_m = minutes_of(close_time)
    counts: Dict[int, int] = {}

    for start, end in bookings:
        for instant in (start, end):
            if instant is None:
                continue
            local = utc_to_local(instant, tz)
            if local.date() != day:
                continue
            m = minutes_of(local.time())
            if m < open_m or m > close_m:
                continue
            index = (m - open_m) // interval_minutes
            counts[index] = counts.get(index, 0) + 1

    return counts


class SlotScheduler:
    """
    Usage:
        scheduler = SlotScheduler(db)
        slots = scheduler.build_day(date(2026, 3, 2), ctx)
    """

    def __init__(
        self,
        db: Session,
        resolver: Optional[OpeningHoursResolver] = None,
        interval_minutes: Optional[int] = None,
        capacity: Optional[int] = None,
        cooldown_slots: Optional[int] = None,
        scan_days: Optional[int] = None,
        tz: Optional[ZoneInfo] = None
    ):
        self.db = db
        self.tz = tz or facility_tz()
        self.resolver = resolver or OpeningHoursResolver(db, tz=self.tz)
        self.interval = interval_minutes or settings.slot_interval_minutes
        self.capacity = settings.slot_capacity if capacity is None else capacity
        self.cooldown_slots = settings.cooldown_slots if cooldown_slots is None else cooldown_slots
        self.scan_days = settings.next_open_scan_days if scan_days is None else scan_days

    def day_hours(self, day: date, ctx: Optional[BookingContext] = None) -> DayHours:
        hours = self.resolver.resolve(day)
        if not hours.has_hours and ctx is not None and ctx.bypass_closed:
            return DayHours.full_day(day, source="bypass")
        return hours

    def month_hours(self, year: int, month: int, ctx: Optional[BookingContext] = None) -> Dict[date, DayHours]:
        return {
            day: self.day_hours(day, ctx)
            for day in self.resolver.month(year, month)
        }

    def _events_for_day(self, day: date, hours: DayHours) -> List[Tuple[datetime, datetime]]:
        """Bookings with a start or end inside the day's open window"""
        window_start = local_to_utc(day, hours.open_time, self.tz)
        window_end = local_to_utc(day, hours.close_time, self.tz) + timedelta(minutes=1)

        def starts_or_ends_inside(model):
            return or_(
                (model.start_datetime >= window_start) & (model.start_datetime < window_end),
                (model.end_datetime >= window_start) & (model.end_datetime < window_end)
            )

        reservations = self.db.query(Reservation.start_datetime, Reservation.end_datetime).filter(
            Reservation.status.in_(ACTIVE_RESERVATION_STATUSES),
            starts_or_ends_inside(Reservation)
        ).all()

        checkouts = self.db.query(Checkout.start_datetime, Checkout.end_datetime).filter(
            Checkout.status.in_(ACTIVE_CHECKOUT_STATUSES),
            starts_or_ends_inside(Checkout)
        ).all()

        return [(r[0], r[1]) for r in reservations] + [(c[0], c[1]) for c in checkouts]

    def build_day(self, day: date, ctx: Optional[BookingContext] = None) -> List[Slot]:
        hours = self.day_hours(day, ctx)
        if not hours.has_hours:
            return []

        count = slot_count_for(hours.open_time, hours.close_time, self.interval)
        counts = bucket_events(
            self._events_for_day(day, hours),
            day,
            hours.open_time,
            hours.close_time,
            self.interval,
            self.tz
        )
        bypass_capacity = ctx is not None and ctx.bypass_capacity
        open_m = minutes_of(hours.open_time)

        slots = []
        for index in range(count):
            capacity = effective_capacity(self.capacity, index, count, self.cooldown_slots)
            booked = counts.get(index, 0)

            if capacity <= 0:
                remaining = None
            elif bypass_capacity:
                remaining = capacity
            else:
                remaining = max(0, capacity - booked)

            slot_time = datetime.combine(day, time_from_minutes(open_m + index * self.interval)).replace(tzinfo=self.tz)
            slots.append(Slot(
                time=slot_time,
                capacity=capacity,
                booked=booked,
                remaining=remaining,
                cooldown=self.capacity > 0 and self.cooldown_slots > 0 and index >= count - self.cooldown_slots
            ))
        return slots

    def next_open_slot(self, instant: datetime, ctx: Optional[BookingContext] = None) -> Optional[datetime]:
        """
        First slot at or after `instant` with room left, scanning up to scan_days ahead.

        Returns naive UTC, or None when nothing is free in range.
        """
        instant = to_utc_naive(instant)
        local_instant = utc_to_local(instant, self.tz)
        first_day = local_instant.date()

        for offset in range(self.scan_days + 1):
            day = first_day + timedelta(days=offset)
            for slot in self.build_day(day, ctx):
                if slot.time < local_instant:
                    continue
                if slot.is_available:
                    return to_utc_naive(slot.time)

        logger.info(f"No open slot within {self.scan_days} days of {instant.isoformat()}")
        return None

    def suggest_window(self, instant: datetime, ctx: Optional[BookingContext] = None) -> Dict[str, Optional[datetime]]:
        """Default pickup = next open slot, default return = next open slot >= pickup + 23h"""
        start = self.next_open_slot(instant, ctx)
        end = None
        if start is not None:
            end = self.next_open_slot(start + timedelta(hours=23), ctx)
        return {"start": start, "end": end}
