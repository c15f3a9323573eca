# Models package
from .reservation import Reservation, ReservationItem, ReservationStatus, ACTIVE_RESERVATION_STATUSES
from .checkout import Checkout, CheckoutItem, CheckoutStatus, ACTIVE_CHECKOUT_STATUSES
from .custody_cache import CustodyCacheEntry
from .opening_hours import (
    OpeningHoursDefault,
    OpeningHoursSchedule,
    OpeningHoursScheduleDay,
    OpeningHoursOverride,
    OverrideKind
)

__all__ = [
    "Reservation", "ReservationItem", "ReservationStatus", "ACTIVE_RESERVATION_STATUSES",
    "Checkout", "CheckoutItem", "CheckoutStatus", "ACTIVE_CHECKOUT_STATUSES",
    "CustodyCacheEntry",
    "OpeningHoursDefault", "OpeningHoursSchedule", "OpeningHoursScheduleDay",
    "OpeningHoursOverride", "OverrideKind"
]
