"""
Availability Calculator

free(model, window) = max(0, total(model) - booked(model, window))

booked counts:
- quantities of non-deleted items on pending/confirmed reservations overlapping the window
- open CheckoutItems (not checked in) on open/partial checkouts overlapping the window

In "now" mode reservations use point containment and the checkout side is replaced by
the custody cache count, since Snipe-IT is the truth for what is physically out.

A total that cannot be determined (API failure, or <= 0) yields free=None ("unknown").
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import and_, func
from sqlalchemy.orm import Session

from ..exceptions import AvailabilityConflict, ExternalSystemError, ValidationError
from ..models.checkout import ACTIVE_CHECKOUT_STATUSES, Checkout, CheckoutItem
from ..models.custody_cache import CustodyCacheEntry
from ..models.reservation import ACTIVE_RESERVATION_STATUSES, Reservation, ReservationItem
from ..utils.datetime_helpers import to_utc_naive, utcnow

logger = logging.getLogger(__name__)


def overlaps(a_start: datetime, a_end: datetime, q_start: datetime, q_end: datetime) -> bool:
    """Half-open [start, end) overlap; touching endpoints do not overlap"""
    return a_start < q_end and a_end > q_start


def overlap_clause(start_col, end_col, q_start: datetime, q_end: datetime):
    """SQL form of overlaps()"""
    return and_(start_col < q_end, end_col > q_start)


def compute_free(total: Optional[int], booked: int) -> Optional[int]:
    """None when the total is unknown or non-positive, never negative otherwise"""
    if total is None or total <= 0:
        return None
    return max(0, total - booked)


def validate_window(start: datetime, end: datetime):
    if start is None or end is None:
        raise ValidationError("Both start and end are required")
    if end <= start:
        raise ValidationError(f"End ({end.isoformat()}) must be after start ({start.isoformat()})")


@dataclass
class AvailabilityResult:
    model_id: int
    total: Optional[int]
    booked: int
    free: Optional[int]
    mode: str = "window"

    @property
    def unknown(self) -> bool:
        return self.free is None

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["unknown"] = self.unknown
        return data


class AvailabilityCalculator:
    """
    Usage:
        calc = AvailabilityCalculator(db, get_snipeit_client())
        result = calc.free_in_window(model_id, start, end)
    """

    def __init__(self, db: Session, custody_client=None):
        self.db = db
        self.custody_client = custody_client
        self._totals: Dict[int, Optional[int]] = {}

    # ==================
    # Totals (external)
    # ==================

    def total_units(self, model_id: int) -> Optional[int]:
        """Requestable units per Snipe-IT, None if it cannot be determined"""
        if model_id in self._totals:
            return self._totals[model_id]

        total = None
        if self.custody_client is None:
            logger.warning(f"No custody client configured, total for model {model_id} unknown")
        else:
            try:
                total = self.custody_client.count_requestable_assets_by_model(model_id)
            except ExternalSystemError as e:
                logger.warning(f"Total for model {model_id} unknown: {e}")

        self._totals[model_id] = total
        return total

    def _require_total(self, model_id: int) -> int:
        """Commit path: an unknown total is fatal"""
        if self.custody_client is None:
            raise ExternalSystemError("No custody client configured, cannot verify availability")
        total = self.custody_client.count_requestable_assets_by_model(model_id)
        if total is None or total <= 0:
            raise ExternalSystemError(f"Snipe-IT reports no requestable units for model {model_id}")
        return total

    # ==================
    # Booked (ledger)
    # ==================

    def reserved_in_window(
        self,
        model_id: int,
        start: datetime,
        end: datetime,
        exclude_reservation_id: Optional[str] = None
    ) -> int:
        query = self.db.query(func.coalesce(func.sum(ReservationItem.quantity), 0)).join(
            Reservation, Reservation.id == ReservationItem.reservation_id
        ).filter(
            ReservationItem.model_id == model_id,
            ReservationItem.deleted_at.is_(None),
            Reservation.status.in_(ACTIVE_RESERVATION_STATUSES),
            overlap_clause(Reservation.start_datetime, Reservation.end_datetime, start, end)
        )
        if exclude_reservation_id:
            query = query.filter(Reservation.id != exclude_reservation_id)
        return int(query.scalar() or 0)

    def checked_out_in_window(self, model_id: int, start: datetime, end: datetime) -> int:
        count = self.db.query(func.count(CheckoutItem.id)).join(
            Checkout, Checkout.id == CheckoutItem.checkout_id
        ).filter(
            CheckoutItem.model_id == model_id,
            CheckoutItem.checked_in_at.is_(None),
            Checkout.status.in_(ACTIVE_CHECKOUT_STATUSES),
            overlap_clause(Checkout.start_datetime, Checkout.end_datetime, start, end)
        ).scalar()
        return int(count or 0)

    def booked_in_window(
        self,
        model_id: int,
        start: datetime,
        end: datetime,
        exclude_reservation_id: Optional[str] = None
    ) -> int:
        start, end = to_utc_naive(start), to_utc_naive(end)
        validate_window(start, end)
        return (
            self.reserved_in_window(model_id, start, end, exclude_reservation_id)
            + self.checked_out_in_window(model_id, start, end)
        )

    def reserved_at(self, model_id: int, now: datetime) -> int:
        total = self.db.query(func.coalesce(func.sum(ReservationItem.quantity), 0)).join(
            Reservation, Reservation.id == ReservationItem.reservation_id
        ).filter(
            ReservationItem.model_id == model_id,
            ReservationItem.deleted_at.is_(None),
            Reservation.status.in_(ACTIVE_RESERVATION_STATUSES),
            Reservation.start_datetime <= now,
            Reservation.end_datetime > now
        ).scalar()
        return int(total or 0)

    def custody_count(self, model_id: int) -> int:
        count = self.db.query(func.count(CustodyCacheEntry.id)).filter(
            CustodyCacheEntry.model_id == model_id
        ).scalar()
        return int(count or 0)

    # ==================
    # Public API
    # ==================

    def free_in_window(self, model_id: int, start: datetime, end: datetime) -> AvailabilityResult:
        booked = self.booked_in_window(model_id, start, end)
        total = self.total_units(model_id)
        return AvailabilityResult(
            model_id=model_id,
            total=total,
            booked=booked,
            free=compute_free(total, booked),
            mode="window"
        )

    def free_now(self, model_id: int, now: Optional[datetime] = None) -> AvailabilityResult:
        now = to_utc_naive(now) if now else utcnow()
        booked = self.reserved_at(model_id, now) + self.custody_count(model_id)
        total = self.total_units(model_id)
        return AvailabilityResult(
            model_id=model_id,
            total=total,
            booked=booked,
            free=compute_free(total, booked),
            mode="now"
        )

    def assert_available(
        self,
        requested: Dict[int, int],
        start: datetime,
        end: datetime,
        model_names: Optional[Dict[int, str]] = None,
        exclude_reservation_id: Optional[str] = None
    ):
        """
        Commit-time re-validation, run inside the write transaction.

        Raises:
            ValidationError: inverted window or non-positive quantity
            ExternalSystemError: total cannot be determined
            AvailabilityConflict: requested exceeds free, with the shortfall
        """
        start, end = to_utc_naive(start), to_utc_naive(end)
        validate_window(start, end)
        model_names = model_names or {}

        for model_id, qty in requested.items():
            if qty <= 0:
                raise ValidationError(f"Quantity for model {model_id} must be positive")

            total = self._require_total(model_id)
            booked = self.booked_in_window(model_id, start, end, exclude_reservation_id)
            free = max(0, total - booked)

            if qty > free:
                logger.info(
                    f"Availability conflict on model {model_id}: requested {qty}, "
                    f"total {total}, booked {booked}"
                )
                raise AvailabilityConflict(model_id, qty, free, model_name=model_names.get(model_id))
