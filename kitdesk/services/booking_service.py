"""
Booking Service - the ledger write path

Reservations:
- create (rules gate, opening hours, availability re-validated inside the write transaction)
- confirm / cancel / delete (deletable statuses only) / soft-remove a line item
- missed sweep: pending/confirmed past start + cutoff -> missed

Checkouts:
- create from a reservation or ad hoc, optionally appended to the user's active chain
- renew (extends the whole chain, in Snipe-IT and locally)
- check in an item; status is always re-derived from the items
"""

from collections import Counter
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import (
    ConsistencyDivergence,
    ExternalSystemError,
    NotFound,
    ValidationError
)
from ..models.checkout import ACTIVE_CHECKOUT_STATUSES, Checkout, CheckoutItem, CheckoutStatus
from ..models.reservation import (
    ACTIVE_RESERVATION_STATUSES,
    Reservation,
    ReservationItem,
    ReservationStatus
)
from ..schemas.booking import BookingContext, CheckoutCreate, ReservationCreate
from ..utils.datetime_helpers import to_utc_naive, utcnow
from ..utils.db_helpers import acquire_row_lock
from ..utils.logging_config import get_logger
from .availability import AvailabilityCalculator, validate_window
from .checkout_rules import CheckoutRulesEngine
from .opening_hours import OpeningHoursResolver

logger = get_logger(__name__)


# ==================
# Checkout status + chain helpers
# ==================

def derive_checkout_status(items: List[CheckoutItem]) -> CheckoutStatus:
    """open = nothing returned (or no items yet), closed = all returned, else partial"""
    if not items:
        return CheckoutStatus.OPEN
    returned = sum(1 for item in items if item.checked_in_at is not None)
    if returned == 0:
        return CheckoutStatus.OPEN
    if returned == len(items):
        return CheckoutStatus.CLOSED
    return CheckoutStatus.PARTIAL


def chain_ancestry(db: Session, checkout: Checkout) -> List[Checkout]:
    """checkout, its parent, ... up to the root; a revisited node means the chain is corrupt"""
    visited = {checkout.id}
    path = [checkout]
    current = checkout
    while current.parent_checkout_id is not None:
        if current.parent_checkout_id in visited:
            raise ConsistencyDivergence(f"Checkout chain through {checkout.id} contains a cycle")
        visited.add(current.parent_checkout_id)
        parent = db.query(Checkout).filter(Checkout.id == current.parent_checkout_id).first()
        if parent is None:
            raise ConsistencyDivergence(
                f"Checkout {current.id} points at missing parent {current.parent_checkout_id}"
            )
        current = parent
        path.append(parent)
    return path


def chain_root(db: Session, checkout: Checkout) -> Checkout:
    return chain_ancestry(db, checkout)[-1]


def chain_members(db: Session, root: Checkout) -> List[Checkout]:
    """Root first, then every checkout appended beneath it"""
    members = [root]
    seen = {root.id}
    frontier = [root.id]
    while frontier:
        children = db.query(Checkout).filter(Checkout.parent_checkout_id.in_(frontier)).all()
        frontier = []
        for child in children:
            if child.id in seen:
                raise ConsistencyDivergence(f"Checkout chain under {root.id} contains a cycle")
            seen.add(child.id)
            members.append(child)
            frontier.append(child.id)
    return members


def link_to_parent(db: Session, child: Checkout, parent_id: str):
    """Attach child beneath parent_id, refusing self-links and cycles"""
    if child.id is not None and parent_id == child.id:
        raise ValidationError("A checkout cannot be its own parent")
    parent = db.query(Checkout).filter(Checkout.id == parent_id).first()
    if parent is None:
        raise NotFound(f"Parent checkout {parent_id} not found")
    ancestry = chain_ancestry(db, parent)
    if child.id is not None and any(node.id == child.id for node in ancestry):
        raise ValidationError(f"Linking {child.id} under {parent_id} would create a cycle")
    child.parent_checkout_id = parent.id


class BookingService:
    """
    Usage:
        service = BookingService(db, get_snipeit_client())
        reservation = service.create_reservation(ctx, payload)
    """

    def __init__(
        self,
        db: Session,
        custody_client=None,
        rules: Optional[CheckoutRulesEngine] = None,
        availability: Optional[AvailabilityCalculator] = None,
        resolver: Optional[OpeningHoursResolver] = None
    ):
        self.db = db
        self.custody_client = custody_client
        self.rules = rules or CheckoutRulesEngine(db, custody_client)
        self.availability = availability or AvailabilityCalculator(db, custody_client)
        self.resolver = resolver or OpeningHoursResolver(db)

    # ==================
    # Lookups
    # ==================

    def get_reservation(self, reservation_id: str) -> Reservation:
        reservation = self.db.query(Reservation).filter(Reservation.id == reservation_id).first()
        if reservation is None:
            raise NotFound(f"Reservation {reservation_id} not found")
        return reservation

    def get_checkout(self, checkout_id: str) -> Checkout:
        checkout = self.db.query(Checkout).filter(Checkout.id == checkout_id).first()
        if checkout is None:
            raise NotFound(f"Checkout {checkout_id} not found")
        return checkout

    # ==================
    # Reservations
    # ==================

    def create_reservation(self, ctx: BookingContext, data: ReservationCreate) -> Reservation:
        start = to_utc_naive(data.start_datetime)
        end = to_utc_naive(data.end_datetime)
        validate_window(start, end)

        model_names = {item.model_id: item.model_name for item in data.items if item.model_name}
        outcome = self.rules.evaluate(
            ctx, start, end,
            [item.model_id for item in data.items],
            append_to_active=data.append_to_active,
            model_names=model_names
        )
        outcome.raise_if_denied()
        if outcome.clamped_end is not None:
            end = outcome.clamped_end

        hour_errors = self.resolver.validate_window(start, end, bypass=ctx.is_admin)
        if hour_errors:
            raise ValidationError(" ".join(hour_errors))

        requested = {item.model_id: item.quantity for item in data.items}

        try:
            self.availability.assert_available(requested, start, end, model_names=model_names)

            reservation = Reservation(
                user_name=ctx.user_name,
                user_email=ctx.user_email,
                external_user_id=ctx.external_user_id,
                start_datetime=start,
                end_datetime=end,
                status=ReservationStatus.PENDING.value
            )
            for item in data.items:
                reservation.items.append(ReservationItem(
                    model_id=item.model_id,
                    model_name_cache=item.model_name,
                    quantity=item.quantity
                ))
            self.db.add(reservation)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(reservation)
        logger.reservation_created(reservation.id, ctx.user_email, len(data.items))
        return reservation

    def confirm_reservation(self, reservation_id: str) -> Reservation:
        reservation = self.get_reservation(reservation_id)
        if reservation.status != ReservationStatus.PENDING.value:
            raise ValidationError(f"Only pending reservations can be confirmed (status: {reservation.status})")
        reservation.status = ReservationStatus.CONFIRMED.value
        self.db.commit()
        logger.info(f"Reservation {reservation.id} confirmed")
        return reservation

    def cancel_reservation(self, reservation_id: str) -> Reservation:
        reservation = self.get_reservation(reservation_id)
        if reservation.status not in ACTIVE_RESERVATION_STATUSES:
            raise ValidationError(f"Cannot cancel a reservation with status {reservation.status}")
        reservation.status = ReservationStatus.CANCELLED.value
        self.db.commit()
        logger.info(f"Reservation {reservation.id} cancelled")
        return reservation

    def delete_reservation(self, reservation_id: str):
        reservation = self.get_reservation(reservation_id)
        if reservation.status not in settings.deletable_status_list:
            raise ValidationError(f"Reservations with status {reservation.status} cannot be deleted")
        try:
            self.db.delete(reservation)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(f"Reservation {reservation_id} deleted")

    def remove_reservation_item(self, reservation_id: str, item_id: int) -> Reservation:
        """Soft delete one line; the last remaining line cannot be removed"""
        reservation = self.get_reservation(reservation_id)
        if reservation.status not in ACTIVE_RESERVATION_STATUSES:
            raise ValidationError(f"Items cannot be removed from a {reservation.status} reservation")

        item = next((i for i in reservation.active_items if i.id == item_id), None)
        if item is None:
            raise NotFound(f"Item {item_id} not found on reservation {reservation_id}")
        if len(reservation.active_items) <= 1:
            raise ValidationError("Cannot remove the last item; cancel the reservation instead")

        item.deleted_at = utcnow()
        self.db.commit()
        logger.info(f"Reservation {reservation_id}: removed item {item_id} (model {item.model_id})")
        return reservation

    def mark_missed(self, now: Optional[datetime] = None, cutoff_minutes: Optional[int] = None) -> int:
        """Pending/confirmed reservations not collected within the cutoff become missed"""
        now = to_utc_naive(now) if now else utcnow()
        cutoff = max(1, cutoff_minutes if cutoff_minutes is not None else settings.missed_cutoff_minutes)
        threshold = now - timedelta(minutes=cutoff)

        missed = self.db.query(Reservation).filter(
            Reservation.status.in_(ACTIVE_RESERVATION_STATUSES),
            Reservation.start_datetime < threshold
        ).all()

        for reservation in missed:
            reservation.status = ReservationStatus.MISSED.value
        if missed:
            self.db.commit()
            logger.info(f"Marked {len(missed)} reservation(s) as missed (cutoff {cutoff} min)")
        return len(missed)

    # ==================
    # Checkouts
    # ==================

    def _resolve_external_user(self, ctx: BookingContext) -> int:
        if ctx.external_user_id:
            return ctx.external_user_id
        if self.custody_client is not None:
            user = self.custody_client.find_user_by_email(ctx.user_email)
            if user and user.get("id"):
                return int(user["id"])
        raise ValidationError(f"No Snipe-IT user found for {ctx.user_email}")

    def _assert_assets_not_out(self, asset_ids: List[int]):
        already_out = self.db.query(CheckoutItem).join(Checkout).filter(
            CheckoutItem.asset_id.in_(asset_ids),
            CheckoutItem.checked_in_at.is_(None),
            Checkout.status.in_(ACTIVE_CHECKOUT_STATUSES)
        ).all()
        if already_out:
            tags = ", ".join(sorted(i.asset_tag for i in already_out))
            raise ValidationError(f"Already checked out: {tags}")

    def create_checkout(self, ctx: BookingContext, data: CheckoutCreate) -> Checkout:
        """
        Staff checkout of concrete assets to the user described by ctx.

        Steps:
        1. Gate (rules, availability, assets not already out locally)
        2. Mark the reservation fulfilled and commit
        3. Assign every asset in Snipe-IT
        4. Re-check availability and local custody, then insert checkout + items
           and flip the reservation to checked_out, all in one transaction

        A failure after step 2 leaves a fulfilled reservation without a checkout and
        a failure after step 3 leaves orphans; both are surfaced by diagnose and
        orphans are repaired by the reconciler.
        """
        if self.custody_client is None:
            raise ExternalSystemError("No custody client configured")

        start = to_utc_naive(data.start_datetime)
        end = to_utc_naive(data.end_datetime)
        validate_window(start, end)

        reservation = None
        if data.reservation_id:
            reservation = self.get_reservation(data.reservation_id)
            if reservation.status not in ACTIVE_RESERVATION_STATUSES:
                raise ValidationError(f"Reservation {reservation.id} is {reservation.status}, not collectable")

        model_names = {a.model_id: a.model_name for a in data.assets if a.model_name}
        outcome = self.rules.evaluate(
            ctx, start, end,
            [a.model_id for a in data.assets],
            append_to_active=data.append_to_active,
            model_names=model_names
        )
        outcome.raise_if_denied()
        if outcome.clamped_end is not None:
            end = outcome.clamped_end

        user_id = self._resolve_external_user(ctx)

        asset_ids = [a.asset_id for a in data.assets]
        requested = dict(Counter(a.model_id for a in data.assets))
        exclude_id = reservation.id if reservation else None

        self._assert_assets_not_out(asset_ids)
        self.availability.assert_available(
            requested, start, end, model_names=model_names, exclude_reservation_id=exclude_id
        )

        if reservation is not None:
            reservation.status = ReservationStatus.FULFILLED.value
            self.db.commit()

        for asset in data.assets:
            self.custody_client.checkout_asset(asset.asset_id, user_id, expected_checkin=end, note=data.note or "")

        try:
            # Bookings committed while Snipe-IT was being written must be seen here
            self._assert_assets_not_out(asset_ids)
            self.availability.assert_available(
                requested, start, end, model_names=model_names, exclude_reservation_id=exclude_id
            )

            now = utcnow()
            checkout = Checkout(
                reservation_id=reservation.id if reservation else None,
                user_name=ctx.user_name,
                user_email=ctx.user_email,
                external_user_id=user_id,
                start_datetime=start,
                end_datetime=end,
                status=CheckoutStatus.OPEN.value
            )
            self.db.add(checkout)
            self.db.flush()

            if outcome.parent_checkout_id:
                acquire_row_lock(self.db, Checkout, Checkout.id == outcome.parent_checkout_id)
                link_to_parent(self.db, checkout, outcome.parent_checkout_id)

            for asset in data.assets:
                checkout.items.append(CheckoutItem(
                    asset_id=asset.asset_id,
                    asset_tag=asset.asset_tag,
                    asset_name=asset.asset_name or asset.asset_tag,
                    model_id=asset.model_id,
                    model_name=asset.model_name,
                    checked_out_at=now
                ))

            if reservation is not None:
                tags = reservation.asset_tags + [a.asset_tag for a in data.assets]
                reservation.asset_tags_cache = ",".join(dict.fromkeys(tags))
                reservation.status = ReservationStatus.CHECKED_OUT.value

            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.error(
                f"Checkout for {ctx.user_email} assigned in Snipe-IT but not recorded locally; "
                "run diagnose/repair"
            )
            raise

        self.db.refresh(checkout)
        logger.checkout_created(
            checkout.id, ctx.user_email, [a.asset_tag for a in data.assets], outcome.parent_checkout_id
        )
        return checkout

    def renew_checkout(self, ctx: BookingContext, checkout_id: str, new_end: datetime) -> Checkout:
        """Extend the expected return of a checkout's whole chain"""
        if self.custody_client is None:
            raise ExternalSystemError("No custody client configured")

        checkout = self.get_checkout(checkout_id)
        if checkout.status not in ACTIVE_CHECKOUT_STATUSES:
            raise ValidationError(f"Checkout {checkout_id} is {checkout.status}")

        new_end = to_utc_naive(new_end)
        root = chain_root(self.db, checkout)
        outcome = self.rules.validate_renewal(ctx, root, new_end)
        outcome.raise_if_denied()

        members = chain_members(self.db, root)
        out_items = [item for member in members for item in member.items if item.checked_in_at is None]

        # The extension must not eat into units already promised to others
        requested = dict(Counter(item.model_id for item in out_items))
        if requested:
            self.availability.assert_available(requested, root.end_datetime, new_end)

        for item in out_items:
            self.custody_client.update_expected_checkin(item.asset_id, new_end)

        try:
            for member in members:
                member.end_datetime = new_end
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Checkout chain {root.id} renewed to {new_end.isoformat()} ({len(out_items)} items)")
        return checkout

    def recompute_checkout_status(self, checkout: Checkout) -> CheckoutStatus:
        status = derive_checkout_status(checkout.items)
        checkout.status = status.value
        return status

    def check_in_item(self, checkout_id: str, item_id: int, note: str = "") -> Checkout:
        checkout = self.get_checkout(checkout_id)
        item = next((i for i in checkout.items if i.id == item_id), None)
        if item is None:
            raise NotFound(f"Item {item_id} not found on checkout {checkout_id}")
        if item.checked_in_at is not None:
            raise ValidationError(f"{item.asset_tag} is already checked in")

        if self.custody_client is not None:
            self.custody_client.checkin_asset(item.asset_id, note=note)

        try:
            item.checked_in_at = utcnow()
            status = self.recompute_checkout_status(checkout)

            reservation = checkout.reservation
            if (
                status == CheckoutStatus.CLOSED
                and reservation is not None
                and reservation.status == ReservationStatus.CHECKED_OUT.value
                and all(co.status == CheckoutStatus.CLOSED.value for co in reservation.checkouts)
            ):
                reservation.status = ReservationStatus.COMPLETED.value
                logger.info(f"Reservation {reservation.id} completed (all items returned)")

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Checked in {item.asset_tag} on checkout {checkout.id} -> {checkout.status}")
        return checkout
