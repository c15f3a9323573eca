"""
Tests for the Availability Calculator

Tests cover:
- Half-open overlap boundaries (touching start/end, zero-duration)
- Free-unit arithmetic and the unknown/zero distinction
- Window mode vs now mode (custody cache replaces checkout windows)
- Commit-time re-validation and the shortfall it reports
"""

import pytest
from datetime import datetime, timedelta

from kitdesk.exceptions import AvailabilityConflict, ExternalSystemError, ValidationError
from kitdesk.models.checkout import Checkout, CheckoutItem, CheckoutStatus
from kitdesk.models.custody_cache import CustodyCacheEntry
from kitdesk.models.reservation import Reservation, ReservationItem, ReservationStatus
from kitdesk.schemas.booking import ItemRequest, ReservationCreate
from kitdesk.services.availability import AvailabilityCalculator, compute_free, overlaps
from kitdesk.services.booking_service import BookingService
from kitdesk.services.opening_hours import OpeningHoursResolver

from conftest import UTC

CAMERA_A = 101

MON_9 = datetime(2026, 3, 2, 9, 0)
TUE_9 = datetime(2026, 3, 3, 9, 0)
TUE_17 = datetime(2026, 3, 3, 17, 0)
WED_9 = datetime(2026, 3, 4, 9, 0)


def add_reservation(db, model_id, qty, start, end, status=ReservationStatus.CONFIRMED.value, deleted=False):
    reservation = Reservation(
        user_name="Bob",
        user_email="bob@example.com",
        start_datetime=start,
        end_datetime=end,
        status=status
    )
    reservation.items.append(ReservationItem(
        model_id=model_id,
        quantity=qty,
        deleted_at=datetime(2026, 1, 1) if deleted else None
    ))
    db.add(reservation)
    db.commit()
    return reservation


def add_checkout(db, model_id, count, start, end, status=CheckoutStatus.OPEN.value, returned=0):
    checkout = Checkout(
        user_name="Carol",
        user_email="carol@example.com",
        start_datetime=start,
        end_datetime=end,
        status=status
    )
    for i in range(count):
        checkout.items.append(CheckoutItem(
            asset_id=1000 + i,
            asset_tag=f"CAM-{i}",
            model_id=model_id,
            checked_out_at=start,
            checked_in_at=start if i < returned else None
        ))
    db.add(checkout)
    db.commit()
    return checkout


class TestOverlap:
    """Boundary tests for strict half-open overlap"""

    def test_touching_end_does_not_overlap(self):
        """A booking ending exactly at the query start is not counted"""
        assert not overlaps(MON_9, TUE_9, TUE_9, WED_9)

    def test_touching_start_does_not_overlap(self):
        """A booking starting exactly at the query end is not counted"""
        assert not overlaps(WED_9, WED_9 + timedelta(hours=1), TUE_9, WED_9)

    def test_contained_window_overlaps(self):
        assert overlaps(MON_9, WED_9, TUE_9, TUE_17)

    def test_one_minute_overlap(self):
        assert overlaps(MON_9, TUE_9 + timedelta(minutes=1), TUE_9, TUE_17)

    def test_zero_duration_query_never_overlaps(self):
        """[t, t) is empty"""
        assert not overlaps(MON_9, WED_9, TUE_9, TUE_9)


class TestComputeFree:
    """Unknown must stay distinct from zero"""

    def test_unknown_total_is_none(self):
        assert compute_free(None, 0) is None

    def test_zero_total_is_unknown(self):
        assert compute_free(0, 0) is None

    def test_never_negative(self):
        assert compute_free(2, 5) == 0

    def test_plain_subtraction(self):
        assert compute_free(5, 2) == 3


class TestWindowMode:
    """Reservations + open checkout items overlapping the window"""

    def test_counts_active_reservations_and_open_items(self, db, custody):
        """pending/confirmed quantities and still-out checkout items both count"""
        custody.totals[CAMERA_A] = 10
        add_reservation(db, CAMERA_A, 2, MON_9, WED_9)
        add_reservation(db, CAMERA_A, 1, MON_9, WED_9, status=ReservationStatus.PENDING.value)
        add_checkout(db, CAMERA_A, 3, MON_9, WED_9, returned=1)

        result = AvailabilityCalculator(db, custody).free_in_window(CAMERA_A, TUE_9, TUE_17)

        assert result.booked == 5
        assert result.free == 5
        assert not result.unknown

    def test_ignores_inactive_reservations_and_deleted_lines(self, db, custody):
        custody.totals[CAMERA_A] = 3
        add_reservation(db, CAMERA_A, 1, MON_9, WED_9, status=ReservationStatus.CANCELLED.value)
        add_reservation(db, CAMERA_A, 1, MON_9, WED_9, status=ReservationStatus.CHECKED_OUT.value)
        add_reservation(db, CAMERA_A, 1, MON_9, WED_9, deleted=True)

        result = AvailabilityCalculator(db, custody).free_in_window(CAMERA_A, TUE_9, TUE_17)

        assert result.booked == 0
        assert result.free == 3

    def test_closed_checkouts_do_not_count(self, db, custody):
        custody.totals[CAMERA_A] = 2
        add_checkout(db, CAMERA_A, 2, MON_9, WED_9, status=CheckoutStatus.CLOSED.value)

        assert AvailabilityCalculator(db, custody).free_in_window(CAMERA_A, TUE_9, TUE_17).free == 2

    def test_back_to_back_bookings_do_not_collide(self, db, custody):
        """Return at 09:00 frees the unit for a 09:00 pickup"""
        custody.totals[CAMERA_A] = 1
        add_reservation(db, CAMERA_A, 1, MON_9, TUE_9)

        assert AvailabilityCalculator(db, custody).free_in_window(CAMERA_A, TUE_9, WED_9).free == 1

    def test_external_failure_degrades_to_unknown(self, db, custody):
        """No retry, no exception: the preview reports unknown"""
        custody.fail_reads = True

        result = AvailabilityCalculator(db, custody).free_in_window(CAMERA_A, TUE_9, TUE_17)

        assert result.unknown
        assert result.total is None
        assert len(custody.calls_named("count")) == 1

    def test_inverted_window_rejected(self, db, custody):
        with pytest.raises(ValidationError):
            AvailabilityCalculator(db, custody).free_in_window(CAMERA_A, TUE_17, TUE_9)


class TestNowMode:
    """Point containment for reservations, live custody count for checkouts"""

    def test_uses_custody_cache_not_checkout_windows(self, db, custody):
        custody.totals[CAMERA_A] = 5
        # Local checkout window says it is out, but custody says otherwise
        add_checkout(db, CAMERA_A, 2, MON_9, WED_9)
        db.add(CustodyCacheEntry(asset_id=1, asset_tag="CAM-X", model_id=CAMERA_A))
        db.commit()

        result = AvailabilityCalculator(db, custody).free_now(CAMERA_A, now=TUE_9)

        assert result.mode == "now"
        assert result.booked == 1
        assert result.free == 4

    def test_reservation_start_inclusive_end_exclusive(self, db, custody):
        custody.totals[CAMERA_A] = 5
        add_reservation(db, CAMERA_A, 2, TUE_9, TUE_17)
        calculator = AvailabilityCalculator(db, custody)

        assert calculator.free_now(CAMERA_A, now=TUE_9).booked == 2
        assert calculator.free_now(CAMERA_A, now=TUE_17).booked == 0


class TestCommitRevalidation:
    """assert_available inside the write path"""

    def test_camera_a_shortfall_of_one(self, db, custody, ctx, open_all_week):
        """Camera A total=2, R1 holds both units Mon-Wed; 1 more on Tuesday is short by 1"""
        custody.totals[CAMERA_A] = 2
        service = BookingService(db, custody, resolver=OpeningHoursResolver(db, tz=UTC))

        service.create_reservation(ctx(now=datetime(2026, 3, 1)), ReservationCreate(
            start_datetime=MON_9,
            end_datetime=WED_9,
            items=[ItemRequest(model_id=CAMERA_A, quantity=2, model_name="Camera A")]
        ))

        with pytest.raises(AvailabilityConflict) as exc_info:
            service.create_reservation(ctx(email="dave@example.com", now=datetime(2026, 3, 1)), ReservationCreate(
                start_datetime=TUE_9,
                end_datetime=TUE_17,
                items=[ItemRequest(model_id=CAMERA_A, quantity=1, model_name="Camera A")]
            ))

        assert exc_info.value.shortfall == 1
        assert exc_info.value.free == 0
        assert exc_info.value.to_dict()["shortfall"] == 1
        assert db.query(Reservation).count() == 1

    def test_unknown_total_fails_commit(self, db, custody):
        """Preview may say unknown; a commit never books against an unknown total"""
        custody.fail_reads = True

        with pytest.raises(ExternalSystemError):
            AvailabilityCalculator(db, custody).assert_available({CAMERA_A: 1}, TUE_9, TUE_17)

    def test_exclude_own_reservation(self, db, custody):
        """A reservation being fulfilled does not compete with itself"""
        custody.totals[CAMERA_A] = 1
        reservation = add_reservation(db, CAMERA_A, 1, TUE_9, TUE_17)
        calculator = AvailabilityCalculator(db, custody)

        with pytest.raises(AvailabilityConflict):
            calculator.assert_available({CAMERA_A: 1}, TUE_9, TUE_17)
        calculator.assert_available({CAMERA_A: 1}, TUE_9, TUE_17, exclude_reservation_id=reservation.id)
