"""
Tests for the Booking Service (ledger write path)

Tests cover:
- Reservation create/cancel/delete/soft-removing a line
- Missed sweep
- Staff checkout: reservation fulfilled -> checked_out, Snipe-IT assignment, chain append
- Renewal across a checkout chain
- Check-in, status derivation and reservation completion
- Chain integrity (self-link, cycles)
"""

import pytest
from datetime import datetime, timedelta

from kitdesk.exceptions import (
    AuthorizationDenied,
    AvailabilityConflict,
    ConsistencyDivergence,
    ExternalSystemError,
    NotFound,
    ValidationError
)
from kitdesk.models.checkout import Checkout, CheckoutItem, CheckoutStatus
from kitdesk.models.reservation import Reservation, ReservationItem, ReservationStatus
from kitdesk.schemas.booking import AssetSelection, CheckoutCreate, ItemRequest, ReservationCreate
from kitdesk.services.booking_service import BookingService, chain_root, derive_checkout_status, link_to_parent
from kitdesk.services.checkout_rules import CheckoutRulesEngine
from kitdesk.services.opening_hours import OpeningHoursResolver

from conftest import UTC

TRIPOD = 7
CAMERA = 8
NOW = datetime(2026, 3, 1, 12, 0)
START = datetime(2026, 3, 2, 9, 0)
END = datetime(2026, 3, 4, 9, 0)


@pytest.fixture
def service(db, custody, open_all_week):
    custody.totals.update({TRIPOD: 3, CAMERA: 2})
    return BookingService(db, custody, resolver=OpeningHoursResolver(db, tz=UTC))


@pytest.fixture
def chained_service(db, custody, open_all_week):
    custody.totals.update({TRIPOD: 3, CAMERA: 2})
    rules = CheckoutRulesEngine(db, custody, limits_enabled=False, single_active_checkout=True, max_advance_hours=0)
    return BookingService(db, custody, rules=rules, resolver=OpeningHoursResolver(db, tz=UTC))


def reserve(service, ctx, items=None, start=START, end=END):
    return service.create_reservation(ctx, ReservationCreate(
        start_datetime=start,
        end_datetime=end,
        items=items or [ItemRequest(model_id=TRIPOD, quantity=1), ItemRequest(model_id=CAMERA, quantity=1)]
    ))


def assets(*pairs):
    return [
        AssetSelection(asset_id=asset_id, asset_tag=f"TAG-{asset_id}", model_id=model_id)
        for asset_id, model_id in pairs
    ]


class TestReservations:
    """Reservation lifecycle"""

    def test_create(self, service, ctx):
        reservation = reserve(service, ctx(now=NOW))

        assert reservation.status == ReservationStatus.PENDING.value
        assert len(reservation.items) == 2
        assert reservation.user_email == "alice@example.com"

    def test_duplicate_lines_merged(self, service, ctx):
        reservation = reserve(service, ctx(now=NOW), items=[
            ItemRequest(model_id=TRIPOD, quantity=1),
            ItemRequest(model_id=TRIPOD, quantity=2),
        ])

        assert [(i.model_id, i.quantity) for i in reservation.items] == [(TRIPOD, 3)]

    def test_rules_denial_writes_nothing(self, service, ctx, db):
        with pytest.raises(AuthorizationDenied):
            reserve(service, ctx(groups=[], now=NOW))
        assert db.query(Reservation).count() == 0

    def test_outside_opening_hours(self, db, custody, ctx):
        """No opening hours configured: every day is closed for non-admins"""
        custody.totals[TRIPOD] = 3
        service = BookingService(db, custody, resolver=OpeningHoursResolver(db, tz=UTC))

        with pytest.raises(ValidationError):
            reserve(service, ctx(now=NOW), items=[ItemRequest(model_id=TRIPOD)])

        admin = reserve(service, ctx(now=NOW, is_admin=True), items=[ItemRequest(model_id=TRIPOD)])
        assert admin.status == ReservationStatus.PENDING.value

    def test_cancel(self, service, ctx):
        reservation = reserve(service, ctx(now=NOW))

        assert service.cancel_reservation(reservation.id).status == ReservationStatus.CANCELLED.value
        with pytest.raises(ValidationError):
            service.cancel_reservation(reservation.id)

    def test_confirm(self, service, ctx):
        reservation = reserve(service, ctx(now=NOW))
        assert service.confirm_reservation(reservation.id).status == ReservationStatus.CONFIRMED.value

    def test_delete_allowed_status(self, service, ctx, db):
        reservation = reserve(service, ctx(now=NOW))

        service.delete_reservation(reservation.id)

        assert db.query(Reservation).count() == 0
        assert db.query(ReservationItem).count() == 0

    def test_delete_refused_once_checked_out(self, service, ctx, db):
        reservation = reserve(service, ctx(now=NOW))
        reservation.status = ReservationStatus.CHECKED_OUT.value
        db.commit()

        with pytest.raises(ValidationError):
            service.delete_reservation(reservation.id)

    def test_unknown_reservation(self, service):
        with pytest.raises(NotFound):
            service.get_reservation("missing")

    def test_soft_remove_item(self, service, ctx):
        reservation = reserve(service, ctx(now=NOW))
        tripod_line = next(i for i in reservation.items if i.model_id == TRIPOD)

        updated = service.remove_reservation_item(reservation.id, tripod_line.id)

        assert [i.model_id for i in updated.active_items] == [CAMERA]
        assert tripod_line.deleted_at is not None
        assert len(updated.items) == 2

    def test_last_item_cannot_be_removed(self, service, ctx):
        reservation = reserve(service, ctx(now=NOW), items=[ItemRequest(model_id=TRIPOD)])

        with pytest.raises(ValidationError):
            service.remove_reservation_item(reservation.id, reservation.items[0].id)

    def test_removed_line_frees_units(self, service, ctx):
        reservation = reserve(service, ctx(now=NOW), items=[
            ItemRequest(model_id=CAMERA, quantity=2),
            ItemRequest(model_id=TRIPOD, quantity=1),
        ])
        camera_line = next(i for i in reservation.items if i.model_id == CAMERA)
        service.remove_reservation_item(reservation.id, camera_line.id)

        assert service.availability.free_in_window(CAMERA, START, END).free == 2


class TestMissedSweep:
    """pending/confirmed past start + cutoff -> missed"""

    def test_marks_only_overdue(self, service, ctx, db):
        overdue = reserve(service, ctx(now=NOW))
        later = reserve(service, ctx(now=NOW), start=START + timedelta(hours=2), end=END)

        count = service.mark_missed(now=START + timedelta(minutes=61), cutoff_minutes=60)

        db.refresh(overdue)
        db.refresh(later)
        assert count == 1
        assert overdue.status == ReservationStatus.MISSED.value
        assert later.status == ReservationStatus.PENDING.value

    def test_exactly_at_cutoff_not_missed(self, service, ctx):
        reserve(service, ctx(now=NOW))
        assert service.mark_missed(now=START + timedelta(minutes=60), cutoff_minutes=60) == 0

    def test_cutoff_clamped_to_one_minute(self, service, ctx):
        reserve(service, ctx(now=NOW))
        assert service.mark_missed(now=START + timedelta(seconds=30), cutoff_minutes=0) == 0
        assert service.mark_missed(now=START + timedelta(minutes=2), cutoff_minutes=0) == 1


class TestCheckout:
    """Staff checkout of concrete assets"""

    def test_checkout_from_reservation(self, service, ctx, custody, db):
        reservation = reserve(service, ctx(now=NOW))

        checkout = service.create_checkout(ctx(now=NOW), CheckoutCreate(
            reservation_id=reservation.id,
            start_datetime=START,
            end_datetime=END,
            assets=assets((501, TRIPOD), (601, CAMERA))
        ))

        db.refresh(reservation)
        assert checkout.status == CheckoutStatus.OPEN.value
        assert checkout.reservation_id == reservation.id
        assert sorted(i.asset_tag for i in checkout.items) == ["TAG-501", "TAG-601"]
        assert reservation.status == ReservationStatus.CHECKED_OUT.value
        assert sorted(reservation.asset_tags) == ["TAG-501", "TAG-601"]
        assert [c[1:3] for c in custody.calls_named("checkout")] == [(501, 10), (601, 10)]

    def test_asset_already_out_rejected(self, service, ctx):
        service.create_checkout(ctx(now=NOW), CheckoutCreate(
            start_datetime=START, end_datetime=END, assets=assets((501, TRIPOD))
        ))

        with pytest.raises(ValidationError):
            service.create_checkout(ctx(email="bob@example.com", external_user_id=11, now=NOW), CheckoutCreate(
                start_datetime=START, end_datetime=END, assets=assets((501, TRIPOD))
            ))

    def test_snipeit_failure_leaves_fulfilled_reservation(self, service, ctx, custody, db):
        """Interrupted after the reservation commit: surfaced later by diagnose (c)"""
        reservation = reserve(service, ctx(now=NOW))
        custody.fail_writes = True

        with pytest.raises(ExternalSystemError):
            service.create_checkout(ctx(now=NOW), CheckoutCreate(
                reservation_id=reservation.id,
                start_datetime=START, end_datetime=END,
                assets=assets((501, TRIPOD))
            ))

        db.refresh(reservation)
        assert reservation.status == ReservationStatus.FULFILLED.value
        assert db.query(Checkout).count() == 0

    def test_external_user_looked_up_by_email(self, service, ctx, custody):
        custody.users_by_email["alice@example.com"] = {"id": 42}

        checkout = service.create_checkout(ctx(external_user_id=None, now=NOW), CheckoutCreate(
            start_datetime=START, end_datetime=END, assets=assets((501, TRIPOD))
        ))

        assert checkout.external_user_id == 42

    def test_append_to_active_chain(self, chained_service, ctx):
        root = chained_service.create_checkout(ctx(now=NOW), CheckoutCreate(
            start_datetime=START, end_datetime=END, assets=assets((501, TRIPOD))
        ))

        with pytest.raises(AuthorizationDenied):
            chained_service.create_checkout(ctx(now=NOW), CheckoutCreate(
                start_datetime=START + timedelta(hours=1), end_datetime=END + timedelta(days=3),
                assets=assets((601, CAMERA))
            ))

        child = chained_service.create_checkout(ctx(now=NOW), CheckoutCreate(
            start_datetime=START + timedelta(hours=1), end_datetime=END + timedelta(days=3),
            assets=assets((601, CAMERA)), append_to_active=True
        ))

        assert child.parent_checkout_id == root.id
        assert child.end_datetime == root.end_datetime


class TestConcurrentWriters:
    """A second session commits between the first writer's check and its insert"""

    @pytest.fixture
    def rival(self, session_factory, custody):
        session = session_factory()
        yield BookingService(session, custody, resolver=OpeningHoursResolver(session, tz=UTC))
        session.close()

    def bob(self, ctx):
        return ctx(email="bob@example.com", name="Bob", external_user_id=11, now=NOW)

    def test_last_unit_reserved_after_preview(self, service, rival, ctx, custody, db):
        custody.totals[CAMERA] = 1
        assert service.availability.free_in_window(CAMERA, START, END).free == 1

        reserve(rival, self.bob(ctx), items=[ItemRequest(model_id=CAMERA)])

        with pytest.raises(AvailabilityConflict) as exc_info:
            reserve(service, ctx(now=NOW), items=[ItemRequest(model_id=CAMERA)])

        assert exc_info.value.shortfall == 1
        assert db.query(Reservation).count() == 1

    def test_reservation_committed_during_snipeit_assignment(self, service, rival, ctx, custody, db, monkeypatch):
        custody.totals[CAMERA] = 1
        assign = custody.checkout_asset

        def assign_while_rival_reserves(asset_id, user_id, expected_checkin=None, note=""):
            assign(asset_id, user_id, expected_checkin, note)
            reserve(rival, self.bob(ctx), items=[ItemRequest(model_id=CAMERA)])

        monkeypatch.setattr(custody, "checkout_asset", assign_while_rival_reserves)

        with pytest.raises(AvailabilityConflict) as exc_info:
            service.create_checkout(ctx(now=NOW), CheckoutCreate(
                start_datetime=START, end_datetime=END, assets=assets((601, CAMERA))
            ))

        assert exc_info.value.shortfall == 1
        assert db.query(Checkout).count() == 0
        assert service.availability.booked_in_window(CAMERA, START, END) == 1
        # The Snipe-IT assignment is left behind for diagnose/repair
        assert [c[1] for c in custody.calls_named("checkout")] == [601]

    def test_checkout_committed_during_snipeit_assignment(self, service, rival, ctx, custody, db, monkeypatch):
        custody.totals[CAMERA] = 1
        assign = custody.checkout_asset

        def assign_while_rival_checks_out(asset_id, user_id, expected_checkin=None, note=""):
            assign(asset_id, user_id, expected_checkin, note)
            if asset_id == 601:
                rival.create_checkout(self.bob(ctx), CheckoutCreate(
                    start_datetime=START, end_datetime=END, assets=assets((602, CAMERA))
                ))

        monkeypatch.setattr(custody, "checkout_asset", assign_while_rival_checks_out)

        with pytest.raises(AvailabilityConflict) as exc_info:
            service.create_checkout(ctx(now=NOW), CheckoutCreate(
                start_datetime=START, end_datetime=END, assets=assets((601, CAMERA))
            ))

        assert exc_info.value.shortfall == 1
        assert [c.user_email for c in db.query(Checkout).all()] == ["bob@example.com"]
        assert service.availability.booked_in_window(CAMERA, START, END) == 1

    def test_same_asset_checked_out_during_snipeit_assignment(self, service, rival, ctx, custody, db, monkeypatch):
        assign = custody.checkout_asset
        raced = []

        def assign_while_rival_takes_asset(asset_id, user_id, expected_checkin=None, note=""):
            assign(asset_id, user_id, expected_checkin, note)
            if not raced:
                raced.append(asset_id)
                rival.create_checkout(self.bob(ctx), CheckoutCreate(
                    start_datetime=START, end_datetime=END, assets=assets((601, CAMERA))
                ))

        monkeypatch.setattr(custody, "checkout_asset", assign_while_rival_takes_asset)

        with pytest.raises(ValidationError):
            service.create_checkout(ctx(now=NOW), CheckoutCreate(
                start_datetime=START, end_datetime=END, assets=assets((601, CAMERA))
            ))

        assert [c.user_email for c in db.query(Checkout).all()] == ["bob@example.com"]


class TestRenewal:
    """Renewal moves the whole chain's expected return"""

    def test_renew_updates_chain_and_snipeit(self, chained_service, ctx, custody, db):
        root = chained_service.create_checkout(ctx(now=NOW), CheckoutCreate(
            start_datetime=START, end_datetime=END, assets=assets((501, TRIPOD))
        ))
        child = chained_service.create_checkout(ctx(now=NOW), CheckoutCreate(
            start_datetime=START + timedelta(hours=1), end_datetime=END,
            assets=assets((601, CAMERA)), append_to_active=True
        ))
        new_end = END + timedelta(days=2)

        chained_service.renew_checkout(ctx(now=NOW), child.id, new_end)

        db.refresh(root)
        db.refresh(child)
        assert root.end_datetime == new_end
        assert child.end_datetime == new_end
        assert sorted(c[1] for c in custody.calls_named("update_expected_checkin")) == [501, 601]

    def test_renewal_blocked_by_later_reservation(self, service, ctx, custody):
        checkout = service.create_checkout(ctx(now=NOW), CheckoutCreate(
            start_datetime=START, end_datetime=END, assets=assets((601, CAMERA), (602, CAMERA))
        ))
        reserve(service, ctx(email="bob@example.com", external_user_id=11, now=NOW),
                items=[ItemRequest(model_id=CAMERA)], start=END + timedelta(hours=2), end=END + timedelta(days=1))

        with pytest.raises(AvailabilityConflict):
            service.renew_checkout(ctx(now=NOW), checkout.id, END + timedelta(days=2))

        assert custody.calls_named("update_expected_checkin") == []

    def test_closed_checkout_cannot_renew(self, service, ctx):
        checkout = service.create_checkout(ctx(now=NOW), CheckoutCreate(
            start_datetime=START, end_datetime=END, assets=assets((501, TRIPOD))
        ))
        service.check_in_item(checkout.id, checkout.items[0].id)

        with pytest.raises(ValidationError):
            service.renew_checkout(ctx(now=NOW), checkout.id, END + timedelta(days=1))


class TestCheckIn:
    """Status is derived from items; reservations complete when everything is back"""

    def test_partial_then_closed_completes_reservation(self, service, ctx, custody, db):
        reservation = reserve(service, ctx(now=NOW))
        checkout = service.create_checkout(ctx(now=NOW), CheckoutCreate(
            reservation_id=reservation.id,
            start_datetime=START, end_datetime=END,
            assets=assets((501, TRIPOD), (601, CAMERA))
        ))
        first, second = checkout.items

        assert service.check_in_item(checkout.id, first.id).status == CheckoutStatus.PARTIAL.value
        db.refresh(reservation)
        assert reservation.status == ReservationStatus.CHECKED_OUT.value

        assert service.check_in_item(checkout.id, second.id).status == CheckoutStatus.CLOSED.value
        db.refresh(reservation)
        assert reservation.status == ReservationStatus.COMPLETED.value
        assert [c[1] for c in custody.calls_named("checkin")] == [501, 601]

    def test_double_checkin_rejected(self, service, ctx):
        checkout = service.create_checkout(ctx(now=NOW), CheckoutCreate(
            start_datetime=START, end_datetime=END, assets=assets((501, TRIPOD))
        ))
        item_id = checkout.items[0].id
        service.check_in_item(checkout.id, item_id)

        with pytest.raises(ValidationError):
            service.check_in_item(checkout.id, item_id)

    def test_status_derivation(self):
        out = CheckoutItem(asset_id=1, asset_tag="A", model_id=1, checked_out_at=NOW)
        back = CheckoutItem(asset_id=2, asset_tag="B", model_id=1, checked_out_at=NOW, checked_in_at=NOW)

        assert derive_checkout_status([]) == CheckoutStatus.OPEN
        assert derive_checkout_status([out]) == CheckoutStatus.OPEN
        assert derive_checkout_status([out, back]) == CheckoutStatus.PARTIAL
        assert derive_checkout_status([back]) == CheckoutStatus.CLOSED


class TestChainIntegrity:
    """Parent links never form a cycle"""

    def _checkout(self, db):
        checkout = Checkout(user_name="A", user_email="a@example.com", start_datetime=START, end_datetime=END)
        db.add(checkout)
        db.commit()
        return checkout

    def test_self_link_rejected(self, db):
        checkout = self._checkout(db)
        with pytest.raises(ValidationError):
            link_to_parent(db, checkout, checkout.id)

    def test_transitive_cycle_rejected(self, db):
        a, b, c = self._checkout(db), self._checkout(db), self._checkout(db)
        link_to_parent(db, b, a.id)
        link_to_parent(db, c, b.id)
        db.commit()

        with pytest.raises(ValidationError):
            link_to_parent(db, a, c.id)

    def test_existing_cycle_detected(self, db):
        a, b = self._checkout(db), self._checkout(db)
        a.parent_checkout_id = b.id
        b.parent_checkout_id = a.id
        db.commit()

        with pytest.raises(ConsistencyDivergence):
            chain_root(db, a)

    def test_root_of_chain(self, db):
        a, b = self._checkout(db), self._checkout(db)
        link_to_parent(db, b, a.id)
        db.commit()

        assert chain_root(db, b).id == a.id
