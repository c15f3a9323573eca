from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import Optional
from pydantic import BaseModel, Field

from ..database import get_db
from ..schemas.booking import BookingContext, CheckoutCreate, CheckoutResponse, RenewRequest, UserGroup
from ..services.booking_service import BookingService
from ..utils.dependencies import get_custody_client, require_staff

router = APIRouter(prefix="/checkouts", tags=["Checkouts"])


class CheckinRequest(BaseModel):
    note: Optional[str] = Field(None, max_length=1000)


def borrower_context(
    staff: BookingContext,
    payload: CheckoutCreate,
    service: BookingService,
    client
) -> BookingContext:
    """
    Rules run against the borrower, not the staff member at the desk.

    Borrower = explicit payload user, else the reservation's user, else the caller.
    Staff role and bypass flags carry over from the caller.
    """
    email, name, external_id = payload.user_email, payload.user_name, payload.external_user_id
    if not email and payload.reservation_id:
        reservation = service.get_reservation(payload.reservation_id)
        email = reservation.user_email
        name = reservation.user_name
        external_id = reservation.external_user_id
    if not email:
        return staff

    groups = []
    if external_id and client is not None:
        groups = [UserGroup(**g) for g in client.get_user_groups(external_id)]

    return BookingContext(
        user_name=name or email,
        user_email=email,
        external_user_id=external_id,
        groups=groups,
        is_staff=staff.is_staff,
        is_admin=staff.is_admin,
        bypass_capacity=staff.bypass_capacity,
        bypass_closed=staff.bypass_closed,
        bypass_rules=staff.bypass_rules,
        now=staff.now
    )


@router.post("", response_model=CheckoutResponse, status_code=201)
def create_checkout(
    payload: CheckoutCreate,
    db: Session = Depends(get_db),
    staff: BookingContext = Depends(require_staff),
    client=Depends(get_custody_client)
):
    service = BookingService(db, client)
    ctx = borrower_context(staff, payload, service, client)
    return service.create_checkout(ctx, payload)


@router.get("/{checkout_id}", response_model=CheckoutResponse)
def get_checkout(
    checkout_id: str,
    db: Session = Depends(get_db),
    staff: BookingContext = Depends(require_staff)
):
    return BookingService(db).get_checkout(checkout_id)


@router.post("/{checkout_id}/renew", response_model=CheckoutResponse)
def renew_checkout(
    checkout_id: str,
    payload: RenewRequest,
    db: Session = Depends(get_db),
    staff: BookingContext = Depends(require_staff),
    client=Depends(get_custody_client)
):
    """Extend the expected return of the whole checkout chain"""
    service = BookingService(db, client)
    checkout = service.get_checkout(checkout_id)

    groups = []
    if checkout.external_user_id and client is not None:
        groups = [UserGroup(**g) for g in client.get_user_groups(checkout.external_user_id)]
    ctx = BookingContext(
        user_name=checkout.user_name,
        user_email=checkout.user_email,
        external_user_id=checkout.external_user_id,
        groups=groups,
        is_staff=staff.is_staff,
        is_admin=staff.is_admin,
        bypass_rules=staff.bypass_rules
    )
    return service.renew_checkout(ctx, checkout_id, payload.new_end_datetime)


@router.post("/{checkout_id}/items/{item_id}/checkin", response_model=CheckoutResponse)
def check_in_item(
    checkout_id: str,
    item_id: int,
    payload: Optional[CheckinRequest] = None,
    db: Session = Depends(get_db),
    staff: BookingContext = Depends(require_staff),
    client=Depends(get_custody_client)
):
    note = payload.note if payload and payload.note else ""
    return BookingService(db, client).check_in_item(checkout_id, item_id, note=note)
