from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.reservation import Reservation
from ..schemas.booking import BookingContext, ReservationCreate, ReservationResponse
from ..services.booking_service import BookingService
from ..utils.dependencies import get_booking_context, get_custody_client, require_staff

router = APIRouter(prefix="/reservations", tags=["Reservations"])


def _ensure_owner_or_staff(reservation: Reservation, ctx: BookingContext):
    if ctx.is_staff or reservation.user_email.lower() == ctx.user_email.lower():
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Not your reservation"
    )


@router.post("", response_model=ReservationResponse, status_code=status.HTTP_201_CREATED)
def create_reservation(
    payload: ReservationCreate,
    db: Session = Depends(get_db),
    ctx: BookingContext = Depends(get_booking_context),
    client=Depends(get_custody_client)
):
    """
    Reserve quantities of models for a window.

    Rules violations -> 403 with every violation, shortfall -> 409,
    outside opening hours -> 422.
    """
    return BookingService(db, client).create_reservation(ctx, payload)


@router.get("/{reservation_id}", response_model=ReservationResponse)
def get_reservation(
    reservation_id: str,
    db: Session = Depends(get_db),
    ctx: BookingContext = Depends(get_booking_context)
):
    reservation = BookingService(db).get_reservation(reservation_id)
    _ensure_owner_or_staff(reservation, ctx)
    return reservation


@router.post("/{reservation_id}/confirm", response_model=ReservationResponse)
def confirm_reservation(
    reservation_id: str,
    db: Session = Depends(get_db),
    ctx: BookingContext = Depends(require_staff)
):
    return BookingService(db).confirm_reservation(reservation_id)


@router.post("/{reservation_id}/cancel", response_model=ReservationResponse)
def cancel_reservation(
    reservation_id: str,
    db: Session = Depends(get_db),
    ctx: BookingContext = Depends(get_booking_context)
):
    service = BookingService(db)
    _ensure_owner_or_staff(service.get_reservation(reservation_id), ctx)
    return service.cancel_reservation(reservation_id)


@router.delete("/{reservation_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_reservation(
    reservation_id: str,
    db: Session = Depends(get_db),
    ctx: BookingContext = Depends(require_staff)
):
    BookingService(db).delete_reservation(reservation_id)


@router.delete("/{reservation_id}/items/{item_id}", response_model=ReservationResponse)
def remove_reservation_item(
    reservation_id: str,
    item_id: int,
    db: Session = Depends(get_db),
    ctx: BookingContext = Depends(get_booking_context)
):
    service = BookingService(db)
    _ensure_owner_or_staff(service.get_reservation(reservation_id), ctx)
    return service.remove_reservation_item(reservation_id, item_id)
