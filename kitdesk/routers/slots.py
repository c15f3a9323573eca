from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import date, datetime

from ..database import get_db
from ..schemas.booking import BookingContext
from ..schemas.slots import DayHoursResponse, MonthResponse, NextOpenResponse, SlotResponse
from ..services.slot_scheduler import SlotScheduler
from ..utils.datetime_helpers import utcnow
from ..utils.dependencies import get_optional_context

router = APIRouter(prefix="/slots", tags=["Slots"])


@router.get("/month", response_model=MonthResponse)
def get_month(
    year: int = Query(..., ge=2000, le=2100),
    month: int = Query(..., ge=1, le=12),
    db: Session = Depends(get_db),
    ctx: Optional[BookingContext] = Depends(get_optional_context)
):
    """Resolved opening hours for every day of a month"""
    scheduler = SlotScheduler(db)
    days = scheduler.month_hours(year, month, ctx)
    return MonthResponse(
        year=year,
        month=month,
        days={day.isoformat(): DayHoursResponse(**hours.to_dict()) for day, hours in days.items()}
    )


@router.get("/day", response_model=List[SlotResponse])
def get_day(
    day: date = Query(..., alias="date"),
    db: Session = Depends(get_db),
    ctx: Optional[BookingContext] = Depends(get_optional_context)
):
    scheduler = SlotScheduler(db)
    return [SlotResponse(**slot.to_dict()) for slot in scheduler.build_day(day, ctx)]


@router.get("/next-open", response_model=NextOpenResponse)
def get_next_open(
    at: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
    ctx: Optional[BookingContext] = Depends(get_optional_context)
):
    """Suggested pickup (next open slot) and return (next open slot 23h later)"""
    scheduler = SlotScheduler(db)
    window = scheduler.suggest_window(at or utcnow(), ctx)
    return NextOpenResponse(**window)
