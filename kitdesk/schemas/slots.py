from pydantic import BaseModel
from typing import Optional, Dict
from datetime import datetime


class DayHoursResponse(BaseModel):
    is_closed: bool
    open_time: Optional[str] = None   # "HH:MM" facility-local
    close_time: Optional[str] = None


class SlotResponse(BaseModel):
    time: datetime                    # facility-local
    capacity: int                     # 0 = unlimited
    booked: int
    remaining: Optional[int] = None   # None = unlimited
    cooldown: bool = False


class MonthResponse(BaseModel):
    year: int
    month: int
    days: Dict[str, DayHoursResponse]


class NextOpenResponse(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class AvailabilityResponse(BaseModel):
    model_id: int
    total: Optional[int] = None
    booked: int
    free: Optional[int] = None        # None = unknown
    unknown: bool
    mode: str                         # "window" | "now"
