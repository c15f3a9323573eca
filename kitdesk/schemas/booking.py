from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Dict
from datetime import datetime

from ..models.reservation import ReservationStatus
from ..models.checkout import CheckoutStatus
from ..utils.datetime_helpers import to_utc_naive


class UserGroup(BaseModel):
    id: int
    name: str


class BookingContext(BaseModel):
    """
    Everything an engine call needs to know about who is acting.

    Built once per request and passed explicitly into every engine call.
    """
    user_name: str = Field(..., min_length=1, max_length=255)
    user_email: str = Field(..., min_length=3, max_length=255)
    external_user_id: Optional[int] = None
    groups: List[UserGroup] = Field(default_factory=list)

    is_staff: bool = False
    is_admin: bool = False

    # Bypass flags (only honoured when the matching role is present)
    bypass_capacity: bool = False
    bypass_closed: bool = False
    bypass_rules: bool = False

    # Evaluation instant (naive UTC); None = now
    now: Optional[datetime] = None

    @model_validator(mode='after')
    def restrict_bypass_flags(self):
        if not (self.is_staff or self.is_admin):
            self.bypass_capacity = False
            self.bypass_rules = False
        if not self.is_admin:
            self.bypass_closed = False
        return self

    @property
    def group_ids(self) -> List[int]:
        return [g.id for g in self.groups]

    @property
    def group_names(self) -> List[str]:
        return [g.name for g in self.groups]


class ItemRequest(BaseModel):
    model_id: int = Field(..., gt=0)
    quantity: int = Field(1, ge=1, le=100)
    model_name: Optional[str] = Field(None, max_length=255)


class WindowMixin(BaseModel):
    start_datetime: datetime
    end_datetime: datetime

    @field_validator('start_datetime', 'end_datetime')
    @classmethod
    def normalize_to_utc(cls, v: datetime) -> datetime:
        """Offset-aware input becomes naive UTC so mixed payloads compare"""
        return to_utc_naive(v)

    @model_validator(mode='after')
    def validate_window(self):
        if self.end_datetime <= self.start_datetime:
            raise ValueError("end_datetime must be after start_datetime")
        return self


class ReservationCreate(WindowMixin):
    items: List[ItemRequest] = Field(..., min_length=1)
    # Under single-active-checkout: keep the active checkout's return time instead of end_datetime
    append_to_active: bool = False

    @field_validator('items')
    @classmethod
    def merge_duplicate_models(cls, v: List[ItemRequest]) -> List[ItemRequest]:
        """Collapse repeated model lines into a single line per model"""
        merged: Dict[int, ItemRequest] = {}
        for item in v:
            if item.model_id in merged:
                existing = merged[item.model_id]
                merged[item.model_id] = ItemRequest(
                    model_id=item.model_id,
                    quantity=existing.quantity + item.quantity,
                    model_name=existing.model_name or item.model_name
                )
            else:
                merged[item.model_id] = item
        return list(merged.values())


class AssetSelection(BaseModel):
    asset_id: int = Field(..., gt=0)
    asset_tag: str = Field(..., min_length=1, max_length=255)
    asset_name: Optional[str] = None
    model_id: int = Field(..., gt=0)
    model_name: Optional[str] = None


class CheckoutCreate(WindowMixin):
    """Staff checkout of concrete assets, optionally fulfilling a reservation"""
    reservation_id: Optional[str] = None
    # Borrower; defaults to the reservation's user, else the caller
    user_email: Optional[str] = Field(None, min_length=3, max_length=255)
    user_name: Optional[str] = Field(None, max_length=255)
    external_user_id: Optional[int] = Field(None, gt=0)
    assets: List[AssetSelection] = Field(..., min_length=1)
    append_to_active: bool = False
    note: Optional[str] = Field(None, max_length=1000)

    @field_validator('assets')
    @classmethod
    def unique_assets(cls, v: List[AssetSelection]) -> List[AssetSelection]:
        ids = [a.asset_id for a in v]
        if len(ids) != len(set(ids)):
            raise ValueError("each asset may only be checked out once")
        return v


class RenewRequest(BaseModel):
    new_end_datetime: datetime


class Violation(BaseModel):
    code: str
    message: str
    model_id: Optional[int] = None
    missing: List[str] = Field(default_factory=list)


class ReservationItemResponse(BaseModel):
    id: int
    model_id: int
    model_name_cache: Optional[str] = None
    quantity: int
    deleted_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ReservationResponse(BaseModel):
    id: str
    user_name: str
    user_email: str
    external_user_id: Optional[int] = None
    start_datetime: datetime
    end_datetime: datetime
    status: ReservationStatus
    created_at: Optional[datetime] = None
    items: List[ReservationItemResponse] = []

    class Config:
        from_attributes = True


class CheckoutItemResponse(BaseModel):
    id: int
    asset_id: int
    asset_tag: str
    asset_name: Optional[str] = None
    model_id: int
    model_name: Optional[str] = None
    checked_out_at: datetime
    checked_in_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CheckoutResponse(BaseModel):
    id: str
    reservation_id: Optional[str] = None
    parent_checkout_id: Optional[str] = None
    user_name: str
    user_email: str
    external_user_id: Optional[int] = None
    start_datetime: datetime
    end_datetime: datetime
    status: CheckoutStatus
    items: List[CheckoutItemResponse] = []

    class Config:
        from_attributes = True
