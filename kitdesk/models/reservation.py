import uuid
from datetime import datetime
from sqlalchemy import Column, String, Integer, ForeignKey, DateTime, Index, Text
from sqlalchemy.orm import relationship
from ..database import Base
import enum


class ReservationStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    MISSED = "missed"
    FULFILLED = "fulfilled"      # staff started the checkout
    CHECKED_OUT = "checked_out"  # assets assigned in Snipe-IT
    COMPLETED = "completed"      # every asset returned


# Statuses that hold units against availability
ACTIVE_RESERVATION_STATUSES = (ReservationStatus.PENDING.value, ReservationStatus.CONFIRMED.value)


class Reservation(Base):
    __tablename__ = "reservations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_name = Column(String(255), nullable=False)
    user_email = Column(String(255), nullable=False, index=True)
    external_user_id = Column(Integer, nullable=True)  # Snipe-IT user id
    start_datetime = Column(DateTime, nullable=False)  # UTC
    end_datetime = Column(DateTime, nullable=False)    # UTC
    status = Column(String(30), nullable=False, default=ReservationStatus.PENDING.value)

    # Comma separated asset tags handed out at checkout, read by the sync completion sweep
    asset_tags_cache = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = relationship(
        "ReservationItem",
        back_populates="reservation",
        cascade="all, delete-orphan",
        order_by="ReservationItem.id"
    )
    checkouts = relationship("Checkout", back_populates="reservation")

    __table_args__ = (
        Index("ix_reservation_window", "start_datetime", "end_datetime"),
        Index("ix_reservation_status", "status"),
    )

    @property
    def active_items(self):
        return [item for item in self.items if item.deleted_at is None]

    @property
    def asset_tags(self):
        if not self.asset_tags_cache:
            return []
        return [t.strip() for t in self.asset_tags_cache.split(",") if t.strip()]

    def __repr__(self):
        return f"<Reservation {self.id[:8]} {self.user_email} {self.status}>"


class ReservationItem(Base):
    __tablename__ = "reservation_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reservation_id = Column(String(36), ForeignKey("reservations.id", ondelete="CASCADE"), nullable=False)
    model_id = Column(Integer, nullable=False)
    model_name_cache = Column(String(255), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)

    # Soft Delete
    deleted_at = Column(DateTime, nullable=True)

    reservation = relationship("Reservation", back_populates="items")

    __table_args__ = (
        Index("ix_reservation_item_model", "model_id"),
        Index("ix_reservation_item_reservation", "reservation_id"),
    )

    def __repr__(self):
        return f"<ReservationItem model={self.model_id} x{self.quantity}>"
