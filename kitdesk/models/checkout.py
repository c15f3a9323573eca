import uuid
from datetime import datetime
from sqlalchemy import Column, String, Integer, ForeignKey, DateTime, Index, CheckConstraint
from sqlalchemy.orm import relationship
from ..database import Base
import enum


class CheckoutStatus(str, enum.Enum):
    OPEN = "open"        # nothing returned yet
    PARTIAL = "partial"  # some items returned
    CLOSED = "closed"    # everything returned


ACTIVE_CHECKOUT_STATUSES = (CheckoutStatus.OPEN.value, CheckoutStatus.PARTIAL.value)


class Checkout(Base):
    __tablename__ = "checkouts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    reservation_id = Column(String(36), ForeignKey("reservations.id", ondelete="SET NULL"), nullable=True)

    # Chain link for single-active-checkout appends; always points at the chain root
    parent_checkout_id = Column(String(36), ForeignKey("checkouts.id", ondelete="SET NULL"), nullable=True)

    user_name = Column(String(255), nullable=False)
    user_email = Column(String(255), nullable=False, index=True)
    external_user_id = Column(Integer, nullable=True)
    start_datetime = Column(DateTime, nullable=False)  # UTC
    end_datetime = Column(DateTime, nullable=False)    # UTC, expected return
    status = Column(String(20), nullable=False, default=CheckoutStatus.OPEN.value)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    reservation = relationship("Reservation", back_populates="checkouts")
    parent = relationship("Checkout", remote_side=[id], backref="children")
    items = relationship(
        "CheckoutItem",
        back_populates="checkout",
        cascade="all, delete-orphan",
        order_by="CheckoutItem.id"
    )

    __table_args__ = (
        CheckConstraint("parent_checkout_id IS NULL OR parent_checkout_id <> id", name="ck_checkout_not_own_parent"),
        Index("ix_checkout_status", "status"),
        Index("ix_checkout_external_user", "external_user_id"),
        Index("ix_checkout_window", "start_datetime", "end_datetime"),
    )

    @property
    def is_root(self) -> bool:
        return self.parent_checkout_id is None

    def __repr__(self):
        return f"<Checkout {self.id[:8]} {self.user_email} {self.status}>"


class CheckoutItem(Base):
    __tablename__ = "checkout_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    checkout_id = Column(String(36), ForeignKey("checkouts.id", ondelete="CASCADE"), nullable=False)
    asset_id = Column(Integer, nullable=False)
    asset_tag = Column(String(255), nullable=False)
    asset_name = Column(String(255), nullable=True)
    model_id = Column(Integer, nullable=False)
    model_name = Column(String(255), nullable=True)
    checked_out_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    checked_in_at = Column(DateTime, nullable=True)  # NULL = still out

    checkout = relationship("Checkout", back_populates="items")

    __table_args__ = (
        Index("ix_checkout_item_asset", "asset_id"),
        Index("ix_checkout_item_model", "model_id"),
        Index("ix_checkout_item_checkout", "checkout_id"),
    )

    @property
    def is_out(self) -> bool:
        return self.checked_in_at is None

    def __repr__(self):
        return f"<CheckoutItem {self.asset_tag} out={self.is_out}>"
