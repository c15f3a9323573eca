from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, Index
from ..database import Base


class CustodyCacheEntry(Base):
    """
    Local read replica of Snipe-IT's current assignment state, one row per asset.

    Replaced wholesale by every sync run; never edited in place.
    """
    __tablename__ = "custody_cache"

    id = Column(Integer, primary_key=True, autoincrement=True)
    asset_id = Column(Integer, nullable=False, unique=True)
    asset_tag = Column(String(255), nullable=False)
    asset_name = Column(String(255), nullable=True)
    model_id = Column(Integer, nullable=True)
    model_name = Column(String(255), nullable=True)
    assigned_to_id = Column(Integer, nullable=True)
    assigned_to_name = Column(String(255), nullable=True)
    assigned_to_email = Column(String(255), nullable=True)
    assigned_to_username = Column(String(255), nullable=True)
    status_label = Column(String(255), nullable=True)
    last_checkout = Column(DateTime, nullable=True)     # UTC
    expected_checkin = Column(DateTime, nullable=True)  # UTC
    updated_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_custody_cache_model", "model_id"),
        Index("ix_custody_cache_assigned", "assigned_to_id"),
        Index("ix_custody_cache_tag", "asset_tag"),
    )

    def __repr__(self):
        return f"<CustodyCacheEntry {self.asset_tag} -> {self.assigned_to_email}>"
