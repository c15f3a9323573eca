from datetime import datetime
from sqlalchemy import Column, String, Integer, Date, Time, DateTime, Boolean, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from ..database import Base
import enum


class OverrideKind(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"


class OpeningHoursDefault(Base):
    """Default weekly schedule, one row per weekday (Mon=1..Sun=7)"""
    __tablename__ = "opening_hours_default"

    id = Column(Integer, primary_key=True, autoincrement=True)
    weekday = Column(Integer, nullable=False, unique=True)
    open_time = Column(Time, nullable=True)
    close_time = Column(Time, nullable=True)
    is_closed = Column(Boolean, default=False, nullable=False)

    def __repr__(self):
        return f"<OpeningHoursDefault {self.weekday} {self.open_time}-{self.close_time}>"


class OpeningHoursSchedule(Base):
    """Named weekly schedule valid over an inclusive date range (e.g. term time, holidays)"""
    __tablename__ = "opening_hours_schedules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    days = relationship("OpeningHoursScheduleDay", back_populates="schedule", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_schedule_range", "start_date", "end_date"),
    )


class OpeningHoursScheduleDay(Base):
    __tablename__ = "opening_hours_schedule_days"

    id = Column(Integer, primary_key=True, autoincrement=True)
    schedule_id = Column(Integer, ForeignKey("opening_hours_schedules.id", ondelete="CASCADE"), nullable=False)
    weekday = Column(Integer, nullable=False)
    open_time = Column(Time, nullable=True)
    close_time = Column(Time, nullable=True)
    is_closed = Column(Boolean, default=False, nullable=False)

    schedule = relationship("OpeningHoursSchedule", back_populates="days")

    __table_args__ = (
        UniqueConstraint("schedule_id", "weekday", name="uq_schedule_weekday"),
    )


class OpeningHoursOverride(Base):
    """One-off open/closed span (UTC instants)"""
    __tablename__ = "opening_hours_overrides"

    id = Column(Integer, primary_key=True, autoincrement=True)
    start_datetime = Column(DateTime, nullable=False)  # UTC
    end_datetime = Column(DateTime, nullable=False)    # UTC
    kind = Column(String(10), nullable=False, default=OverrideKind.CLOSED.value)
    reason = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_override_range", "start_datetime", "end_datetime"),
    )

    def __repr__(self):
        return f"<OpeningHoursOverride {self.kind} {self.start_datetime}-{self.end_datetime}>"
