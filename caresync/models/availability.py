"""Availability model definitions."""

from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, Column, Date, DateTime, Integer, String, Time, UniqueConstraint

from caresync.database import Base


class AvailabilitySlot(Base):
    """One bookable (provider, date, time) unit of a provider's day."""
    __tablename__ = "availability_slots"
    __table_args__ = (
        UniqueConstraint("provider_id", "date", "time", name="uq_availability_slot_key"),
        CheckConstraint("NOT (is_booked AND NOT is_available)", name="ck_availability_booked_slot_available"),
    )

    id = Column(Integer, primary_key=True)
    provider_id = Column(Integer, nullable=False, index=True)
    date = Column(Date, nullable=False)
    time = Column(Time, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)
    is_booked = Column(Boolean, nullable=False, default=False)
    appointment_id = Column(Integer)


class AvailabilityDay(Base):
    """Marks a provider's date as materialized; slot merges on the date lock this row first."""
    __tablename__ = "availability_days"
    __table_args__ = (
        UniqueConstraint("provider_id", "date", name="uq_availability_day"),
    )

    id = Column(Integer, primary_key=True)
    provider_id = Column(Integer, nullable=False)
    date = Column(Date, nullable=False)
    revision = Column(Integer, nullable=False, default=0)


class BlockedTime(Base):
    __tablename__ = "blocked_times"

    id = Column(Integer, primary_key=True)
    provider_id = Column(Integer, nullable=False, index=True)
    date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    reason = Column(String)
    created_at = Column(DateTime, default=datetime.now)
