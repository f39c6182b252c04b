"""Appointment model definitions."""

from datetime import datetime

from sqlalchemy import Column, Date, DateTime, Index, Integer, Numeric, String, Time

from caresync.database import Base
from caresync.scheduling.slots import slot_end, slot_start


class Appointment(Base):
    """A patient's booking on one provider slot. Cancelled rows are kept for audit."""
    __tablename__ = "appointments"
    __table_args__ = (
        Index("ix_appointments_provider_slot", "provider_id", "date", "time"),
    )

    id = Column(Integer, primary_key=True)
    provider_id = Column(Integer, nullable=False, index=True)
    patient_id = Column(Integer, nullable=False, index=True)
    date = Column(Date, nullable=False)
    time = Column(Time, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    appointment_type = Column(String, nullable=False)  # online/in-person
    status = Column(String, nullable=False, default="scheduled")
    fee = Column(Numeric(10, 2), nullable=False, default=0)
    reason = Column(String)
    cancellation_reason = Column(String)
    cancelled_at = Column(DateTime)
    cancelled_by = Column(Integer)  # user id
    payment_status = Column(String, nullable=False, default="unpaid")
    payment_reference = Column(String)
    rescheduled_from_id = Column(Integer)
    created_at = Column(DateTime, default=datetime.now)

    @property
    def starts_at(self) -> datetime:
        return slot_start(self.date, self.time)

    @property
    def ends_at(self) -> datetime:
        return slot_end(self.date, self.time, self.duration_minutes)
