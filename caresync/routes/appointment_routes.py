from datetime import date, datetime, time
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from caresync.core import config
from caresync.models.appointment import Appointment
from caresync.routes.common import ensure_database_ready, get_db, service_errors
from caresync.scheduling.video import can_join_video, join_window, normalize_appointment_type
from caresync.services import booking_service

router = APIRouter(tags=['appointments'])


def _normalize_reason(value: str | None) -> str | None:
    if value is None:
        return None

    normalized = value.strip()
    if not normalized:
        return None

    if len(normalized) > config.MAX_REASON_LENGTH:
        raise ValueError(f'Reason must be {config.MAX_REASON_LENGTH} characters or fewer.')

    return normalized


class BookAppointmentRequest(BaseModel):
    provider_id: int
    patient_id: int
    date: date
    time: time
    appointment_type: str = 'in-person'
    reason: str | None = None

    @field_validator('appointment_type')
    @classmethod
    def validate_appointment_type(cls, value: str) -> str:
        return normalize_appointment_type(value)

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        return _normalize_reason(value)


class CancelAppointmentRequest(BaseModel):
    reason: str = ''
    cancelled_by: int | None = None

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str) -> str:
        return _normalize_reason(value) or ''


class RescheduleAppointmentRequest(BaseModel):
    date: date
    time: time
    requested_by: int | None = None


class RecordPaymentRequest(BaseModel):
    payment_reference: str

    @field_validator('payment_reference')
    @classmethod
    def validate_payment_reference(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Payment reference is required.')
        return normalized


class AppointmentResponse(BaseModel):
    id: int
    provider_id: int
    patient_id: int
    date: date
    time: time
    duration_minutes: int
    appointment_type: str
    status: str
    effective_status: str
    fee: Decimal
    reason: str | None = None
    cancellation_reason: str | None = None
    cancelled_at: datetime | None = None
    cancelled_by: int | None = None
    payment_status: str
    rescheduled_from_id: int | None = None
    can_join_video: bool


class VideoEligibilityResponse(BaseModel):
    appointment_id: int
    can_join: bool
    opens_at: datetime
    closes_at: datetime


class VideoRoomResponse(BaseModel):
    appointment_id: int
    room_name: str
    url: str
    token: str | None = None


def build_appointment_response(appointment: Appointment, now: datetime | None = None) -> AppointmentResponse:
    now = now or datetime.now()
    return AppointmentResponse(
        id=appointment.id,
        provider_id=appointment.provider_id,
        patient_id=appointment.patient_id,
        date=appointment.date,
        time=appointment.time,
        duration_minutes=appointment.duration_minutes,
        appointment_type=appointment.appointment_type,
        status=appointment.status,
        effective_status=booking_service.effective_status(appointment, now).value,
        fee=appointment.fee,
        reason=appointment.reason,
        cancellation_reason=appointment.cancellation_reason,
        cancelled_at=appointment.cancelled_at,
        cancelled_by=appointment.cancelled_by,
        payment_status=appointment.payment_status,
        rescheduled_from_id=appointment.rescheduled_from_id,
        can_join_video=can_join_video(appointment, now),
    )


@router.post('', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def book_appointment(data: BookAppointmentRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    with service_errors(db):
        appointment = booking_service.book(
            db,
            provider_id=data.provider_id,
            slot_date=data.date,
            slot_time=data.time,
            patient_id=data.patient_id,
            appointment_type=data.appointment_type,
            reason=data.reason,
        )
        return build_appointment_response(appointment)


@router.get('', response_model=list[AppointmentResponse])
def list_appointments(
    provider_id: int | None = Query(default=None),
    patient_id: int | None = Query(default=None),
    on_date: date | None = Query(default=None, alias='date'),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    with service_errors(db):
        now = datetime.now()
        appointments = booking_service.list_appointments(
            db,
            provider_id=provider_id,
            patient_id=patient_id,
            on_date=on_date,
        )
        return [build_appointment_response(appointment, now) for appointment in appointments]


@router.get('/{appointment_id}', response_model=AppointmentResponse)
def get_appointment(appointment_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    with service_errors(db):
        return build_appointment_response(booking_service.get_appointment(db, appointment_id))


@router.post('/{appointment_id}/confirm', response_model=AppointmentResponse)
def confirm_appointment(appointment_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    with service_errors(db):
        return build_appointment_response(booking_service.confirm(db, appointment_id))


@router.post('/{appointment_id}/complete', response_model=AppointmentResponse)
def complete_appointment(appointment_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    with service_errors(db):
        return build_appointment_response(booking_service.complete(db, appointment_id))


@router.post('/{appointment_id}/no-show', response_model=AppointmentResponse)
def mark_appointment_no_show(appointment_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    with service_errors(db):
        return build_appointment_response(booking_service.mark_no_show(db, appointment_id))


@router.post('/{appointment_id}/cancel', response_model=AppointmentResponse)
def cancel_appointment(appointment_id: int, data: CancelAppointmentRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    with service_errors(db):
        appointment = booking_service.cancel(db, appointment_id, data.reason, cancelled_by=data.cancelled_by)
        return build_appointment_response(appointment)


@router.post('/{appointment_id}/reschedule', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def reschedule_appointment(appointment_id: int, data: RescheduleAppointmentRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    with service_errors(db):
        appointment = booking_service.reschedule(
            db, appointment_id, data.date, data.time, requested_by=data.requested_by,
        )
        return build_appointment_response(appointment)


@router.post('/{appointment_id}/payment', response_model=AppointmentResponse)
def record_appointment_payment(appointment_id: int, data: RecordPaymentRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    with service_errors(db):
        appointment = booking_service.record_payment(db, appointment_id, data.payment_reference)
        return build_appointment_response(appointment)


@router.get('/{appointment_id}/video/eligibility', response_model=VideoEligibilityResponse)
def get_video_eligibility(appointment_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    with service_errors(db):
        appointment = booking_service.get_appointment(db, appointment_id)
        opens_at, closes_at = join_window(appointment.starts_at)
        return VideoEligibilityResponse(
            appointment_id=appointment.id,
            can_join=can_join_video(appointment, datetime.now()),
            opens_at=opens_at,
            closes_at=closes_at,
        )


@router.post('/{appointment_id}/video/join', response_model=VideoRoomResponse)
def join_video(appointment_id: int, participant: str = Query(...), db: Session = Depends(get_db)):
    ensure_database_ready()

    with service_errors(db):
        room = booking_service.join_video(db, appointment_id, participant)
        return VideoRoomResponse(
            appointment_id=appointment_id,
            room_name=room.room_name,
            url=room.url,
            token=room.token,
        )
