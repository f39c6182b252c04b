"""Booking, lifecycle transitions, cancellation and rescheduling.

Every write to a contended row is a conditional UPDATE (compare-and-set)
inside a single transaction. When the condition no longer holds the
transaction is rolled back and a business error is raised at once; nothing
here retries, since a retry would hide a genuine conflict for the slot.
"""

import logging
from datetime import date, datetime, time
from decimal import Decimal

from sqlalchemy.orm import Session

from caresync.core import config
from caresync.database import atomic
from caresync.models.appointment import Appointment
from caresync.models.availability import AvailabilitySlot
from caresync.scheduling.errors import (
    AppointmentNotFoundError,
    CancellationNotAllowedError,
    InvalidTransitionError,
    JoinWindowClosedError,
    MissingReasonError,
    SlotUnavailableError,
    TerminalStateError,
)
from caresync.scheduling.lifecycle import (
    ACTIVE_STATUSES,
    AppointmentStatus,
    LifecycleAction,
    TransitionContext,
    lifecycle,
)
from caresync.scheduling.slots import slot_start
from caresync.scheduling.video import can_join_video, normalize_appointment_type
from caresync.services.availability_service import slot_key
from caresync.services.collaborators import (
    PAYMENT_STATUS_PAID,
    JitsiRoomProvider,
    LoggingNotificationSender,
    NotificationSender,
    PaymentGuard,
    PaymentStatusGuard,
    VideoRoom,
    VideoRoomProvider,
    notify_safely,
)

logger = logging.getLogger(__name__)

PAYMENT_STATUS_UNPAID = 'unpaid'
ACTIVE_STATUS_VALUES = [status.value for status in ACTIVE_STATUSES]

default_notifier: NotificationSender = LoggingNotificationSender()
default_payment_guard: PaymentGuard = PaymentStatusGuard()


def _now(now: datetime | None) -> datetime:
    return now or datetime.now()


def get_appointment(db: Session, appointment_id: int) -> Appointment:
    appointment = db.get(Appointment, appointment_id)
    if appointment is None:
        raise AppointmentNotFoundError('Appointment not found.', appointment_id=appointment_id)
    return appointment


def list_appointments(
    db: Session,
    provider_id: int | None = None,
    patient_id: int | None = None,
    on_date: date | None = None,
) -> list[Appointment]:
    query = db.query(Appointment)
    if provider_id is not None:
        query = query.filter(Appointment.provider_id == provider_id)
    if patient_id is not None:
        query = query.filter(Appointment.patient_id == patient_id)
    if on_date is not None:
        query = query.filter(Appointment.date == on_date)
    return query.order_by(Appointment.date.asc(), Appointment.time.asc(), Appointment.id.asc()).all()


def _claim_slot(db: Session, provider_id: int, slot_date: date, slot_time: time, now: datetime) -> int:
    """Mark the slot booked if it is open; returns its duration. Must run inside ``atomic``."""
    key = slot_key(provider_id, slot_date, slot_time)
    if slot_start(slot_date, slot_time) <= now:
        raise SlotUnavailableError('This time slot has already started.', **key)

    slot_filter = (
        AvailabilitySlot.provider_id == provider_id,
        AvailabilitySlot.date == slot_date,
        AvailabilitySlot.time == slot_time,
    )
    claimed = db.query(AvailabilitySlot).filter(
        *slot_filter,
        AvailabilitySlot.is_available.is_(True),
        AvailabilitySlot.is_booked.is_(False),
    ).update({AvailabilitySlot.is_booked: True}, synchronize_session=False)

    if claimed != 1:
        raise SlotUnavailableError('This time slot is no longer available.', **key)

    return db.query(AvailabilitySlot.duration_minutes).filter(*slot_filter).scalar()


def _link_slot(db: Session, appointment: Appointment) -> None:
    db.query(AvailabilitySlot).filter(
        AvailabilitySlot.provider_id == appointment.provider_id,
        AvailabilitySlot.date == appointment.date,
        AvailabilitySlot.time == appointment.time,
        AvailabilitySlot.is_booked.is_(True),
        AvailabilitySlot.appointment_id.is_(None),
    ).update({AvailabilitySlot.appointment_id: appointment.id}, synchronize_session=False)


def _cancel_and_release(
    db: Session,
    appointment: Appointment,
    reason: str,
    now: datetime,
    cancelled_by: int | None = None,
) -> None:
    """Cancel an active appointment and free its slot. Must run inside ``atomic``."""
    cancelled = db.query(Appointment).filter(
        Appointment.id == appointment.id,
        Appointment.status.in_(ACTIVE_STATUS_VALUES),
    ).update(
        {
            Appointment.status: AppointmentStatus.CANCELLED.value,
            Appointment.cancellation_reason: reason,
            Appointment.cancelled_at: now,
            Appointment.cancelled_by: cancelled_by,
        },
        synchronize_session=False,
    )
    if cancelled != 1:
        raise CancellationNotAllowedError(
            'Appointment is no longer active.',
            appointment_id=appointment.id,
        )

    db.query(AvailabilitySlot).filter(AvailabilitySlot.appointment_id == appointment.id).update(
        {
            AvailabilitySlot.is_booked: False,
            AvailabilitySlot.is_available: True,
            AvailabilitySlot.appointment_id: None,
        },
        synchronize_session=False,
    )


def book(
    db: Session,
    provider_id: int,
    slot_date: date,
    slot_time: time,
    patient_id: int,
    appointment_type: str,
    reason: str | None = None,
    fee: Decimal | None = None,
    now: datetime | None = None,
    notifier: NotificationSender | None = None,
) -> Appointment:
    now = _now(now)
    slot_time = slot_time.replace(second=0, microsecond=0)
    appointment_type = normalize_appointment_type(appointment_type)

    with atomic(db):
        duration_minutes = _claim_slot(db, provider_id, slot_date, slot_time, now)
        appointment = Appointment(
            provider_id=provider_id,
            patient_id=patient_id,
            date=slot_date,
            time=slot_time,
            duration_minutes=duration_minutes,
            appointment_type=appointment_type,
            status=AppointmentStatus.SCHEDULED.value,
            fee=config.DEFAULT_CONSULTATION_FEE if fee is None else fee,
            reason=reason,
            payment_status=PAYMENT_STATUS_UNPAID,
            created_at=now,
        )
        db.add(appointment)
        db.flush()
        _link_slot(db, appointment)

    db.refresh(appointment)
    logger.info(
        'Booked appointment %s for patient %s at %s',
        appointment.id,
        patient_id,
        slot_key(provider_id, slot_date, slot_time),
    )
    notify_safely('booking', (notifier or default_notifier).appointment_booked, appointment)
    return appointment


def _transition_context(
    appointment: Appointment,
    now: datetime,
    payment_guard: PaymentGuard | None = None,
    require_prepayment: bool | None = None,
) -> TransitionContext:
    guard = payment_guard or default_payment_guard
    return TransitionContext(
        starts_at=appointment.starts_at,
        ends_at=appointment.ends_at,
        now=now,
        fee_settled=guard.is_fee_settled(appointment),
        require_prepayment=config.REQUIRE_PREPAYMENT if require_prepayment is None else require_prepayment,
    )


def _transition(
    db: Session,
    appointment_id: int,
    action: LifecycleAction,
    now: datetime | None = None,
    payment_guard: PaymentGuard | None = None,
    require_prepayment: bool | None = None,
) -> Appointment:
    now = _now(now)
    appointment = get_appointment(db, appointment_id)
    current = appointment.status
    target = lifecycle.next_status(
        current,
        action,
        _transition_context(appointment, now, payment_guard, require_prepayment),
    )

    with atomic(db):
        updated = db.query(Appointment).filter(
            Appointment.id == appointment_id,
            Appointment.status == current,
        ).update({Appointment.status: target.value}, synchronize_session=False)
        if updated != 1:
            raise InvalidTransitionError(
                'Appointment status changed while it was being updated.',
                appointment_id=appointment_id,
                status=current,
            )

    db.refresh(appointment)
    logger.info('Appointment %s moved from %s to %s', appointment_id, current, target.value)
    return appointment


def confirm(db: Session, appointment_id: int, now: datetime | None = None, **guards) -> Appointment:
    return _transition(db, appointment_id, LifecycleAction.CONFIRM, now, **guards)


def complete(db: Session, appointment_id: int, now: datetime | None = None, **guards) -> Appointment:
    return _transition(db, appointment_id, LifecycleAction.COMPLETE, now, **guards)


def mark_no_show(db: Session, appointment_id: int, now: datetime | None = None) -> Appointment:
    return _transition(db, appointment_id, LifecycleAction.MARK_NO_SHOW, now)


def effective_status(appointment: Appointment, now: datetime | None = None) -> AppointmentStatus:
    return lifecycle.effective_status(appointment.status, appointment.ends_at, _now(now))


def _check_cancellable(appointment: Appointment, now: datetime) -> None:
    try:
        lifecycle.next_status(
            appointment.status,
            LifecycleAction.CANCEL,
            TransitionContext(starts_at=appointment.starts_at, ends_at=appointment.ends_at, now=now),
        )
    except (TerminalStateError, InvalidTransitionError) as exc:
        raise CancellationNotAllowedError(
            f'Appointment cannot be cancelled because it is {appointment.status}.',
            appointment_id=appointment.id,
            status=appointment.status,
        ) from exc


def cancel(
    db: Session,
    appointment_id: int,
    reason: str | None,
    now: datetime | None = None,
    notifier: NotificationSender | None = None,
    cancelled_by: int | None = None,
) -> Appointment:
    now = _now(now)
    reason = (reason or '').strip()
    if not reason:
        raise MissingReasonError('Please provide a reason for cancellation.', appointment_id=appointment_id)

    appointment = get_appointment(db, appointment_id)
    _check_cancellable(appointment, now)

    with atomic(db):
        _cancel_and_release(db, appointment, reason, now, cancelled_by)

    db.refresh(appointment)
    logger.info('Cancelled appointment %s by %s: %s', appointment_id, cancelled_by, reason)
    notify_safely('cancellation', (notifier or default_notifier).appointment_cancelled, appointment)
    return appointment


def reschedule(
    db: Session,
    appointment_id: int,
    new_date: date,
    new_time: time,
    now: datetime | None = None,
    notifier: NotificationSender | None = None,
    requested_by: int | None = None,
) -> Appointment:
    """Move an appointment to another slot of the same provider.

    The new slot is claimed before the old one is released, in the same
    transaction; if the claim fails the original booking is left untouched.
    """
    now = _now(now)
    new_time = new_time.replace(second=0, microsecond=0)
    source = get_appointment(db, appointment_id)
    _check_cancellable(source, now)

    with atomic(db):
        duration_minutes = _claim_slot(db, source.provider_id, new_date, new_time, now)
        appointment = Appointment(
            provider_id=source.provider_id,
            patient_id=source.patient_id,
            date=new_date,
            time=new_time,
            duration_minutes=duration_minutes,
            appointment_type=source.appointment_type,
            status=AppointmentStatus.SCHEDULED.value,
            fee=source.fee,
            reason=source.reason,
            payment_status=source.payment_status,
            payment_reference=source.payment_reference,
            rescheduled_from_id=source.id,
            created_at=now,
        )
        db.add(appointment)
        db.flush()
        _link_slot(db, appointment)
        _cancel_and_release(
            db,
            source,
            f'Rescheduled to {new_date.isoformat()} {new_time.isoformat(timespec="minutes")}',
            now,
            requested_by,
        )

    db.refresh(source)
    db.refresh(appointment)
    logger.info('Rescheduled appointment %s to appointment %s', source.id, appointment.id)
    notify_safely('reschedule', (notifier or default_notifier).appointment_rescheduled, source, appointment)
    return appointment


def record_payment(db: Session, appointment_id: int, payment_reference: str) -> Appointment:
    appointment = get_appointment(db, appointment_id)
    if appointment.status == AppointmentStatus.CANCELLED.value:
        raise TerminalStateError(
            'Payment cannot be recorded for a cancelled appointment.',
            appointment_id=appointment_id,
            status=appointment.status,
        )

    with atomic(db):
        appointment.payment_status = PAYMENT_STATUS_PAID
        appointment.payment_reference = payment_reference

    db.refresh(appointment)
    logger.info('Recorded payment %s for appointment %s', payment_reference, appointment_id)
    return appointment


def join_video(
    db: Session,
    appointment_id: int,
    participant: str,
    now: datetime | None = None,
    room_provider: VideoRoomProvider | None = None,
) -> VideoRoom:
    now = _now(now)
    appointment = get_appointment(db, appointment_id)
    if not can_join_video(appointment, now):
        raise JoinWindowClosedError(
            'Video can be joined from 15 minutes before until 30 minutes after an online appointment starts.',
            appointment_id=appointment_id,
            status=appointment.status,
            starts_at=appointment.starts_at.isoformat(),
        )
    return (room_provider or JitsiRoomProvider()).create_room(appointment, participant)
