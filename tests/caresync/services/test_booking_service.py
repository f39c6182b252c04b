from datetime import date, datetime, time, timedelta
from decimal import Decimal

import pytest

from caresync.models.appointment import Appointment
from caresync.models.availability import AvailabilitySlot
from caresync.scheduling.errors import (
    AppointmentNotFoundError,
    CancellationNotAllowedError,
    InvalidAppointmentTypeError,
    InvalidTransitionError,
    JoinWindowClosedError,
    MissingReasonError,
    PaymentRequiredError,
    SlotUnavailableError,
    TerminalStateError,
)
from caresync.services import availability_service, booking_service
from caresync.services.collaborators import JitsiRoomProvider

PROVIDER_ID = 7
PATIENT_ID = 41
OTHER_PATIENT_ID = 42
SLOT_DATE = date(2026, 3, 2)
BEFORE_DAY = datetime(2026, 2, 28, 8, 0)


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def appointment_booked(self, appointment):
        self.events.append(('booked', appointment.id))

    def appointment_cancelled(self, appointment):
        self.events.append(('cancelled', appointment.id))

    def appointment_rescheduled(self, previous, appointment):
        self.events.append(('rescheduled', previous.id, appointment.id))


class FailingNotifier:
    def appointment_booked(self, appointment):
        raise RuntimeError('smtp down')

    def appointment_cancelled(self, appointment):
        raise RuntimeError('smtp down')


def get_slot(db, slot_time: time, slot_date: date = SLOT_DATE) -> AvailabilitySlot:
    return db.query(AvailabilitySlot).filter(
        AvailabilitySlot.provider_id == PROVIDER_ID,
        AvailabilitySlot.date == slot_date,
        AvailabilitySlot.time == slot_time,
    ).one()


def assert_slot_invariant(db) -> None:
    for slot in db.query(AvailabilitySlot).all():
        live = db.query(Appointment).filter(
            Appointment.provider_id == slot.provider_id,
            Appointment.date == slot.date,
            Appointment.time == slot.time,
            Appointment.status != 'cancelled',
        ).all()
        if slot.is_booked:
            assert len(live) == 1
            assert slot.appointment_id == live[0].id
            assert slot.is_available
        else:
            assert live == []
            assert slot.appointment_id is None


def book(db, slot_time: time = time(10, 0), patient_id: int = PATIENT_ID, **kwargs) -> Appointment:
    kwargs.setdefault('now', BEFORE_DAY)
    kwargs.setdefault('appointment_type', 'online')
    return booking_service.book(db, PROVIDER_ID, SLOT_DATE, slot_time, patient_id, **kwargs)


def test_book_claims_slot_and_creates_scheduled_appointment(open_day) -> None:
    notifier = RecordingNotifier()

    appointment = book(open_day, reason='Follow-up', fee=Decimal('45.00'), notifier=notifier)

    assert appointment.status == 'scheduled'
    assert appointment.duration_minutes == 30
    assert appointment.fee == Decimal('45.00')
    assert appointment.payment_status == 'unpaid'
    slot = get_slot(open_day, time(10, 0))
    assert (slot.is_available, slot.is_booked, slot.appointment_id) == (True, True, appointment.id)
    assert notifier.events == [('booked', appointment.id)]
    assert_slot_invariant(open_day)


def test_second_booking_of_same_slot_fails_without_mutation(open_day) -> None:
    first = book(open_day)

    with pytest.raises(SlotUnavailableError) as exception_info:
        book(open_day, patient_id=OTHER_PATIENT_ID)

    assert exception_info.value.context == {'provider_id': PROVIDER_ID, 'date': '2026-03-02', 'time': '10:00'}
    assert open_day.query(Appointment).count() == 1
    assert get_slot(open_day, time(10, 0)).appointment_id == first.id


def test_booking_blocked_slot_fails(open_day) -> None:
    availability_service.set_slot_availability(open_day, PROVIDER_ID, SLOT_DATE, time(10, 0), False)

    with pytest.raises(SlotUnavailableError):
        book(open_day)

    assert get_slot(open_day, time(10, 0)).is_booked is False


def test_booking_missing_or_past_slot_fails(open_day) -> None:
    with pytest.raises(SlotUnavailableError):
        book(open_day, slot_time=time(15, 0))

    with pytest.raises(SlotUnavailableError) as exception_info:
        book(open_day, now=datetime(2026, 3, 2, 10, 0))

    assert exception_info.value.message == 'This time slot has already started.'
    assert open_day.query(Appointment).count() == 0


def test_notification_failure_does_not_roll_back_booking(open_day) -> None:
    appointment = book(open_day, notifier=FailingNotifier())

    assert get_slot(open_day, time(10, 0)).appointment_id == appointment.id


def test_cancel_restores_slot_to_pre_booking_state(open_day) -> None:
    notifier = RecordingNotifier()
    appointment = book(open_day)
    booking_service.confirm(open_day, appointment.id, now=BEFORE_DAY)

    cancelled = booking_service.cancel(
        open_day, appointment.id, 'patient request', now=BEFORE_DAY, notifier=notifier,
    )

    assert cancelled.status == 'cancelled'
    assert cancelled.cancellation_reason == 'patient request'
    assert cancelled.cancelled_at == BEFORE_DAY
    slot = get_slot(open_day, time(10, 0))
    assert (slot.is_available, slot.is_booked, slot.appointment_id) == (True, False, None)
    assert open_day.get(Appointment, appointment.id) is not None
    assert notifier.events == [('cancelled', appointment.id)]
    assert_slot_invariant(open_day)


def test_cancel_records_who_cancelled(open_day) -> None:
    appointment = book(open_day)

    cancelled = booking_service.cancel(open_day, appointment.id, 'provider unavailable', now=BEFORE_DAY, cancelled_by=7)

    assert cancelled.cancelled_by == 7


def test_book_rejects_unknown_appointment_type(open_day) -> None:
    with pytest.raises(InvalidAppointmentTypeError) as exception_info:
        book(open_day, appointment_type='house-call')

    assert exception_info.value.context == {'appointment_type': 'house-call'}
    assert get_slot(open_day, time(10, 0)).is_booked is False


@pytest.mark.parametrize('reason', ['', '   ', None])
def test_cancel_requires_reason(open_day, reason) -> None:
    appointment = book(open_day)

    with pytest.raises(MissingReasonError):
        booking_service.cancel(open_day, appointment.id, reason, now=BEFORE_DAY)

    assert open_day.get(Appointment, appointment.id).status == 'scheduled'
    assert get_slot(open_day, time(10, 0)).is_booked is True


def test_cancel_after_start_is_not_allowed(open_day) -> None:
    appointment = book(open_day)

    with pytest.raises(CancellationNotAllowedError):
        booking_service.cancel(open_day, appointment.id, 'late', now=datetime(2026, 3, 2, 10, 0))

    assert get_slot(open_day, time(10, 0)).is_booked is True


def test_cancel_terminal_appointment_is_not_allowed(open_day) -> None:
    appointment = book(open_day)
    booking_service.cancel(open_day, appointment.id, 'first', now=BEFORE_DAY)

    with pytest.raises(CancellationNotAllowedError) as exception_info:
        booking_service.cancel(open_day, appointment.id, 'second', now=BEFORE_DAY)

    assert exception_info.value.context['status'] == 'cancelled'
    assert open_day.get(Appointment, appointment.id).cancellation_reason == 'first'


def test_cancel_unknown_appointment(open_day) -> None:
    with pytest.raises(AppointmentNotFoundError):
        booking_service.cancel(open_day, 999, 'reason', now=BEFORE_DAY)


def test_slot_can_be_rebooked_after_cancellation(open_day) -> None:
    first = book(open_day)
    booking_service.cancel(open_day, first.id, 'conflict', now=BEFORE_DAY)

    second = book(open_day, patient_id=OTHER_PATIENT_ID)

    assert get_slot(open_day, time(10, 0)).appointment_id == second.id
    assert_slot_invariant(open_day)


def test_reschedule_moves_booking_to_new_slot(open_day) -> None:
    notifier = RecordingNotifier()
    source = book(open_day, reason='Rash', fee=Decimal('20.00'))

    moved = booking_service.reschedule(
        open_day, source.id, SLOT_DATE, time(11, 30), now=BEFORE_DAY, notifier=notifier,
    )

    assert moved.id != source.id
    assert (moved.time, moved.status, moved.reason, moved.fee) == (time(11, 30), 'scheduled', 'Rash', Decimal('20.00'))
    assert moved.rescheduled_from_id == source.id
    previous = open_day.get(Appointment, source.id)
    assert previous.status == 'cancelled'
    assert previous.cancellation_reason == 'Rescheduled to 2026-03-02 11:30'
    assert get_slot(open_day, time(10, 0)).is_booked is False
    assert get_slot(open_day, time(11, 30)).appointment_id == moved.id
    assert notifier.events == [('rescheduled', source.id, moved.id)]
    assert_slot_invariant(open_day)


def test_reschedule_to_taken_slot_leaves_original_untouched(open_day) -> None:
    source = book(open_day)
    book(open_day, slot_time=time(11, 0), patient_id=OTHER_PATIENT_ID)

    with pytest.raises(SlotUnavailableError):
        booking_service.reschedule(open_day, source.id, SLOT_DATE, time(11, 0), now=BEFORE_DAY)

    original = open_day.get(Appointment, source.id)
    assert (original.status, original.time) == ('scheduled', time(10, 0))
    slot = get_slot(open_day, time(10, 0))
    assert (slot.is_booked, slot.appointment_id) == (True, source.id)
    assert open_day.query(Appointment).count() == 2
    assert_slot_invariant(open_day)


def test_reschedule_of_past_appointment_is_not_allowed(open_day) -> None:
    source = book(open_day)

    with pytest.raises(CancellationNotAllowedError):
        booking_service.reschedule(open_day, source.id, SLOT_DATE, time(11, 0), now=datetime(2026, 3, 2, 10, 5))

    assert get_slot(open_day, time(11, 0)).is_booked is False


def test_complete_and_terminal_state(open_day) -> None:
    appointment = book(open_day)

    completed = booking_service.complete(open_day, appointment.id, now=datetime(2026, 3, 2, 10, 20))

    assert completed.status == 'completed'
    assert get_slot(open_day, time(10, 0)).is_booked is True
    with pytest.raises(TerminalStateError):
        booking_service.confirm(open_day, appointment.id, now=datetime(2026, 3, 2, 10, 25))


def test_complete_before_start_is_rejected(open_day) -> None:
    appointment = book(open_day)

    with pytest.raises(InvalidTransitionError):
        booking_service.complete(open_day, appointment.id, now=BEFORE_DAY)


def test_mark_no_show_after_appointment_elapsed(open_day) -> None:
    appointment = book(open_day)
    after = datetime(2026, 3, 2, 10, 30)

    assert booking_service.effective_status(appointment, after).value == 'no_show'
    assert open_day.get(Appointment, appointment.id).status == 'scheduled'

    marked = booking_service.mark_no_show(open_day, appointment.id, now=after)

    assert marked.status == 'no_show'
    assert_slot_invariant(open_day)


def test_prepayment_required_before_confirmation(open_day) -> None:
    appointment = book(open_day, fee=Decimal('60.00'))

    with pytest.raises(PaymentRequiredError):
        booking_service.confirm(open_day, appointment.id, now=BEFORE_DAY, require_prepayment=True)

    booking_service.record_payment(open_day, appointment.id, 'pi_123')
    confirmed = booking_service.confirm(open_day, appointment.id, now=BEFORE_DAY, require_prepayment=True)

    assert (confirmed.status, confirmed.payment_status, confirmed.payment_reference) == ('confirmed', 'paid', 'pi_123')


def test_zero_fee_booking_still_needs_payment_under_prepayment(open_day) -> None:
    appointment = book(open_day, fee=Decimal('0'))

    with pytest.raises(PaymentRequiredError):
        booking_service.confirm(open_day, appointment.id, now=BEFORE_DAY, require_prepayment=True)
    assert booking_service.get_appointment(open_day, appointment.id).status == 'scheduled'

    booking_service.record_payment(open_day, appointment.id, 'waiver-7')
    confirmed = booking_service.confirm(open_day, appointment.id, now=BEFORE_DAY, require_prepayment=True)

    assert confirmed.status == 'confirmed'


def test_custom_payment_guard(open_day) -> None:
    class NeverSettled:
        def is_fee_settled(self, appointment):
            return False

    appointment = book(open_day)

    with pytest.raises(PaymentRequiredError):
        booking_service.confirm(
            open_day, appointment.id, now=BEFORE_DAY, payment_guard=NeverSettled(), require_prepayment=True,
        )


def test_record_payment_rejects_cancelled_appointment(open_day) -> None:
    appointment = book(open_day)
    booking_service.cancel(open_day, appointment.id, 'no longer needed', now=BEFORE_DAY)

    with pytest.raises(TerminalStateError):
        booking_service.record_payment(open_day, appointment.id, 'pi_456')


def test_list_appointments_filters(open_day) -> None:
    first = book(open_day, slot_time=time(11, 0))
    second = book(open_day, slot_time=time(9, 0), patient_id=OTHER_PATIENT_ID)

    assert [a.id for a in booking_service.list_appointments(open_day, provider_id=PROVIDER_ID)] == [second.id, first.id]
    assert [a.id for a in booking_service.list_appointments(open_day, patient_id=PATIENT_ID)] == [first.id]
    assert booking_service.list_appointments(open_day, on_date=SLOT_DATE + timedelta(days=1)) == []


def test_join_video_inside_window(open_day) -> None:
    appointment = book(open_day)
    provider = JitsiRoomProvider(domain='meet.example.org', app_id='caresync', api_key='secret')

    room = booking_service.join_video(
        open_day, appointment.id, 'patient-41', now=datetime(2026, 3, 2, 9, 50), room_provider=provider,
    )

    assert room.url == f'https://meet.example.org/{room.room_name}'
    assert room.token


def test_join_video_outside_window(open_day) -> None:
    appointment = book(open_day)

    with pytest.raises(JoinWindowClosedError):
        booking_service.join_video(open_day, appointment.id, 'patient-41', now=datetime(2026, 3, 2, 9, 44))


def test_join_video_for_in_person_appointment(open_day) -> None:
    appointment = book(open_day, appointment_type='in-person')

    with pytest.raises(JoinWindowClosedError):
        booking_service.join_video(open_day, appointment.id, 'patient-41', now=datetime(2026, 3, 2, 10, 0))
