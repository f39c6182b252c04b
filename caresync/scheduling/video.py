from datetime import datetime, timedelta

from caresync.scheduling.errors import InvalidAppointmentTypeError
from caresync.scheduling.lifecycle import ACTIVE_STATUSES, AppointmentStatus

ONLINE_APPOINTMENT_TYPE = 'online'
IN_PERSON_APPOINTMENT_TYPE = 'in-person'
APPOINTMENT_TYPES = (ONLINE_APPOINTMENT_TYPE, IN_PERSON_APPOINTMENT_TYPE)
APPOINTMENT_TYPE_ALIASES = {
    'tele-consultation': ONLINE_APPOINTMENT_TYPE,
    'video-call': ONLINE_APPOINTMENT_TYPE,
    'in_person': IN_PERSON_APPOINTMENT_TYPE,
}
JOIN_OPENS_BEFORE = timedelta(minutes=15)
JOIN_CLOSES_AFTER = timedelta(minutes=30)


def normalize_appointment_type(value: str) -> str:
    normalized = (value or '').strip().lower()
    normalized = APPOINTMENT_TYPE_ALIASES.get(normalized, normalized)
    if normalized not in APPOINTMENT_TYPES:
        raise InvalidAppointmentTypeError('Invalid appointment type.', appointment_type=value)
    return normalized


def join_window(starts_at: datetime) -> tuple[datetime, datetime]:
    return starts_at - JOIN_OPENS_BEFORE, starts_at + JOIN_CLOSES_AFTER


def can_join_video(appointment, now: datetime) -> bool:
    """Whether a party may request the video room for ``appointment`` at ``now``.

    Only online appointments that are still scheduled or confirmed qualify,
    from 15 minutes before the start up to and including 30 minutes after it.
    """
    if appointment.appointment_type != ONLINE_APPOINTMENT_TYPE:
        return False

    if AppointmentStatus(appointment.status) not in ACTIVE_STATUSES:
        return False

    opens_at, closes_at = join_window(appointment.starts_at)
    return opens_at <= now <= closes_at
