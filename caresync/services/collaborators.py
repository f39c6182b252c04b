"""Interfaces the scheduling core calls out to, with default implementations.

Notification delivery, payment capture and video-room provisioning live
outside this service; deployments swap the defaults for real clients.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

import jwt

from caresync.core import config
from caresync.models.appointment import Appointment

logger = logging.getLogger(__name__)

PAYMENT_STATUS_PAID = "paid"


class NotificationSender(Protocol):
    def appointment_booked(self, appointment: Appointment) -> None: ...

    def appointment_cancelled(self, appointment: Appointment) -> None: ...

    def appointment_rescheduled(self, previous: Appointment, appointment: Appointment) -> None: ...


class PaymentGuard(Protocol):
    def is_fee_settled(self, appointment: Appointment) -> bool: ...


@dataclass(frozen=True)
class VideoRoom:
    room_name: str
    url: str
    token: str | None = None


class VideoRoomProvider(Protocol):
    def create_room(self, appointment: Appointment, participant: str) -> VideoRoom: ...


class LoggingNotificationSender:
    """Writes notifications to the log instead of sending email/SMS."""

    def appointment_booked(self, appointment: Appointment) -> None:
        logger.info(
            "Notify booking: appointment=%s provider=%s patient=%s at %s",
            appointment.id,
            appointment.provider_id,
            appointment.patient_id,
            appointment.starts_at.isoformat(),
        )

    def appointment_cancelled(self, appointment: Appointment) -> None:
        logger.info(
            "Notify cancellation: appointment=%s reason=%r",
            appointment.id,
            appointment.cancellation_reason,
        )

    def appointment_rescheduled(self, previous: Appointment, appointment: Appointment) -> None:
        logger.info(
            "Notify reschedule: appointment=%s moved to appointment=%s at %s",
            previous.id,
            appointment.id,
            appointment.starts_at.isoformat(),
        )


class PaymentStatusGuard:
    def is_fee_settled(self, appointment: Appointment) -> bool:
        return appointment.payment_status == PAYMENT_STATUS_PAID


def generate_room_name(appointment: Appointment) -> str:
    return f"caresync-{appointment.id}-{uuid.uuid5(uuid.NAMESPACE_URL, f'appointment:{appointment.id}').hex[:12]}"


class JitsiRoomProvider:
    def __init__(
        self,
        domain: str | None = None,
        app_id: str | None = None,
        api_key: str | None = None,
    ):
        self.domain = domain or config.JITSI_DOMAIN
        self.app_id = config.JITSI_APP_ID if app_id is None else app_id
        self.api_key = config.JITSI_API_KEY if api_key is None else api_key

    def create_room(self, appointment: Appointment, participant: str) -> VideoRoom:
        room_name = generate_room_name(appointment)
        token = None
        if self.app_id and self.api_key:
            token = self._create_token(room_name, participant)
        return VideoRoom(room_name=room_name, url=f"https://{self.domain}/{room_name}", token=token)

    def _create_token(self, room_name: str, participant: str) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "aud": "jitsi",
            "iss": self.app_id,
            "sub": self.domain,
            "room": room_name,
            "context": {"user": {"id": participant}},
            "iat": now,
            "exp": now + timedelta(minutes=config.VIDEO_TOKEN_EXPIRES_MINUTES),
        }
        return jwt.encode(payload, self.api_key, algorithm=config.JITSI_TOKEN_ALGORITHM)


def notify_safely(action: str, callback, *args) -> None:
    """Run a notification after commit; a failure is logged, never propagated."""
    try:
        callback(*args)
    except Exception:
        logger.exception("Notification %s failed", action)
