from contextlib import contextmanager

from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from caresync.database import SessionLocal, ensure_appointment_schema, ensure_availability_schema
from caresync.scheduling.errors import (
    AppointmentNotFoundError,
    CancellationNotAllowedError,
    InvalidAppointmentTypeError,
    InvalidDayError,
    InvalidRangeError,
    InvalidTransitionError,
    JoinWindowClosedError,
    MissingReasonError,
    OverlappingRangeError,
    PaymentRequiredError,
    RangeNotFoundError,
    SchedulingError,
    SlotUnavailableError,
    TerminalStateError,
)

DATABASE_UNAVAILABLE_DETAIL = 'Database unavailable. Verify DATABASE_URL and database credentials.'

ERROR_STATUS_CODES = {
    InvalidRangeError: status.HTTP_400_BAD_REQUEST,
    InvalidAppointmentTypeError: status.HTTP_400_BAD_REQUEST,
    InvalidDayError: status.HTTP_400_BAD_REQUEST,
    MissingReasonError: status.HTTP_400_BAD_REQUEST,
    PaymentRequiredError: status.HTTP_402_PAYMENT_REQUIRED,
    JoinWindowClosedError: status.HTTP_403_FORBIDDEN,
    AppointmentNotFoundError: status.HTTP_404_NOT_FOUND,
    RangeNotFoundError: status.HTTP_404_NOT_FOUND,
    OverlappingRangeError: status.HTTP_409_CONFLICT,
    SlotUnavailableError: status.HTTP_409_CONFLICT,
    TerminalStateError: status.HTTP_409_CONFLICT,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    CancellationNotAllowedError: status.HTTP_409_CONFLICT,
}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def ensure_database_ready() -> None:
    try:
        ensure_availability_schema()
        ensure_appointment_schema()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=DATABASE_UNAVAILABLE_DETAIL,
        ) from exc


def to_http_exception(exc: SchedulingError) -> HTTPException:
    return HTTPException(
        status_code=ERROR_STATUS_CODES.get(type(exc), status.HTTP_400_BAD_REQUEST),
        detail={
            'error': type(exc).__name__,
            'message': exc.message,
            'context': exc.context,
        },
    )


@contextmanager
def service_errors(db: Session | None = None):
    """Translate scheduling and storage failures raised by a service call."""
    try:
        yield
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        if db is not None:
            db.rollback()
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=DATABASE_UNAVAILABLE_DETAIL,
        ) from exc
