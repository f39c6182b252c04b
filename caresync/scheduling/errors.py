"""Business errors raised by the scheduling core.

Every error carries a ``context`` dict (slot key, current status, ...) so the
HTTP layer can render a useful message. None of them is retried: each one is a
business-rule conflict, not a transient fault.
"""


class SchedulingError(Exception):
    """Base class for scheduling business errors."""

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class InvalidRangeError(SchedulingError):
    """A time range is empty/inverted or the slot duration is not positive."""


class OverlappingRangeError(SchedulingError):
    """A weekly template range overlaps another range of the same day."""


class InvalidDayError(SchedulingError):
    """A day key is not one of monday..sunday."""


class RangeNotFoundError(SchedulingError):
    """No template range exists at the requested index."""


class SlotUnavailableError(SchedulingError):
    """The slot is missing, blocked, in the past, or already booked."""


class TerminalStateError(SchedulingError):
    """The appointment is completed, cancelled or marked no-show."""


class InvalidTransitionError(SchedulingError):
    """The lifecycle action is not allowed from the current status or its guard failed."""


class CancellationNotAllowedError(SchedulingError):
    """The appointment is not active or its start time has passed."""


class MissingReasonError(SchedulingError):
    """A cancellation was requested without a reason."""


class AppointmentNotFoundError(SchedulingError):
    pass


class PaymentRequiredError(SchedulingError):
    """Prepayment is required and the fee is not settled."""


class JoinWindowClosedError(SchedulingError):
    """The appointment cannot be joined by video right now."""


class InvalidAppointmentTypeError(SchedulingError, ValueError):
    """The appointment type is neither online nor in-person."""
