"""Appointment status state machine.

The table below is the only place lifecycle rules live; services ask the
machine for the next status and then persist it with a compare-and-set on
the current one.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from caresync.scheduling.errors import (
    CancellationNotAllowedError,
    InvalidTransitionError,
    PaymentRequiredError,
    TerminalStateError,
)


class AppointmentStatus(str, Enum):
    SCHEDULED = 'scheduled'
    CONFIRMED = 'confirmed'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    NO_SHOW = 'no_show'

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class LifecycleAction(str, Enum):
    CONFIRM = 'confirm'
    COMPLETE = 'complete'
    CANCEL = 'cancel'
    MARK_NO_SHOW = 'mark_no_show'


TERMINAL_STATUSES = frozenset({
    AppointmentStatus.COMPLETED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.NO_SHOW,
})
ACTIVE_STATUSES = frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED})

TRANSITIONS: dict[LifecycleAction, tuple[frozenset[AppointmentStatus], AppointmentStatus]] = {
    LifecycleAction.CONFIRM: (frozenset({AppointmentStatus.SCHEDULED}), AppointmentStatus.CONFIRMED),
    LifecycleAction.COMPLETE: (ACTIVE_STATUSES, AppointmentStatus.COMPLETED),
    LifecycleAction.CANCEL: (ACTIVE_STATUSES, AppointmentStatus.CANCELLED),
    LifecycleAction.MARK_NO_SHOW: (ACTIVE_STATUSES, AppointmentStatus.NO_SHOW),
}

# Leaving "scheduled" for these targets needs a settled fee when prepayment is on.
PREPAID_TARGETS = frozenset({AppointmentStatus.CONFIRMED, AppointmentStatus.COMPLETED})


@dataclass(frozen=True)
class TransitionContext:
    starts_at: datetime
    ends_at: datetime
    now: datetime
    fee_settled: bool = True
    require_prepayment: bool = False


class AppointmentLifecycle:
    def next_status(
        self,
        current: AppointmentStatus | str,
        action: LifecycleAction | str,
        context: TransitionContext,
    ) -> AppointmentStatus:
        current = AppointmentStatus(current)
        action = LifecycleAction(action)

        if current.is_terminal:
            raise TerminalStateError(
                f'Appointment is already {current.value}; no further changes are allowed.',
                status=current.value,
                action=action.value,
            )

        allowed_from, target = TRANSITIONS[action]
        if current not in allowed_from:
            raise InvalidTransitionError(
                f'Cannot {action.value.replace("_", " ")} an appointment that is {current.value}.',
                status=current.value,
                action=action.value,
            )

        self._check_guard(current, action, target, context)
        return target

    def _check_guard(
        self,
        current: AppointmentStatus,
        action: LifecycleAction,
        target: AppointmentStatus,
        context: TransitionContext,
    ) -> None:
        if action is LifecycleAction.COMPLETE and context.starts_at > context.now:
            raise InvalidTransitionError(
                'An appointment cannot be completed before it starts.',
                status=current.value,
                starts_at=context.starts_at.isoformat(),
            )

        if action is LifecycleAction.CANCEL and context.now >= context.starts_at:
            raise CancellationNotAllowedError(
                'Past appointments cannot be cancelled.',
                status=current.value,
                starts_at=context.starts_at.isoformat(),
            )

        if action is LifecycleAction.MARK_NO_SHOW and context.now < context.ends_at:
            raise InvalidTransitionError(
                'An appointment can only be marked as a no-show once its time has fully passed.',
                status=current.value,
                ends_at=context.ends_at.isoformat(),
            )

        if (
            context.require_prepayment
            and current is AppointmentStatus.SCHEDULED
            and target in PREPAID_TARGETS
            and not context.fee_settled
        ):
            raise PaymentRequiredError(
                'The consultation fee must be settled first.',
                status=current.value,
                action=action.value,
            )

    @staticmethod
    def effective_status(current: AppointmentStatus | str, ends_at: datetime, now: datetime) -> AppointmentStatus:
        """Status as seen at ``now``: an active appointment whose time has elapsed reads as a no-show."""
        current = AppointmentStatus(current)
        if current in ACTIVE_STATUSES and now >= ends_at:
            return AppointmentStatus.NO_SHOW
        return current


lifecycle = AppointmentLifecycle()
