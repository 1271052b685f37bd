from __future__ import annotations

from .errors import BookingNotModifiableError, InvalidStateTransitionError
from .models import BookingStatus

TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.CANCELED, BookingStatus.COMPLETED}),
    BookingStatus.CANCELED: frozenset(),
    BookingStatus.COMPLETED: frozenset(),
}

MODIFIABLE: frozenset[BookingStatus] = frozenset({BookingStatus.PENDING, BookingStatus.CONFIRMED})


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def is_terminal(status: BookingStatus) -> bool:
    return not TRANSITIONS.get(status)


def is_modifiable(status: BookingStatus) -> bool:
    return status in MODIFIABLE


def ensure_transition(current: BookingStatus, target: BookingStatus) -> None:
    if not can_transition(current, target):
        raise InvalidStateTransitionError(
            f"Booking cannot move from {current.value} to {target.value}"
        )


def ensure_modifiable(status: BookingStatus) -> None:
    if not is_modifiable(status):
        raise BookingNotModifiableError(
            f"Booking cannot be modified in its current state: {status.value}"
        )
