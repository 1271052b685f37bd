from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import BookingConflict


class BookingError(Exception):
    """Base class for every condition the booking core can name."""

    code = "booking_error"


class InvalidIntervalError(BookingError):
    code = "invalid_interval"


class ResourceUnavailableError(BookingError):
    code = "resource_unavailable"

    def __init__(self, conflicts: list[BookingConflict]) -> None:
        super().__init__("Resource is not available for the selected time slot")
        self.conflicts = conflicts


class NotFoundError(BookingError):
    code = "not_found"


class BookingNotModifiableError(BookingError):
    code = "booking_not_modifiable"


class InvalidStateTransitionError(BookingError):
    code = "invalid_state_transition"


class BackendError(BookingError):
    """Storage or infrastructure failure; the original error is chained as __cause__."""

    code = "backend_error"
