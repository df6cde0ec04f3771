from enum import Enum

from booking_scheduler.services.errors import InvalidTransitionError


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Statuses that occupy the provider's calendar.
ACTIVE_STATUSES = frozenset({BookingStatus.PENDING, BookingStatus.CONFIRMED})

TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.CANCELLED, BookingStatus.COMPLETED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}


def is_active(status: BookingStatus | str) -> bool:
    return BookingStatus(status) in ACTIVE_STATUSES


def is_terminal(status: BookingStatus | str) -> bool:
    return not TRANSITIONS[BookingStatus(status)]


def can_transition(current: BookingStatus | str, target: BookingStatus | str) -> bool:
    return BookingStatus(target) in TRANSITIONS[BookingStatus(current)]


def ensure_transition(booking_id: str, current: BookingStatus | str, target: BookingStatus | str) -> None:
    current = BookingStatus(current)
    target = BookingStatus(target)
    if target not in TRANSITIONS[current]:
        raise InvalidTransitionError(booking_id, current.value, target.value)
