from datetime import date, datetime

import grpc


class SchedulerError(Exception):
    """Base class for every failure the scheduler reports to its caller."""

    status_code = grpc.StatusCode.UNKNOWN
    retryable = False


class InvalidTimeError(SchedulerError):
    status_code = grpc.StatusCode.INVALID_ARGUMENT

    def __init__(self, requested: datetime, now: datetime, detail: str | None = None):
        self.requested = requested
        self.now = now
        super().__init__(detail or f"requested start {requested.isoformat()} is not after {now.isoformat()}")


class UnknownServiceError(SchedulerError):
    status_code = grpc.StatusCode.NOT_FOUND

    def __init__(self, provider_id: str, service_id: str):
        self.provider_id = provider_id
        self.service_id = service_id
        super().__init__(f"service {service_id} is not offered by provider {provider_id}")


class SlotConflictError(SchedulerError):
    """The requested interval overlaps an existing pending/confirmed booking.

    ``conflicting`` is the occupied interval so the client can re-render the
    grid and pick another slot.
    """

    status_code = grpc.StatusCode.ALREADY_EXISTS

    def __init__(self, conflicting, booking_id: str | None = None):
        self.conflicting = conflicting
        self.booking_id = booking_id
        super().__init__(f"slot overlaps booked interval {conflicting}")


class OutOfWindowError(SchedulerError):
    status_code = grpc.StatusCode.OUT_OF_RANGE

    def __init__(self, requested: date, last_bookable: date):
        self.requested = requested
        self.last_bookable = last_bookable
        super().__init__(f"date {requested} is past the booking window ending {last_bookable}")


class InvalidTransitionError(SchedulerError):
    status_code = grpc.StatusCode.FAILED_PRECONDITION

    def __init__(self, booking_id: str, current: str, target: str, detail: str | None = None):
        self.booking_id = booking_id
        self.current = current
        self.target = target
        message = f"booking {booking_id} cannot move from {current} to {target}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class BookingNotFoundError(SchedulerError):
    status_code = grpc.StatusCode.NOT_FOUND

    def __init__(self, booking_id: str):
        self.booking_id = booking_id
        super().__init__(f"booking {booking_id} not found")


class NotAuthorizedError(SchedulerError):
    status_code = grpc.StatusCode.PERMISSION_DENIED

    def __init__(self, actor_id: str, action: str, booking_id: str):
        self.actor_id = actor_id
        self.action = action
        self.booking_id = booking_id
        super().__init__(f"{actor_id} may not {action} booking {booking_id}")


class CancelReasonRequiredError(SchedulerError):
    status_code = grpc.StatusCode.INVALID_ARGUMENT

    def __init__(self, booking_id: str):
        self.booking_id = booking_id
        super().__init__(f"provider cancellation of booking {booking_id} needs a reason")


class StoreUnavailableError(SchedulerError):
    """Transient store failure; the operation may be retried."""

    status_code = grpc.StatusCode.UNAVAILABLE
    retryable = True


class BucketContentionError(StoreUnavailableError):
    """Another writer committed to the same provider/date between read and write."""

    status_code = grpc.StatusCode.ABORTED

    def __init__(self, provider_id: str, day: date):
        self.provider_id = provider_id
        self.day = day
        super().__init__(f"calendar {provider_id}/{day} changed during the transaction")


class PersistenceConflictError(SchedulerError):
    """Retry budget exhausted. Callers should retry later, this is not a slot conflict."""

    status_code = grpc.StatusCode.UNAVAILABLE

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"store still contended after {attempts} attempts")


def user_friendly_error(exc: Exception) -> str:
    code = getattr(exc, "status_code", None)
    if code == grpc.StatusCode.INVALID_ARGUMENT:
        return "Please check the details you entered."
    if code == grpc.StatusCode.NOT_FOUND:
        return "Not found or no longer available."
    if code == grpc.StatusCode.ALREADY_EXISTS:
        return "That time is already taken, please pick another slot."
    if code == grpc.StatusCode.FAILED_PRECONDITION:
        return "This booking can no longer be changed that way."
    if code == grpc.StatusCode.OUT_OF_RANGE:
        return "That date is too far ahead to book."
    if code == grpc.StatusCode.PERMISSION_DENIED:
        return "You are not allowed to do that."
    if code in {grpc.StatusCode.UNAVAILABLE, grpc.StatusCode.ABORTED}:
        return "The service is busy right now, please try again shortly."
    return "Something went wrong, please try again later."
