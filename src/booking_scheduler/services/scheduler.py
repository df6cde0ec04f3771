import logging
import uuid
from datetime import date, datetime, time, timedelta
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from booking_scheduler.config import Settings
from booking_scheduler.dto import Actor, BookingDTO, ProviderPolicy, Role, ServiceDTO
from booking_scheduler.scheduling.interval import TimeInterval, find_conflict
from booking_scheduler.scheduling.slots import SlotAvailability, annotate_availability, generate_slots
from booking_scheduler.scheduling.state import ACTIVE_STATUSES, BookingStatus, ensure_transition, is_active
from booking_scheduler.schemas import BookingRequest
from booking_scheduler.services.errors import (
    BookingNotFoundError,
    CancelReasonRequiredError,
    InvalidTimeError,
    InvalidTransitionError,
    NotAuthorizedError,
    OutOfWindowError,
    PersistenceConflictError,
    SchedulerError,
    SlotConflictError,
    UnknownServiceError,
)
from booking_scheduler.services.feed import Subscription
from booking_scheduler.services.notifications import (
    NotificationDispatcher,
    NotificationEvent,
    Notifier,
    booking_payload,
)
from booking_scheduler.services.profiles import ProfileStore
from booking_scheduler.services.store import BookingStore, BucketTransaction
from booking_scheduler.utils.corr import new_corr_id
from booking_scheduler.utils.time import combine, local_today, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _is_retryable(exc: BaseException) -> bool:
    return getattr(exc, "retryable", False)


def _short_exc(retry_state: RetryCallState) -> str:
    if retry_state.outcome is None or not retry_state.outcome.failed:
        return ""
    exc = retry_state.outcome.exception()
    return f"{type(exc).__name__}: {exc}"


def _ensure_free(
    candidate: TimeInterval,
    bookings: Iterable[BookingDTO],
    tz_offset_min: int,
    exclude_id: Optional[str] = None,
) -> None:
    occupied: dict[TimeInterval, str] = {}
    for booking in bookings:
        if booking.id == exclude_id or not is_active(booking.status):
            continue
        occupied.setdefault(booking.interval(tz_offset_min), booking.id)
    conflict = find_conflict(candidate, occupied)
    if conflict is not None:
        raise SlotConflictError(conflict, occupied[conflict])


class AppointmentScheduler:
    """Booking lifecycle for a provider marketplace.

    Every write goes through ``BookingStore.run_transaction`` on the booking's
    provider/date bucket, so overlap checks and status changes are validated
    against the state that is actually committed. Transient store failures
    are retried with jittered exponential backoff; notifications are sent
    after commit and never fail the operation.
    """

    def __init__(
        self,
        store: BookingStore,
        profiles: ProfileStore,
        notifier: Notifier | NotificationDispatcher,
        settings: Optional[Settings] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._profiles = profiles
        if isinstance(notifier, NotificationDispatcher):
            self._notifications = notifier
        else:
            self._notifications = NotificationDispatcher(notifier)
        self._settings = settings or Settings()
        self._clock = clock

    @property
    def notifications(self) -> NotificationDispatcher:
        return self._notifications

    # ---- retries -------------------------------------------------------

    async def _retrying(self, operation: str, corr: str, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        attempts = self._settings.tx_retries + 1

        def log_before_sleep(retry_state: RetryCallState) -> None:
            sleep_seconds = getattr(retry_state.next_action, "sleep", None) or 0.0
            logger.warning(
                "scheduler: retry op=%s corr=%s attempt=%s/%s sleep=%.3f reason=%s",
                operation,
                corr,
                retry_state.attempt_number,
                attempts,
                sleep_seconds,
                _short_exc(retry_state),
            )

        retryer = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_random_exponential(
                multiplier=self._settings.retry_backoff_sec,
                max=self._settings.retry_backoff_max_sec,
            ),
            retry=retry_if_exception(_is_retryable),
            before_sleep=log_before_sleep,
            reraise=True,
        )
        try:
            return await retryer(func, *args, **kwargs)
        except SchedulerError as exc:
            if not exc.retryable:
                raise
            logger.error(
                "scheduler: giving up op=%s corr=%s attempts=%s error=%s", operation, corr, attempts, exc
            )
            raise PersistenceConflictError(attempts) from exc

    # ---- lookups -------------------------------------------------------

    async def _policy(self, provider_id: str, corr: str) -> ProviderPolicy:
        policy = await self._retrying("get_provider_policy", corr, self._profiles.get_provider_policy, provider_id)
        if policy is not None:
            return policy
        return ProviderPolicy(
            advance_booking_days=self._settings.advance_booking_days,
            slot_step_minutes=self._settings.slot_step_min,
        )

    async def _active_service(self, provider_id: str, service_id: str, corr: str) -> ServiceDTO:
        service = await self._retrying("get_service", corr, self._profiles.get_service, provider_id, service_id)
        if service is None or not service.is_active or service.provider_id != provider_id:
            raise UnknownServiceError(provider_id, service_id)
        return service

    async def _load_booking(self, booking_id: str, corr: str) -> BookingDTO:
        booking = await self._retrying("get_booking", corr, self._store.get_booking, booking_id)
        if booking is None:
            raise BookingNotFoundError(booking_id)
        return booking

    # ---- availability --------------------------------------------------

    async def booked_intervals(self, provider_id: str, day: date) -> list[TimeInterval]:
        """Intervals occupied by pending/confirmed bookings of the provider on ``day``."""
        corr = new_corr_id()
        policy = await self._policy(provider_id, corr)
        bookings = await self._retrying(
            "read_bookings", corr, self._store.read_bookings, provider_id, day, ACTIVE_STATUSES
        )
        return sorted(b.interval(policy.tz_offset_min) for b in bookings if is_active(b.status))

    async def available_slots(
        self,
        provider_id: str,
        service_id: str,
        day: date,
        occupied: Optional[Iterable[TimeInterval]] = None,
    ) -> list[SlotAvailability]:
        """Slot grid for ``day`` sized to the service, each marked free or taken.

        ``occupied`` replaces the store read with an already known set of
        booked intervals.
        """
        corr = new_corr_id()
        service = await self._active_service(provider_id, service_id, corr)
        policy = await self._policy(provider_id, corr)
        hours = policy.hours_for(day)
        if hours is None:
            logger.info("scheduler: closed day provider=%s date=%s corr=%s", provider_id, day, corr)
            return []

        slots = generate_slots(
            hours.open_time,
            hours.close_time,
            policy.slot_step_minutes,
            day,
            service.duration_minutes,
            tz=policy.tzinfo,
        )
        if occupied is None:
            occupied = await self._retrying(
                "read_bookings", corr, self._store.read_bookings, provider_id, day, ACTIVE_STATUSES
            )
        result = annotate_availability(
            slots,
            occupied,
            service.duration_minutes,
            now=self._clock(),
            tz_offset_min=policy.tz_offset_min,
        )
        logger.debug(
            "scheduler: slots provider=%s service=%s date=%s total=%s free=%s corr=%s",
            provider_id,
            service_id,
            day,
            len(result),
            sum(1 for s in result if s.available),
            corr,
        )
        return result

    # ---- booking creation ---------------------------------------------

    async def request_booking(self, request: BookingRequest) -> str:
        corr = new_corr_id()
        logger.info(
            "scheduler: request_booking provider=%s service=%s client=%s date=%s start=%s corr=%s",
            request.provider_id,
            request.service_id,
            request.client_id,
            request.day,
            request.start_time,
            corr,
        )
        policy = await self._policy(request.provider_id, corr)
        now = self._clock()
        start = combine(request.day, request.start_time, policy.tz_offset_min)
        if start <= now:
            raise InvalidTimeError(start, now)

        service = await self._active_service(request.provider_id, request.service_id, corr)
        candidate = TimeInterval.from_start(start, service.duration_minutes)
        # calendars are bucketed per local day, so a booking must end by midnight
        day_end = combine(request.day + timedelta(days=1), time(0), policy.tz_offset_min)
        if candidate.end > day_end:
            raise InvalidTimeError(start, now, detail=f"appointment {candidate} runs past the end of {request.day}")
        last_bookable = policy.last_bookable_day(local_today(now, policy.tz_offset_min))

        booking = BookingDTO(
            id=str(uuid.uuid4()),
            client_id=request.client_id,
            provider_id=request.provider_id,
            service_id=service.id,
            service=service.snapshot(),
            day=request.day,
            start_time=request.start_time,
            status=BookingStatus.PENDING,
            created_at=now,
            notes=request.notes,
            contact_phone=request.contact_phone,
            updated_at=now,
        )

        def validate(bookings: list[BookingDTO]) -> None:
            _ensure_free(candidate, bookings, policy.tz_offset_min)
            if request.day > last_bookable:
                raise OutOfWindowError(request.day, last_bookable)

        def write(tx: BucketTransaction) -> BookingDTO:
            return tx.append_booking(booking)

        try:
            created = await self._retrying(
                "create_booking",
                corr,
                self._store.run_transaction,
                request.provider_id,
                request.day,
                validate,
                write,
            )
        except SlotConflictError as exc:
            logger.info(
                "scheduler: slot conflict provider=%s candidate=%s conflicting=%s booking=%s corr=%s",
                request.provider_id,
                candidate,
                exc.conflicting,
                exc.booking_id,
                corr,
            )
            raise

        logger.info(
            "scheduler: booking created id=%s provider=%s interval=%s corr=%s",
            created.id,
            created.provider_id,
            candidate,
            corr,
        )
        self._notifications.dispatch(
            created.provider_id, NotificationEvent.NEW_BOOKING_REQUEST, booking_payload(created)
        )
        return created.id

    # ---- status transitions -------------------------------------------

    async def _transition(
        self,
        booking: BookingDTO,
        target: BookingStatus,
        corr: str,
        *,
        check: Optional[Callable[[BookingDTO, list[BookingDTO]], None]] = None,
        **fields,
    ) -> BookingDTO:
        def validate(bookings: list[BookingDTO]) -> None:
            current = next((b for b in bookings if b.id == booking.id), None)
            if current is None:
                raise BookingNotFoundError(booking.id)
            ensure_transition(booking.id, current.status, target)
            if check is not None:
                check(current, bookings)

        def write(tx: BucketTransaction) -> BookingDTO:
            return tx.update_booking_status(booking.id, target, **fields)

        changed = await self._retrying(
            f"{target.value}_booking",
            corr,
            self._store.run_transaction,
            booking.provider_id,
            booking.day,
            validate,
            write,
        )
        logger.info(
            "scheduler: booking %s id=%s provider=%s corr=%s", target.value, booking.id, booking.provider_id, corr
        )
        return changed

    async def confirm_booking(self, booking_id: str, actor: Actor) -> BookingDTO:
        corr = new_corr_id()
        booking = await self._load_booking(booking_id, corr)
        if actor.role != Role.PROVIDER or actor.user_id != booking.provider_id:
            raise NotAuthorizedError(actor.user_id, "confirm", booking_id)
        policy = await self._policy(booking.provider_id, corr)

        def no_overlap(current: BookingDTO, bookings: list[BookingDTO]) -> None:
            _ensure_free(current.interval(policy.tz_offset_min), bookings, policy.tz_offset_min, exclude_id=current.id)

        now = self._clock()
        confirmed = await self._transition(
            booking,
            BookingStatus.CONFIRMED,
            corr,
            check=no_overlap,
            confirmed_at=now,
            updated_at=now,
        )
        self._notifications.dispatch(
            confirmed.client_id, NotificationEvent.BOOKING_CONFIRMED, booking_payload(confirmed)
        )
        return confirmed

    async def cancel_booking(self, booking_id: str, actor: Actor, reason: Optional[str] = None) -> BookingDTO:
        corr = new_corr_id()
        booking = await self._load_booking(booking_id, corr)
        if actor.role == Role.PROVIDER and actor.user_id == booking.provider_id:
            recipient = booking.client_id
        elif actor.role == Role.CLIENT and actor.user_id == booking.client_id:
            recipient = booking.provider_id
        else:
            raise NotAuthorizedError(actor.user_id, "cancel", booking_id)
        reason = (reason or "").strip() or None

        def reason_given(current: BookingDTO, bookings: list[BookingDTO]) -> None:
            if actor.role == Role.PROVIDER and reason is None:
                raise CancelReasonRequiredError(booking_id)

        now = self._clock()
        cancelled = await self._transition(
            booking,
            BookingStatus.CANCELLED,
            corr,
            check=reason_given,
            cancelled_at=now,
            updated_at=now,
            cancel_reason=reason,
            cancelled_by=actor.role,
        )
        self._notifications.dispatch(recipient, NotificationEvent.BOOKING_CANCELLED, booking_payload(cancelled))
        return cancelled

    async def complete_booking(self, booking_id: str, actor: Actor) -> BookingDTO:
        corr = new_corr_id()
        booking = await self._load_booking(booking_id, corr)
        if actor.role != Role.PROVIDER or actor.user_id != booking.provider_id:
            raise NotAuthorizedError(actor.user_id, "complete", booking_id)
        return await self._complete(booking, corr)

    async def _complete(self, booking: BookingDTO, corr: str) -> BookingDTO:
        policy = await self._policy(booking.provider_id, corr)
        now = self._clock()

        def has_ended(current: BookingDTO, bookings: list[BookingDTO]) -> None:
            end = current.interval(policy.tz_offset_min).end
            if end > now:
                raise InvalidTransitionError(
                    current.id,
                    current.status.value,
                    BookingStatus.COMPLETED.value,
                    detail=f"appointment ends at {end.isoformat()}",
                )

        return await self._transition(
            booking,
            BookingStatus.COMPLETED,
            corr,
            check=has_ended,
            completed_at=now,
            updated_at=now,
        )

    async def complete_elapsed(self, provider_id: Optional[str] = None) -> list[str]:
        """Complete every confirmed booking whose end has passed; returns their ids."""
        corr = new_corr_id()
        now = self._clock()
        # local dates run at most a day ahead of UTC
        candidates = await self._retrying(
            "list_bookings",
            corr,
            self._store.list_bookings,
            provider_id=provider_id,
            statuses=[BookingStatus.CONFIRMED],
            date_to=now.date() + timedelta(days=1),
        )
        policies: dict[str, ProviderPolicy] = {}
        completed: list[str] = []
        for booking in candidates:
            if booking.provider_id not in policies:
                policies[booking.provider_id] = await self._policy(booking.provider_id, corr)
            if booking.interval(policies[booking.provider_id].tz_offset_min).end > now:
                continue
            try:
                await self._complete(booking, corr)
            except (InvalidTransitionError, PersistenceConflictError) as exc:
                logger.warning("scheduler: sweep skipped booking=%s corr=%s reason=%s", booking.id, corr, exc)
                continue
            completed.append(booking.id)
        if completed:
            logger.info("scheduler: sweep completed=%s provider=%s corr=%s", len(completed), provider_id, corr)
        return completed

    # ---- read helpers --------------------------------------------------

    async def get_booking(self, booking_id: str) -> BookingDTO:
        return await self._load_booking(booking_id, new_corr_id())

    async def list_client_bookings(self, client_id: str) -> list[BookingDTO]:
        return await self._retrying(
            "list_bookings", new_corr_id(), self._store.list_bookings, client_id=client_id
        )

    async def list_provider_bookings(
        self, provider_id: str, statuses: Optional[Iterable[BookingStatus]] = None
    ) -> list[BookingDTO]:
        return await self._retrying(
            "list_bookings", new_corr_id(), self._store.list_bookings, provider_id=provider_id, statuses=statuses
        )

    async def upcoming_count(self, provider_id: str) -> int:
        corr = new_corr_id()
        policy = await self._policy(provider_id, corr)
        now = self._clock()
        bookings = await self._retrying(
            "list_bookings",
            corr,
            self._store.list_bookings,
            provider_id=provider_id,
            statuses=ACTIVE_STATUSES,
            date_from=local_today(now, policy.tz_offset_min),
        )
        return sum(1 for b in bookings if b.interval(policy.tz_offset_min).start > now)

    async def todays_bookings(self, provider_id: str) -> list[BookingDTO]:
        corr = new_corr_id()
        policy = await self._policy(provider_id, corr)
        today = local_today(self._clock(), policy.tz_offset_min)
        return await self._retrying(
            "read_bookings", corr, self._store.read_bookings, provider_id, today, ACTIVE_STATUSES
        )

    def subscribe(self, provider_id: str) -> Subscription:
        return self._store.feed.subscribe(provider_id)
