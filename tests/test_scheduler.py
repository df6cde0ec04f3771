import asyncio
from datetime import date, datetime, time, timedelta, timezone

import pytest
from pydantic import ValidationError

from booking_scheduler.dto import Actor, DayHours, ProviderPolicy, Role
from booking_scheduler.scheduling.interval import TimeInterval
from booking_scheduler.scheduling.state import BookingStatus
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
    StoreUnavailableError,
    UnknownServiceError,
)
from booking_scheduler.services.notifications import NotificationEvent
from booking_scheduler.services.scheduler import AppointmentScheduler
from booking_scheduler.services.store import SqlBookingStore

from conftest import CLIENT, MONDAY, NOW, PROVIDER, make_booking, make_service

SUNDAY = date(2025, 6, 1)
PROVIDER_ACTOR = Actor(PROVIDER, Role.PROVIDER)
CLIENT_ACTOR = Actor(CLIENT, Role.CLIENT)


def request(start, day=MONDAY, service_id="svc-cut", client_id=CLIENT, **kwargs):
    return BookingRequest(
        provider_id=PROVIDER,
        service_id=service_id,
        client_id=client_id,
        day=day,
        start_time=start,
        **kwargs,
    )


def utc(day, hour, minute=0):
    return datetime.combine(day, time(hour, minute), timezone.utc)


class Throttled(SchedulerError):
    retryable = True


class ThrottledStore(SqlBookingStore):
    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.attempts = 0

    async def run_transaction(self, provider_id, day, validate, write):
        self.attempts += 1
        if self.attempts == 1:
            raise Throttled("slow down")
        return await super().run_transaction(provider_id, day, validate, write)


class FlakyStore(SqlBookingStore):
    """Fails the first ``failures`` transactions with a transient error."""

    def __init__(self, session_factory, failures):
        super().__init__(session_factory)
        self.failures = failures
        self.attempts = 0

    async def run_transaction(self, provider_id, day, validate, write):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise StoreUnavailableError("database is locked")
        return await super().run_transaction(provider_id, day, validate, write)


class TestBookingRequest:
    def test_notes_limit(self):
        with pytest.raises(ValidationError):
            request(time(10), notes="x" * 1001)

    def test_phone_normalised(self):
        assert request(time(10), contact_phone="+7 (999) 123-45-67").contact_phone == "+79991234567"

    def test_bad_phone_rejected(self):
        with pytest.raises(ValidationError):
            request(time(10), contact_phone="12-34")

    def test_seconds_dropped(self):
        assert request(time(10, 0, 42)).start_time == time(10, 0)


class TestRequestBooking:
    @pytest.mark.asyncio
    async def test_creates_pending_booking_and_notifies_provider(self, scheduler, service, notifier):
        booking_id = await scheduler.request_booking(request(time(10), notes="  fringe  ", contact_phone="89991234567"))
        await scheduler.notifications.drain()

        booking = await scheduler.get_booking(booking_id)
        assert booking.status == BookingStatus.PENDING
        assert booking.service.name == "Haircut"
        assert booking.service.duration_minutes == 60
        assert booking.notes == "fringe"
        assert booking.contact_phone == "89991234567"
        assert booking.created_at == NOW

        assert len(notifier.calls) == 1
        recipient, event, payload = notifier.calls[0]
        assert (recipient, event) == (PROVIDER, NotificationEvent.NEW_BOOKING_REQUEST.value)
        assert payload["appointmentId"] == booking_id
        assert payload["startTime"] == "10:00"

    @pytest.mark.asyncio
    async def test_start_in_the_past(self, scheduler, service, clock):
        clock.now = utc(MONDAY, 10, 1)
        with pytest.raises(InvalidTimeError):
            await scheduler.request_booking(request(time(10)))

    @pytest.mark.asyncio
    async def test_start_equal_to_now(self, scheduler, service, clock):
        clock.now = utc(MONDAY, 10)
        with pytest.raises(InvalidTimeError):
            await scheduler.request_booking(request(time(10)))

    @pytest.mark.asyncio
    async def test_time_checked_before_service(self, scheduler, clock):
        clock.now = utc(MONDAY, 11)
        with pytest.raises(InvalidTimeError):
            await scheduler.request_booking(request(time(10), service_id="nope"))

    @pytest.mark.asyncio
    async def test_unknown_service(self, scheduler, service):
        with pytest.raises(UnknownServiceError):
            await scheduler.request_booking(request(time(10), service_id="nope"))

    @pytest.mark.asyncio
    async def test_inactive_service(self, scheduler, profiles):
        await profiles.save_service(make_service(is_active=False))
        with pytest.raises(UnknownServiceError):
            await scheduler.request_booking(request(time(10)))

    @pytest.mark.asyncio
    async def test_other_providers_service(self, scheduler, profiles):
        await profiles.save_service(make_service("svc-foreign", provider_id="prov-2"))
        with pytest.raises(UnknownServiceError):
            await scheduler.request_booking(request(time(10), service_id="svc-foreign"))

    @pytest.mark.asyncio
    async def test_outside_booking_window(self, scheduler, service):
        last = NOW.date() + timedelta(days=60)
        assert await scheduler.request_booking(request(time(10), day=last))
        with pytest.raises(OutOfWindowError) as exc_info:
            await scheduler.request_booking(request(time(10), day=last + timedelta(days=1)))
        assert exc_info.value.last_bookable == last

    @pytest.mark.asyncio
    async def test_window_uses_provider_policy(self, scheduler, service, profiles):
        await profiles.set_provider_policy(PROVIDER, ProviderPolicy(advance_booking_days=7, slot_step_minutes=15))
        with pytest.raises(OutOfWindowError):
            await scheduler.request_booking(request(time(10), day=NOW.date() + timedelta(days=8)))

    @pytest.mark.asyncio
    async def test_touching_bookings_allowed(self, scheduler, service):
        await scheduler.request_booking(request(time(10)))
        await scheduler.request_booking(request(time(11)))
        await scheduler.request_booking(request(time(9)))
        bookings = await scheduler.list_provider_bookings(PROVIDER)
        assert [b.start_time for b in bookings] == [time(9), time(10), time(11)]

    @pytest.mark.asyncio
    async def test_pending_booking_blocks(self, scheduler, service, short_service):
        first = await scheduler.request_booking(request(time(10)))
        with pytest.raises(SlotConflictError) as exc_info:
            await scheduler.request_booking(request(time(10, 30), service_id="svc-brow"))
        assert exc_info.value.booking_id == first

    @pytest.mark.asyncio
    async def test_service_edit_does_not_touch_existing_bookings(self, scheduler, service, profiles):
        booking_id = await scheduler.request_booking(request(time(10)))
        await profiles.save_service(make_service(duration=90, name="Long haircut"))

        booking = await scheduler.get_booking(booking_id)
        assert booking.service.duration_minutes == 60
        assert booking.service.name == "Haircut"
        # the stored booking still ends at 11:00
        assert await scheduler.request_booking(request(time(11), service_id="svc-cut"))


    @pytest.mark.asyncio
    async def test_booking_must_end_by_midnight(self, scheduler, service):
        with pytest.raises(InvalidTimeError):
            await scheduler.request_booking(request(time(23, 30)))

        late = await scheduler.get_booking(await scheduler.request_booking(request(time(23))))
        early = await scheduler.get_booking(
            await scheduler.request_booking(request(time(0), day=MONDAY + timedelta(days=1)))
        )
        assert late.interval().end == utc(MONDAY + timedelta(days=1), 0)
        assert not late.interval().overlaps(early.interval())

    @pytest.mark.asyncio
    async def test_midnight_limit_in_provider_zone(self, scheduler, service, profiles):
        await profiles.set_provider_policy(
            PROVIDER, ProviderPolicy(advance_booking_days=60, slot_step_minutes=30, tz_offset_min=180)
        )
        # 23:30 local is 20:30 UTC, still past the local day end
        with pytest.raises(InvalidTimeError):
            await scheduler.request_booking(request(time(23, 30)))
        assert await scheduler.request_booking(request(time(23)))


class TestScenario:
    @pytest.mark.asyncio
    async def test_conflict_then_adjacent_slot(self, scheduler, service, short_service, notifier):
        booking_id = await scheduler.request_booking(request(time(10), day=SUNDAY))
        await scheduler.confirm_booking(booking_id, PROVIDER_ACTOR)

        with pytest.raises(SlotConflictError) as exc_info:
            await scheduler.request_booking(request(time(10, 30), day=SUNDAY, service_id="svc-brow"))
        assert exc_info.value.conflicting == TimeInterval(utc(SUNDAY, 10), utc(SUNDAY, 11))
        assert exc_info.value.booking_id == booking_id

        second_id = await scheduler.request_booking(request(time(11), day=SUNDAY, service_id="svc-brow"))
        second = await scheduler.get_booking(second_id)
        assert second.status == BookingStatus.PENDING
        assert second.interval() == TimeInterval(utc(SUNDAY, 11), utc(SUNDAY, 11, 30))


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_same_slot_booked_once(self, scheduler, service):
        results = await asyncio.gather(
            *[scheduler.request_booking(request(time(10), client_id=f"client-{i}")) for i in range(10)],
            return_exceptions=True,
        )
        created = [r for r in results if isinstance(r, str)]
        conflicts = [r for r in results if isinstance(r, SlotConflictError)]
        assert len(created) == 1
        assert len(conflicts) == 9

        active = await scheduler.list_provider_bookings(PROVIDER, [BookingStatus.PENDING, BookingStatus.CONFIRMED])
        assert [b.id for b in active] == created

    @pytest.mark.asyncio
    async def test_overlapping_slots_across_store_instances(
        self, session_factory, profiles, service, short_service, notifier, settings, clock
    ):
        # separate stores share only the database, so SQLite lock errors are retried too
        settings = settings.model_copy(update={"tx_retries": 8, "retry_backoff_max_sec": 0.2})
        schedulers = [
            AppointmentScheduler(SqlBookingStore(session_factory), profiles, notifier, settings, clock=clock)
            for _ in range(3)
        ]
        starts = [time(10), time(10, 30), time(10, 15)]
        results = await asyncio.gather(
            *[s.request_booking(request(start, service_id="svc-brow")) for s, start in zip(schedulers, starts)],
            return_exceptions=True,
        )
        assert not [r for r in results if not isinstance(r, (str, SlotConflictError))]

        active = await schedulers[0].list_provider_bookings(PROVIDER, [BookingStatus.PENDING])
        intervals = [b.interval() for b in active]
        for i, a in enumerate(intervals):
            for b in intervals[i + 1:]:
                assert not a.overlaps(b)

    @pytest.mark.asyncio
    async def test_transient_failures_retried(self, session_factory, profiles, service, notifier, settings, clock):
        store = FlakyStore(session_factory, failures=2)
        scheduler = AppointmentScheduler(store, profiles, notifier, settings, clock=clock)
        booking_id = await scheduler.request_booking(request(time(10)))
        assert store.attempts == 3
        assert (await scheduler.get_booking(booking_id)).status == BookingStatus.PENDING

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, session_factory, profiles, service, notifier, settings, clock):
        store = FlakyStore(session_factory, failures=100)
        scheduler = AppointmentScheduler(store, profiles, notifier, settings, clock=clock)
        with pytest.raises(PersistenceConflictError) as exc_info:
            await scheduler.request_booking(request(time(10)))
        assert exc_info.value.attempts == 4
        assert store.attempts == 4
        await scheduler.notifications.drain()
        assert notifier.calls == []

    @pytest.mark.asyncio
    async def test_retryable_scheduler_error_retried(self, session_factory, profiles, service, notifier, settings, clock):
        store = ThrottledStore(session_factory)
        scheduler = AppointmentScheduler(store, profiles, notifier, settings, clock=clock)
        assert await scheduler.request_booking(request(time(10)))
        assert store.attempts == 2

    @pytest.mark.asyncio
    async def test_slot_conflict_not_retried(self, session_factory, profiles, service, notifier, settings, clock):
        store = FlakyStore(session_factory, failures=0)
        scheduler = AppointmentScheduler(store, profiles, notifier, settings, clock=clock)
        await scheduler.request_booking(request(time(10)))
        with pytest.raises(SlotConflictError):
            await scheduler.request_booking(request(time(10)))
        assert store.attempts == 2


class TestTransitions:
    @pytest.mark.asyncio
    async def test_confirm(self, scheduler, service, notifier, clock):
        booking_id = await scheduler.request_booking(request(time(10)))
        clock.advance(minutes=5)
        confirmed = await scheduler.confirm_booking(booking_id, PROVIDER_ACTOR)
        await scheduler.notifications.drain()

        assert confirmed.status == BookingStatus.CONFIRMED
        assert confirmed.confirmed_at == clock.now
        confirmed_events = notifier.events(NotificationEvent.BOOKING_CONFIRMED.value)
        assert [c[0] for c in confirmed_events] == [CLIENT]

    @pytest.mark.asyncio
    async def test_confirm_revalidates_overlap(self, scheduler, store, service, notifier):
        booking_id = await scheduler.request_booking(request(time(10)))
        # written straight to the bucket, skipping request validation
        intruder = make_booking("b-intruder", start=time(10, 30), client_id="client-2")
        await store.run_transaction(PROVIDER, MONDAY, lambda bookings: None, lambda tx: tx.append_booking(intruder))

        with pytest.raises(SlotConflictError) as exc_info:
            await scheduler.confirm_booking(booking_id, PROVIDER_ACTOR)
        await scheduler.notifications.drain()

        assert exc_info.value.conflicting == intruder.interval()
        assert exc_info.value.booking_id == "b-intruder"
        assert (await scheduler.get_booking(booking_id)).status == BookingStatus.PENDING
        assert notifier.events(NotificationEvent.BOOKING_CONFIRMED.value) == []

    @pytest.mark.asyncio
    async def test_only_owning_provider_confirms(self, scheduler, service):
        booking_id = await scheduler.request_booking(request(time(10)))
        with pytest.raises(NotAuthorizedError):
            await scheduler.confirm_booking(booking_id, CLIENT_ACTOR)
        with pytest.raises(NotAuthorizedError):
            await scheduler.confirm_booking(booking_id, Actor("prov-2", Role.PROVIDER))

    @pytest.mark.asyncio
    async def test_confirm_twice(self, scheduler, service):
        booking_id = await scheduler.request_booking(request(time(10)))
        await scheduler.confirm_booking(booking_id, PROVIDER_ACTOR)
        with pytest.raises(InvalidTransitionError):
            await scheduler.confirm_booking(booking_id, PROVIDER_ACTOR)

    @pytest.mark.asyncio
    async def test_unknown_booking(self, scheduler):
        with pytest.raises(BookingNotFoundError):
            await scheduler.confirm_booking("missing", PROVIDER_ACTOR)

    @pytest.mark.asyncio
    async def test_client_cancel_frees_slot(self, scheduler, service, notifier):
        booking_id = await scheduler.request_booking(request(time(10)))
        cancelled = await scheduler.cancel_booking(booking_id, CLIENT_ACTOR)
        await scheduler.notifications.drain()

        assert cancelled.status == BookingStatus.CANCELLED
        assert cancelled.cancelled_at == NOW
        assert cancelled.cancelled_by == Role.CLIENT
        assert cancelled.cancel_reason is None
        cancel_events = notifier.events(NotificationEvent.BOOKING_CANCELLED.value)
        assert [c[0] for c in cancel_events] == [PROVIDER]

        assert await scheduler.request_booking(request(time(10), client_id="client-2"))

    @pytest.mark.asyncio
    async def test_provider_cancel_needs_reason(self, scheduler, service, notifier):
        booking_id = await scheduler.request_booking(request(time(10)))
        await scheduler.confirm_booking(booking_id, PROVIDER_ACTOR)
        with pytest.raises(CancelReasonRequiredError):
            await scheduler.cancel_booking(booking_id, PROVIDER_ACTOR, reason="   ")

        cancelled = await scheduler.cancel_booking(booking_id, PROVIDER_ACTOR, reason="Sick day")
        await scheduler.notifications.drain()
        assert cancelled.cancel_reason == "Sick day"
        assert cancelled.cancelled_by == Role.PROVIDER
        recipient, _, payload = notifier.events(NotificationEvent.BOOKING_CANCELLED.value)[0]
        assert recipient == CLIENT
        assert payload["reason"] == "Sick day"

    @pytest.mark.asyncio
    async def test_cancel_twice_notifies_once(self, scheduler, service, notifier):
        booking_id = await scheduler.request_booking(request(time(10)))
        await scheduler.cancel_booking(booking_id, CLIENT_ACTOR)
        with pytest.raises(InvalidTransitionError):
            await scheduler.cancel_booking(booking_id, CLIENT_ACTOR)
        await scheduler.notifications.drain()
        assert len(notifier.events(NotificationEvent.BOOKING_CANCELLED.value)) == 1

    @pytest.mark.asyncio
    async def test_stranger_cannot_cancel(self, scheduler, service):
        booking_id = await scheduler.request_booking(request(time(10)))
        with pytest.raises(NotAuthorizedError):
            await scheduler.cancel_booking(booking_id, Actor("client-2", Role.CLIENT))

    @pytest.mark.asyncio
    async def test_complete_after_end(self, scheduler, service, clock, notifier):
        booking_id = await scheduler.request_booking(request(time(10)))
        await scheduler.confirm_booking(booking_id, PROVIDER_ACTOR)
        await scheduler.notifications.drain()
        calls_before = len(notifier.calls)

        clock.now = utc(MONDAY, 10, 30)
        with pytest.raises(InvalidTransitionError):
            await scheduler.complete_booking(booking_id, PROVIDER_ACTOR)

        clock.now = utc(MONDAY, 11)
        completed = await scheduler.complete_booking(booking_id, PROVIDER_ACTOR)
        await scheduler.notifications.drain()
        assert completed.status == BookingStatus.COMPLETED
        assert completed.completed_at == clock.now
        assert len(notifier.calls) == calls_before

        with pytest.raises(InvalidTransitionError):
            await scheduler.cancel_booking(booking_id, CLIENT_ACTOR)

    @pytest.mark.asyncio
    async def test_pending_cannot_complete(self, scheduler, service, clock):
        booking_id = await scheduler.request_booking(request(time(10)))
        clock.now = utc(MONDAY, 12)
        with pytest.raises(InvalidTransitionError):
            await scheduler.complete_booking(booking_id, PROVIDER_ACTOR)

    @pytest.mark.asyncio
    async def test_complete_elapsed(self, scheduler, service, clock):
        done = await scheduler.request_booking(request(time(9)))
        running = await scheduler.request_booking(request(time(11)))
        pending = await scheduler.request_booking(request(time(8)))
        for booking_id in (done, running):
            await scheduler.confirm_booking(booking_id, PROVIDER_ACTOR)

        clock.now = utc(MONDAY, 11, 30)
        assert await scheduler.complete_elapsed() == [done]
        assert (await scheduler.get_booking(running)).status == BookingStatus.CONFIRMED
        assert (await scheduler.get_booking(pending)).status == BookingStatus.PENDING
        assert await scheduler.complete_elapsed(PROVIDER) == []


class TestAvailability:
    @pytest.mark.asyncio
    async def test_grid_marks_booked_intervals(self, scheduler, service, short_service):
        await scheduler.request_booking(request(time(10)))
        slots = await scheduler.available_slots(PROVIDER, "svc-brow", MONDAY)
        by_label = {s.start.strftime("%H:%M"): s.available for s in slots}

        assert by_label["09:30"]
        assert not by_label["10:00"]
        assert not by_label["10:30"]
        assert by_label["11:00"]
        assert list(by_label)[-1] == "16:30"

    @pytest.mark.asyncio
    async def test_closed_day(self, scheduler, service):
        assert await scheduler.available_slots(PROVIDER, "svc-cut", SUNDAY) == []

    @pytest.mark.asyncio
    async def test_policy_hours_and_step(self, scheduler, service, profiles):
        policy = ProviderPolicy(
            advance_booking_days=30,
            slot_step_minutes=15,
            weekly_hours={6: DayHours(time(12), time(14))},
        )
        await profiles.set_provider_policy(PROVIDER, policy)
        slots = await scheduler.available_slots(PROVIDER, "svc-cut", SUNDAY)
        assert [s.start.strftime("%H:%M") for s in slots] == ["12:00", "12:15", "12:30", "12:45", "13:00"]
        assert await scheduler.available_slots(PROVIDER, "svc-cut", MONDAY) == []

    @pytest.mark.asyncio
    async def test_cancelled_booking_reopens_slots(self, scheduler, service):
        booking_id = await scheduler.request_booking(request(time(10)))
        await scheduler.cancel_booking(booking_id, CLIENT_ACTOR)
        slots = await scheduler.available_slots(PROVIDER, "svc-cut", MONDAY)
        assert all(s.available for s in slots)

    @pytest.mark.asyncio
    async def test_unknown_service(self, scheduler):
        with pytest.raises(UnknownServiceError):
            await scheduler.available_slots(PROVIDER, "nope", MONDAY)


class TestReadHelpers:
    @pytest.mark.asyncio
    async def test_client_and_provider_lists(self, scheduler, service):
        later = await scheduler.request_booking(request(time(10), day=MONDAY + timedelta(days=1)))
        earlier = await scheduler.request_booking(request(time(15)))
        await scheduler.request_booking(request(time(12), client_id="client-2"))

        assert [b.id for b in await scheduler.list_client_bookings(CLIENT)] == [earlier, later]
        assert len(await scheduler.list_provider_bookings(PROVIDER)) == 3

    @pytest.mark.asyncio
    async def test_upcoming_and_today(self, scheduler, service, clock):
        today = NOW.date()
        past = await scheduler.request_booking(request(time(13), day=today))
        cancelled = await scheduler.request_booking(request(time(15), day=today))
        await scheduler.cancel_booking(cancelled, CLIENT_ACTOR)
        await scheduler.request_booking(request(time(10)))

        clock.now = utc(today, 13, 30)
        assert await scheduler.upcoming_count(PROVIDER) == 1
        assert [b.id for b in await scheduler.todays_bookings(PROVIDER)] == [past]

    @pytest.mark.asyncio
    async def test_subscribe_sees_lifecycle(self, scheduler, service):
        async with scheduler.subscribe(PROVIDER) as sub:
            booking_id = await scheduler.request_booking(request(time(10)))
            await scheduler.confirm_booking(booking_id, PROVIDER_ACTOR)
            events = [await sub.get(timeout=1), await sub.get(timeout=1)]
        assert [e.kind for e in events] == ["created", "status_changed"]
        assert [e.sequence for e in events] == [1, 2]
        assert events[1].booking.status == BookingStatus.CONFIRMED
