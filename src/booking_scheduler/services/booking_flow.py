import logging
import time as _time
from dataclasses import dataclass
from datetime import date, time
from typing import Callable, Optional

from booking_scheduler.scheduling.interval import TimeInterval
from booking_scheduler.scheduling.slots import SlotAvailability
from booking_scheduler.schemas import BookingRequest
from booking_scheduler.services.scheduler import AppointmentScheduler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CalendarSnapshot:
    day: date
    intervals: tuple[TimeInterval, ...]
    taken_at: float


class BookingFlow:
    """One client's pass through the booking screens for a single service.

    Booked intervals for the selected date are cached as a timestamped
    snapshot so re-rendering the slot grid does not hit the store every time.
    The snapshot is dropped when the date changes, when it is older than
    ``ttl_sec`` and right before the booking is submitted; the final overlap
    check always happens in the scheduler's transaction.
    """

    def __init__(
        self,
        scheduler: AppointmentScheduler,
        *,
        client_id: str,
        provider_id: str,
        service_id: str,
        ttl_sec: float = 120,
        monotonic: Callable[[], float] = _time.monotonic,
    ):
        self._scheduler = scheduler
        self.client_id = client_id
        self.provider_id = provider_id
        self.service_id = service_id
        self._ttl_sec = ttl_sec
        self._monotonic = monotonic
        self._day: Optional[date] = None
        self._snapshot: Optional[CalendarSnapshot] = None

    @property
    def day(self) -> Optional[date]:
        return self._day

    @property
    def snapshot(self) -> Optional[CalendarSnapshot]:
        return self._snapshot

    def select_date(self, day: date) -> None:
        if day != self._day:
            self._snapshot = None
        self._day = day

    def invalidate(self) -> None:
        self._snapshot = None

    def _is_fresh(self) -> bool:
        snap = self._snapshot
        return (
            snap is not None
            and snap.day == self._day
            and self._monotonic() - snap.taken_at < self._ttl_sec
        )

    async def _booked(self) -> tuple[TimeInterval, ...]:
        if self._is_fresh():
            return self._snapshot.intervals
        intervals = tuple(await self._scheduler.booked_intervals(self.provider_id, self._day))
        self._snapshot = CalendarSnapshot(day=self._day, intervals=intervals, taken_at=self._monotonic())
        logger.debug(
            "flow: snapshot refreshed client=%s provider=%s date=%s booked=%s",
            self.client_id,
            self.provider_id,
            self._day,
            len(intervals),
        )
        return intervals

    async def availability(self) -> list[SlotAvailability]:
        if self._day is None:
            raise ValueError("select a date first")
        booked = await self._booked()
        return await self._scheduler.available_slots(
            self.provider_id, self.service_id, self._day, occupied=booked
        )

    async def submit(self, start_time: time, notes: str = "", contact_phone: Optional[str] = None) -> str:
        if self._day is None:
            raise ValueError("select a date first")
        self.invalidate()
        request = BookingRequest(
            provider_id=self.provider_id,
            service_id=self.service_id,
            client_id=self.client_id,
            day=self._day,
            start_time=start_time,
            notes=notes,
            contact_phone=contact_phone,
        )
        return await self._scheduler.request_booking(request)
