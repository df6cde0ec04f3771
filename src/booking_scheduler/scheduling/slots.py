"""
Slot Generation

Turns a provider's working hours into a discrete grid of candidate start
times and marks each candidate free or taken for a given service duration.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import TYPE_CHECKING, Iterable, List, Optional, Union

from booking_scheduler.scheduling.interval import TimeInterval, find_conflict
from booking_scheduler.scheduling.state import is_active

if TYPE_CHECKING:
    from booking_scheduler.dto import BookingDTO


@dataclass(frozen=True)
class SlotAvailability:
    start: datetime
    end: datetime
    available: bool
    conflicting: Optional[TimeInterval] = None


def generate_slots(
    open_time: time,
    close_time: time,
    step_minutes: int,
    day: date,
    duration_minutes: Optional[int] = None,
    tz: tzinfo = timezone.utc,
) -> List[datetime]:
    """
    Candidate start times for ``day`` between ``open_time`` and ``close_time``.

    A start ``s`` is produced only if ``s + duration`` still ends at or
    before closing; ``duration`` defaults to the step, so with no service
    selected the last slot is the last full step before close.

    >>> [s.strftime("%H:%M") for s in generate_slots(time(9), time(10, 30), 30, date(2025, 6, 2), 60)]
    ['09:00', '09:30']
    """
    if step_minutes <= 0:
        raise ValueError("step_minutes must be positive")
    duration = duration_minutes if duration_minutes is not None else step_minutes
    if duration <= 0:
        raise ValueError("duration_minutes must be positive")

    opening = datetime.combine(day, open_time.replace(tzinfo=None), tz)
    closing = datetime.combine(day, close_time.replace(tzinfo=None), tz)
    step = timedelta(minutes=step_minutes)
    length = timedelta(minutes=duration)

    slots: List[datetime] = []
    current = opening
    while current + length <= closing:
        slots.append(current)
        current += step
    return slots


def _occupied_intervals(existing: Iterable, tz_offset_min: int) -> List[TimeInterval]:
    occupied: List[TimeInterval] = []
    for item in existing:
        if isinstance(item, TimeInterval):
            occupied.append(item)
            continue
        if not is_active(item.status):
            continue
        occupied.append(item.interval(tz_offset_min))
    return occupied


def annotate_availability(
    slots: Iterable[datetime],
    existing_bookings: Iterable[Union[TimeInterval, "BookingDTO"]],
    service_duration: int,
    now: Optional[datetime] = None,
    tz_offset_min: int = 0,
) -> List[SlotAvailability]:
    """
    Mark each slot available iff ``[slot, slot + service_duration)`` overlaps
    no pending/confirmed booking. Cancelled and completed bookings never
    block. When ``now`` is given, slots that already started are unavailable.
    """
    occupied = _occupied_intervals(existing_bookings, tz_offset_min)
    result: List[SlotAvailability] = []
    for start in slots:
        candidate = TimeInterval.from_start(start, service_duration)
        conflict = find_conflict(candidate, occupied)
        available = conflict is None
        if now is not None and start <= now:
            available = False
        result.append(
            SlotAvailability(
                start=candidate.start,
                end=candidate.end,
                available=available,
                conflicting=conflict,
            )
        )
    return result
