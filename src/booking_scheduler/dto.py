from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta, tzinfo
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional

from booking_scheduler.scheduling.interval import TimeInterval
from booking_scheduler.scheduling.state import BookingStatus
from booking_scheduler.utils.time import combine, fmt_hhmm, from_iso, offset_tz, parse_hhmm, to_iso

MIN_SERVICE_DURATION_MIN = 5


class Role(str, Enum):
    CLIENT = "client"
    PROVIDER = "provider"


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: Role


@dataclass(frozen=True)
class ServiceSnapshot:
    name: str
    category: str
    price: Decimal
    duration_minutes: int


@dataclass
class ServiceDTO:
    id: str
    provider_id: str
    name: str
    category: str
    price: Decimal
    duration_minutes: int
    description: str = ""
    is_active: bool = True

    def __post_init__(self) -> None:
        self.price = Decimal(self.price)
        if self.price < 0:
            raise ValueError(f"service {self.id}: price must not be negative")
        if int(self.duration_minutes) != self.duration_minutes or self.duration_minutes < MIN_SERVICE_DURATION_MIN:
            raise ValueError(
                f"service {self.id}: duration must be a whole number of minutes >= {MIN_SERVICE_DURATION_MIN}"
            )

    def snapshot(self) -> ServiceSnapshot:
        return ServiceSnapshot(
            name=self.name,
            category=self.category,
            price=self.price,
            duration_minutes=self.duration_minutes,
        )


@dataclass(frozen=True)
class DayHours:
    open_time: time
    close_time: time


# Monday-Friday 09:00-17:00, weekend closed.
DEFAULT_WEEKLY_HOURS: dict[int, DayHours] = {
    weekday: DayHours(time(9, 0), time(17, 0)) for weekday in range(5)
}


@dataclass(frozen=True)
class ProviderPolicy:
    advance_booking_days: int
    slot_step_minutes: int
    tz_offset_min: int = 0
    # weekday (0 = Monday) -> hours; a missing weekday is a closed day
    weekly_hours: Mapping[int, DayHours] = field(default_factory=lambda: dict(DEFAULT_WEEKLY_HOURS))

    @property
    def tzinfo(self) -> tzinfo:
        return offset_tz(self.tz_offset_min)

    def hours_for(self, day: date) -> Optional[DayHours]:
        return self.weekly_hours.get(day.weekday())

    def last_bookable_day(self, today: date) -> date:
        return today + timedelta(days=self.advance_booking_days)


@dataclass
class BookingDTO:
    id: str
    client_id: str
    provider_id: str
    service_id: str
    service: ServiceSnapshot
    day: date
    start_time: time
    status: BookingStatus
    created_at: datetime
    notes: str = ""
    contact_phone: Optional[str] = None
    updated_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    cancelled_by: Optional[Role] = None

    def interval(self, tz_offset_min: int = 0) -> TimeInterval:
        start = combine(self.day, self.start_time, tz_offset_min)
        return TimeInterval.from_start(start, self.service.duration_minutes)

    @property
    def end_time(self) -> time:
        start = datetime.combine(self.day, self.start_time)
        return (start + timedelta(minutes=self.service.duration_minutes)).time()

    def with_changes(self, **changes) -> "BookingDTO":
        return replace(self, **changes)

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "id": self.id,
            "clientId": self.client_id,
            "providerId": self.provider_id,
            "serviceId": self.service_id,
            "serviceName": self.service.name,
            "serviceCategory": self.service.category,
            "servicePriceSnapshot": str(self.service.price),
            "serviceDurationMinutes": self.service.duration_minutes,
            "date": self.day.isoformat(),
            "startTime": fmt_hhmm(self.start_time),
            "status": self.status.value,
            "notes": self.notes,
            "createdAt": to_iso(self.created_at),
        }
        optional = {
            "contactPhone": self.contact_phone,
            "updatedAt": to_iso(self.updated_at),
            "confirmedAt": to_iso(self.confirmed_at),
            "cancelledAt": to_iso(self.cancelled_at),
            "completedAt": to_iso(self.completed_at),
            "cancelReason": self.cancel_reason,
            "cancelledBy": self.cancelled_by.value if self.cancelled_by else None,
        }
        doc.update({key: value for key, value in optional.items() if value is not None})
        return doc

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "BookingDTO":
        cancelled_by = doc.get("cancelledBy")
        return cls(
            id=doc["id"],
            client_id=doc["clientId"],
            provider_id=doc["providerId"],
            service_id=doc["serviceId"],
            service=ServiceSnapshot(
                name=doc["serviceName"],
                category=doc.get("serviceCategory", ""),
                price=Decimal(str(doc["servicePriceSnapshot"])),
                duration_minutes=int(doc["serviceDurationMinutes"]),
            ),
            day=date.fromisoformat(doc["date"]),
            start_time=parse_hhmm(doc["startTime"]),
            status=BookingStatus(doc["status"]),
            created_at=from_iso(doc["createdAt"]),
            notes=doc.get("notes") or "",
            contact_phone=doc.get("contactPhone"),
            updated_at=from_iso(doc.get("updatedAt")),
            confirmed_at=from_iso(doc.get("confirmedAt")),
            cancelled_at=from_iso(doc.get("cancelledAt")),
            completed_at=from_iso(doc.get("completedAt")),
            cancel_reason=doc.get("cancelReason"),
            cancelled_by=Role(cancelled_by) if cancelled_by else None,
        )


@dataclass(frozen=True)
class CalendarEvent:
    provider_id: str
    sequence: int
    kind: str  # "created" | "status_changed"
    booking: BookingDTO
