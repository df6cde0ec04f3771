from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

from booking_scheduler.config import Settings
from booking_scheduler.db import init_models, make_engine, make_session_factory
from booking_scheduler.dto import BookingDTO, ServiceDTO
from booking_scheduler.scheduling.state import BookingStatus
from booking_scheduler.services.profiles import SqlProfileStore
from booking_scheduler.services.scheduler import AppointmentScheduler
from booking_scheduler.services.store import SqlBookingStore

PROVIDER = "prov-1"
CLIENT = "client-1"
# 2025-05-20 12:00 UTC, a Tuesday
NOW = datetime(2025, 5, 20, 12, 0, tzinfo=timezone.utc)
MONDAY = date(2025, 6, 2)


class FixedClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    async def notify(self, recipient_id, event_type, payload):
        self.calls.append((recipient_id, event_type, payload))

    def events(self, event_type=None):
        return [c for c in self.calls if event_type is None or c[1] == event_type]


def make_service(service_id="svc-cut", duration=60, provider_id=PROVIDER, **kwargs) -> ServiceDTO:
    values = dict(
        id=service_id,
        provider_id=provider_id,
        name="Haircut",
        category="hair",
        price=Decimal("25.00"),
        duration_minutes=duration,
    )
    values.update(kwargs)
    return ServiceDTO(**values)


def make_booking(
    booking_id="b-1",
    day=MONDAY,
    start=time(10, 0),
    duration=60,
    status=BookingStatus.PENDING,
    provider_id=PROVIDER,
    client_id=CLIENT,
    **kwargs,
) -> BookingDTO:
    return BookingDTO(
        id=booking_id,
        client_id=client_id,
        provider_id=provider_id,
        service_id="svc-cut",
        service=make_service(duration=duration, provider_id=provider_id).snapshot(),
        day=day,
        start_time=start,
        status=status,
        created_at=NOW,
        updated_at=NOW,
        **kwargs,
    )


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite://",
        tx_retries=3,
        retry_backoff_sec=0.001,
        retry_backoff_max_sec=0.01,
        advance_booking_days=60,
        slot_step_min=30,
    )


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'scheduler.db'}")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return SqlBookingStore(session_factory)


@pytest.fixture
def profiles(session_factory):
    return SqlProfileStore(session_factory)


@pytest_asyncio.fixture
async def service(profiles):
    return await profiles.save_service(make_service())


@pytest_asyncio.fixture
async def short_service(profiles):
    return await profiles.save_service(make_service("svc-brow", duration=30, name="Brow shaping"))


@pytest.fixture
def scheduler(store, profiles, notifier, settings, clock):
    return AppointmentScheduler(store, profiles, notifier, settings, clock=clock)
