import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Callable, Iterable, Optional, Protocol, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_scheduler.db.session import get_async_session
from booking_scheduler.dto import BookingDTO, Role, ServiceSnapshot
from booking_scheduler.models import Booking, CalendarBucket
from booking_scheduler.scheduling.state import BookingStatus
from booking_scheduler.services.errors import BucketContentionError, StoreUnavailableError
from booking_scheduler.services.feed import CalendarFeed
from booking_scheduler.utils.locks import KeyedLock
from booking_scheduler.utils.time import ensure_aware, fmt_hhmm, parse_hhmm

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BucketTransaction:
    """Read set and buffered writes for one provider/date bucket.

    ``bookings`` is the state read at the start of the transaction. Writes are
    only buffered here; the store applies them atomically after ``write``
    returns.
    """

    def __init__(self, provider_id: str, day: date, bookings: list[BookingDTO]):
        self.provider_id = provider_id
        self.day = day
        self.bookings = bookings
        self.appended: list[BookingDTO] = []
        self.updated: list[BookingDTO] = []

    @property
    def has_changes(self) -> bool:
        return bool(self.appended or self.updated)

    def find(self, booking_id: str) -> Optional[BookingDTO]:
        for booking in self.bookings:
            if booking.id == booking_id:
                return booking
        return None

    def append_booking(self, booking: BookingDTO) -> BookingDTO:
        if booking.provider_id != self.provider_id or booking.day != self.day:
            raise ValueError(
                f"booking {booking.id} belongs to {booking.provider_id}/{booking.day}, "
                f"not {self.provider_id}/{self.day}"
            )
        self.appended.append(booking)
        return booking

    def update_booking_status(self, booking_id: str, status: BookingStatus, **fields) -> BookingDTO:
        current = self.find(booking_id)
        if current is None:
            raise ValueError(f"booking {booking_id} is not in calendar {self.provider_id}/{self.day}")
        changed = current.with_changes(status=BookingStatus(status), **fields)
        self.updated.append(changed)
        return changed


class BookingStore(Protocol):
    @property
    def feed(self) -> CalendarFeed: ...

    async def read_bookings(
        self, provider_id: str, day: date, statuses: Optional[Iterable[BookingStatus]] = None
    ) -> list[BookingDTO]: ...

    async def get_booking(self, booking_id: str) -> Optional[BookingDTO]: ...

    async def list_bookings(
        self,
        *,
        provider_id: Optional[str] = None,
        client_id: Optional[str] = None,
        statuses: Optional[Iterable[BookingStatus]] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[BookingDTO]: ...

    async def run_transaction(
        self,
        provider_id: str,
        day: date,
        validate: Callable[[list[BookingDTO]], None],
        write: Callable[[BucketTransaction], T],
    ) -> T: ...


def _utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on write, so everything is stored as UTC.
    if dt is None:
        return None
    return ensure_aware(dt).astimezone(timezone.utc)


def _to_dto(row: Booking) -> BookingDTO:
    return BookingDTO(
        id=row.id,
        client_id=row.client_id,
        provider_id=row.provider_id,
        service_id=row.service_id,
        service=ServiceSnapshot(
            name=row.service_name,
            category=row.service_category or "",
            price=Decimal(str(row.service_price)),
            duration_minutes=row.service_duration_min,
        ),
        day=row.date,
        start_time=parse_hhmm(row.start_time),
        status=BookingStatus(row.status),
        created_at=ensure_aware(row.created_at),
        notes=row.notes or "",
        contact_phone=row.contact_phone,
        updated_at=ensure_aware(row.updated_at),
        confirmed_at=ensure_aware(row.confirmed_at),
        cancelled_at=ensure_aware(row.cancelled_at),
        completed_at=ensure_aware(row.completed_at),
        cancel_reason=row.cancel_reason,
        cancelled_by=Role(row.cancelled_by) if row.cancelled_by else None,
    )


def _mutable_values(booking: BookingDTO) -> dict:
    return {
        "status": booking.status.value,
        "updated_at": _utc(booking.updated_at),
        "confirmed_at": _utc(booking.confirmed_at),
        "cancelled_at": _utc(booking.cancelled_at),
        "completed_at": _utc(booking.completed_at),
        "cancel_reason": booking.cancel_reason,
        "cancelled_by": booking.cancelled_by.value if booking.cancelled_by else None,
    }


def _to_row(booking: BookingDTO) -> Booking:
    return Booking(
        id=booking.id,
        client_id=booking.client_id,
        provider_id=booking.provider_id,
        service_id=booking.service_id,
        service_name=booking.service.name,
        service_category=booking.service.category,
        service_price=booking.service.price,
        service_duration_min=booking.service.duration_minutes,
        date=booking.day,
        start_time=fmt_hhmm(booking.start_time),
        notes=booking.notes,
        contact_phone=booking.contact_phone,
        created_at=_utc(booking.created_at),
        **_mutable_values(booking),
    )


class SqlBookingStore:
    """Booking collection over SQLAlchemy with per provider/date optimistic concurrency.

    Each (provider, date) has a version row in ``calendar_buckets``. A
    transaction reads the version with the bookings, and its write only
    commits if the version is unchanged (compare-and-swap). Within one process
    transactions on the same bucket are also serialised by an asyncio lock,
    so CAS failures only come from other processes or direct writes.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], feed: CalendarFeed | None = None):
        self._session_factory = session_factory
        self._feed = feed or CalendarFeed()
        self._bucket_locks = KeyedLock()
        self._commit_locks = KeyedLock()

    @property
    def feed(self) -> CalendarFeed:
        return self._feed

    async def read_bookings(
        self, provider_id: str, day: date, statuses: Optional[Iterable[BookingStatus]] = None
    ) -> list[BookingDTO]:
        return await self.list_bookings(provider_id=provider_id, statuses=statuses, date_from=day, date_to=day)

    async def get_booking(self, booking_id: str) -> Optional[BookingDTO]:
        try:
            async with get_async_session(self._session_factory) as session:
                row = await session.get(Booking, booking_id)
                return _to_dto(row) if row else None
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailableError(f"get_booking failed: {exc}") from exc

    async def list_bookings(
        self,
        *,
        provider_id: Optional[str] = None,
        client_id: Optional[str] = None,
        statuses: Optional[Iterable[BookingStatus]] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[BookingDTO]:
        query = select(Booking)
        if provider_id is not None:
            query = query.where(Booking.provider_id == provider_id)
        if client_id is not None:
            query = query.where(Booking.client_id == client_id)
        if statuses is not None:
            query = query.where(Booking.status.in_([BookingStatus(s).value for s in statuses]))
        if date_from is not None:
            query = query.where(Booking.date >= date_from)
        if date_to is not None:
            query = query.where(Booking.date <= date_to)
        query = query.order_by(Booking.date, Booking.start_time, Booking.created_at)
        try:
            async with get_async_session(self._session_factory) as session:
                rows = (await session.execute(query)).scalars().all()
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailableError(f"list_bookings failed: {exc}") from exc
        return [_to_dto(row) for row in rows]

    async def run_transaction(
        self,
        provider_id: str,
        day: date,
        validate: Callable[[list[BookingDTO]], None],
        write: Callable[[BucketTransaction], T],
    ) -> T:
        async with self._bucket_locks.hold((provider_id, day)):
            try:
                return await self._run_once(provider_id, day, validate, write)
            except (OperationalError, InterfaceError) as exc:
                logger.warning("store: transaction failed provider=%s date=%s error=%s", provider_id, day, exc)
                raise StoreUnavailableError(f"transaction on {provider_id}/{day} failed: {exc}") from exc

    async def _run_once(self, provider_id, day, validate, write):
        async with get_async_session(self._session_factory) as session:
            version = await self._bucket_version(session, provider_id, day)
            rows = (
                await session.execute(
                    select(Booking)
                    .where(Booking.provider_id == provider_id, Booking.date == day)
                    .order_by(Booking.start_time, Booking.created_at)
                )
            ).scalars().all()
            bookings = [_to_dto(row) for row in rows]

            validate(bookings)
            tx = BucketTransaction(provider_id, day, bookings)
            result = write(tx)
            if not tx.has_changes:
                await session.rollback()
                return result

            for booking in tx.appended:
                session.add(_to_row(booking))
            for booking in tx.updated:
                await session.execute(
                    update(Booking)
                    .where(Booking.id == booking.id)
                    .values(**_mutable_values(booking))
                    .execution_options(synchronize_session=False)
                )
            await self._bump_version(session, provider_id, day, version)

            async with self._commit_locks.hold(provider_id):
                await session.commit()
                for booking in tx.appended:
                    self._feed.publish("created", booking)
                for booking in tx.updated:
                    self._feed.publish("status_changed", booking)

            logger.debug(
                "store: committed provider=%s date=%s version=%s appended=%s updated=%s",
                provider_id,
                day,
                (version or 0) + 1,
                len(tx.appended),
                len(tx.updated),
            )
            return result

    async def _bucket_version(self, session: AsyncSession, provider_id: str, day: date) -> Optional[int]:
        return (
            await session.execute(
                select(CalendarBucket.version).where(
                    CalendarBucket.provider_id == provider_id, CalendarBucket.date == day
                )
            )
        ).scalar_one_or_none()

    async def _bump_version(self, session: AsyncSession, provider_id: str, day: date, version: Optional[int]) -> None:
        if version is None:
            session.add(CalendarBucket(provider_id=provider_id, date=day, version=1))
            try:
                await session.flush()
            except IntegrityError as exc:
                raise BucketContentionError(provider_id, day) from exc
            return
        res = await session.execute(
            update(CalendarBucket)
            .where(
                CalendarBucket.provider_id == provider_id,
                CalendarBucket.date == day,
                CalendarBucket.version == version,
            )
            .values(version=version + 1)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise BucketContentionError(provider_id, day)
