import logging
from decimal import Decimal
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_scheduler.db.session import get_async_session
from booking_scheduler.dto import DayHours, ProviderPolicy, ServiceDTO
from booking_scheduler.models import ProviderPolicy as PolicyRow
from booking_scheduler.models import Service as ServiceRow
from booking_scheduler.services.errors import StoreUnavailableError
from booking_scheduler.utils.time import fmt_hhmm, parse_hhmm

logger = logging.getLogger(__name__)


class ProfileStore(Protocol):
    async def get_service(self, provider_id: str, service_id: str) -> Optional[ServiceDTO]: ...

    async def get_provider_policy(self, provider_id: str) -> Optional[ProviderPolicy]: ...


def _to_service(row: ServiceRow) -> ServiceDTO:
    return ServiceDTO(
        id=row.id,
        provider_id=row.provider_id,
        name=row.name,
        category=row.category or "",
        price=Decimal(str(row.price)),
        duration_minutes=row.duration_min,
        description=row.description or "",
        is_active=bool(row.is_active),
    )


def _hours_to_json(weekly_hours) -> dict[str, list[str]]:
    return {
        str(weekday): [fmt_hhmm(hours.open_time), fmt_hhmm(hours.close_time)]
        for weekday, hours in sorted(weekly_hours.items())
    }


def _hours_from_json(raw) -> dict[int, DayHours]:
    result: dict[int, DayHours] = {}
    for weekday, (open_s, close_s) in (raw or {}).items():
        result[int(weekday)] = DayHours(parse_hhmm(open_s), parse_hhmm(close_s))
    return result


def _to_policy(row: PolicyRow) -> ProviderPolicy:
    return ProviderPolicy(
        advance_booking_days=row.advance_booking_days,
        slot_step_minutes=row.slot_step_min,
        tz_offset_min=row.tz_offset_min or 0,
        weekly_hours=_hours_from_json(row.weekly_hours),
    )


class SqlProfileStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_service(self, provider_id: str, service_id: str) -> Optional[ServiceDTO]:
        try:
            async with get_async_session(self._session_factory) as session:
                row = (
                    await session.execute(
                        select(ServiceRow).where(
                            ServiceRow.id == service_id, ServiceRow.provider_id == provider_id
                        )
                    )
                ).scalar_one_or_none()
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailableError(f"get_service failed: {exc}") from exc
        return _to_service(row) if row else None

    async def save_service(self, service: ServiceDTO) -> ServiceDTO:
        """Create or replace a service. Existing bookings keep their own snapshot."""
        async with get_async_session(self._session_factory) as session:
            row = await session.get(ServiceRow, service.id)
            if row is None:
                row = ServiceRow(id=service.id)
                session.add(row)
            row.provider_id = service.provider_id
            row.name = service.name
            row.category = service.category
            row.description = service.description
            row.price = service.price
            row.duration_min = service.duration_minutes
            row.is_active = service.is_active
            await session.commit()
        logger.info(
            "profiles: saved service id=%s provider=%s duration=%s active=%s",
            service.id,
            service.provider_id,
            service.duration_minutes,
            service.is_active,
        )
        return service

    async def get_provider_policy(self, provider_id: str) -> Optional[ProviderPolicy]:
        try:
            async with get_async_session(self._session_factory) as session:
                row = await session.get(PolicyRow, provider_id)
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailableError(f"get_provider_policy failed: {exc}") from exc
        return _to_policy(row) if row else None

    async def set_provider_policy(self, provider_id: str, policy: ProviderPolicy) -> ProviderPolicy:
        if policy.slot_step_minutes <= 0:
            raise ValueError("slot_step_minutes must be positive")
        if policy.advance_booking_days < 0:
            raise ValueError("advance_booking_days must not be negative")
        async with get_async_session(self._session_factory) as session:
            row = await session.get(PolicyRow, provider_id)
            if row is None:
                row = PolicyRow(provider_id=provider_id)
                session.add(row)
            row.advance_booking_days = policy.advance_booking_days
            row.slot_step_min = policy.slot_step_minutes
            row.tz_offset_min = policy.tz_offset_min
            row.weekly_hours = _hours_to_json(policy.weekly_hours)
            await session.commit()
        logger.info(
            "profiles: saved policy provider=%s advance_days=%s step=%s tz_offset=%s open_days=%s",
            provider_id,
            policy.advance_booking_days,
            policy.slot_step_minutes,
            policy.tz_offset_min,
            sorted(policy.weekly_hours),
        )
        return policy
