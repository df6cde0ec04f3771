import asyncio
import logging
from enum import Enum
from typing import Any, Optional, Protocol

from aiogram import Bot

from booking_scheduler.dto import BookingDTO
from booking_scheduler.utils.contacts import format_contact
from booking_scheduler.utils.roles import role_label
from booking_scheduler.utils.time import fmt_hhmm

logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    NEW_BOOKING_REQUEST = "new_booking_request"
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_CANCELLED = "booking_cancelled"


class Notifier(Protocol):
    async def notify(self, recipient_id: str, event_type: str, payload: dict[str, Any]) -> None: ...


def booking_payload(booking: BookingDTO) -> dict[str, Any]:
    payload = {
        "appointmentId": booking.id,
        "clientId": booking.client_id,
        "providerId": booking.provider_id,
        "serviceName": booking.service.name,
        "date": booking.day.isoformat(),
        "startTime": fmt_hhmm(booking.start_time),
        "endTime": fmt_hhmm(booking.end_time),
        "status": booking.status.value,
    }
    if booking.contact_phone:
        payload["contactPhone"] = booking.contact_phone
    if booking.cancel_reason:
        payload["reason"] = booking.cancel_reason
    if booking.cancelled_by:
        payload["cancelledBy"] = booking.cancelled_by.value
    return payload


def format_notification(event_type: str, payload: dict[str, Any]) -> str:
    service = payload.get("serviceName") or "appointment"
    when = f"{payload.get('date', '—')} {payload.get('startTime', '')}".strip()
    if event_type == NotificationEvent.NEW_BOOKING_REQUEST:
        return "\n".join(
            [
                "New booking request",
                f"Service: {service}",
                f"Time: {when}",
                f"Contact: {format_contact(payload.get('contactPhone'))}",
                f"Booking: {str(payload.get('appointmentId', ''))[:8]}",
            ]
        )
    if event_type == NotificationEvent.BOOKING_CONFIRMED:
        return f"Booking confirmed ✓\nYour {service} appointment on {when} has been confirmed."
    if event_type == NotificationEvent.BOOKING_CANCELLED:
        text = f"Booking cancelled\nYour {service} appointment on {when} was cancelled by {role_label(payload.get('cancelledBy'))}."
        if payload.get("reason"):
            text += f"\nReason: {payload['reason']}"
        return text
    return f"{event_type}: {service} {when}"


class LogNotifier:
    """Notifier that only writes to the log; used when no delivery channel is configured."""

    async def notify(self, recipient_id: str, event_type: str, payload: dict[str, Any]) -> None:
        logger.info(
            "notify: recipient=%s event=%s booking=%s",
            recipient_id,
            event_type,
            payload.get("appointmentId"),
        )


class TelegramNotifier:
    """Delivers booking events as Telegram messages to known recipient chats."""

    def __init__(self, bot: Bot, chat_map: Optional[dict[str, int]] = None):
        self._bot = bot
        self._chats: dict[str, int] = dict(chat_map or {})

    def remember_chat(self, recipient_id: str | None, chat_id: int | None) -> None:
        if not recipient_id or not chat_id:
            return
        self._chats[recipient_id] = chat_id

    def chat_for(self, recipient_id: str | None) -> int | None:
        if not recipient_id:
            return None
        return self._chats.get(recipient_id)

    async def notify(self, recipient_id: str, event_type: str, payload: dict[str, Any]) -> None:
        chat_id = self.chat_for(recipient_id)
        if chat_id is None:
            logger.warning(
                "telegram: chat not found, skip notify recipient=%s event=%s booking=%s",
                recipient_id,
                event_type,
                payload.get("appointmentId"),
            )
            return
        await self._bot.send_message(chat_id=chat_id, text=format_notification(event_type, payload))
        logger.info(
            "telegram: notified recipient=%s chat=%s event=%s booking=%s",
            recipient_id,
            chat_id,
            event_type,
            payload.get("appointmentId"),
        )

    async def close(self) -> None:
        await self._bot.session.close()


class NotificationDispatcher:
    """Fire-and-forget delivery on top of a Notifier.

    Every notification runs in its own task; a failing notifier is logged and
    never reaches the booking operation that triggered it.
    """

    def __init__(self, notifier: Notifier):
        self._notifier = notifier
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, recipient_id: str, event_type: NotificationEvent, payload: dict[str, Any]) -> None:
        task = asyncio.create_task(self._deliver(recipient_id, event_type.value, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, recipient_id: str, event_type: str, payload: dict[str, Any]) -> None:
        try:
            await self._notifier.notify(recipient_id, event_type, payload)
        except Exception:
            logger.exception(
                "notify failed: recipient=%s event=%s booking=%s",
                recipient_id,
                event_type,
                payload.get("appointmentId"),
            )

    async def drain(self) -> None:
        """Wait for notifications already dispatched (shutdown, tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
