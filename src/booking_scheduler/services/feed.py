import asyncio
import logging
from collections import defaultdict

from booking_scheduler.dto import BookingDTO, CalendarEvent

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """Live stream of committed changes to one provider's calendar.

    Iterate with ``async for``; ``close()`` detaches it from the feed at once
    and ends the iteration after already queued events are drained.
    """

    def __init__(self, feed: "CalendarFeed", provider_id: str):
        self.provider_id = provider_id
        self._feed = feed
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, event: CalendarEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._feed._detach(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> CalendarEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def get(self, timeout: float | None = None) -> CalendarEvent:
        return await asyncio.wait_for(self.__anext__(), timeout)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class CalendarFeed:
    def __init__(self):
        self._subscribers: dict[str, set[Subscription]] = defaultdict(set)
        self._sequence: dict[str, int] = defaultdict(int)

    def subscribe(self, provider_id: str) -> Subscription:
        sub = Subscription(self, provider_id)
        self._subscribers[provider_id].add(sub)
        logger.debug("feed: subscribe provider=%s total=%s", provider_id, len(self._subscribers[provider_id]))
        return sub

    def _detach(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.provider_id)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self._subscribers[sub.provider_id]
        logger.debug("feed: unsubscribe provider=%s", sub.provider_id)

    def subscriber_count(self, provider_id: str) -> int:
        return len(self._subscribers.get(provider_id, ()))

    def publish(self, kind: str, booking: BookingDTO) -> CalendarEvent:
        """Fan out a committed change. Callers publish in commit order per provider."""
        provider_id = booking.provider_id
        self._sequence[provider_id] += 1
        event = CalendarEvent(
            provider_id=provider_id,
            sequence=self._sequence[provider_id],
            kind=kind,
            booking=booking,
        )
        for sub in list(self._subscribers.get(provider_id, ())):
            sub._push(event)
        return event
