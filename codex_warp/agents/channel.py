"""In-process fan-out of live records.

Runs publish records into an ``EventChannel``; the multiplexer and any SSE
clients subscribe to it. Each subscriber owns a bounded queue, so one slow
consumer never blocks a publisher.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable

from ..core.events import LiveRecord

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 10_000


class Subscription:
    """One consumer's view of the channel, optionally scoped to a session."""

    def __init__(self, channel: "EventChannel", session_id: str | None):
        self.channel = channel
        self.session_id = session_id
        self.dropped = 0
        self._queue: asyncio.Queue[LiveRecord | None] = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        self._closed = False

    def wants(self, record: LiveRecord) -> bool:
        return self.session_id is None or record.session_id == self.session_id

    def offer(self, record: LiveRecord) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            self.dropped += 1
            if self.dropped == 1:
                logger.warning("Subscriber for %s is falling behind; dropping records", self.session_id or "*")

    async def get(self) -> LiveRecord | None:
        """Next record, or None once the subscription is closed."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def take_pending(self) -> list[LiveRecord]:
        """Every record queued so far, without waiting."""
        records: list[LiveRecord] = []
        while not self._queue.empty():
            record = self._queue.get_nowait()
            if record is None:
                # close sentinel stays last
                self._queue.put_nowait(None)
                break
            records.append(record)
        return records

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.channel._discard(self)
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    def __aiter__(self) -> AsyncIterator[LiveRecord]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[LiveRecord]:
        while True:
            record = await self.get()
            if record is None:
                return
            yield record


class EventChannel:
    """Broadcast hub for live records. Publish from the event loop thread only."""

    def __init__(self):
        self._subscribers: list[Subscription] = []

    def subscribe(self, session_id: str | None = None) -> Subscription:
        subscription = Subscription(self, session_id)
        self._subscribers.append(subscription)
        return subscription

    def publish(self, record: LiveRecord) -> None:
        for subscription in list(self._subscribers):
            if subscription.wants(record):
                subscription.offer(record)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def close(self) -> None:
        for subscription in list(self._subscribers):
            subscription.close()

    def _discard(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)


class InProcessTransport:
    """Live transport backed by an ``EventChannel`` in the same process.

    Every session's records are delivered regardless of which session is
    attached.
    """

    mode = "in_process"

    def __init__(self, channel: EventChannel):
        self.channel = channel
        self.attached: set[str] = set()
        self._subscription: Subscription | None = None
        self._pump: asyncio.Task | None = None

    async def open(
        self,
        deliver: Callable[[LiveRecord], None],
        on_error: Callable[[str, BaseException], None],
    ) -> None:
        if self._pump is not None:
            return
        self._subscription = self.channel.subscribe()
        self._pump = asyncio.get_running_loop().create_task(self._run(deliver))

    async def _run(self, deliver: Callable[[LiveRecord], None]) -> None:
        assert self._subscription is not None
        async for record in self._subscription:
            deliver(record)

    async def attach(self, session_id: str) -> None:
        self.attached.add(session_id)

    async def detach(self, session_id: str) -> None:
        self.attached.discard(session_id)

    async def close(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._pump is not None:
            self._pump.cancel()
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
            self._pump = None
