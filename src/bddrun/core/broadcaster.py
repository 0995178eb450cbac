"""Fan-out of progress events to live observers.

Delivery never blocks or fails the publisher: each queue subscriber has its own
bounded FIFO (so it sees events in publish order) and a subscriber that falls
behind loses events instead of stalling a run.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import AsyncIterator, Callable

from bddrun.core import clock
from bddrun.core.logging import get_logger
from bddrun.core.models import ProgressEvent

logger = get_logger(__name__)

DEFAULT_QUEUE_SIZE = 1000

Listener = Callable[[ProgressEvent], None]


class Subscription:
    def __init__(
        self,
        broadcaster: ProgressBroadcaster,
        key: int,
        *,
        execution_id: str | None,
        maxsize: int,
    ) -> None:
        self._broadcaster = broadcaster
        self._key = key
        self.execution_id = execution_id
        self.queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def wants(self, event: ProgressEvent) -> bool:
        return self.execution_id is None or self.execution_id == event.execution_id

    def deliver(self, event: ProgressEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("progress_subscriber_full", execution_id=event.execution_id, dropped=self.dropped)

    async def get(self) -> ProgressEvent:
        return await self.queue.get()

    def get_nowait(self) -> ProgressEvent:
        return self.queue.get_nowait()

    def drain(self) -> list[ProgressEvent]:
        events: list[ProgressEvent] = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._broadcaster.unsubscribe(self._key)

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while not self.closed:
            yield await self.queue.get()

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class ProgressBroadcaster:
    def __init__(self) -> None:
        self._keys = itertools.count(1)
        self._subscriptions: dict[int, Subscription] = {}
        self._listeners: dict[int, Listener] = {}

    def subscribe(self, execution_id: str | None = None, *, maxsize: int = DEFAULT_QUEUE_SIZE) -> Subscription:
        """Queue subscription; pass `execution_id` to only receive that run's events."""
        key = next(self._keys)
        subscription = Subscription(self, key, execution_id=execution_id, maxsize=maxsize)
        self._subscriptions[key] = subscription
        return subscription

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register a callback invoked inline on publish. Returns the remover."""
        key = next(self._keys)
        self._listeners[key] = listener
        return lambda: self.unsubscribe(key)

    def unsubscribe(self, key: int) -> None:
        self._subscriptions.pop(key, None)
        self._listeners.pop(key, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions) + len(self._listeners)

    def publish(self, execution_id: str, message: str, progress: int) -> ProgressEvent:
        event = ProgressEvent(
            execution_id=execution_id,
            message=message,
            progress=progress,
            timestamp=clock.now_iso(),
        )
        # Iterate over snapshots: subscribers may come and go while we deliver.
        for subscription in list(self._subscriptions.values()):
            if subscription.wants(event):
                subscription.deliver(event)
        for listener in list(self._listeners.values()):
            try:
                listener(event)
            except Exception:
                logger.warning("progress_listener_failed", execution_id=execution_id, exc_info=True)
        logger.debug("progress", execution_id=execution_id, message=message, progress=progress)
        return event
