"""Domain event notification: the Notifier contract and its implementations."""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from task_market_service.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class Notifier(ABC):
    """
    Fire-and-forget sink for domain events such as ``task:claimed``.

    Implementations must not block. Callers treat emission as best effort
    and never let a failure here affect the operation that triggered it.
    """

    @abstractmethod
    def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        """Publish an event."""


class NullNotifier(Notifier):
    """Notifier that drops every event."""

    def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        _ = (event_name, payload)


class EventBroadcaster(Notifier):
    """
    In-process publish/subscribe fan-out.

    Each subscriber owns a bounded asyncio queue. A subscriber that falls
    behind loses events rather than slowing down the publisher.
    """

    def __init__(self, queue_size: int) -> None:
        self._queue_size = queue_size
        self._subscribers: set[asyncio.Queue[dict[str, Any]]] = set()
        self._logger = get_logger(__name__)

    @property
    def subscriber_count(self) -> int:
        """Number of currently attached subscribers."""
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue[dict[str, Any]]:
        """Attach a new subscriber and return its queue."""
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[dict[str, Any]]) -> None:
        """Detach a subscriber. Unknown queues are ignored."""
        self._subscribers.discard(queue)

    def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        message = {"event": event_name, "data": payload}
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                self._logger.warning(
                    "Subscriber queue full, dropping event",
                    extra={"event": event_name},
                )


async def stream_events(
    broadcaster: EventBroadcaster,
    keepalive_seconds: float,
) -> AsyncIterator[dict[str, Any]]:
    """
    Async generator of Server-Sent Events for one subscriber.

    Emits a keepalive comment whenever no event arrived for
    ``keepalive_seconds``. The subscription is released when the client
    disconnects and the generator is closed.
    """
    queue = broadcaster.subscribe()
    try:
        yield {"retry": 3000}
        while True:
            try:
                message = await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
            except TimeoutError:
                yield {"comment": "keepalive"}
                continue
            yield {"event": message["event"], "data": json.dumps(message["data"])}
    finally:
        broadcaster.unsubscribe(queue)
