"""Unit tests for the in-process event broadcaster and SSE stream."""

from __future__ import annotations

import json

import pytest

from task_market_service.services.notifier import EventBroadcaster, NullNotifier, stream_events

pytestmark = pytest.mark.unit


async def test_emit_fans_out_to_all_subscribers() -> None:
    broadcaster = EventBroadcaster(queue_size=5)
    first = broadcaster.subscribe()
    second = broadcaster.subscribe()

    broadcaster.emit("task:claimed", {"task_id": "t-1"})

    expected = {"event": "task:claimed", "data": {"task_id": "t-1"}}
    assert first.get_nowait() == expected
    assert second.get_nowait() == expected


async def test_full_queue_drops_event_without_raising() -> None:
    broadcaster = EventBroadcaster(queue_size=1)
    queue = broadcaster.subscribe()

    broadcaster.emit("task:created", {"task_id": "t-1"})
    broadcaster.emit("task:created", {"task_id": "t-2"})

    assert queue.qsize() == 1
    assert queue.get_nowait()["data"] == {"task_id": "t-1"}


async def test_unsubscribe_stops_delivery() -> None:
    broadcaster = EventBroadcaster(queue_size=5)
    queue = broadcaster.subscribe()
    broadcaster.unsubscribe(queue)
    broadcaster.unsubscribe(queue)

    broadcaster.emit("task:created", {"task_id": "t-1"})

    assert queue.empty()
    assert broadcaster.subscriber_count == 0


def test_null_notifier_accepts_events() -> None:
    NullNotifier().emit("task:created", {"task_id": "t-1"})


async def test_stream_yields_retry_events_and_keepalive() -> None:
    broadcaster = EventBroadcaster(queue_size=5)
    stream = stream_events(broadcaster, keepalive_seconds=0.01)

    assert await anext(stream) == {"retry": 3000}
    assert broadcaster.subscriber_count == 1

    broadcaster.emit("task:paid", {"task_id": "t-1"})
    message = await anext(stream)
    assert message["event"] == "task:paid"
    assert json.loads(message["data"]) == {"task_id": "t-1"}

    assert await anext(stream) == {"comment": "keepalive"}

    await stream.aclose()
    assert broadcaster.subscriber_count == 0
