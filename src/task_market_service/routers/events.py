"""Realtime event stream endpoint."""

from __future__ import annotations

from fastapi import APIRouter
from sse_starlette.sse import EventSourceResponse

from task_market_service.config import get_settings
from task_market_service.core.state import get_app_state
from task_market_service.services.notifier import stream_events

router = APIRouter()


@router.get("/events/stream")  # nosemgrep
async def stream_task_events() -> EventSourceResponse:
    """Server-Sent Events stream of task lifecycle and payment events."""
    state = get_app_state()
    if state.broadcaster is None:
        msg = "EventBroadcaster not initialized"
        raise RuntimeError(msg)
    settings = get_settings()
    return EventSourceResponse(
        stream_events(state.broadcaster, settings.events.keepalive_seconds),
        headers={"X-Accel-Buffering": "no"},
    )
