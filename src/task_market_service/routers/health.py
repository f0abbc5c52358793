"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from task_market_service.core.state import get_app_state
from task_market_service.schemas import HealthResponse
from task_market_service.services.task_lifecycle import TASK_STATUSES

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check service health and return statistics."""
    state = get_app_state()
    total_tasks = 0
    tasks_by_status: dict[str, int] = dict.fromkeys(TASK_STATUSES, 0)
    if state.store is not None:
        total_tasks = state.store.count_tasks()
        tasks_by_status.update(state.store.count_tasks_by_status())
    return HealthResponse(
        status="ok",
        uptime_seconds=state.uptime_seconds,
        started_at=state.started_at,
        total_tasks=total_tasks,
        tasks_by_status=tasks_by_status,
    )
