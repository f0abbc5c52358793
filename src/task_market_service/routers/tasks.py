"""Task lifecycle endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_market_service.core.state import get_app_state
from task_market_service.routers.validation import (
    authenticate,
    parse_json_body,
    require_worker,
)
from task_market_service.services.task_lifecycle import TaskLifecycle

router = APIRouter()


def _lifecycle() -> TaskLifecycle:
    state = get_app_state()
    if state.task_lifecycle is None:
        msg = "TaskLifecycle not initialized"
        raise RuntimeError(msg)
    return state.task_lifecycle


# ---------------------------------------------------------------------------
# POST /tasks - create task
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201)
async def create_task(request: Request) -> JSONResponse:
    """Post a new task as the authenticated requester."""
    actor = await authenticate(request)
    body = await request.body()
    data = parse_json_body(body)

    result = _lifecycle().create_task(actor.user_id, data)
    return JSONResponse(status_code=201, content=result)


# ---------------------------------------------------------------------------
# Listings (MUST be before GET /tasks/{task_id})
# ---------------------------------------------------------------------------


@router.get("/tasks/mine")
async def list_my_tasks(request: Request) -> dict[str, Any]:
    """Tasks posted by the caller, most recently updated first."""
    actor = await authenticate(request)
    return {"tasks": _lifecycle().list_for_requester(actor.user_id)}


@router.get("/tasks/available")
async def list_available_tasks(request: Request) -> dict[str, Any]:
    """Open tasks ranked by distance and skill match for the calling worker."""
    actor = await authenticate(request)
    require_worker(actor)
    return {"tasks": _lifecycle().list_available(actor.worker_profile())}


@router.get("/tasks/assigned")
async def list_assigned_tasks(request: Request) -> dict[str, Any]:
    """Tasks the calling worker holds that are assigned or in progress."""
    actor = await authenticate(request)
    require_worker(actor)
    return {"tasks": _lifecycle().list_active(actor.user_id)}


@router.get("/tasks/history")
async def list_task_history(request: Request) -> dict[str, Any]:
    """Completed and cancelled tasks of the calling worker."""
    actor = await authenticate(request)
    require_worker(actor)
    return {"tasks": _lifecycle().list_history(actor.user_id)}


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/claim")
async def claim_task(task_id: str, request: Request) -> JSONResponse:
    """Claim an open task for the calling worker."""
    actor = await authenticate(request)
    require_worker(actor)
    result = _lifecycle().claim_task(task_id, actor.user_id)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/start")
async def start_task(task_id: str, request: Request) -> JSONResponse:
    """Start work on an assigned task."""
    actor = await authenticate(request)
    require_worker(actor)
    result = _lifecycle().start_task(task_id, actor.user_id)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/complete")
async def complete_task(task_id: str, request: Request) -> JSONResponse:
    """Mark an assigned or in-progress task completed."""
    actor = await authenticate(request)
    require_worker(actor)
    result = _lifecycle().complete_task(task_id, actor.user_id)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/cancel")
async def cancel_task(task_id: str, request: Request) -> JSONResponse:
    """Cancel a task as its requester or as an administrator."""
    actor = await authenticate(request)
    result = _lifecycle().cancel_task(task_id, actor.user_id, is_admin=actor.is_admin)
    return JSONResponse(status_code=200, content=result)


@router.delete("/tasks/{task_id}")
async def withdraw_task(task_id: str, request: Request) -> JSONResponse:
    """Withdraw (delete) an unclaimed task."""
    actor = await authenticate(request)
    result = _lifecycle().withdraw_task(task_id, actor.user_id)
    return JSONResponse(status_code=200, content=result)


# ---------------------------------------------------------------------------
# GET /tasks/{task_id} (MUST be last)
# ---------------------------------------------------------------------------


@router.get("/tasks/{task_id}")
async def get_task(task_id: str, request: Request) -> dict[str, Any]:
    """Get a single task."""
    await authenticate(request)
    return _lifecycle().get_task(task_id)
