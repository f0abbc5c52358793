"""Payment intent, payment status and gateway webhook endpoints."""

from __future__ import annotations

import time
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_market_service.clients.payment_gateway import (
    parse_webhook_event,
    verify_webhook_signature,
)
from task_market_service.config import get_settings
from task_market_service.core.exceptions import ValidationError
from task_market_service.core.state import get_app_state
from task_market_service.logging import get_logger
from task_market_service.routers.validation import (
    authenticate,
    extract_string,
    parse_json_body,
)
from task_market_service.services.payment_reconciler import PaymentReconciler

router = APIRouter()


def _reconciler() -> PaymentReconciler:
    state = get_app_state()
    if state.payment_reconciler is None:
        msg = "PaymentReconciler not initialized"
        raise RuntimeError(msg)
    return state.payment_reconciler


@router.post("/payments/intents")
async def create_payment_intent(request: Request) -> JSONResponse:
    """Create or return the payment intent for one of the caller's tasks."""
    actor = await authenticate(request)
    body = await request.body()
    data = parse_json_body(body)
    task_id = extract_string(data, "task_id")

    result = await _reconciler().create_intent(task_id, actor.user_id)
    return JSONResponse(status_code=200, content=result)


@router.get("/payments/status")
async def get_payment_status(request: Request) -> dict[str, Any]:
    """Paid flag and ledger status of one of the caller's tasks."""
    actor = await authenticate(request)
    task_id = request.query_params.get("task_id")
    if not task_id:
        raise ValidationError("Missing required query parameter: task_id", {"field": "task_id"})

    return _reconciler().get_payment_status(task_id, actor.user_id)


@router.post("/payments/webhook")
async def payment_webhook(request: Request) -> dict[str, Any]:
    """
    Receive a payment gateway callback.

    The signature is checked against the raw body before anything is
    parsed. Event types without a payment outcome are acknowledged and
    ignored.
    """
    payments = get_settings().payments
    body = await request.body()

    verify_webhook_signature(
        body,
        request.headers.get("stripe-signature"),
        payments.webhook_secret,
        payments.webhook_tolerance_seconds,
        time.time(),
    )

    event = parse_webhook_event(body)
    if event is None:
        get_logger(__name__).info("Ignoring webhook event without payment outcome")
        return {"received": True, "outcome": "ignored"}

    result = _reconciler().reconcile_event(event)
    return {"received": True, "outcome": result["outcome"]}
