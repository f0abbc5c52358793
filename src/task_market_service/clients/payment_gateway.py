"""Payment gateway client and webhook verification for Stripe."""

from __future__ import annotations

import contextlib
import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

from task_market_service.core.exceptions import PaymentError, ServiceError
from task_market_service.logging import get_logger
from task_market_service.services.payment_reconciler import PaymentEvent

SUCCEEDED_EVENT_TYPES = frozenset({"payment_intent.succeeded", "checkout.session.completed"})
FAILED_EVENT_TYPES = frozenset({"payment_intent.payment_failed"})


@dataclass(frozen=True)
class GatewayIntent:
    """A payment intent as created by the gateway."""

    intent_id: str
    client_secret: str | None
    status: str


class PaymentGateway(ABC):
    """Creates payment intents with an external payment processor."""

    @abstractmethod
    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> GatewayIntent:
        """
        Create a payment intent.

        Repeating a call with the same ``idempotency_key`` must return the
        same intent rather than creating a second one.

        Raises:
            PaymentError: the gateway rejected the request or is unreachable
        """

    async def close(self) -> None:
        """Release any held resources."""


class StripeGateway(PaymentGateway):
    """
    Stripe REST API client.

    Uses form-encoded POST /v1/payment_intents with the secret key as a
    bearer credential and Stripe's Idempotency-Key header.
    """

    def __init__(self, base_url: str, secret_key: str, timeout_seconds: int) -> None:
        self._base_url = base_url
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Authorization": f"Bearer {secret_key}"},
        )

    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> GatewayIntent:
        logger = get_logger(__name__)

        form: dict[str, str] = {
            "amount": str(amount_cents),
            "currency": currency,
            "automatic_payment_methods[enabled]": "true",
        }
        for key, value in metadata.items():
            form[f"metadata[{key}]"] = value

        try:
            response = await self._client.post(
                "/v1/payment_intents",
                data=form,
                headers={"Idempotency-Key": idempotency_key},
            )
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning(
                "Payment gateway connection failed",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise PaymentError("Cannot connect to payment gateway") from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Payment gateway HTTP error",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise PaymentError("Payment gateway request failed") from exc

        if response.status_code != 200:
            gateway_message = "Payment gateway rejected the request"
            with contextlib.suppress(ValueError):
                error_body = response.json()
                error = error_body.get("error") if isinstance(error_body, dict) else None
                if isinstance(error, dict) and isinstance(error.get("message"), str):
                    gateway_message = error["message"]
            logger.warning(
                "Payment gateway unexpected status",
                extra={"status_code": response.status_code, "base_url": self._base_url},
            )
            raise PaymentError(gateway_message, {"gateway_status": response.status_code})

        body: dict[str, Any] = response.json()
        intent_id = body.get("id")
        if not isinstance(intent_id, str) or not intent_id:
            raise PaymentError("Payment gateway returned no intent id")

        return GatewayIntent(
            intent_id=intent_id,
            client_secret=body.get("client_secret"),
            status=str(body.get("status", "created")),
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()


def _invalid_signature(message: str) -> ServiceError:
    return ServiceError(
        error="INVALID_SIGNATURE",
        message=message,
        status_code=400,
        details={},
    )


def verify_webhook_signature(
    payload: bytes,
    signature_header: str | None,
    secret: str,
    tolerance_seconds: int,
    now: float,
) -> None:
    """
    Verify a ``Stripe-Signature`` header against the raw request body.

    The header carries ``t=<unix time>`` and one or more ``v1=<hex>``
    HMAC-SHA256 signatures of ``"<t>.<payload>"``. Any matching ``v1``
    signature within the timestamp tolerance is accepted.

    Raises:
        ServiceError: INVALID_SIGNATURE (400) if the header is missing,
            malformed, stale, or no signature matches
    """
    if not signature_header:
        raise _invalid_signature("Missing Stripe-Signature header")

    timestamp: str | None = None
    signatures: list[str] = []
    for item in signature_header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)

    if timestamp is None or not timestamp.isdigit() or len(signatures) == 0:
        raise _invalid_signature("Malformed Stripe-Signature header")

    if abs(now - int(timestamp)) > tolerance_seconds:
        raise _invalid_signature("Webhook timestamp outside the tolerance window")

    signed_payload = timestamp.encode("ascii") + b"." + payload
    expected = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise _invalid_signature("Webhook signature does not match")


def parse_webhook_event(payload: bytes) -> PaymentEvent | None:
    """
    Map a Stripe event body onto a reconciliation event.

    Returns None for event types that carry no payment outcome.

    Raises:
        ServiceError: INVALID_JSON (400) if the body is not a JSON event object
    """
    try:
        body = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError("INVALID_JSON", "Request body is not valid JSON", 400, {}) from exc

    if not isinstance(body, dict):
        raise ServiceError("INVALID_JSON", "Webhook body must be a JSON object", 400, {})

    event_type = body.get("type")
    if event_type not in SUCCEEDED_EVENT_TYPES and event_type not in FAILED_EVENT_TYPES:
        return None

    data = body.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise ServiceError("INVALID_JSON", "Webhook event has no data object", 400, {})

    if event_type == "checkout.session.completed":
        if obj.get("payment_status", "paid") not in ("paid", "no_payment_required"):
            return None
        payment_intent_id = obj.get("payment_intent") or obj.get("id")
    else:
        payment_intent_id = obj.get("id")

    if not isinstance(payment_intent_id, str) or not payment_intent_id:
        raise ServiceError("INVALID_JSON", "Webhook event has no payment intent id", 400, {})

    metadata = obj.get("metadata")
    task_id: str | None = None
    if isinstance(metadata, dict):
        raw_task_id = metadata.get("task_id") or metadata.get("taskId")
        if raw_task_id is not None:
            task_id = str(raw_task_id)

    event_id = body.get("id")
    return PaymentEvent(
        kind="payment_succeeded" if event_type in SUCCEEDED_EVENT_TYPES else "payment_failed",
        payment_intent_id=payment_intent_id,
        task_id=task_id,
        event_id=event_id if isinstance(event_id, str) else None,
        event_type=event_type,
    )
