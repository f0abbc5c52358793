"""Shared test helpers: fixed clock, recording notifier, config and webhook signing."""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import UTC, datetime, timedelta
from typing import Any

from task_market_service.services.clock import Clock
from task_market_service.services.notifier import Notifier

WEBHOOK_SECRET = "whsec_test_secret"


class FixedClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start if start is not None else datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now = self._now + timedelta(seconds=seconds)


class RecordingNotifier(Notifier):
    """Notifier that keeps every emitted event in memory."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        self.events.append((event_name, payload))

    def names(self) -> list[str]:
        return [name for name, _payload in self.events]


class FailingNotifier(Notifier):
    """Notifier whose every emit raises."""

    def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        msg = f"broadcast failed for {event_name}"
        raise RuntimeError(msg)


def make_config_yaml(db_path: str, *, webhook_secret: str = WEBHOOK_SECRET) -> str:
    """Render a complete config.yaml for tests."""
    return f"""\
service:
  name: "task-market"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: null
database:
  path: "{db_path}"
identity:
  base_url: "http://localhost:8001"
  verify_token_path: "/auth/verify"
  timeout_seconds: 10
payments:
  base_url: "https://api.stripe.test"
  secret_key: "sk_test_123"
  webhook_secret: "{webhook_secret}"
  webhook_tolerance_seconds: 300
  currency: "usd"
  timeout_seconds: 10
pricing:
  platform_fee_rate: "0.10"
events:
  subscriber_queue_size: 10
  keepalive_seconds: 15
request:
  max_body_size: 1048576
"""


def sign_webhook(
    payload: bytes,
    *,
    secret: str = WEBHOOK_SECRET,
    timestamp: int | None = None,
) -> str:
    """Build a Stripe-Signature header value for a payload."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def make_stripe_event(
    event_type: str,
    payment_intent_id: str,
    task_id: str | None,
    *,
    event_id: str = "evt_test_1",
) -> bytes:
    """Serialize a minimal Stripe event body."""
    metadata = {"task_id": task_id} if task_id is not None else {}
    if event_type == "checkout.session.completed":
        obj: dict[str, Any] = {
            "id": "cs_test_1",
            "object": "checkout.session",
            "payment_intent": payment_intent_id,
            "payment_status": "paid",
            "metadata": metadata,
        }
    else:
        obj = {
            "id": payment_intent_id,
            "object": "payment_intent",
            "status": "succeeded" if event_type.endswith("succeeded") else "requires_payment_method",
            "metadata": metadata,
        }
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()
