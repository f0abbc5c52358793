"""Payment intent creation and reconciliation of gateway callbacks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

from task_market_service.core.exceptions import (
    Conflict,
    Forbidden,
    InvalidTransition,
    NotFound,
)
from task_market_service.logging import get_logger
from task_market_service.services.task_lifecycle import CANCELLED

if TYPE_CHECKING:
    from task_market_service.clients.payment_gateway import PaymentGateway
    from task_market_service.services.clock import Clock
    from task_market_service.services.notifier import Notifier
    from task_market_service.services.pricing import PricingCalculator
    from task_market_service.services.task_store import TaskStore

PaymentEventKind = Literal["payment_succeeded", "payment_failed"]


@dataclass(frozen=True)
class PaymentEvent:
    """A verified gateway callback, reduced to what reconciliation needs."""

    kind: PaymentEventKind
    payment_intent_id: str
    task_id: str | None = None
    event_id: str | None = None
    event_type: str | None = None


def intent_idempotency_key(task_id: str) -> str:
    """Gateway idempotency key for the payment intent of a task."""
    return f"task-{task_id}-intent"


class PaymentReconciler:
    """
    Keeps a task's money fields and its ledger entry consistent with the
    payment gateway.

    Intent creation is idempotent per task: repeated or concurrent
    requests converge on one payment intent. Callback reconciliation is
    safe under at-least-once, out-of-order delivery: ``paid_at`` is set
    exactly once, and the ledger status never moves backwards.
    """

    def __init__(
        self,
        store: TaskStore,
        gateway: PaymentGateway,
        pricing: PricingCalculator,
        notifier: Notifier,
        clock: Clock,
        currency: str,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._pricing = pricing
        self._notifier = notifier
        self._clock = clock
        self._currency = currency
        self._logger = get_logger(__name__)

    def set_gateway(self, gateway: PaymentGateway) -> None:
        """Replace the payment gateway."""
        self._gateway = gateway

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    def _emit(self, event_name: str, payload: dict[str, Any]) -> None:
        try:
            self._notifier.emit(event_name, payload)
        except Exception:
            self._logger.exception(
                "Failed to emit event",
                extra={"event": event_name, "task_id": payload.get("task_id")},
            )

    def _require_owned_task(self, task_id: str, requester_id: str) -> dict[str, Any]:
        task = self._store.get_task(task_id)
        if task is None:
            raise NotFound()
        if task["requester_id"] != requester_id:
            raise Forbidden("Only the requester can pay for this task")
        return task

    @staticmethod
    def _already_paid(task: dict[str, Any]) -> dict[str, Any]:
        return {"task_id": task["task_id"], "already_paid": True, "paid_at": task["paid_at"]}

    def _intent_response(
        self,
        task: dict[str, Any],
        payment_intent_id: str,
        client_secret: str | None,
    ) -> dict[str, Any]:
        pricing = self._pricing.ensure_pricing(task)
        return {
            "task_id": task["task_id"],
            "already_paid": False,
            "payment_intent_id": payment_intent_id,
            "client_secret": client_secret,
            "totals": pricing.as_dict(),
        }

    def _existing_intent(self, task: dict[str, Any]) -> dict[str, Any]:
        payment_intent_id = str(task["payment_intent_id"])
        transaction = self._store.get_transaction(payment_intent_id)
        client_secret = transaction["client_secret"] if transaction is not None else None
        return self._intent_response(task, payment_intent_id, client_secret)

    # ------------------------------------------------------------------
    # Intent creation
    # ------------------------------------------------------------------

    async def create_intent(self, task_id: str, requester_id: str) -> dict[str, Any]:
        """
        Create (or return the existing) payment intent for a task.

        Pricing is fixed on first use and never recomputed. Returns an
        ``already_paid`` result instead of charging twice, also for a task
        that was paid and cancelled afterwards.

        Raises:
            NotFound: the task does not exist
            Forbidden: the caller is not the requester
            InvalidTransition: the task is cancelled and unpaid
            ValidationError: the task has no positive price
            PaymentError: the gateway rejected the request
        """
        task = self._require_owned_task(task_id, requester_id)
        if task["paid_at"] is not None:
            return self._already_paid(task)
        if task["status"] == CANCELLED:
            raise InvalidTransition("Cannot pay for a cancelled task")
        if task["payment_intent_id"] is not None:
            return self._existing_intent(task)

        pricing = self._pricing.ensure_pricing(task)
        intent = await self._gateway.create_intent(
            amount_cents=pricing.total_cents,
            currency=self._currency,
            metadata={"task_id": task_id, "requester_id": requester_id},
            idempotency_key=intent_idempotency_key(task_id),
        )

        attached = self._store.attach_payment_intent(
            task_id,
            intent.intent_id,
            pricing.fee_cents,
            pricing.total_cents,
            intent.client_secret,
            self._clock.now_iso(),
        )

        current = self._store.get_task(task_id)
        if current is None:
            raise NotFound()
        if current["paid_at"] is not None:
            return self._already_paid(current)

        if not attached:
            if current["payment_intent_id"] is None:
                raise Conflict("Task was modified concurrently")
            self._logger.info(
                "Payment intent already attached by a concurrent request",
                extra={"task_id": task_id, "payment_intent_id": current["payment_intent_id"]},
            )
            return self._existing_intent(current)

        self._logger.info(
            "Payment intent created",
            extra={
                "task_id": task_id,
                "payment_intent_id": intent.intent_id,
                "amount_cents": pricing.total_cents,
            },
        )
        return self._intent_response(current, intent.intent_id, intent.client_secret)

    def get_payment_status(self, task_id: str, requester_id: str) -> dict[str, Any]:
        """Paid flag and ledger status of a task, for the requester."""
        task = self._require_owned_task(task_id, requester_id)

        transaction: dict[str, Any] | None = None
        if task["payment_intent_id"] is not None:
            transaction = self._store.get_transaction(task["payment_intent_id"])
        if transaction is None:
            transactions = self._store.list_transactions_for_task(task_id)
            transaction = transactions[0] if transactions else None

        return {
            "task_id": task_id,
            "paid": task["paid_at"] is not None,
            "paid_at": task["paid_at"],
            "payment_intent_id": task["payment_intent_id"],
            "transaction_status": transaction["status"] if transaction is not None else None,
        }

    # ------------------------------------------------------------------
    # Callback reconciliation
    # ------------------------------------------------------------------

    def reconcile_event(self, event: PaymentEvent) -> dict[str, Any]:
        """
        Apply one verified gateway callback.

        Returns a dict with ``outcome`` set to one of ``paid``,
        ``duplicate``, ``cancelled_task``, ``failed`` or ``orphan``.
        Replays and events for unknown tasks are absorbed, not raised.
        """
        log_extra = {
            "event_id": event.event_id,
            "event_type": event.event_type,
            "payment_intent_id": event.payment_intent_id,
        }

        task: dict[str, Any] | None = None
        if event.task_id:
            task = self._store.get_task(event.task_id)
        if task is None:
            task = self._store.get_task_by_payment_intent(event.payment_intent_id)
        if task is None:
            self._logger.warning("Payment event for unknown task", extra=log_extra)
            return {"outcome": "orphan", "task_id": event.task_id}

        task_id = task["task_id"]
        log_extra["task_id"] = task_id
        now = self._clock.now_iso()

        if event.kind == "payment_failed":
            self._store.record_payment_status(task_id, event.payment_intent_id, "failed", now)
            self._logger.info("Payment failed", extra=log_extra)
            return {"outcome": "failed", "task_id": task_id}

        paid_now = self._store.record_payment_status(
            task_id, event.payment_intent_id, "succeeded", now
        )
        if paid_now:
            self._logger.info("Task paid", extra=log_extra)
            self._emit(
                "task:paid",
                {
                    "task_id": task_id,
                    "requester_id": task["requester_id"],
                    "payment_intent_id": event.payment_intent_id,
                    "paid_at": now,
                },
            )
            return {"outcome": "paid", "task_id": task_id}

        current = self._store.get_task(task_id)
        if current is None:
            self._logger.warning("Payment event for unknown task", extra=log_extra)
            return {"outcome": "orphan", "task_id": task_id}
        if current["paid_at"] is None and current["status"] == CANCELLED:
            self._logger.warning("Payment succeeded for a cancelled task", extra=log_extra)
            return {"outcome": "cancelled_task", "task_id": task_id}

        self._logger.info("Duplicate payment event ignored", extra=log_extra)
        return {"outcome": "duplicate", "task_id": task_id}
