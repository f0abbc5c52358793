"""Task lifecycle state machine: creation, claim arbitration and transitions."""

from __future__ import annotations

import math
import uuid
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from task_market_service.core.exceptions import (
    Conflict,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from task_market_service.logging import get_logger
from task_market_service.services.matching import WorkerProfile, rank_tasks

if TYPE_CHECKING:
    from collections.abc import Collection

    from task_market_service.services.clock import Clock
    from task_market_service.services.notifier import Notifier
    from task_market_service.services.task_store import TaskStore

REQUESTED = "requested"
ASSIGNED = "assigned"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
CANCELLED = "cancelled"

TASK_STATUSES: tuple[str, ...] = (REQUESTED, ASSIGNED, IN_PROGRESS, COMPLETED, CANCELLED)
TERMINAL_STATUSES = frozenset({COMPLETED, CANCELLED})
ACTIVE_STATUSES: tuple[str, ...] = (ASSIGNED, IN_PROGRESS)
HISTORY_STATUSES: tuple[str, ...] = (COMPLETED, CANCELLED)

# Upper bound on a task price. Leaves headroom for price + fee within a
# SQLite INTEGER.
MAX_PRICE_CENTS = 10**12

_TEXT_FIELDS: tuple[str, ...] = ("description", "category", "address")

TaskCheck = Callable[[dict[str, Any]], None]


def _validate_coordinate(value: object, name: str, limit: float) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ValidationError(f"{name} must be a number")
    try:
        number = float(value)
    except OverflowError as exc:
        raise ValidationError(f"{name} must be between {-limit:g} and {limit:g}") from exc
    if not math.isfinite(number) or number < -limit or number > limit:
        raise ValidationError(f"{name} must be between {-limit:g} and {limit:g}")
    return number


class TaskLifecycle:
    """
    Authoritative state machine for tasks.

    States advance ``requested -> assigned -> in_progress -> completed``;
    ``cancelled`` is reachable from any non-terminal state. Each transition
    is a single conditional store update carrying its precondition, so two
    callers racing on the same task can never both succeed. When the
    update affects no row the task is re-read and the failure classified,
    which always yields a specific error kind.
    """

    def __init__(self, store: TaskStore, notifier: Notifier, clock: Clock) -> None:
        self._store = store
        self._notifier = notifier
        self._clock = clock
        self._logger = get_logger(__name__)

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

    def _require_task(self, task_id: str) -> dict[str, Any]:
        task = self._store.get_task(task_id)
        if task is None:
            raise NotFound()
        return task

    def _transition(
        self,
        task_id: str,
        check: TaskCheck,
        updates: dict[str, Any],
        *,
        expected_status: str | Collection[str],
        expected_worker_id: str | None = None,
    ) -> dict[str, Any]:
        """Validate, write conditionally, and classify a lost race."""
        check(self._require_task(task_id))

        rowcount = self._store.update_task(
            task_id,
            updates,
            expected_status=expected_status,
            expected_worker_id=expected_worker_id,
        )
        if rowcount == 0:
            check(self._require_task(task_id))
            raise Conflict("Task was modified concurrently")

        updated = self._store.get_task(task_id)
        if updated is None:
            raise NotFound()
        return updated

    @staticmethod
    def _event_payload(task: dict[str, Any]) -> dict[str, Any]:
        return {
            "task_id": task["task_id"],
            "status": task["status"],
            "requester_id": task["requester_id"],
            "worker_id": task["worker_id"],
        }

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def create_task(self, requester_id: str, data: dict[str, Any]) -> dict[str, Any]:
        """
        Create a task in ``requested`` with no worker.

        Fee and total stay unset until the task is first priced for
        payment. A zero price is accepted here and rejected at pricing time.
        """
        title = data.get("title")
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("Task title is required", {"field": "title"})

        price_cents = data.get("price_cents", 0)
        if not isinstance(price_cents, int) or isinstance(price_cents, bool) or price_cents < 0:
            raise ValidationError(
                "Task price must be a non-negative integer number of cents",
                {"field": "price_cents"},
            )
        if price_cents > MAX_PRICE_CENTS:
            raise ValidationError(
                f"Task price must not exceed {MAX_PRICE_CENTS} cents",
                {"field": "price_cents"},
            )

        text_values: dict[str, str | None] = {}
        for field in _TEXT_FIELDS:
            value = data.get(field)
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"{field} must be a string", {"field": field})
            text_values[field] = value

        lat = _validate_coordinate(data.get("lat"), "lat", 90.0)
        lng = _validate_coordinate(data.get("lng"), "lng", 180.0)
        if (lat is None) != (lng is None):
            raise ValidationError("lat and lng must be given together")

        now = self._clock.now_iso()
        task = {
            "task_id": f"t-{uuid.uuid4()}",
            "requester_id": requester_id,
            "title": title.strip(),
            "description": text_values["description"],
            "category": text_values["category"],
            "address": text_values["address"],
            "price_cents": price_cents,
            "fee_cents": None,
            "total_cents": None,
            "lat": lat,
            "lng": lng,
            "status": REQUESTED,
            "worker_id": None,
            "payment_intent_id": None,
            "paid_at": None,
            "created_at": now,
            "updated_at": now,
            "assigned_at": None,
            "started_at": None,
            "completed_at": None,
            "cancelled_at": None,
        }
        self._store.insert_task(task)

        self._logger.info(
            "Task created",
            extra={"task_id": task["task_id"], "requester_id": requester_id},
        )
        self._emit("task:created", self._event_payload(task))
        return task

    def claim_task(self, task_id: str, worker_id: str) -> dict[str, Any]:
        """
        Assign a ``requested`` task to the calling worker.

        Exactly one of any number of concurrent claimants wins; every
        other claimant gets ``Conflict``.
        """

        def check(task: dict[str, Any]) -> None:
            if task["requester_id"] == worker_id:
                raise Forbidden("Cannot claim your own task")
            if task["status"] == CANCELLED:
                raise InvalidTransition("Task has been cancelled")
            if task["status"] != REQUESTED:
                raise Conflict("Task already taken")

        now = self._clock.now_iso()
        task = self._transition(
            task_id,
            check,
            {"status": ASSIGNED, "worker_id": worker_id, "assigned_at": now, "updated_at": now},
            expected_status=REQUESTED,
        )

        self._logger.info("Task claimed", extra={"task_id": task_id, "worker_id": worker_id})
        self._emit("task:claimed", self._event_payload(task))
        return task

    def start_task(self, task_id: str, worker_id: str) -> dict[str, Any]:
        """Move an assigned task to ``in_progress``. Only the assigned worker may."""

        def check(task: dict[str, Any]) -> None:
            if task["worker_id"] != worker_id:
                raise Forbidden("Only the assigned worker can start this task")
            if task["status"] != ASSIGNED:
                raise InvalidTransition(
                    f"Cannot start task in status '{task['status']}'",
                    {"status": task["status"]},
                )

        now = self._clock.now_iso()
        task = self._transition(
            task_id,
            check,
            {"status": IN_PROGRESS, "started_at": now, "updated_at": now},
            expected_status=ASSIGNED,
            expected_worker_id=worker_id,
        )

        self._logger.info("Task started", extra={"task_id": task_id, "worker_id": worker_id})
        self._emit("task:started", self._event_payload(task))
        return task

    def complete_task(self, task_id: str, worker_id: str) -> dict[str, Any]:
        """Complete an assigned or in-progress task. Only the assigned worker may."""

        def check(task: dict[str, Any]) -> None:
            if task["worker_id"] != worker_id:
                raise Forbidden("Only the assigned worker can complete this task")
            if task["status"] not in ACTIVE_STATUSES:
                raise InvalidTransition(
                    f"Cannot complete task in status '{task['status']}'",
                    {"status": task["status"]},
                )

        now = self._clock.now_iso()
        task = self._transition(
            task_id,
            check,
            {"status": COMPLETED, "completed_at": now, "updated_at": now},
            expected_status=ACTIVE_STATUSES,
            expected_worker_id=worker_id,
        )

        self._logger.info("Task completed", extra={"task_id": task_id, "worker_id": worker_id})
        self._emit("task:completed", self._event_payload(task))
        return task

    def cancel_task(self, task_id: str, actor_id: str, *, is_admin: bool = False) -> dict[str, Any]:
        """
        Cancel a non-terminal task.

        Allowed for the requester or an administrator. The worker reference
        is kept as a historical record.
        """

        def check(task: dict[str, Any]) -> None:
            if not is_admin and task["requester_id"] != actor_id:
                raise Forbidden("Only the requester can cancel this task")
            if task["status"] in TERMINAL_STATUSES:
                raise InvalidTransition(
                    f"Cannot cancel task in status '{task['status']}'",
                    {"status": task["status"]},
                )

        now = self._clock.now_iso()
        task = self._transition(
            task_id,
            check,
            {"status": CANCELLED, "cancelled_at": now, "updated_at": now},
            expected_status=(REQUESTED, ASSIGNED, IN_PROGRESS),
        )

        self._logger.info(
            "Task cancelled",
            extra={"task_id": task_id, "actor_id": actor_id, "is_admin": is_admin},
        )
        self._emit("task:cancelled", self._event_payload(task))
        return task

    def withdraw_task(self, task_id: str, requester_id: str) -> dict[str, Any]:
        """
        Delete a task that no worker has claimed.

        Refused once a payment intent exists, since ledger entries refer
        to the task.
        """

        def check(task: dict[str, Any]) -> None:
            if task["requester_id"] != requester_id:
                raise Forbidden("Only the requester can withdraw this task")
            if task["status"] != REQUESTED:
                raise InvalidTransition(
                    f"Cannot withdraw task in status '{task['status']}'",
                    {"status": task["status"]},
                )
            if task["payment_intent_id"] is not None:
                raise InvalidTransition("Cannot withdraw a task with a payment in progress")

        task = self._require_task(task_id)
        check(task)

        deleted = self._store.delete_task(
            task_id, expected_status=REQUESTED, requester_id=requester_id
        )
        if deleted == 0:
            check(self._require_task(task_id))
            raise Conflict("Task was modified concurrently")

        self._logger.info(
            "Task withdrawn",
            extra={"task_id": task_id, "requester_id": requester_id},
        )
        self._emit(
            "task:withdrawn",
            {"task_id": task_id, "requester_id": requester_id},
        )
        return {"task_id": task_id, "withdrawn": True}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> dict[str, Any]:
        """Fetch a single task."""
        return self._require_task(task_id)

    def list_for_requester(self, requester_id: str) -> list[dict[str, Any]]:
        """Tasks posted by a requester, most recently updated first."""
        return self._store.list_tasks(None, requester_id, None, newest_first=True)

    def list_available(self, worker: WorkerProfile) -> list[dict[str, Any]]:
        """
        Open tasks ranked for a worker by distance and skill match.

        Tasks the worker requested themselves are left out, since claiming
        them is always refused.
        """
        snapshot = self._store.list_tasks((REQUESTED,), None, None, newest_first=False)
        candidates = [task for task in snapshot if task["requester_id"] != worker.worker_id]
        return rank_tasks(candidates, worker)

    def list_active(self, worker_id: str) -> list[dict[str, Any]]:
        """Tasks a worker holds that are assigned or in progress."""
        return self._store.list_tasks(ACTIVE_STATUSES, None, worker_id, newest_first=True)

    def list_history(self, worker_id: str) -> list[dict[str, Any]]:
        """Tasks a worker held that are completed or cancelled."""
        return self._store.list_tasks(HISTORY_STATUSES, None, worker_id, newest_first=True)
