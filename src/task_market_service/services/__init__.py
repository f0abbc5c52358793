"""Service layer components."""

from task_market_service.services.matching import WorkerProfile, rank_tasks
from task_market_service.services.notifier import EventBroadcaster, Notifier, NullNotifier
from task_market_service.services.payment_reconciler import PaymentEvent, PaymentReconciler
from task_market_service.services.pricing import Pricing, PricingCalculator
from task_market_service.services.task_lifecycle import TaskLifecycle
from task_market_service.services.task_store import TaskStore

__all__ = [
    "EventBroadcaster",
    "Notifier",
    "NullNotifier",
    "PaymentEvent",
    "PaymentReconciler",
    "Pricing",
    "PricingCalculator",
    "TaskLifecycle",
    "TaskStore",
    "WorkerProfile",
    "rank_tasks",
]
