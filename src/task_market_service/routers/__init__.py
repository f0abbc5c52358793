"""API routers."""

from task_market_service.routers import events, health, payments, tasks

__all__ = ["events", "health", "payments", "tasks"]
