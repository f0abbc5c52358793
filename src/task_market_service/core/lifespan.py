"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from task_market_service.clients.identity_client import IdentityClient
from task_market_service.clients.payment_gateway import StripeGateway
from task_market_service.config import get_safe_config, get_settings
from task_market_service.core.state import init_app_state
from task_market_service.logging import get_logger, setup_logging
from task_market_service.services.clock import SystemClock
from task_market_service.services.notifier import EventBroadcaster
from task_market_service.services.payment_reconciler import PaymentReconciler
from task_market_service.services.pricing import PricingCalculator
from task_market_service.services.task_lifecycle import TaskLifecycle
from task_market_service.services.task_store import TaskStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    store = TaskStore(db_path=settings.database.path)
    state.store = store

    broadcaster = EventBroadcaster(queue_size=settings.events.subscriber_queue_size)
    state.broadcaster = broadcaster

    # Initialize IdentityClient (HTTP client for bearer-token verification)
    identity_client = IdentityClient(
        base_url=settings.identity.base_url,
        verify_token_path=settings.identity.verify_token_path,
        timeout_seconds=settings.identity.timeout_seconds,
    )
    state.identity_client = identity_client

    # Initialize StripeGateway (HTTP client for payment intents)
    payment_gateway = StripeGateway(
        base_url=settings.payments.base_url,
        secret_key=settings.payments.secret_key,
        timeout_seconds=settings.payments.timeout_seconds,
    )

    clock = SystemClock()
    state.task_lifecycle = TaskLifecycle(store=store, notifier=broadcaster, clock=clock)
    state.payment_reconciler = PaymentReconciler(
        store=store,
        gateway=payment_gateway,
        pricing=PricingCalculator(settings.pricing.platform_fee_rate),
        notifier=broadcaster,
        clock=clock,
        currency=settings.payments.currency,
    )
    state.payment_gateway = payment_gateway

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
            "identity_base_url": settings.identity.base_url,
            "payments_base_url": settings.payments.base_url,
            "platform_fee_rate": str(settings.pricing.platform_fee_rate),
        },
    )
    logger.debug("Effective configuration", extra={"config": get_safe_config()})

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    store.close()

    # Close HTTP clients (closes httpx async clients)
    await identity_client.close()
    await payment_gateway.close()
