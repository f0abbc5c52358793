"""Router test fixtures with mocked Identity service and payment gateway."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from task_market_service.app import create_app
from task_market_service.clients.identity_client import Actor
from task_market_service.clients.payment_gateway import GatewayIntent, PaymentGateway
from task_market_service.config import clear_settings_cache
from task_market_service.core.exceptions import ServiceError
from task_market_service.core.lifespan import lifespan
from task_market_service.core.state import get_app_state, reset_app_state
from tests.helpers import make_config_yaml

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

# ---------------------------------------------------------------------------
# Known callers (bearer token -> identity)
# ---------------------------------------------------------------------------
REQUESTER_TOKEN = "tok-requester"
OTHER_REQUESTER_TOKEN = "tok-other-requester"
WORKER_TOKEN = "tok-worker"
SECOND_WORKER_TOKEN = "tok-second-worker"
ADMIN_TOKEN = "tok-admin"

ACTORS: dict[str, Actor] = {
    REQUESTER_TOKEN: Actor(user_id="u-requester", role="requester"),
    OTHER_REQUESTER_TOKEN: Actor(user_id="u-other-requester", role="requester"),
    WORKER_TOKEN: Actor(
        user_id="u-worker", role="worker", lat=52.52, lng=13.405, skills="cleaning, moving"
    ),
    SECOND_WORKER_TOKEN: Actor(user_id="u-second-worker", role="worker"),
    ADMIN_TOKEN: Actor(user_id="u-admin", role="admin"),
}

INTENT_ID = "pi_test_1"
CLIENT_SECRET = "pi_test_1_secret_abc"


def auth(token: str) -> dict[str, str]:
    """Authorization header for a known caller."""
    return {"Authorization": f"Bearer {token}"}


async def _verify_token(token: str) -> Actor:
    actor = ACTORS.get(token)
    if actor is None:
        raise ServiceError("UNAUTHORIZED", "Invalid or expired token", 401, {})
    return actor


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with temp database and mocked external services."""
    db_path = tmp_path / "test.db"
    config_path = tmp_path / "config.yaml"
    config_path.write_text(make_config_yaml(str(db_path)))

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        state = get_app_state()

        # Mock Identity client: tokens resolve through ACTORS
        mock_identity = AsyncMock()
        mock_identity.close = AsyncMock()
        mock_identity.verify_token = AsyncMock(side_effect=_verify_token)
        state.identity_client = mock_identity

        # Mock payment gateway: assignment also rewires the reconciler
        mock_gateway = AsyncMock(spec=PaymentGateway)
        mock_gateway.create_intent = AsyncMock(
            return_value=GatewayIntent(
                intent_id=INTENT_ID,
                client_secret=CLIENT_SECRET,
                status="requires_payment_method",
            )
        )
        state.payment_gateway = mock_gateway

        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def mock_identity_unavailable(app: Any) -> None:
    """Configure the Identity mock to simulate service unavailability."""
    state = get_app_state()
    state.identity_client.verify_token = AsyncMock(
        side_effect=ServiceError(
            "IDENTITY_SERVICE_UNAVAILABLE", "Cannot connect to Identity service", 502, {}
        )
    )


@pytest.fixture
def gateway_mock(app: Any) -> AsyncMock:
    """The mocked payment gateway installed in the app."""
    return get_app_state().payment_gateway


# ---------------------------------------------------------------------------
# Task helper functions
# ---------------------------------------------------------------------------
async def create_task(
    client: AsyncClient,
    token: str = REQUESTER_TOKEN,
    **fields: Any,
) -> Any:
    """Create a task via POST /tasks and return the response."""
    body: dict[str, Any] = {"title": "Assemble a bookshelf", "price_cents": 2500}
    body.update(fields)
    return await client.post("/tasks", json=body, headers=auth(token))


async def create_task_id(client: AsyncClient, token: str = REQUESTER_TOKEN, **fields: Any) -> str:
    """Create a task and return its id."""
    response = await create_task(client, token, **fields)
    assert response.status_code == 201
    return response.json()["task_id"]


async def transition(
    client: AsyncClient,
    task_id: str,
    action: str,
    token: str = WORKER_TOKEN,
) -> Any:
    """POST /tasks/{task_id}/{action} as the given caller."""
    return await client.post(f"/tasks/{task_id}/{action}", headers=auth(token))
