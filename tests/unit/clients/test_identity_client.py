from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest

from task_market_service.clients.identity_client import IdentityClient
from task_market_service.core.exceptions import ServiceError

pytestmark = pytest.mark.unit


def _make_client(mock_response: httpx.Response | None = None) -> IdentityClient:
    """Create an IdentityClient with a mock HTTP transport."""
    client = IdentityClient(
        base_url="http://mock-identity:8001",
        verify_token_path="/auth/verify",
        timeout_seconds=5,
    )
    mock_http = AsyncMock(spec=httpx.AsyncClient)
    mock_http.post = AsyncMock(return_value=mock_response)
    client._client = mock_http
    return client


def _mock_response(status_code: int, json_body: dict[str, Any]) -> httpx.Response:
    return httpx.Response(
        status_code=status_code,
        json=json_body,
        request=httpx.Request("POST", "http://mock-identity:8001/auth/verify"),
    )


async def test_verify_token_returns_actor() -> None:
    client = _make_client(
        _mock_response(
            200,
            {
                "valid": True,
                "user_id": "u-42",
                "role": "worker",
                "lat": 52.52,
                "lng": 13.405,
                "skills": "Cleaning, moving",
            },
        )
    )

    actor = await client.verify_token("token-abc")

    assert actor.user_id == "u-42"
    assert actor.is_worker
    assert not actor.is_admin
    profile = actor.worker_profile()
    assert profile.lat == 52.52
    assert profile.skills == frozenset({"cleaning", "moving"})
    client._client.post.assert_awaited_once_with(  # type: ignore[attr-defined]
        "/auth/verify", json={"token": "token-abc"}
    )


async def test_verify_token_accepts_skill_list_and_missing_location() -> None:
    client = _make_client(
        _mock_response(200, {"valid": True, "user_id": "u-1", "role": "worker", "skills": ["Art"]})
    )

    actor = await client.verify_token("t")

    assert actor.lat is None
    assert actor.worker_profile().skills == frozenset({"art"})


@pytest.mark.parametrize(
    ("status_code", "body"),
    [
        (401, {"error": "UNAUTHORIZED"}),
        (200, {"valid": False}),
        (200, {"valid": True}),
    ],
)
async def test_verify_token_rejected_raises_unauthorized(
    status_code: int, body: dict[str, Any]
) -> None:
    client = _make_client(_mock_response(status_code, body))

    with pytest.raises(ServiceError) as exc_info:
        await client.verify_token("bad")

    assert exc_info.value.status_code == 401
    assert exc_info.value.error == "UNAUTHORIZED"


async def test_verify_token_unexpected_status_raises_unavailable() -> None:
    client = _make_client(_mock_response(500, {"error": "boom"}))

    with pytest.raises(ServiceError) as exc_info:
        await client.verify_token("t")

    assert exc_info.value.status_code == 502
    assert exc_info.value.error == "IDENTITY_SERVICE_UNAVAILABLE"


async def test_verify_token_timeout_raises_unavailable() -> None:
    client = _make_client()
    client._client.post = AsyncMock(  # type: ignore[method-assign]
        side_effect=httpx.ReadTimeout("timed out")
    )

    with pytest.raises(ServiceError) as exc_info:
        await client.verify_token("t")

    assert exc_info.value.error == "IDENTITY_SERVICE_UNAVAILABLE"
