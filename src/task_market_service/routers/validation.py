"""Shared request validation and authentication helpers for routers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from task_market_service.core.exceptions import Forbidden, ServiceError, ValidationError
from task_market_service.core.state import get_app_state

if TYPE_CHECKING:
    from fastapi import Request

    from task_market_service.clients.identity_client import Actor


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


def extract_string(data: dict[str, Any], field_name: str) -> str:
    """Extract a required, non-empty string field from parsed JSON body."""
    value = data.get(field_name)

    if value is None:
        raise ValidationError(f"Missing required field: {field_name}", {"field": field_name})

    if not isinstance(value, str):
        raise ValidationError(f"Field '{field_name}' must be a string", {"field": field_name})

    if not value:
        raise ValidationError(f"Field '{field_name}' must not be empty", {"field": field_name})

    return value


def extract_bearer_token(authorization: str | None) -> str:
    """Extract the bearer token from an Authorization header."""
    if authorization is None:
        raise ServiceError(
            "UNAUTHORIZED",
            "Missing Authorization header",
            401,
            {},
        )

    if not authorization.startswith("Bearer "):
        raise ServiceError(
            "UNAUTHORIZED",
            "Authorization header must use Bearer scheme",
            401,
            {},
        )

    token = authorization[len("Bearer ") :]
    if not token:
        raise ServiceError(
            "UNAUTHORIZED",
            "Bearer token must not be empty",
            401,
            {},
        )

    return token


async def authenticate(request: Request) -> Actor:
    """Verify the request's bearer token with the Identity service."""
    token = extract_bearer_token(request.headers.get("authorization"))

    state = get_app_state()
    if state.identity_client is None:
        msg = "IdentityClient not initialized"
        raise RuntimeError(msg)

    return await state.identity_client.verify_token(token)


def require_worker(actor: Actor) -> None:
    """Reject callers without the worker role."""
    if not actor.is_worker:
        raise Forbidden("Worker role required")
