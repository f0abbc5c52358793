"""Async HTTP client for the Identity service."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger
from task_market_service.services.matching import WorkerProfile


@dataclass(frozen=True)
class Actor:
    """The authenticated caller of a request."""

    user_id: str
    role: str
    lat: float | None = None
    lng: float | None = None
    skills: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_worker(self) -> bool:
        return self.role == "worker"

    def worker_profile(self) -> WorkerProfile:
        return WorkerProfile.create(self.user_id, self.lat, self.lng, self.skills)


def _optional_float(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)


class IdentityClient:
    """
    Client for Identity service bearer-token verification.

    Token validation and password handling live entirely in the Identity
    service. This client only forwards the bearer token to
    POST /auth/verify and turns the answer into an ``Actor``.
    """

    def __init__(
        self,
        base_url: str,
        verify_token_path: str,
        timeout_seconds: int,
    ) -> None:
        self._base_url = base_url
        self._verify_token_path = verify_token_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def verify_token(self, token: str) -> Actor:
        """
        Verify a bearer token via the Identity service.

        Args:
            token: The opaque bearer token from the Authorization header

        Returns:
            The caller's identity, role, location and skills

        Raises:
            ServiceError: UNAUTHORIZED (401) if the token is invalid or expired
            ServiceError: IDENTITY_SERVICE_UNAVAILABLE (502) on connection/timeout/unexpected errors
        """
        logger = get_logger(__name__)

        try:
            response = await self._client.post(
                self._verify_token_path,
                json={"token": token},
            )
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning(
                "Identity service connection failed",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise ServiceError(
                error="IDENTITY_SERVICE_UNAVAILABLE",
                message="Cannot connect to Identity service",
                status_code=502,
                details={},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Identity service HTTP error",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise ServiceError(
                error="IDENTITY_SERVICE_UNAVAILABLE",
                message="Identity service request failed",
                status_code=502,
                details={},
            ) from exc

        if response.status_code == 401:
            raise ServiceError(
                error="UNAUTHORIZED",
                message="Invalid or expired token",
                status_code=401,
                details={},
            )

        if response.status_code != 200:
            logger.warning(
                "Identity service unexpected status",
                extra={
                    "status_code": response.status_code,
                    "base_url": self._base_url,
                },
            )
            raise ServiceError(
                error="IDENTITY_SERVICE_UNAVAILABLE",
                message="Identity service returned unexpected status",
                status_code=502,
                details={},
            )

        result: dict[str, Any] = response.json()

        user_id = result.get("user_id")
        if not result.get("valid", False) or not isinstance(user_id, str) or not user_id:
            raise ServiceError(
                error="UNAUTHORIZED",
                message="Invalid or expired token",
                status_code=401,
                details={},
            )

        skills = result.get("skills")
        if isinstance(skills, list):
            skills = ",".join(str(skill) for skill in skills)
        return Actor(
            user_id=user_id,
            role=str(result.get("role", "requester")),
            lat=_optional_float(result.get("lat")),
            lng=_optional_float(result.get("lng")),
            skills=skills if isinstance(skills, str) else None,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
