"""Error taxonomy and exception handlers for consistent error responses."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from task_market_service.logging import get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI, Request
    from starlette.types import ExceptionHandler

__all__ = [
    "Conflict",
    "Forbidden",
    "InvalidTransition",
    "NotFound",
    "PaymentError",
    "ServiceError",
    "ValidationError",
    "register_exception_handlers",
]


class ServiceError(Exception):
    """
    Base error carrying a stable error code and an HTTP status.

    Every failure the core reports is one of the subclasses below, so
    callers can branch on ``error`` without parsing messages.
    """

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = status_code
        self.details: dict[str, Any] = details if details is not None else {}


class ValidationError(ServiceError):
    """Bad or missing input. No state was changed."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("VALIDATION_ERROR", message, 400, details)


class Forbidden(ServiceError):
    """The caller is not allowed to perform this operation on this task."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("FORBIDDEN", message, 403, details)


class NotFound(ServiceError):
    """The referenced task does not exist."""

    def __init__(
        self,
        message: str = "Task not found",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__("NOT_FOUND", message, 404, details)


class Conflict(ServiceError):
    """The caller lost a race, e.g. a claim on an already-taken task."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("CONFLICT", message, 409, details)


class InvalidTransition(ServiceError):
    """The requested transition is not an edge of the task state machine."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("INVALID_TRANSITION", message, 409, details)


class PaymentError(ServiceError):
    """The payment gateway rejected or failed the request."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("PAYMENT_ERROR", message, 502, details)


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Handle ServiceError exceptions."""
    logger = get_logger(__name__)
    logger.warning(
        "Service error",
        extra={
            "error_code": exc.error,
            "status_code": exc.status_code,
            "path": str(request.url.path),
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "message": exc.message, "details": exc.details},
    )


async def unhandled_exception_handler(request: Request, _exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger = get_logger(__name__)
    logger.exception("Unhandled exception", extra={"path": str(request.url.path)})
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "message": "An unexpected error occurred",
            "details": {},
        },
    )


async def http_exception_handler(
    _request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Handle Starlette HTTP exceptions (e.g., 404/405 from router)."""
    if exc.status_code == 405:
        return JSONResponse(
            status_code=405,
            content={
                "error": "METHOD_NOT_ALLOWED",
                "message": "Method not allowed",
                "details": {},
            },
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTP_ERROR",
            "message": str(exc.detail),
            "details": {},
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the app."""
    app.add_exception_handler(ServiceError, cast("ExceptionHandler", service_error_handler))
    app.add_exception_handler(Exception, unhandled_exception_handler)
    app.add_exception_handler(
        StarletteHTTPException,
        cast("ExceptionHandler", http_exception_handler),
    )
