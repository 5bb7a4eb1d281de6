"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Channel and backend failures are internal: the dispatcher turns
``ChannelSendError`` into a FAILED attempt row and the storage router turns
``BackendUnavailableError`` into a fallback. Only ``SafetyAPIError``
subclasses ever reach an HTTP client.

Usage:
    from backend.app.core.errors import (
        SafetyAPIError,
        NotFoundError,
        InvalidTransitionError,
        register_error_handlers,
    )

    raise NotFoundError("Alert", alert_id="ALR-1A2B3C4D5E6F")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Iterable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class SafetyAPIError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(SafetyAPIError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(SafetyAPIError):
    """Input validation failed (422)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class InvalidTransitionError(SafetyAPIError):
    """Alert status change not allowed from its current status (409)."""

    def __init__(self, alert_id: str, current: Optional[str], requested: str):
        self.alert_id = alert_id
        self.current = current
        self.requested = requested
        super().__init__(
            message=f"Alert {alert_id} cannot move from {current} to {requested}",
            status_code=409,
            error_code="INVALID_TRANSITION",
            details={"alert_id": alert_id, "current": current, "requested": requested},
        )


class DuplicateAlertError(SafetyAPIError):
    """An open alert of the same type already exists for the user (409)."""

    def __init__(self, user_id: str, alert_type: str, existing_alert_id: str):
        self.existing_alert_id = existing_alert_id
        super().__init__(
            message=f"User {user_id} already has an open {alert_type} alert",
            status_code=409,
            error_code="DUPLICATE_ALERT",
            details={
                "user_id": user_id,
                "alert_type": alert_type,
                "existing_alert_id": existing_alert_id,
            },
        )


class ExternalServiceError(SafetyAPIError):
    """External API call failed (502)."""

    def __init__(self, service: str, message: str = "", **details: Any):
        super().__init__(
            message=f"External service '{service}' failed: {message}",
            status_code=502,
            error_code="EXTERNAL_SERVICE_ERROR",
            details={"service": service, **details},
        )


class BackendUnavailableError(ExternalServiceError):
    """One storage backend could not serve a request (triggers fallback)."""

    def __init__(self, backend: str, message: str = "", **details: Any):
        self.backend = backend
        super().__init__(backend, message, **details)
        self.error_code = "BACKEND_UNAVAILABLE"


class StorageUnavailableError(SafetyAPIError):
    """Neither the primary nor the secondary backend answered (503)."""

    def __init__(self, operation: str, failures: Iterable[str] = ()):
        super().__init__(
            message=f"Storage unavailable for '{operation}'",
            status_code=503,
            error_code="STORAGE_UNAVAILABLE",
            details={"operation": operation, "failures": list(failures)},
        )


class ChannelSendError(Exception):
    """
    A channel transport failed to deliver one message.

    Never surfaced to API clients; recorded as a FAILED attempt.
    """

    def __init__(self, channel: str, message: str = "", *, status_code: Optional[int] = None):
        super().__init__(f"{channel}: {message}" if message else channel)
        self.channel = channel
        self.reason = message
        self.status_code = status_code


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(SafetyAPIError)
    async def handle_safety_error(request: Request, exc: SafetyAPIError):
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(
            level,
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("ValueError: %s", exc)
        return _build_error_response(
            422, "VALIDATION_ERROR", str(exc), request=request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        details = (
            {"traceback": traceback.format_exc().split("\n")}
            if settings.DEBUG else None
        )
        return _build_error_response(
            500, "INTERNAL_ERROR", message, details, request,
        )
