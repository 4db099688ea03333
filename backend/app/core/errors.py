"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Only configuration-time problems reach an HTTP caller synchronously.
Per-recipient and per-channel failures are converted into delivery
records by the senders and never surface here.

Usage:
    from backend.app.core.errors import (
        MessageServiceError,
        ConfigurationError,
        NotFoundError,
        register_error_handlers,
    )

    raise NotFoundError("Message", id=42)
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class MessageServiceError(Exception):
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


class ConfigurationError(MessageServiceError):
    """None of the requested channels has usable credentials (400)."""

    def __init__(self, message: str, *, requested: Optional[list] = None):
        super().__init__(
            message=message,
            status_code=400,
            error_code="CONFIGURATION_ERROR",
            details={"requested_channels": list(requested or [])},
        )


class NotFoundError(MessageServiceError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(MessageServiceError):
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


class RecipientValidationError(MessageServiceError):
    """A resolved address is malformed for its channel.

    Raised inside a sender and converted into a failed delivery record for
    that recipient only.
    """

    def __init__(self, recipient: str, channel: str, message: str):
        super().__init__(
            message=message,
            status_code=422,
            error_code="RECIPIENT_VALIDATION_ERROR",
            details={"recipient": recipient, "channel": channel},
        )


class ProviderError(MessageServiceError):
    """A delivery provider call failed (502)."""

    def __init__(self, provider: str, message: str = "", **details: Any):
        super().__init__(
            message=message or f"Provider '{provider}' failed",
            status_code=502,
            error_code="PROVIDER_ERROR",
            details={"provider": provider, **details},
        )


class PersistenceError(MessageServiceError):
    """Storage read/write failed (500)."""

    def __init__(self, operation: str, message: str = ""):
        super().__init__(
            message=f"Storage operation '{operation}' failed: {message}",
            status_code=500,
            error_code="PERSISTENCE_ERROR",
            details={"operation": operation},
        )


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

    # Include request path in non-production
    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(MessageServiceError)
    async def handle_service_error(request: Request, exc: MessageServiceError):
        log_level = logging.WARNING if exc.status_code < 500 else logging.ERROR
        logger.log(
            log_level,
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
        return _build_error_response(
            500, "INTERNAL_ERROR", message, request=request,
        )
