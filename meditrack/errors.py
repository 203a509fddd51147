"""
Application exceptions and their HTTP mapping.

Every error a handler can raise maps onto a JSON body of the form
``{"message": ...}`` with a fixed status code. ``TransientStoreError`` is the
one exception that should never get this far: the hybrid store absorbs it by
switching to the in-memory backend.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class MediTrackError(Exception):
    """Base exception for all application errors."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(MediTrackError):
    """Missing or malformed input."""

    status_code = 400


class AuthError(MediTrackError):
    """Bad credentials or no active session."""

    status_code = 401


class NotFoundError(MediTrackError):
    """Unknown user or profile row."""

    status_code = 404


class ConflictError(MediTrackError):
    """Raised when a unique key (username) is already taken."""

    status_code = 409


class ConfigurationError(MediTrackError):
    """A feature was used without the settings it needs."""

    status_code = 500


class TransientStoreError(MediTrackError):
    """Timeout or connection loss in the persistent store."""

    status_code = 503


async def _handle_app_error(request: Request, exc: MediTrackError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


async def _handle_request_validation(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ())[1:])
        message = f"{field}: {first.get('msg')}" if field else first.get("msg")
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"message": message})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(MediTrackError, _handle_app_error)
    app.add_exception_handler(RequestValidationError, _handle_request_validation)
