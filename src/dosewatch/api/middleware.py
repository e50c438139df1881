"""API error handling and correlation middleware.

Registers FastAPI exception handlers that convert domain exceptions into
standardised ``{"error": {"code": "...", "message": "..."}}`` JSON responses.

Status code mapping:
- ``AuthenticationError`` → 401 Unauthorized
- ``AuthorizationError`` → 403 Forbidden
- ``EntryNotFoundError`` → 404 Not Found
- ``EntryConflictError`` → 409 Conflict
- ``ValueError`` (including invalid transitions and request validation) → 400
- Any other ``Exception`` → 500 Internal Server Error

Every response carries ``X-Correlation-Id``: the caller's value when one was
sent, otherwise a fresh id under which the request was logged.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from dosewatch.api.auth import AuthenticationError, AuthorizationError
from dosewatch.api.models import ErrorDetail, ErrorResponse
from dosewatch.core.correlation import correlation_scope
from dosewatch.notifications.dead_letter import EntryConflictError, EntryNotFoundError

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-Id"


def _error(status_code: int, code: str, message: str, **kwargs) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, **kwargs))
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


async def _handle_authentication(request: Request, exc: AuthenticationError) -> JSONResponse:
    response = _error(401, "UNAUTHORIZED", str(exc))
    response.headers["WWW-Authenticate"] = "Bearer"
    return response


async def _handle_authorization(request: Request, exc: AuthorizationError) -> JSONResponse:
    return _error(403, "FORBIDDEN", str(exc))


async def _handle_not_found(request: Request, exc: EntryNotFoundError) -> JSONResponse:
    logger.info("Not found: %s", exc)
    return _error(404, "NOT_FOUND", str(exc))


async def _handle_conflict(request: Request, exc: EntryConflictError) -> JSONResponse:
    logger.info("Conflict: %s", exc)
    return _error(409, "CONFLICT", str(exc))


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return _error(400, "VALIDATION_ERROR", str(exc))


async def _handle_request_validation(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "Invalid request")
    if location:
        message = f"{location}: {message}"
    return _error(400, "VALIDATION_ERROR", message)


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error(500, "INTERNAL_ERROR", "Internal server error")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Run each request inside a correlation scope and echo the id back."""

    async def dispatch(self, request: Request, call_next):
        incoming = request.headers.get(CORRELATION_HEADER, "").strip()
        with correlation_scope(incoming or None) as correlation_id:
            response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers and middleware to the application.

    The correlation middleware is added last so it is outermost and also
    stamps responses produced by the catch-all.
    """
    app.add_exception_handler(AuthenticationError, _handle_authentication)  # type: ignore[arg-type]
    app.add_exception_handler(AuthorizationError, _handle_authorization)  # type: ignore[arg-type]
    app.add_exception_handler(EntryNotFoundError, _handle_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(EntryConflictError, _handle_conflict)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_exception_handler(
        RequestValidationError,
        _handle_request_validation,  # type: ignore[arg-type]
    )
    app.add_middleware(CatchAllErrorMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
