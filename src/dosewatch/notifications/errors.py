"""Delivery error classification.

Provider responses and transport exceptions are translated exactly once, at
the provider boundary, into a :class:`DeliveryError` carrying a closed
:class:`ErrorCategory`.  Everything downstream (retry decisions, metrics,
dead-letter rows, health) works from the category and never re-inspects raw
error text.

Categories and retry eligibility:

- ``network_error``     retryable   transport exception, DNS failure, timeout
- ``rate_limit``        retryable   HTTP 429
- ``upstream_error``    retryable   HTTP 5xx
- ``bad_request``       final       other 4xx
- ``invalid_chat``      final       any 403, or a 400 naming an unknown chat
- ``message_too_long``  final       payload exceeds the provider limit
- ``unknown``           final       unrecognised error shape
"""

from __future__ import annotations

import asyncio
import enum
import logging
import socket
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)


class ErrorClass(enum.StrEnum):
    """Coarse taxonomy used for operator triage."""

    TRANSIENT_INFRASTRUCTURE = "transient_infrastructure"
    PERMANENT_RECIPIENT = "permanent_recipient"
    PERMANENT_PAYLOAD = "permanent_payload"
    UNKNOWN = "unknown"


class ErrorCategory(enum.StrEnum):
    NETWORK_ERROR = "network_error"
    RATE_LIMIT = "rate_limit"
    UPSTREAM_ERROR = "upstream_error"
    BAD_REQUEST = "bad_request"
    INVALID_CHAT = "invalid_chat"
    MESSAGE_TOO_LONG = "message_too_long"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE

    @property
    def error_class(self) -> ErrorClass:
        return _ERROR_CLASS[self]


_RETRYABLE = frozenset(
    {ErrorCategory.NETWORK_ERROR, ErrorCategory.RATE_LIMIT, ErrorCategory.UPSTREAM_ERROR}
)

_ERROR_CLASS = {
    ErrorCategory.NETWORK_ERROR: ErrorClass.TRANSIENT_INFRASTRUCTURE,
    ErrorCategory.RATE_LIMIT: ErrorClass.TRANSIENT_INFRASTRUCTURE,
    ErrorCategory.UPSTREAM_ERROR: ErrorClass.TRANSIENT_INFRASTRUCTURE,
    ErrorCategory.INVALID_CHAT: ErrorClass.PERMANENT_RECIPIENT,
    ErrorCategory.BAD_REQUEST: ErrorClass.PERMANENT_PAYLOAD,
    ErrorCategory.MESSAGE_TOO_LONG: ErrorClass.PERMANENT_PAYLOAD,
    ErrorCategory.UNKNOWN: ErrorClass.UNKNOWN,
}

# Socket-level error codes reported by transports and OS errors.
NETWORK_ERROR_CODES = frozenset(
    {"ETIMEDOUT", "ECONNRESET", "ENOTFOUND", "ECONNREFUSED", "EAI_AGAIN", "EPIPE"}
)

_NETWORK_KEYWORDS = (
    "etimedout",
    "econnreset",
    "enotfound",
    "econnrefused",
    "socket hang up",
    "network error",
    "timed out",
    "connection reset",
)

_INVALID_CHAT_KEYWORDS = (
    "bot was blocked",
    "user is deactivated",
    "chat not found",
    "bot was kicked",
)


@dataclass(frozen=True)
class DeliveryError:
    """A classified delivery failure."""

    category: ErrorCategory
    code: str | None
    message: str

    @property
    def retryable(self) -> bool:
        return self.category.retryable

    def to_dict(self) -> dict[str, str | None]:
        return {"category": str(self.category), "code": self.code, "message": self.message}


def classify_error(code: int | str | None, message: str | None) -> ErrorCategory:
    """Map a provider error code and description to an :class:`ErrorCategory`.

    *code* is either an HTTP-style status (``429``, ``"403"``) or a socket-level
    code such as ``"ETIMEDOUT"``.
    """
    text = (message or "").lower()
    status: int | None = None
    if isinstance(code, int):
        status = code
    elif isinstance(code, str) and code.isdigit():
        status = int(code)
    elif isinstance(code, str) and code.upper() in NETWORK_ERROR_CODES:
        return ErrorCategory.NETWORK_ERROR

    if status is not None:
        if status == 429:
            return ErrorCategory.RATE_LIMIT
        if 500 <= status < 600:
            return ErrorCategory.UPSTREAM_ERROR
        if status == 400 and "too long" in text:
            return ErrorCategory.MESSAGE_TOO_LONG
        # The Bot API only answers 403 when the recipient refuses the bot.
        if status == 403:
            return ErrorCategory.INVALID_CHAT
        if status == 400 and any(k in text for k in _INVALID_CHAT_KEYWORDS):
            return ErrorCategory.INVALID_CHAT
        if 400 <= status < 500:
            return ErrorCategory.BAD_REQUEST

    if any(k in text for k in _NETWORK_KEYWORDS):
        return ErrorCategory.NETWORK_ERROR

    return ErrorCategory.UNKNOWN


def classify_exception(exc: BaseException) -> DeliveryError:
    """Translate an exception raised during a send attempt into a DeliveryError."""
    message = str(exc) or type(exc).__name__

    if isinstance(exc, TimeoutError | asyncio.TimeoutError | httpx.TimeoutException):
        return DeliveryError(ErrorCategory.NETWORK_ERROR, "ETIMEDOUT", message)

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return DeliveryError(classify_error(status, exc.response.text), str(status), message)

    if isinstance(exc, httpx.TransportError | ConnectionError | socket.gaierror):
        return DeliveryError(ErrorCategory.NETWORK_ERROR, type(exc).__name__, message)

    code = getattr(exc, "code", None)
    if not isinstance(code, int | str):
        code = None
    category = classify_error(code, message)
    if category is ErrorCategory.UNKNOWN:
        logger.warning(
            "Unclassified delivery exception, treating as non-retryable",
            extra={"error_type": type(exc).__name__, "error_msg": message},
        )
    return DeliveryError(category, str(code) if code is not None else None, message)
