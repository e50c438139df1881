"""Tests for delivery error classification."""

from __future__ import annotations

import asyncio
import socket

import httpx
import pytest

from dosewatch.notifications.errors import (
    DeliveryError,
    ErrorCategory,
    ErrorClass,
    classify_error,
    classify_exception,
)

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    ("code", "message", "expected"),
    [
        ("ETIMEDOUT", "connect ETIMEDOUT 149.154.167.220:443", ErrorCategory.NETWORK_ERROR),
        ("ECONNRESET", None, ErrorCategory.NETWORK_ERROR),
        ("ENOTFOUND", "getaddrinfo ENOTFOUND", ErrorCategory.NETWORK_ERROR),
        (None, "socket hang up", ErrorCategory.NETWORK_ERROR),
        (429, "Too Many Requests: retry after 5", ErrorCategory.RATE_LIMIT),
        ("429", "Too Many Requests", ErrorCategory.RATE_LIMIT),
        (500, "Internal Server Error", ErrorCategory.UPSTREAM_ERROR),
        (502, "Bad Gateway", ErrorCategory.UPSTREAM_ERROR),
        (403, "Forbidden: bot was blocked by the user", ErrorCategory.INVALID_CHAT),
        (403, "Forbidden: user is deactivated", ErrorCategory.INVALID_CHAT),
        (403, "Forbidden: recipient blocked", ErrorCategory.INVALID_CHAT),
        (403, "Forbidden: bot can't initiate conversation with a user", ErrorCategory.INVALID_CHAT),
        ("403", None, ErrorCategory.INVALID_CHAT),
        (400, "Bad Request: chat not found", ErrorCategory.INVALID_CHAT),
        (400, "Bad Request: message is too long", ErrorCategory.MESSAGE_TOO_LONG),
        (400, "Bad Request: can't parse entities", ErrorCategory.BAD_REQUEST),
        (404, "Not Found", ErrorCategory.BAD_REQUEST),
        (None, "something odd happened", ErrorCategory.UNKNOWN),
        (None, None, ErrorCategory.UNKNOWN),
    ],
)
def test_classify_error(code, message, expected):
    assert classify_error(code, message) is expected


class TestRetryEligibility:
    @pytest.mark.parametrize(
        "category",
        [ErrorCategory.NETWORK_ERROR, ErrorCategory.RATE_LIMIT, ErrorCategory.UPSTREAM_ERROR],
    )
    def test_transient_categories_are_retryable(self, category):
        assert category.retryable
        assert category.error_class is ErrorClass.TRANSIENT_INFRASTRUCTURE

    @pytest.mark.parametrize(
        "category",
        [
            ErrorCategory.BAD_REQUEST,
            ErrorCategory.INVALID_CHAT,
            ErrorCategory.MESSAGE_TOO_LONG,
            ErrorCategory.UNKNOWN,
        ],
    )
    def test_other_categories_are_final(self, category):
        assert not category.retryable

    def test_error_classes(self):
        assert ErrorCategory.INVALID_CHAT.error_class is ErrorClass.PERMANENT_RECIPIENT
        assert ErrorCategory.MESSAGE_TOO_LONG.error_class is ErrorClass.PERMANENT_PAYLOAD
        assert ErrorCategory.UNKNOWN.error_class is ErrorClass.UNKNOWN


class TestClassifyException:
    def test_timeouts(self):
        for exc in (TimeoutError(), asyncio.TimeoutError(), httpx.ReadTimeout("read timed out")):
            error = classify_exception(exc)
            assert error.category is ErrorCategory.NETWORK_ERROR
            assert error.code == "ETIMEDOUT"

    def test_transport_errors(self):
        for exc in (
            httpx.ConnectError("refused"),
            ConnectionResetError("reset by peer"),
            socket.gaierror("Name or service not known"),
        ):
            assert classify_exception(exc).category is ErrorCategory.NETWORK_ERROR

    def test_http_status_error(self):
        request = httpx.Request("POST", "https://api.telegram.org/botX/sendMessage")
        response = httpx.Response(503, text="Service Unavailable", request=request)
        exc = httpx.HTTPStatusError("503", request=request, response=response)
        error = classify_exception(exc)
        assert error.category is ErrorCategory.UPSTREAM_ERROR
        assert error.code == "503"

    def test_exception_with_code_attribute(self):
        class ProviderError(Exception):
            code = 403

        error = classify_exception(ProviderError("Forbidden: bot was kicked"))
        assert error.category is ErrorCategory.INVALID_CHAT
        assert error.code == "403"

    def test_unrecognised_exception_is_unknown(self):
        error = classify_exception(RuntimeError("boom"))
        assert error.category is ErrorCategory.UNKNOWN
        assert not error.retryable

    def test_to_dict(self):
        error = DeliveryError(ErrorCategory.BAD_REQUEST, "400", "nope")
        assert error.to_dict() == {"category": "bad_request", "code": "400", "message": "nope"}
