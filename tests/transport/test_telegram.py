"""Tests for the Telegram sender over a mocked HTTP transport."""

from __future__ import annotations

import json

import httpx
import pytest

from dosewatch.notifications.errors import ErrorCategory
from dosewatch.notifications.messages import OutboundMessage
from dosewatch.transport.telegram import MAX_MESSAGE_LENGTH, TelegramSender

pytestmark = pytest.mark.unit


class _Recorder:
    """MockTransport handler returning one canned response and keeping requests."""

    def __init__(self, status_code: int = 200, body: dict | None = None, text: str | None = None):
        self.status_code = status_code
        self.body = body if body is not None else {"ok": True, "result": {"message_id": 42}}
        self.text = text
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.text is not None:
            return httpx.Response(self.status_code, text=self.text)
        return httpx.Response(self.status_code, json=self.body)


def _sender(handler) -> TelegramSender:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TelegramSender("123:secret", client=client)


class TestSend:
    async def test_success(self):
        handler = _Recorder()
        sender = _sender(handler)

        result = await sender.send(
            "555",
            OutboundMessage("*hi*", reply_markup={"inline_keyboard": []}),
        )

        assert result.success
        assert result.message_id == "42"
        (request,) = handler.requests
        assert request.url == "https://api.telegram.org/bot123:secret/sendMessage"
        body = json.loads(request.content)
        assert body == {
            "chat_id": "555",
            "text": "*hi*",
            "parse_mode": "MarkdownV2",
            "reply_markup": {"inline_keyboard": []},
        }

    async def test_plain_message_omits_optional_fields(self):
        handler = _Recorder()
        await _sender(handler).send("555", OutboundMessage("hi", parse_mode=None))
        assert json.loads(handler.requests[0].content) == {"chat_id": "555", "text": "hi"}

    @pytest.mark.parametrize(
        ("status", "description", "category"),
        [
            (403, "Forbidden: bot was blocked by the user", ErrorCategory.INVALID_CHAT),
            (400, "Bad Request: chat not found", ErrorCategory.INVALID_CHAT),
            (429, "Too Many Requests: retry after 5", ErrorCategory.RATE_LIMIT),
            (502, "Bad Gateway", ErrorCategory.UPSTREAM_ERROR),
            (400, "Bad Request: can't parse entities", ErrorCategory.BAD_REQUEST),
        ],
    )
    async def test_api_errors_classified(self, status, description, category):
        handler = _Recorder(
            status, {"ok": False, "error_code": status, "description": description}
        )
        result = await _sender(handler).send("555", OutboundMessage("hi"))

        assert not result.success
        assert result.error.category is category
        assert result.error.code == str(status)
        assert result.error.message == description

    async def test_non_json_error_body(self):
        handler = _Recorder(502, text="<html>bad gateway</html>")
        result = await _sender(handler).send("555", OutboundMessage("hi"))
        assert result.error.category is ErrorCategory.UPSTREAM_ERROR
        assert result.error.message == "Bad Gateway"

    async def test_too_long_rejected_without_request(self):
        handler = _Recorder()
        result = await _sender(handler).send("555", OutboundMessage("x" * (MAX_MESSAGE_LENGTH + 1)))
        assert result.error.category is ErrorCategory.MESSAGE_TOO_LONG
        assert handler.requests == []

    async def test_transport_errors_propagate(self):
        def _boom(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(httpx.ConnectError):
            await _sender(_boom).send("555", OutboundMessage("hi"))


class TestLifecycle:
    def test_token_required(self):
        with pytest.raises(ValueError, match="token"):
            TelegramSender("")

    async def test_shared_client_is_not_closed(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(_Recorder()))
        sender = TelegramSender("123:secret", client=client)
        await sender.close()
        assert not client.is_closed
        await client.aclose()

    async def test_owned_client_is_closed(self):
        sender = TelegramSender("123:secret")
        client = sender._get_client()
        await sender.close()
        assert client.is_closed

    def test_custom_base_url(self):
        sender = TelegramSender("1:a", api_base_url="http://localhost:8081/")
        assert sender._base_url() == "http://localhost:8081/bot1:a"
