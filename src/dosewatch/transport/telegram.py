"""Telegram Bot API sender."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from dosewatch.notifications.errors import DeliveryError, ErrorCategory, classify_error
from dosewatch.notifications.messages import OutboundMessage
from dosewatch.notifications.models import SendResult

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
MAX_MESSAGE_LENGTH = 4096


class TelegramSender:
    """Sends messages through ``sendMessage`` and classifies the response.

    Parameters
    ----------
    bot_token:
        Bot API token.  Never logged.
    api_base_url:
        Override for tests or a local Bot API server.
    client:
        Shared ``httpx.AsyncClient``; one is created lazily when omitted.
    """

    def __init__(
        self,
        bot_token: str,
        *,
        api_base_url: str = TELEGRAM_API_BASE,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not bot_token:
            raise ValueError("Telegram bot token is required")
        self._bot_token = bot_token
        self._api_base_url = api_base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None

    def _base_url(self) -> str:
        return f"{self._api_base_url}/bot{self._bot_token}"

    def _get_client(self) -> httpx.AsyncClient:
        """Return the HTTP client, creating one if needed."""
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def send(self, recipient: str, message: OutboundMessage) -> SendResult:
        """Call Telegram ``sendMessage``.

        HTTP and Bot API failures come back as a failed :class:`SendResult`;
        transport exceptions (connect errors, timeouts) propagate.
        """
        if len(message.text) > MAX_MESSAGE_LENGTH:
            return SendResult.failed(
                DeliveryError(
                    ErrorCategory.MESSAGE_TOO_LONG,
                    "400",
                    f"Message is too long ({len(message.text)} > {MAX_MESSAGE_LENGTH})",
                )
            )

        payload: dict[str, Any] = {"chat_id": recipient, "text": message.text}
        if message.parse_mode:
            payload["parse_mode"] = message.parse_mode
        if message.reply_markup:
            payload["reply_markup"] = message.reply_markup

        resp = await self._get_client().post(f"{self._base_url()}/sendMessage", json=payload)

        try:
            data: dict[str, Any] = resp.json()
        except ValueError:
            data = {}

        if resp.is_success and data.get("ok"):
            return SendResult.ok(data.get("result", {}).get("message_id"))

        code = data.get("error_code") or resp.status_code
        description = data.get("description") or resp.reason_phrase or "Telegram API error"
        category = classify_error(code, description)
        logger.debug(
            "Telegram sendMessage rejected",
            extra={"status_code": resp.status_code, "error_category": str(category)},
        )
        return SendResult.failed(DeliveryError(category, str(code), description))

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
