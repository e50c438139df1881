"""Outbound chat transports."""

from dosewatch.transport.base import ChatSender
from dosewatch.transport.telegram import TelegramSender

__all__ = ["ChatSender", "TelegramSender"]
