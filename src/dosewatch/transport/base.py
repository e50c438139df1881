"""The send capability consumed by the delivery executor."""

from __future__ import annotations

from typing import Protocol

from dosewatch.notifications.messages import OutboundMessage
from dosewatch.notifications.models import SendResult


class ChatSender(Protocol):
    """One delivery attempt to one recipient.

    Implementations classify provider failures into a
    :class:`~dosewatch.notifications.errors.DeliveryError` on the returned
    :class:`SendResult`.  Transport exceptions may propagate; the executor
    classifies them.
    """

    async def send(self, recipient: str, message: OutboundMessage) -> SendResult: ...

    async def close(self) -> None: ...
