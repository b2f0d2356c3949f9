"""Chat transport interface used by the confirmation state machine."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from typing import Protocol, runtime_checkable

# (operator_id, text) for each inbound message
MessageHandler = Callable[[str, str], Awaitable[None]]


@runtime_checkable
class ChatTransport(Protocol):
    async def send_message(
        self,
        operator_id: str,
        text: str,
        *,
        keyboard: Sequence[str] | None = None,
        markdown: bool = False,
    ) -> None:
        """Deliver one message, raising ChatTransportError on failure.

        With markdown=True the text is Telegram MarkdownV2 and must already
        be escaped.
        """
        ...
