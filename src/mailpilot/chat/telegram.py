"""Telegram Bot API transport over httpx.

Inbound messages arrive via long polling (getUpdates). Each text message
is passed to the handler and awaited before the next update is read, so
the operator's replies are processed strictly in order.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any

import httpx

from mailpilot.chat.transport import MessageHandler
from mailpilot.core.errors import ChatTransportError
from mailpilot.core.logging import get_logger

logger = get_logger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"
POLL_TIMEOUT_SECONDS = 30
POLL_ERROR_BACKOFF_SECONDS = 5.0
MAX_MESSAGE_CHARS = 4096


def split_message(text: str, limit: int = MAX_MESSAGE_CHARS) -> list[str]:
    """Split text into chunks of at most ``limit`` chars, preferring line breaks.

    Only the line break a chunk is split at is dropped. A line longer than
    the limit is cut at a space where possible, and never right after a
    MarkdownV2 escape backslash.
    """
    chunks: list[str] = []
    rest = text
    while len(rest) > limit:
        cut = rest.rfind("\n", 0, limit + 1)
        if cut > 0:
            chunks.append(rest[:cut])
            rest = rest[cut + 1 :]
            continue
        cut = rest.rfind(" ", 0, limit)
        if cut <= 0:
            cut = limit
        while cut > 1 and rest[cut - 1] == "\\":
            cut -= 1
        chunks.append(rest[:cut])
        rest = rest[cut:]
    chunks.append(rest)
    return chunks


class TelegramTransport:
    """Send and receive operator messages through a Telegram bot.

    Args:
        token: Bot token from BotFather
        client: Optional httpx.AsyncClient (tests inject a MockTransport)
        base_url: API root, overridable for local bot API servers
    """

    def __init__(
        self,
        token: str,
        client: httpx.AsyncClient | None = None,
        base_url: str = TELEGRAM_API_URL,
    ):
        if not token:
            raise ValueError("TELEGRAM_BOT_TOKEN is not set")
        self._url = f"{base_url.rstrip('/')}/bot{token}"
        self._client = client or httpx.AsyncClient(timeout=POLL_TIMEOUT_SECONDS + 10)
        self._offset: int | None = None

    async def _call(self, method: str, payload: dict[str, Any]) -> Any:
        try:
            response = await self._client.post(f"{self._url}/{method}", json=payload)
        except httpx.HTTPError as e:
            raise ChatTransportError(f"Telegram {method} failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not response.is_success or not data.get("ok", False):
            raise ChatTransportError(
                f"Telegram {method} returned HTTP {response.status_code}: "
                f"{data.get('description', response.text[:200])}",
                status_code=response.status_code,
            )
        return data.get("result")

    async def send_message(
        self,
        operator_id: str,
        text: str,
        *,
        keyboard: Sequence[str] | None = None,
        markdown: bool = False,
    ) -> None:
        """Send text, split over several messages when it exceeds the API limit.

        The keyboard is attached to the last chunk, so the options are
        always shown after the full text they refer to.
        """
        chunks = split_message(text)
        for position, chunk in enumerate(chunks, 1):
            payload: dict[str, Any] = {"chat_id": operator_id, "text": chunk}
            if markdown:
                payload["parse_mode"] = "MarkdownV2"
            if keyboard and position == len(chunks):
                payload["reply_markup"] = {
                    "keyboard": [[{"text": key} for key in keyboard]],
                    "one_time_keyboard": True,
                    "resize_keyboard": True,
                }
            elif not keyboard:
                payload["reply_markup"] = {"remove_keyboard": True}
            await self._call("sendMessage", payload)
        if len(chunks) > 1:
            logger.info("chat_message_split", chunks=len(chunks), chars=len(text))

    async def get_updates(self) -> list[dict[str, Any]]:
        payload: dict[str, Any] = {"timeout": POLL_TIMEOUT_SECONDS, "allowed_updates": ["message"]}
        if self._offset is not None:
            payload["offset"] = self._offset
        updates = await self._call("getUpdates", payload) or []
        if updates:
            self._offset = updates[-1]["update_id"] + 1
        return updates

    async def poll(self, handler: MessageHandler, stop_event: asyncio.Event) -> None:
        """Dispatch inbound text messages until stop_event is set."""
        logger.info("chat_polling_started")
        while not stop_event.is_set():
            try:
                updates = await self.get_updates()
            except ChatTransportError as e:
                logger.warning("chat_poll_failed", error=str(e))
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=POLL_ERROR_BACKOFF_SECONDS)
                except TimeoutError:
                    pass
                continue

            for update in updates:
                message = update.get("message") or {}
                text = message.get("text")
                chat_id = (message.get("chat") or {}).get("id")
                if text is None or chat_id is None:
                    continue
                await handler(str(chat_id), text)
        logger.info("chat_polling_stopped")

    async def aclose(self) -> None:
        await self._client.aclose()
