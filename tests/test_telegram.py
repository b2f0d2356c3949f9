"""Tests for the Telegram transport against httpx.MockTransport."""

import asyncio
import json

import httpx
import pytest

from mailpilot.chat import messages
from mailpilot.chat.telegram import MAX_MESSAGE_CHARS, TelegramTransport, split_message
from mailpilot.core.errors import ChatTransportError


def _make_transport(handler) -> TelegramTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TelegramTransport("123:abc", client=client, base_url="https://bot.example")


def _ok(result=True) -> httpx.Response:
    return httpx.Response(200, json={"ok": True, "result": result})


class TestSendMessage:
    async def test_payload_with_keyboard_and_markdown(self):
        seen: list[tuple[str, dict]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.url.path, json.loads(request.content)))
            return _ok()

        transport = _make_transport(handler)

        await transport.send_message("1001", "*Reply proposed*", keyboard=["1", "2"], markdown=True)

        path, payload = seen[0]
        assert path == "/bot123:abc/sendMessage"
        assert payload["chat_id"] == "1001"
        assert payload["parse_mode"] == "MarkdownV2"
        assert payload["reply_markup"]["keyboard"] == [[{"text": "1"}, {"text": "2"}]]

    async def test_plain_message_removes_keyboard(self):
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return _ok()

        await _make_transport(handler).send_message("1001", "x" * (MAX_MESSAGE_CHARS + 50))

        assert "parse_mode" not in seen[0]
        assert seen[0]["reply_markup"] == {"remove_keyboard": True}
        assert len(seen[0]["text"]) == MAX_MESSAGE_CHARS
        assert "".join(p["text"] for p in seen) == "x" * (MAX_MESSAGE_CHARS + 50)

    async def test_long_draft_is_sent_whole_with_menu_last(self, make_email):
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return _ok()

        draft = "word " * 900 + "FINAL-SENTENCE"
        rendered = messages.respond_menu(make_email(), "Direct question", draft)

        await _make_transport(handler).send_message(
            "1001", rendered.markdown, keyboard=rendered.keyboard, markdown=True
        )

        assert len(seen) > 1
        assert all(len(p["text"]) <= MAX_MESSAGE_CHARS for p in seen)
        assert seen[-1]["reply_markup"]["keyboard"][0][0] == {"text": "1"}
        assert "FINAL\\-SENTENCE" in seen[-1]["text"]
        assert seen[-1]["text"].endswith("5\\. Mark as read")
        assert all("reply_markup" not in p for p in seen[:-1])
        assert "".join(p["text"] for p in seen).replace("\n", "") == rendered.markdown.replace("\n", "")

    async def test_rejected_message_raises(self):
        transport = _make_transport(
            lambda request: httpx.Response(
                400, json={"ok": False, "description": "Bad Request: can't parse entities"}
            )
        )

        with pytest.raises(ChatTransportError, match="can't parse entities") as exc_info:
            await transport.send_message("1001", "*broken", markdown=True)

        assert exc_info.value.status_code == 400

    async def test_network_error_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable")

        with pytest.raises(ChatTransportError):
            await _make_transport(handler).send_message("1001", "hi")

    def test_token_required(self):
        with pytest.raises(ValueError):
            TelegramTransport("")


class TestSplitMessage:
    def test_short_text_is_one_chunk(self):
        assert split_message("hello") == ["hello"]

    def test_prefers_line_breaks(self):
        assert split_message("aaaa\nbbbb\ncc", limit=10) == ["aaaa\nbbbb", "cc"]

    def test_never_cuts_after_escape(self):
        chunks = split_message("abcdefgh\\.xyz", limit=9)

        assert chunks == ["abcdefgh", "\\.xyz"]


class TestPolling:
    async def test_offset_advances_past_last_update(self):
        offsets: list[int | None] = []
        batches = [
            [{"update_id": 7, "message": {"chat": {"id": 1001}, "text": "1"}}],
            [],
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            offsets.append(json.loads(request.content).get("offset"))
            return _ok(batches.pop(0))

        transport = _make_transport(handler)

        await transport.get_updates()
        await transport.get_updates()

        assert offsets == [None, 8]

    async def test_poll_dispatches_text_messages_in_order(self):
        batches = [
            [
                {"update_id": 1, "message": {"chat": {"id": 1001}, "text": "3"}},
                {"update_id": 2, "message": {"chat": {"id": 1001}, "sticker": {}}},
                {"update_id": 3, "message": {"chat": {"id": 1001}, "text": "make it shorter"}},
            ],
        ]
        stop_event = asyncio.Event()
        received: list[tuple[str, str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            return _ok(batches.pop(0) if batches else [])

        async def on_message(chat_id: str, text: str) -> None:
            received.append((chat_id, text))
            if len(received) == 2:
                stop_event.set()

        await asyncio.wait_for(_make_transport(handler).poll(on_message, stop_event), timeout=2)

        assert received == [("1001", "3"), ("1001", "make it shorter")]
