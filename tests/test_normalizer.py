"""Tests for thread normalization and the Thread/Email model flags.

Covers chronological ordering, quoted-reply stripping for both marker
styles, never-raise behaviour of the cleaner, operator tagging, and the
needs_reply rule.
"""

from datetime import UTC, datetime

import pytest

from mailpilot.core.errors import NormalizationError
from mailpilot.engine import normalizer
from mailpilot.engine.normalizer import (
    build_thread,
    normalize,
    sender_address,
    strip_quoted_reply,
)
from mailpilot.mail.models import Thread

US_QUOTE = (
    "Thanks, Thursday works.\n\n"
    "On Mon, Jan 8, 2024 at 10:02 AM Jane Doe <jane@example.com> wrote:\n"
    "> Can we move the review?\n"
    "> Jane"
)

EU_QUOTE = (
    "Danke, passt.\n\n"
    "On 8. Jan 2024 at 10:02, Jane Doe wrote:\n"
    "Können wir das verschieben?"
)


# ---------------------------------------------------------------------------
# Quoted-reply stripping
# ---------------------------------------------------------------------------


class TestStripQuotedReply:
    def test_strips_weekday_month_day_year_marker(self):
        result = strip_quoted_reply(US_QUOTE)

        assert result.text == "Thanks, Thursday works."
        assert result.changed is True

    def test_strips_day_dot_month_year_marker(self):
        result = strip_quoted_reply(EU_QUOTE)

        assert result.text == "Danke, passt."
        assert result.changed is True

    def test_body_without_marker_is_unchanged(self):
        body = "Plain message.\nNo history here."
        result = strip_quoted_reply(body)

        assert result.text == body
        assert result.changed is False

    def test_wrote_without_date_marker_is_kept(self):
        body = "She wrote: the deadline is Friday."
        assert strip_quoted_reply(body).text == body

    def test_empty_body(self):
        result = strip_quoted_reply("")
        assert result.text == ""
        assert result.changed is False

    def test_cleaning_failure_keeps_original(self, monkeypatch: pytest.MonkeyPatch):
        def failing_strip(body: str) -> str:
            raise NormalizationError("pattern timed out")

        monkeypatch.setattr(normalizer, "_strip", failing_strip)

        result = strip_quoted_reply(US_QUOTE, "msg-1")

        assert result.text == US_QUOTE
        assert result.changed is False


# ---------------------------------------------------------------------------
# normalize / build_thread
# ---------------------------------------------------------------------------


class TestNormalize:
    def test_sorted_oldest_first_and_length_preserved(self, make_email):
        emails = [
            make_email("c", minutes=30),
            make_email("a", minutes=0),
            make_email("b", minutes=10),
        ]

        result = normalize(emails)

        assert [e.id for e in result] == ["a", "b", "c"]
        assert len(result) == len(emails)

    def test_equal_timestamps_keep_input_order(self, make_email):
        emails = [make_email("x", minutes=5), make_email("y", minutes=5), make_email("z", minutes=1)]

        assert [e.id for e in normalize(emails)] == ["z", "x", "y"]

    def test_sets_was_cleaned_per_message(self, make_email):
        emails = [make_email("a", body=US_QUOTE), make_email("b", body="No quote", minutes=1)]

        result = normalize(emails)

        assert result[0].was_cleaned is True
        assert result[0].body == "Thanks, Thursday works."
        assert result[1].was_cleaned is False

    def test_inputs_are_not_mutated(self, make_email):
        original = make_email("a", body=US_QUOTE)
        normalize([original])
        assert original.body == US_QUOTE

    def test_operator_tagging_is_case_insensitive(self, make_email):
        emails = [
            make_email("a", sender="Morgan Lee <ME@Example.com>"),
            make_email("b", sender="Alice <alice@example.com>", minutes=1),
        ]

        result = normalize(emails, operator_email="me@example.com")

        assert result[0].authored_by_operator is True
        assert result[1].authored_by_operator is False

    def test_without_operator_email_flags_are_kept(self, make_email):
        emails = [make_email("a", operator=True)]
        assert normalize(emails)[0].authored_by_operator is True

    def test_build_thread(self, make_email):
        thread = build_thread(
            "conv-9",
            [make_email("b", minutes=1), make_email("a", sender="me@example.com")],
            operator_email="me@example.com",
        )

        assert thread.thread_id == "conv-9"
        assert [e.id for e in thread.emails] == ["a", "b"]
        assert thread.has_operator_message is True


def test_sender_address():
    assert sender_address("Jane Doe <Jane@Example.COM>") == "jane@example.com"
    assert sender_address("bare@example.com") == "bare@example.com"
    assert sender_address("") == ""


# ---------------------------------------------------------------------------
# Thread flags
# ---------------------------------------------------------------------------


class TestNeedsReply:
    def test_last_unread_from_counterpart(self, make_email, make_thread):
        thread = make_thread(
            make_email("a", operator=True, unread=False),
            make_email("b", minutes=5),
        )
        assert thread.needs_reply is True

    def test_last_message_read(self, make_email, make_thread):
        thread = make_thread(make_email("a", unread=False))
        assert thread.needs_reply is False

    def test_single_operator_message(self, make_email, make_thread):
        thread = make_thread(make_email("a", operator=True))
        assert thread.needs_reply is False

    def test_operator_replied_last(self, make_email, make_thread):
        thread = make_thread(make_email("a"), make_email("b", operator=True, minutes=5))
        assert thread.needs_reply is False
        assert thread.has_operator_message is True

    def test_empty_thread(self):
        thread = Thread(thread_id="t", emails=())
        assert thread.needs_reply is False
        assert thread.latest is None
        assert thread.subject == ""


def test_email_sent_at_is_timezone_aware(make_email):
    assert make_email().sent_at.tzinfo is UTC
    assert make_email(minutes=60).sent_at == datetime(2024, 3, 4, 10, 0, tzinfo=UTC)
