"""Thread normalization: chronological order and quoted-history stripping.

Replies usually carry the whole earlier conversation below an
"On <date>, <person> wrote:" marker. That text duplicates messages already
present in the thread, so it is cut before anything reaches the model.

Signatures, disclaimers and markup are deliberately left alone here.

All regex operations use the `regex` library with a timeout so a hostile
body cannot hang the triage loop.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

import regex

from mailpilot.core.errors import NormalizationError
from mailpilot.core.logging import get_logger
from mailpilot.mail.models import Email, Thread

logger = get_logger(__name__)

REGEX_TIMEOUT = 1.0

_WEEKDAY = r"(?:Mon|Tue|Wed|Thu|Fri|Sat|Sun)[a-z]*"
_MONTH = r"(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\.?"
# Marker may follow a line break, sentence punctuation, or open the body
_MARKER_START = r"(?:(?<=[.?!])|\n|\A)[ \t>]*[Oo]n\s+"
_MARKER_END = r".{0,200}?wrote\s*:.*\Z"

QUOTED_REPLY_PATTERNS = (
    # On Mon, Jan 8, 2024 at 10:02 AM Jane Doe <jane@example.com> wrote:
    regex.compile(
        _MARKER_START + _WEEKDAY + r",\s+" + _MONTH + r"\s+\d{1,2},\s+\d{4}" + _MARKER_END,
        regex.DOTALL,
    ),
    # On 8. Jan 2024 at 10:02, Jane Doe wrote:
    regex.compile(
        _MARKER_START + r"\d{1,2}\.\s+" + _MONTH + r"\s+\d{4}" + _MARKER_END,
        regex.DOTALL,
    ),
)

ADDRESS_PATTERN = regex.compile(r"<([^<>\s]+@[^<>\s]+)>")


@dataclass(frozen=True, slots=True)
class CleanedBody:
    text: str
    changed: bool


def _strip(body: str) -> str:
    text = body
    for pattern in QUOTED_REPLY_PATTERNS:
        try:
            text = pattern.sub("", text, timeout=REGEX_TIMEOUT)
        except (TimeoutError, regex.error) as e:
            raise NormalizationError(f"Quoted-reply pattern failed: {e}") from e
    return text.rstrip() if text != body else body


def strip_quoted_reply(body: str, email_id: str | None = None) -> CleanedBody:
    """Remove the trailing quoted-reply block from a body.

    Never raises: on any cleaning failure the original body is returned
    unchanged.
    """
    if not body:
        return CleanedBody(body, False)
    try:
        text = _strip(body)
    except NormalizationError as e:
        logger.warning("quoted_reply_strip_failed", email_id=email_id, error=str(e))
        return CleanedBody(body, False)
    return CleanedBody(text, text != body)


def sender_address(header: str) -> str:
    """Extract the bare, lowercased address from a From header."""
    match = ADDRESS_PATTERN.search(header or "", timeout=REGEX_TIMEOUT)
    address = match.group(1) if match else (header or "")
    return address.strip().lower()


def normalize(raw_messages: Iterable[Email], operator_email: str | None = None) -> list[Email]:
    """Order a thread's messages oldest first and strip quoted history.

    Every input message is kept; sorting is stable so equal timestamps
    retain their input order. When operator_email is given, each message's
    authored_by_operator flag is recomputed from its sender.
    """
    ordered = sorted(raw_messages, key=lambda email: email.sent_at)
    operator = operator_email.lower() if operator_email else None

    normalized = []
    for email in ordered:
        cleaned = strip_quoted_reply(email.body, email.id)
        changes: dict = {"body": cleaned.text, "was_cleaned": cleaned.changed}
        if operator is not None:
            changes["authored_by_operator"] = sender_address(email.sender) == operator
        normalized.append(email.replace(**changes))

    return normalized


def build_thread(
    thread_id: str,
    raw_messages: Iterable[Email],
    operator_email: str | None = None,
) -> Thread:
    emails = normalize(raw_messages, operator_email)
    cleaned_count = sum(1 for e in emails if e.was_cleaned)
    if cleaned_count:
        logger.debug("thread_normalized", thread_id=thread_id, cleaned=cleaned_count)
    return Thread(thread_id=thread_id, emails=tuple(emails))
