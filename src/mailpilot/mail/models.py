"""Immutable snapshots of mailbox content.

A fresh Email/Thread is built on every fetch; nothing here is mutated in
place. Label names are provider-neutral: "UNREAD" present means unread,
"INBOX" present means the message has not been archived.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime

UNREAD = "UNREAD"
INBOX = "INBOX"


@dataclass(frozen=True, slots=True)
class Email:
    """A single message as seen by the triage engine.

    Attributes:
        id: Provider-assigned message ID
        thread_id: Provider conversation ID
        sender: Raw From header, e.g. "Jane Doe <jane@example.com>"
        to: Raw To header
        subject: Subject line
        body: Plain-text body (quoted history stripped after normalization)
        sent_at: When the message was sent or received
        authored_by_operator: True when the operator wrote this message
        labels: Provider labels, at minimum UNREAD while unread
        cc: Raw Cc header
        message_id: RFC 5322 Message-ID, used for In-Reply-To on drafts
        was_cleaned: Set by the normalizer when quoted history was removed
    """

    id: str
    thread_id: str
    sender: str
    to: str
    subject: str
    body: str
    sent_at: datetime
    authored_by_operator: bool = False
    labels: frozenset[str] = field(default_factory=frozenset)
    cc: str = ""
    message_id: str | None = None
    was_cleaned: bool = False

    @property
    def is_unread(self) -> bool:
        return UNREAD in self.labels

    def replace(self, **changes) -> Email:
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True, slots=True)
class Thread:
    """Chronologically ordered messages sharing a conversation ID."""

    thread_id: str
    emails: tuple[Email, ...]

    @property
    def latest(self) -> Email | None:
        return self.emails[-1] if self.emails else None

    @property
    def subject(self) -> str:
        return self.emails[0].subject if self.emails else ""

    @property
    def has_operator_message(self) -> bool:
        return any(e.authored_by_operator for e in self.emails)

    @property
    def needs_reply(self) -> bool:
        """True iff the last message is unread and was not written by the operator."""
        last = self.latest
        if last is None:
            return False
        return last.is_unread and not last.authored_by_operator


@dataclass(frozen=True, slots=True)
class ThreadRef:
    """Lightweight pointer returned by thread listing."""

    thread_id: str
    snippet: str = ""


@dataclass(frozen=True, slots=True)
class DraftRequest:
    """Fields needed to create a reply draft in the mailbox."""

    to: str
    subject: str
    body: str
    in_reply_to: str
    cc: str = ""
