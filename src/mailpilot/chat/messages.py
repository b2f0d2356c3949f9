"""Text shown to the operator.

Each prompt is rendered once as a RenderedMessage holding a bold title, a
body and the numbered options. The transport gets a MarkdownV2 version
first and the plain version if that is rejected.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

import regex

from mailpilot.engine.interactions import BulkOperation
from mailpilot.mail.models import Email

CANCELLED = "✅ Action cancelled. The email will remain unread."
SENT = "✅ Response sent successfully!"
ARCHIVED = "✅ Email archived."
MARKED_READ = "✅ Email marked as read."
ERROR = "❌ An error occurred. Please try again or contact support."
NOTHING_PENDING = "ℹ️ Nothing is waiting for your confirmation."
SELECTION_CANCELLED = "✅ Bulk action cancelled. No emails were changed."
EDIT_PROMPT = "✏️ Send your edit instructions for the draft."
DRAFTING = "✍️ Drafting a reply..."
STILL_WORKING = "⏳ Still working on your previous answer."
NO_ACTION = "ℹ️ No action proposed for this thread; it stays unread."

PREVIEW_CHARS = 600
BULK_PREVIEW_COUNT = 5
SELECTION_LIST_LIMIT = 20

_MARKDOWN_SPECIAL = regex.compile(r"([_*\[\]()~`>#+\-=|{}.!\\])")


def escape_markdown(text: str) -> str:
    """Escape every MarkdownV2 special character."""
    return _MARKDOWN_SPECIAL.sub(r"\\\1", text, timeout=1.0)


def _preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    text = text.strip()
    return text if len(text) <= limit else text[:limit].rstrip() + "…"


@dataclass(frozen=True, slots=True)
class RenderedMessage:
    title: str
    body: str
    options: tuple[str, ...] = field(default_factory=tuple)

    @property
    def keyboard(self) -> list[str] | None:
        return [str(i) for i in range(1, len(self.options) + 1)] or None

    def _option_lines(self) -> list[str]:
        return [f"{i}. {option}" for i, option in enumerate(self.options, 1)]

    @property
    def plain(self) -> str:
        parts = [self.title, self.body, "\n".join(self._option_lines())]
        return "\n\n".join(p for p in parts if p)

    @property
    def markdown(self) -> str:
        parts = [
            f"*{escape_markdown(self.title)}*",
            escape_markdown(self.body),
            escape_markdown("\n".join(self._option_lines())),
        ]
        return "\n\n".join(p for p in parts if p)


def _email_block(email: Email) -> str:
    return f"From: {email.sender}\nSubject: {email.subject}\n\n{_preview(email.body)}"


def respond_menu(email: Email, reason: str, draft: str, edit_history: Sequence[str] = ()) -> RenderedMessage:
    if edit_history:
        edits = "\n".join(f"{i}. {edit}" for i, edit in enumerate(edit_history, 1))
        return RenderedMessage(
            title="📝 Confirm Final Response",
            body=f"{_email_block(email)}\n\nEdits applied:\n{edits}\n\nDraft:\n{draft}",
            options=("Confirm and send", "Cancel", "Edit again", "Archive instead", "Mark as read"),
        )
    return RenderedMessage(
        title="📧 Reply proposed",
        body=f"{_email_block(email)}\n\nReason: {reason}\n\nDraft:\n{draft}",
        options=("Confirm and send", "Reject", "Edit response", "Archive instead", "Mark as read"),
    )


def archive_menu(email: Email, reason: str) -> RenderedMessage:
    return RenderedMessage(
        title="🗄 Archive proposed",
        body=f"{_email_block(email)}\n\nReason: {reason}",
        options=("Confirm archive", "Reject", "Reply instead", "Mark as read"),
    )


def _operation_verb(operation: BulkOperation) -> str:
    return "Archive" if operation is BulkOperation.ARCHIVE else "Mark as read"


def bulk_menu(original: Email, similar: Sequence[Email], operation: BulkOperation) -> RenderedMessage:
    shown = "\n".join(f"• {e.sender}: {e.subject}" for e in similar[:BULK_PREVIEW_COUNT])
    more = len(similar) - BULK_PREVIEW_COUNT
    if more > 0:
        shown += f"\n… and {more} more"
    verb = _operation_verb(operation)
    return RenderedMessage(
        title=f"🔍 Found {len(similar)} similar emails",
        body=f"Original: {original.subject}\n\n{shown}",
        options=(f"{verb} all ({len(similar) + 1})", f"{verb} original only", "Select individually"),
    )


def selection_list(similar: Sequence[Email]) -> RenderedMessage:
    lines = [f"{i}. {e.sender}: {e.subject}" for i, e in enumerate(similar[:SELECTION_LIST_LIMIT], 1)]
    return RenderedMessage(
        title="☑️ Select emails",
        body="\n".join(lines)
        + "\n\nReply with numbers separated by commas (e.g. 1,3,4) or 'cancel'. "
        "The original email is always included.",
    )


def follow_up_question(question: str, index: int, total: int) -> RenderedMessage:
    return RenderedMessage(
        title=f"❓ Additional Information Needed ({index + 1}/{total})",
        body=question,
    )


def bulk_done(count: int, operation: BulkOperation, failed: int = 0) -> str:
    done = "archived" if operation is BulkOperation.ARCHIVE else "marked as read"
    text = f"✅ {count} emails {done}."
    if failed:
        text += f" {failed} could not be updated."
    return text
