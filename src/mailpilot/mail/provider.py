"""Mailbox provider interface consumed by the triage engine."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from mailpilot.mail.models import INBOX, UNREAD, DraftRequest, Email, ThreadRef


@runtime_checkable
class MailProvider(Protocol):
    """Async mailbox operations.

    Implementations raise MailProviderError for any failed request.
    """

    async def list_thread_candidates(self, max_results: int) -> list[ThreadRef]: ...

    async def get_thread(self, thread_id: str) -> list[Email]: ...

    async def send_reply(self, email_id: str, body: str) -> None: ...

    async def create_draft(self, thread_id: str, draft: DraftRequest) -> str: ...

    async def set_labels(
        self,
        email_id: str,
        add: Iterable[str] = (),
        remove: Iterable[str] = (),
    ) -> None: ...


async def mark_read(provider: MailProvider, email_id: str) -> None:
    await provider.set_labels(email_id, remove=[UNREAD])


async def archive(provider: MailProvider, email_id: str) -> None:
    """Archive a message: it leaves the inbox and is marked read."""
    await provider.set_labels(email_id, remove=[INBOX, UNREAD])
