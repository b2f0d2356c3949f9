"""What the current triage pass knows about the inbox.

Holds the unread emails of the threads fetched this pass and the IDs the
operator has already acted on. The similarity engine draws its candidates
from here, and acted-on emails are never offered again.
"""

from __future__ import annotations

from collections.abc import Iterable

from mailpilot.mail.models import Email, Thread


class InboxSnapshot:
    def __init__(self) -> None:
        self._emails: dict[str, Email] = {}
        self._processed: set[str] = set()

    def __len__(self) -> int:
        return len(self._emails)

    def replace(self, threads: Iterable[Thread]) -> None:
        """Start a new pass from freshly fetched threads.

        Processed IDs that no longer appear in any fetched thread are forgotten.
        """
        self._emails = {}
        fetched: set[str] = set()
        for thread in threads:
            for email in thread.emails:
                fetched.add(email.id)
                if email.is_unread and not email.authored_by_operator:
                    self._emails[email.id] = email
        self._processed &= fetched

    def mark_processed(self, email_ids: Iterable[str]) -> None:
        self._processed.update(email_ids)

    def is_processed(self, email_id: str) -> bool:
        return email_id in self._processed

    @property
    def processed_ids(self) -> frozenset[str]:
        return frozenset(self._processed)

    def candidates(self, exclude: Iterable[str] = ()) -> list[Email]:
        """Unprocessed unread emails, oldest first."""
        excluded = set(exclude) | self._processed
        return sorted(
            (e for e in self._emails.values() if e.id not in excluded),
            key=lambda e: e.sent_at,
        )
