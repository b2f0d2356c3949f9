"""Mailbox data model and provider integrations.

The triage engine only talks to the MailProvider protocol; GraphMailbox is
the Microsoft Graph implementation used in production.
"""

from mailpilot.mail.models import INBOX, UNREAD, DraftRequest, Email, Thread, ThreadRef
from mailpilot.mail.provider import MailProvider, archive, mark_read

__all__ = [
    "INBOX",
    "UNREAD",
    "DraftRequest",
    "Email",
    "MailProvider",
    "Thread",
    "ThreadRef",
    "archive",
    "mark_read",
]
