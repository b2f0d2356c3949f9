"""SQLite audit trail of model calls and mailbox actions."""

from mailpilot.db.store import ActionLogEntry, AuditStore, LLMRequestEntry, record_action

__all__ = ["ActionLogEntry", "AuditStore", "LLMRequestEntry", "record_action"]
