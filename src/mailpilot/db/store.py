"""Async audit store over aiosqlite.

Usage:
    store = AuditStore("data/mailpilot.db")
    await store.initialize()

    await store.log_action("archive", email_id="AAMk...", triggered_by="operator")
    recent = await store.get_action_logs(limit=20)
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from mailpilot.core.errors import DatabaseError
from mailpilot.core.logging import current_cycle_id, get_logger
from mailpilot.db.models import init_database

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ActionLogEntry:
    id: int
    timestamp: datetime | None
    action_type: str
    email_id: str | None
    details: dict[str, Any] | None
    triggered_by: str


@dataclass(frozen=True, slots=True)
class LLMRequestEntry:
    id: int
    timestamp: datetime | None
    task_type: str
    model: str
    email_id: str | None
    seed: int | None
    attempt: int | None
    prompt_tokens: int | None
    duration_ms: int | None
    error: str | None


_LLM_ENTRY_COLUMNS = (
    "id",
    "task_type",
    "model",
    "email_id",
    "seed",
    "attempt",
    "prompt_tokens",
    "duration_ms",
    "error",
)


def _parse_timestamp(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class AuditStore:
    """Append-only audit log of model calls and mailbox actions."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)

    async def initialize(self) -> None:
        """Create tables if needed. Must be called before logging."""
        await init_database(self.db_path)

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA synchronous = NORMAL")
            db.row_factory = aiosqlite.Row
            yield db

    async def _insert(self, table: str, row: dict[str, Any]) -> int:
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                    tuple(row.values()),
                )
                await db.commit()
                return cursor.lastrowid
        except aiosqlite.Error as e:
            logger.error("audit_insert_failed", table=table, error=str(e))
            raise DatabaseError(f"Could not write to {table}: {e}") from e

    async def _select(self, query: str, params: tuple[Any, ...]) -> list[aiosqlite.Row]:
        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                return list(await cursor.fetchall())
        except aiosqlite.Error as e:
            raise DatabaseError(f"Could not read audit log: {e}") from e

    async def log_llm_request(
        self,
        task_type: str,
        model: str,
        seed: int | None = None,
        attempt: int | None = None,
        prompt: list[dict[str, Any]] | None = None,
        response_text: str | None = None,
        prompt_tokens: int | None = None,
        completion_tokens: int | None = None,
        duration_ms: int | None = None,
        email_id: str | None = None,
        error: str | None = None,
    ) -> int:
        """Record one model call attempt, tagged with the running triage cycle.

        ``prompt`` and ``response_text`` are only passed when
        ``audit.log_prompts`` is on.

        Raises:
            DatabaseError: If the insert fails
        """
        return await self._insert(
            "llm_request_log",
            {
                "task_type": task_type,
                "model": model,
                "email_id": email_id,
                "triage_cycle_id": current_cycle_id(),
                "seed": seed,
                "attempt": attempt,
                "prompt_json": None if prompt is None else json.dumps(prompt),
                "response_text": response_text,
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "duration_ms": duration_ms,
                "error": error,
            },
        )

    async def log_action(
        self,
        action_type: str,
        email_id: str | None = None,
        details: dict[str, Any] | None = None,
        triggered_by: str = "operator",
    ) -> int:
        """Record a mailbox action.

        Args:
            action_type: 'send_reply', 'archive', 'mark_read' or 'create_draft'
            email_id: Message acted on
            details: Extra context (bulk group size, thread id, ...)
            triggered_by: 'operator', 'operator_bulk' or 'auto'

        Raises:
            DatabaseError: If the insert fails
        """
        return await self._insert(
            "action_log",
            {
                "action_type": action_type,
                "email_id": email_id,
                "details_json": json.dumps(details) if details else None,
                "triggered_by": triggered_by,
            },
        )

    async def get_action_logs(
        self,
        limit: int = 50,
        email_id: str | None = None,
    ) -> list[ActionLogEntry]:
        """Most recent actions first, optionally for one message."""
        if email_id:
            rows = await self._select(
                "SELECT * FROM action_log WHERE email_id = ? ORDER BY id DESC LIMIT ?",
                (email_id, limit),
            )
        else:
            rows = await self._select("SELECT * FROM action_log ORDER BY id DESC LIMIT ?", (limit,))

        entries = []
        for row in rows:
            details = row["details_json"]
            entries.append(
                ActionLogEntry(
                    id=row["id"],
                    timestamp=_parse_timestamp(row["timestamp"]),
                    action_type=row["action_type"],
                    email_id=row["email_id"],
                    details=json.loads(details) if details else None,
                    triggered_by=row["triggered_by"],
                )
            )
        return entries

    async def get_llm_request_logs(self, limit: int = 50) -> list[LLMRequestEntry]:
        rows = await self._select("SELECT * FROM llm_request_log ORDER BY id DESC LIMIT ?", (limit,))
        return [
            LLMRequestEntry(
                timestamp=_parse_timestamp(row["timestamp"]),
                **{name: row[name] for name in _LLM_ENTRY_COLUMNS},
            )
            for row in rows
        ]


async def record_action(
    store: AuditStore | None,
    action_type: str,
    email_id: str | None = None,
    details: dict[str, Any] | None = None,
    triggered_by: str = "operator",
) -> None:
    """log_action for callers that must not fail because of the audit trail."""
    if store is None:
        return
    try:
        await store.log_action(action_type, email_id, details, triggered_by)
    except DatabaseError as e:
        logger.warning("action_log_failed", action_type=action_type, email_id=email_id, error=str(e))
