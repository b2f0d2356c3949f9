"""SQLite schema for the mailpilot audit database.

Tables:
- llm_request_log: every model call attempt, successful or not
- action_log: every consequential mailbox action (send, archive, mark read, draft)

Usage:
    await init_database("data/mailpilot.db")
"""

import stat
from pathlib import Path

import aiosqlite

from mailpilot.core.errors import DatabaseError
from mailpilot.core.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS llm_request_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    task_type TEXT,                         -- 'classify', 'draft', 'refine'
    model TEXT,
    email_id TEXT,
    triage_cycle_id TEXT,
    seed INTEGER,
    attempt INTEGER,                        -- 1 for the first call, 2+ for retries
    prompt_json TEXT,                       -- NULL unless audit.log_prompts
    response_text TEXT,                     -- NULL unless audit.log_prompts
    prompt_tokens INTEGER,
    completion_tokens INTEGER,
    duration_ms INTEGER,
    error TEXT                              -- NULL on success
);

CREATE INDEX IF NOT EXISTS idx_llm_log_timestamp ON llm_request_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_llm_log_email ON llm_request_log(email_id);

CREATE TABLE IF NOT EXISTS action_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    action_type TEXT,                       -- 'send_reply', 'archive', 'mark_read', 'create_draft'
    email_id TEXT,
    details_json TEXT,
    triggered_by TEXT                       -- 'operator', 'operator_bulk', 'auto'
);

CREATE INDEX IF NOT EXISTS idx_action_log_timestamp ON action_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_action_log_email ON action_log(email_id);
"""


async def init_database(db_path: str | Path) -> None:
    """Create the audit tables (idempotent) with WAL mode and owner-only permissions.

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.executescript(SCHEMA_SQL)
            await db.commit()
    except aiosqlite.Error as e:
        logger.error("audit_db_init_failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the file is not corrupted."
        ) from e

    # Prompts and email ids may contain personal data
    db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
    logger.info("audit_db_ready", db_path=str(db_path), schema_version=SCHEMA_VERSION)
