"""Pytest fixtures and configuration for mailpilot tests.

Provides common fixtures for configuration, sample emails and collaborator
fakes (mailbox, chat transport).
"""

from collections.abc import Callable, Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from mailpilot.config import reset_config
from mailpilot.config_schema import AppConfig
from mailpilot.mail.models import INBOX, UNREAD, Email, Thread

OPERATOR_ID = "1001"
OPERATOR_EMAIL = "me@example.com"
BASE_TIME = datetime(2024, 3, 4, 9, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return f"""
schema_version: 1

operator:
  chat_id: "{OPERATOR_ID}"
  email: "{OPERATOR_EMAIL}"
  first_name: "Morgan"
  last_name: "Lee"

mail:
  client_id: "test-client-id"
  tenant_id: "test-tenant-id"

triage:
  interval_minutes: 15
  max_threads: 10
"""


@pytest.fixture
def sample_config_dict(tmp_path: Path) -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "operator": {
            "chat_id": OPERATOR_ID,
            "email": OPERATOR_EMAIL,
            "first_name": "Morgan",
            "last_name": "Lee",
        },
        "mail": {
            "client_id": "test-client-id",
            "tenant_id": "test-tenant-id",
        },
        "llm": {
            "context_dir": str(tmp_path / "context"),
        },
        "triage": {
            "max_threads": 10,
            "confirmation_wait_seconds": 0,
        },
        "audit": {
            "enabled": False,
        },
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point MAILPILOT_CONFIG_PATH at the temporary config file."""
    monkeypatch.setenv("MAILPILOT_CONFIG_PATH", str(config_file))
    return config_file


# ---------------------------------------------------------------------------
# Sample mail
# ---------------------------------------------------------------------------


@pytest.fixture
def make_email() -> Callable[..., Email]:
    """Factory for Email snapshots; `minutes` offsets sent_at from a fixed base."""

    def _make_email(
        email_id: str = "msg-001",
        thread_id: str = "conv-001",
        sender: str = "Alice Example <alice@example.com>",
        subject: str = "Project update",
        body: str = "Can we move the review to Thursday?",
        minutes: int = 0,
        unread: bool = True,
        operator: bool = False,
    ) -> Email:
        labels = {INBOX}
        if unread:
            labels.add(UNREAD)
        return Email(
            id=email_id,
            thread_id=thread_id,
            sender=sender,
            to=OPERATOR_EMAIL,
            subject=subject,
            body=body,
            sent_at=BASE_TIME + timedelta(minutes=minutes),
            authored_by_operator=operator,
            labels=frozenset(labels),
        )

    return _make_email


@pytest.fixture
def make_thread() -> Callable[..., Thread]:
    def _make_thread(*emails: Email, thread_id: str | None = None) -> Thread:
        return Thread(thread_id=thread_id or emails[0].thread_id, emails=tuple(emails))

    return _make_thread


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


@pytest.fixture
def mailbox() -> MagicMock:
    """Return a mock MailProvider."""
    mail = MagicMock()
    mail.list_thread_candidates = AsyncMock(return_value=[])
    mail.get_thread = AsyncMock(return_value=[])
    mail.send_reply = AsyncMock()
    mail.create_draft = AsyncMock(return_value="draft-001")
    mail.set_labels = AsyncMock()
    return mail


@pytest.fixture
def chat() -> MagicMock:
    """Return a mock ChatTransport."""
    transport = MagicMock()
    transport.send_message = AsyncMock()
    return transport
