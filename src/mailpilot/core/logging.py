"""structlog setup for mailpilot.

Entries logged while a triage cycle runs carry its triage_cycle_id, taken
from a ContextVar. Free-text fields that may hold email content are
clipped before rendering so the log never holds whole messages.

Usage:
    from mailpilot.core.logging import get_logger, triage_cycle

    logger = get_logger(__name__)

    with triage_cycle(str(uuid.uuid4())):
        logger.info("thread_classified", thread_id="abc123", decision="RESPOND")
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import structlog

_cycle_id: ContextVar[str | None] = ContextVar("triage_cycle_id", default=None)

# Keys that can carry message bodies, drafts or operator replies
CLIPPED_FIELDS = ("body", "draft", "text", "instruction", "answer")
CLIP_CHARS = 80

# Chatty at INFO: one line per HTTP request / scheduler tick
QUIET_LOGGERS = ("httpx", "httpcore", "apscheduler", "msal", "urllib3")


def current_cycle_id() -> str | None:
    return _cycle_id.get()


@contextmanager
def triage_cycle(cycle_id: str) -> Iterator[str]:
    """Tag every entry logged inside the block with the cycle ID."""
    token = _cycle_id.set(cycle_id)
    try:
        yield cycle_id
    finally:
        _cycle_id.reset(token)


def add_cycle_id(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    cycle_id = _cycle_id.get()
    if cycle_id is not None:
        event_dict.setdefault("triage_cycle_id", cycle_id)
    return event_dict


def clip_message_text(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    for key in CLIPPED_FIELDS:
        value = event_dict.get(key)
        if isinstance(value, str) and len(value) > CLIP_CHARS:
            event_dict[key] = f"{value[:CLIP_CHARS]}… ({len(value)} chars)"
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON lines for the service; coloured console output
            for interactive commands
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_cycle_id,
        clip_message_text,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
