"""Command-line interface for mailpilot.

Provides commands for configuration validation, triage and the long-running
service.

Usage:
    python -m mailpilot validate-config
    python -m mailpilot triage --once
    python -m mailpilot run
    python -m mailpilot audit --limit 20
"""

from __future__ import annotations

import asyncio
import os
import sys
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
from rich.console import Console
from rich.table import Table

from mailpilot.config import validate_config_file
from mailpilot.core.logging import configure_logging

if TYPE_CHECKING:
    from apscheduler.schedulers.base import BaseScheduler

    from mailpilot.chat.telegram import TelegramTransport
    from mailpilot.config_schema import AppConfig, LLMConfig
    from mailpilot.db.store import AuditStore
    from mailpilot.engine.confirmation import ConfirmationStateMachine
    from mailpilot.engine.triage import TriageCycleResult, TriageLoop
    from mailpilot.llm.backends import CompletionBackend

console = Console()


@dataclass(frozen=True, slots=True)
class ServiceDeps:
    """Wired components initialized by _init_service()."""

    config: AppConfig
    chat: TelegramTransport
    state_machine: ConfirmationStateMachine
    loop: TriageLoop
    audit: AuditStore | None


def _build_backend(config: LLMConfig) -> CompletionBackend:
    from mailpilot.llm.backends import AnthropicBackend, OpenAICompatibleBackend

    if config.provider == "anthropic":
        return AnthropicBackend(
            api_key=os.environ.get("ANTHROPIC_API_KEY"),
            max_tokens=config.max_tokens,
            timeout=config.request_timeout_seconds,
        )
    return OpenAICompatibleBackend(
        endpoint=config.endpoint,
        api_key=os.environ.get("LLM_API_KEY"),
        max_tokens=config.max_tokens,
        timeout=config.request_timeout_seconds,
    )


async def _init_service() -> ServiceDeps:
    """Load config and wire every component.

    Prints actionable error messages and calls sys.exit(1) on failure.
    """
    from mailpilot.auth.msal_auth import GraphAuth
    from mailpilot.chat.telegram import TelegramTransport
    from mailpilot.config import get_config
    from mailpilot.core.errors import (
        AuthenticationError,
        ConfigLoadError,
        ConfigValidationError,
        DatabaseError,
    )
    from mailpilot.db.store import AuditStore
    from mailpilot.engine.confirmation import ConfirmationStateMachine
    from mailpilot.engine.context_budget import ContextBudgetManager
    from mailpilot.engine.inbox import InboxSnapshot
    from mailpilot.engine.interactions import PendingInteractionStore
    from mailpilot.engine.similarity import SimilarityEngine
    from mailpilot.engine.triage import TriageLoop
    from mailpilot.llm.embeddings import OpenAICompatibleEmbeddings
    from mailpilot.llm.orchestrator import AIOrchestrator
    from mailpilot.llm.prompts import PromptBuilder
    from mailpilot.mail.graph import GraphClient, GraphMailbox

    # 1. Load config
    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Create config/config.yaml with at least [cyan]operator[/cyan] and "
            "[cyan]mail[/cyan] sections."
        )
        sys.exit(1)

    # 2. Mailbox
    try:
        auth = GraphAuth(
            client_id=config.mail.client_id,
            tenant_id=config.mail.tenant_id,
            scopes=config.mail.scopes,
            token_cache_path=config.mail.token_cache_path,
        )
    except (AuthenticationError, ValueError) as e:
        console.print(
            f"[red]Authentication error:[/red] {e}\n\n"
            "Check your Azure AD app registration and try again."
        )
        sys.exit(1)
    mail = GraphMailbox(GraphClient(auth), operator_email=config.operator.email)

    # 3. Chat
    try:
        chat = TelegramTransport(os.environ.get("TELEGRAM_BOT_TOKEN", ""))
    except ValueError as e:
        console.print(f"[red]Chat error:[/red] {e}")
        sys.exit(1)

    # 4. Audit database
    audit: AuditStore | None = None
    if config.audit.enabled:
        db_path = Path(config.audit.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        audit = AuditStore(db_path)
        try:
            await audit.initialize()
        except DatabaseError as e:
            console.print(f"[red]Database error:[/red] {e}")
            sys.exit(1)

    # 5. Model, prompts and similarity
    orchestrator = AIOrchestrator(
        backend=_build_backend(config.llm),
        config=config.llm,
        prompts=PromptBuilder(config.operator, config.llm.context_dir),
        store=audit,
        log_prompts=config.audit.log_prompts,
    )
    embeddings = None
    if config.similarity.embeddings_endpoint:
        embeddings = OpenAICompatibleEmbeddings(
            endpoint=config.similarity.embeddings_endpoint,
            model=config.similarity.embeddings_model,
            api_key=os.environ.get("EMBEDDINGS_API_KEY"),
        )
    similarity = (
        SimilarityEngine(config.similarity, embeddings) if config.similarity.enabled else None
    )

    # 6. Engine
    inbox = InboxSnapshot()
    state_machine = ConfirmationStateMachine(
        operator_id=config.operator.chat_id,
        store=PendingInteractionStore(),
        mail=mail,
        chat=chat,
        orchestrator=orchestrator,
        inbox=inbox,
        similarity=similarity,
        audit=audit,
    )
    loop = TriageLoop(
        config=config,
        mail=mail,
        orchestrator=orchestrator,
        state_machine=state_machine,
        inbox=inbox,
        budget_manager=ContextBudgetManager(config.llm.token_ceiling, config.llm.trim_fraction),
        audit=audit,
    )

    return ServiceDeps(
        config=config,
        chat=chat,
        state_machine=state_machine,
        loop=loop,
        audit=audit,
    )


def _print_summary(result: TriageCycleResult) -> None:
    console.print(f"\n[bold]Triage Cycle Summary[/bold] (cycle {result.cycle_id[:8]}...)")
    console.print(f"  Duration:    {result.duration_ms}ms")
    console.print(f"  Fetched:     {result.threads_fetched}")
    console.print(f"  Prompted:    {result.prompted}")
    console.print(f"  No action:   {result.no_action}")
    console.print(f"  Folded:      {result.folded}")
    console.print(f"  Skipped:     {result.skipped}")
    console.print(f"  Deferred:    {result.deferred}")
    console.print(f"  Failed:      {result.failed}")


def _run_command(coro_factory, interrupted_exit: int = 130) -> None:
    """Run an async command with the shared error handling."""
    try:
        asyncio.run(coro_factory())
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(interrupted_exit)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """mailpilot - AI email triage with chat confirmation."""
    log_level = "DEBUG" if debug else "INFO"
    # Human-readable output for CLI, JSON for the service
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes schema validation.
    Reports specific errors for invalid fields.
    """
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("triage")
@click.option(
    "--once",
    is_flag=True,
    help="Run a single triage cycle and exit",
)
def triage(once: bool) -> None:
    """Run the triage loop.

    With --once, runs a single cycle (answering prompts over chat while it
    runs) and exits. Without it, behaves like 'run'.
    """
    if once:
        _run_command(_run_triage_once)
    else:
        _run_command(_run_service, interrupted_exit=0)


async def _run_triage_once() -> None:
    """Run one cycle while the chat poller answers its prompts."""
    deps = await _init_service()
    stop_event = asyncio.Event()
    poller = asyncio.create_task(deps.chat.poll(deps.state_machine.handle_message, stop_event))
    try:
        result = await deps.loop.run_cycle()
    finally:
        stop_event.set()
        await poller
        await deps.chat.aclose()
    _print_summary(result)


def schedule_triage(scheduler: BaseScheduler, job: Callable[[], Any], interval_minutes: int) -> None:
    """Run the triage job now, then every interval_minutes."""
    scheduler.add_job(
        job,
        "interval",
        minutes=interval_minutes,
        next_run_time=datetime.now(UTC),
        id="triage_cycle",
        max_instances=1,
        coalesce=True,
    )


@cli.command("run")
def run() -> None:
    """Start scheduled triage and chat polling in one process."""
    configure_logging(log_level="INFO", json_output=True)
    _run_command(_run_service, interrupted_exit=0)


async def _run_service() -> None:
    """Run triage on an APScheduler interval alongside the chat poller."""
    import signal

    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    from mailpilot.config import get_config, reload_config_if_changed

    deps = await _init_service()

    async def run_cycle() -> None:
        if reload_config_if_changed():
            deps.loop.update_config(get_config())
        result = await deps.loop.run_cycle()
        console.print(
            f"[dim]Cycle {result.cycle_id[:8]}...[/dim] "
            f"fetched={result.threads_fetched} prompted={result.prompted} "
            f"deferred={result.deferred} failed={result.failed} ({result.duration_ms}ms)"
        )

    scheduler = AsyncIOScheduler()
    schedule_triage(scheduler, run_cycle, deps.config.triage.interval_minutes)
    scheduler.start()

    console.print(
        f"Triage running every {deps.config.triage.interval_minutes} minutes. "
        "Press Ctrl+C to stop."
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, stop_event.set)
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)

    try:
        await deps.chat.poll(deps.state_machine.handle_message, stop_event)
    finally:
        scheduler.shutdown(wait=False)
        await deps.chat.aclose()


@cli.command("audit")
@click.option("--limit", default=20, type=int, help="Number of entries to show")
@click.option("--email-id", default=None, help="Only actions on this email")
@click.option("--llm", "show_llm", is_flag=True, help="Show model calls instead of actions")
def audit(limit: int, email_id: str | None, show_llm: bool) -> None:
    """Print recent mailbox actions or model calls."""
    _run_command(lambda: _show_audit(limit, email_id, show_llm))


async def _show_audit(limit: int, email_id: str | None, show_llm: bool) -> None:
    from mailpilot.config import get_config
    from mailpilot.db.store import AuditStore

    db_path = Path(get_config().audit.db_path)
    if not db_path.exists():
        console.print(f"[yellow]No audit database at {db_path}[/yellow]")
        return

    store = AuditStore(db_path)

    if show_llm:
        table = Table(title="Model calls")
        for column in ("Time", "Task", "Model", "Email", "Seed", "Attempt", "Tokens", "ms", "Error"):
            table.add_column(column)
        for entry in await store.get_llm_request_logs(limit=limit):
            table.add_row(
                entry.timestamp.isoformat(timespec="seconds") if entry.timestamp else "",
                entry.task_type,
                entry.model,
                entry.email_id or "",
                str(entry.seed) if entry.seed is not None else "",
                str(entry.attempt) if entry.attempt is not None else "",
                str(entry.prompt_tokens) if entry.prompt_tokens is not None else "",
                str(entry.duration_ms) if entry.duration_ms is not None else "",
                entry.error or "",
            )
    else:
        table = Table(title="Mailbox actions")
        for column in ("Time", "Action", "Email", "By", "Details"):
            table.add_column(column)
        for entry in await store.get_action_logs(limit=limit, email_id=email_id):
            table.add_row(
                entry.timestamp.isoformat(timespec="seconds") if entry.timestamp else "",
                entry.action_type,
                entry.email_id or "",
                entry.triggered_by,
                str(entry.details or ""),
            )

    console.print(table)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
