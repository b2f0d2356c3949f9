"""Triage loop: the composition root of the engine.

Each cycle:
1. Open a triage_cycle block so every log entry carries the cycle ID
2. List unread thread candidates and fetch + normalize every thread
3. Refresh the inbox snapshot (similarity candidates) from those threads
4. For each thread, oldest decision first:
   - defer everything left if the operator already has a pending prompt
   - skip threads that do not need a reply (operator threads are folded
     into the rolling conversation for context)
   - classify; ask follow-up questions, propose archive, or draft a reply
     and propose sending it
   - after a prompt, wait for the operator to resolve it before moving on
5. Log the cycle summary

Threads are processed strictly one at a time so two prompts never
interleave in the chat. Any failure is contained to its thread.

Usage:
    loop = TriageLoop(config, mail, orchestrator, state_machine, inbox, budget_manager)
    result = await loop.run_cycle()
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, assert_never

from mailpilot.core.errors import (
    AuthenticationError,
    ChatTransportError,
    CompletionError,
    InteractionStateError,
    MailProviderError,
)
from mailpilot.core.logging import get_logger, triage_cycle
from mailpilot.db.store import record_action
from mailpilot.engine.context_budget import ConversationBudget, Role, Turn
from mailpilot.engine.interactions import ProposedAction
from mailpilot.engine.normalizer import build_thread
from mailpilot.llm.orchestrator import Decision
from mailpilot.llm.prompts import format_answers, format_email
from mailpilot.mail.models import DraftRequest

if TYPE_CHECKING:
    from mailpilot.config_schema import AppConfig
    from mailpilot.db.store import AuditStore
    from mailpilot.engine.confirmation import ConfirmationStateMachine
    from mailpilot.engine.context_budget import ContextBudgetManager
    from mailpilot.engine.inbox import InboxSnapshot
    from mailpilot.llm.orchestrator import AIOrchestrator
    from mailpilot.mail.models import Thread
    from mailpilot.mail.provider import MailProvider

logger = get_logger(__name__)

# Errors that abandon one thread but never the cycle
THREAD_ERRORS = (
    CompletionError,
    MailProviderError,
    ChatTransportError,
    InteractionStateError,
)


@dataclass
class TriageCycleResult:
    """Result of a single triage cycle."""

    cycle_id: str
    duration_ms: int = 0
    threads_fetched: int = 0
    skipped: int = 0
    folded: int = 0
    prompted: int = 0
    no_action: int = 0
    deferred: int = 0
    failed: int = 0


def reply_subject(subject: str) -> str:
    return subject if subject.lower().startswith("re:") else f"Re: {subject}"


class TriageLoop:
    """Walks unread threads and hands decisions to the operator.

    The rolling ConversationBudget lives as long as this object: each
    drafted thread and its reply are committed to it and every drafting
    call sees it as history.
    """

    def __init__(
        self,
        config: AppConfig,
        mail: MailProvider,
        orchestrator: AIOrchestrator,
        state_machine: ConfirmationStateMachine,
        inbox: InboxSnapshot,
        budget_manager: ContextBudgetManager,
        budget: ConversationBudget | None = None,
        audit: AuditStore | None = None,
    ):
        self._config = config
        self._mail = mail
        self._orchestrator = orchestrator
        self._state_machine = state_machine
        self._inbox = inbox
        self._budget_manager = budget_manager
        self.budget = budget if budget is not None else ConversationBudget()
        self._audit = audit
        self._committed: set[str] = set()
        state_machine.bind_resolver(self.resolve_follow_up)
        state_machine.set_history(self.history)

    @property
    def operator_id(self) -> str:
        return self._config.operator.chat_id

    def history(self) -> list[dict[str, str]]:
        return self.budget.to_messages()

    def update_config(self, config: AppConfig) -> None:
        """Pick up a hot-reloaded config."""
        self._config = config
        self._orchestrator.update_config(config.llm)
        self._budget_manager.ceiling = config.llm.token_ceiling
        self._budget_manager.fraction = config.llm.trim_fraction

    async def run_cycle(self) -> TriageCycleResult:
        with triage_cycle(str(uuid.uuid4())) as cycle_id:
            return await self._run_cycle(cycle_id)

    async def _run_cycle(self, cycle_id: str) -> TriageCycleResult:
        start_time = time.monotonic()
        result = TriageCycleResult(cycle_id=cycle_id)

        logger.info("triage_cycle_start", max_threads=self._config.triage.max_threads)

        try:
            threads = await self._fetch_threads(result)
            self._inbox.replace(threads)

            for position, thread in enumerate(threads):
                if self._state_machine.store.has_pending(self.operator_id):
                    result.deferred += len(threads) - position
                    logger.info(
                        "thread_deferred_pending_interaction",
                        remaining=len(threads) - position,
                    )
                    break

                prompted = await self._process_thread(thread, result)
                if prompted:
                    await self._state_machine.store.wait_until_free(
                        self.operator_id,
                        timeout=self._config.triage.confirmation_wait_seconds,
                    )

        except (MailProviderError, AuthenticationError) as e:
            logger.error("triage_cycle_error", error=str(e), error_type=type(e).__name__)
            result.failed += 1
        finally:
            result.duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.info(
                "triage_cycle_complete",
                duration_ms=result.duration_ms,
                threads_fetched=result.threads_fetched,
                skipped=result.skipped,
                folded=result.folded,
                prompted=result.prompted,
                no_action=result.no_action,
                deferred=result.deferred,
                failed=result.failed,
                budget_turns=len(self.budget),
            )

        return result

    async def _fetch_threads(self, result: TriageCycleResult) -> list[Thread]:
        refs = await self._mail.list_thread_candidates(self._config.triage.max_threads)
        operator_email = self._config.operator.email

        threads = []
        for ref in refs:
            try:
                raw = await self._mail.get_thread(ref.thread_id)
            except MailProviderError as e:
                logger.warning("thread_fetch_failed", thread_id=ref.thread_id, error=str(e))
                result.failed += 1
                continue
            thread = build_thread(ref.thread_id, raw, operator_email)
            if thread.emails:
                threads.append(thread)

        result.threads_fetched = len(threads)
        # Oldest pending conversation first
        threads.sort(key=lambda t: t.emails[-1].sent_at)
        return threads

    async def _process_thread(self, thread: Thread, result: TriageCycleResult) -> bool:
        """Returns True when a prompt was sent to the operator."""
        latest = thread.latest
        if latest is None or self._inbox.is_processed(latest.id):
            result.skipped += 1
            return False

        if not thread.needs_reply:
            if thread.has_operator_message and self._fold(thread):
                result.folded += 1
            else:
                result.skipped += 1
            return False

        try:
            prompted = await self.decide(thread)
        except THREAD_ERRORS as e:
            logger.error(
                "thread_processing_failed",
                thread_id=thread.thread_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            result.failed += 1
            return False

        if prompted:
            result.prompted += 1
        else:
            result.no_action += 1
        return prompted

    async def decide(
        self,
        thread: Thread,
        answers: tuple[tuple[str, str], ...] = (),
        round: int = 0,
        replace: bool = False,
    ) -> bool:
        """Classify a thread and put the resulting prompt in front of the operator.

        Args:
            answers: Follow-up answers gathered so far
            round: Follow-up rounds already completed
            replace: Called from follow-up resolution, which owns the slot

        Returns:
            True if a prompt was sent
        """
        latest = thread.latest
        if latest is None:
            return False

        allow_questions = round < self._config.llm.max_follow_up_rounds
        classification = await self._orchestrator.classify(thread, answers, allow_questions)

        match classification.decision:
            case Decision.NEED_INFO:
                return await self._state_machine.ask_follow_up(
                    thread, latest, classification.questions, answers, round + 1, replace=replace
                )
            case Decision.ARCHIVE:
                return await self._state_machine.propose(
                    thread, latest, ProposedAction.ARCHIVE, classification.reason, replace=replace
                )
            case Decision.RESPOND:
                draft = await self._draft(thread, answers)
                return await self._state_machine.propose(
                    thread,
                    latest,
                    ProposedAction.RESPOND,
                    classification.reason,
                    draft,
                    replace=replace,
                )
            case Decision.NONE:
                logger.info("thread_no_action", thread_id=thread.thread_id, reason=classification.reason)
                return False
            case _:
                assert_never(classification.decision)

    async def resolve_follow_up(
        self,
        thread: Thread,
        answers: tuple[tuple[str, str], ...],
        round: int,
    ) -> bool:
        return await self.decide(thread, answers, round, replace=True)

    async def _draft(self, thread: Thread, answers: tuple[tuple[str, str], ...]) -> str:
        self._budget_manager.enforce(self.budget)

        draft = await self._orchestrator.draft_reply(thread, self.history(), answers)

        usage = self._orchestrator.last_usage
        self._budget_manager.record_usage(self.budget, usage.prompt_tokens if usage else None)
        self._commit(thread, answers, draft)

        if self._config.triage.create_drafts:
            await self._mirror_draft(thread, draft)
        return draft

    def _thread_turns(self, thread: Thread) -> list[Turn]:
        return [
            Turn(Role.OPERATOR, email.body)
            if email.authored_by_operator
            else Turn(Role.COUNTERPART, format_email(email))
            for email in thread.emails
        ]

    def _commit(self, thread: Thread, answers: tuple[tuple[str, str], ...], draft: str) -> None:
        """Add a drafted thread to the rolling conversation, once per latest message."""
        latest = thread.latest
        if latest is None or latest.id in self._committed:
            return
        turns = self._thread_turns(thread)
        if answers:
            turns.append(Turn(Role.TOOL, format_answers(answers)))
        turns.append(Turn(Role.OPERATOR, draft))
        self._budget_manager.commit(self.budget, turns)
        self._committed.add(latest.id)

    def _fold(self, thread: Thread) -> bool:
        """Commit an operator thread that needs no reply as background context."""
        latest = thread.latest
        if latest is None or latest.id in self._committed:
            return False
        self._budget_manager.commit(self.budget, self._thread_turns(thread))
        self._committed.add(latest.id)
        logger.debug("thread_folded_into_context", thread_id=thread.thread_id)
        return True

    async def _mirror_draft(self, thread: Thread, draft: str) -> None:
        latest = thread.latest
        if latest is None:
            return
        request = DraftRequest(
            to=latest.sender,
            cc=latest.cc,
            subject=reply_subject(latest.subject),
            body=draft,
            in_reply_to=latest.id,
        )
        try:
            draft_id = await self._mail.create_draft(thread.thread_id, request)
        except MailProviderError as e:
            logger.warning("draft_mirror_failed", thread_id=thread.thread_id, error=str(e))
            return
        await record_action(
            self._audit,
            "create_draft",
            latest.id,
            {"thread_id": thread.thread_id, "draft_id": draft_id},
            triggered_by="auto",
        )
