"""Operator confirmation dialogs.

Every consequential mailbox action is proposed to the operator over chat
and only executed once they answer. The machine keeps one
PendingInteraction per operator and advances it on each inbound message:

    AwaitingActionConfirmation --1--> execute (bulk detection for archive / mark read)
                               --2--> cancelled
                               --3--> AwaitingEdit (reply) | reply drafted (archive)
                               --4/5--> archive / mark read shortcuts
    AwaitingEdit --text--> AwaitingActionConfirmation with refined draft
    AwaitingBulkChoice --1--> all, --2--> original only, --3--> AwaitingIndividualSelection
    AwaitingIndividualSelection --"1,3"--> selected subset | --cancel--> nothing
    AwaitingFollowUp --answer--> next question | re-classification

Terminal transitions clear the interaction before touching the mailbox,
so a duplicate delivery of the same reply finds nothing pending instead of
acting twice. The chat poller awaits each message before reading the next,
so transitions never interleave.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING, Protocol, assert_never

from mailpilot.chat import messages
from mailpilot.chat.messages import RenderedMessage
from mailpilot.core.errors import ChatTransportError, InteractionStateError, MailpilotError, MailProviderError
from mailpilot.core.logging import get_logger
from mailpilot.db.store import record_action
from mailpilot.engine.interactions import (
    AwaitingActionConfirmation,
    AwaitingBulkChoice,
    AwaitingEdit,
    AwaitingFollowUp,
    AwaitingIndividualSelection,
    BulkOperation,
    PendingInteraction,
    PendingInteractionStore,
    ProposedAction,
    validate,
)
from mailpilot.mail.provider import archive, mark_read

if TYPE_CHECKING:
    from mailpilot.chat.transport import ChatTransport
    from mailpilot.db.store import AuditStore
    from mailpilot.engine.inbox import InboxSnapshot
    from mailpilot.engine.similarity import SimilarityEngine
    from mailpilot.llm.orchestrator import AIOrchestrator
    from mailpilot.mail.models import Email, Thread
    from mailpilot.mail.provider import MailProvider

logger = get_logger(__name__)


class FollowUpResolver(Protocol):
    async def __call__(
        self,
        thread: Thread,
        answers: tuple[tuple[str, str], ...],
        round: int,
    ) -> bool: ...


def parse_selection(text: str, limit: int) -> list[int] | None:
    """Parse "1, 3,4" into 1-based indices within 1..limit.

    Returns:
        Distinct indices in the order given, or None if any part is invalid
    """
    indices: list[int] = []
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        if not part.isdigit():
            return None
        index = int(part)
        if not 1 <= index <= limit:
            return None
        if index not in indices:
            indices.append(index)
    return indices or None


def thread_unread_ids(email: Email, thread: Thread | None) -> list[str]:
    """The email plus every other unread counterpart message in its thread."""
    ids = [email.id]
    if thread is not None:
        ids.extend(
            e.id
            for e in thread.emails
            if e.is_unread and not e.authored_by_operator and e.id != email.id
        )
    return ids


class ConfirmationStateMachine:
    """Drives the operator's confirmation dialogs.

    Args:
        operator_id: The only chat identity allowed to answer
        store: Pending interaction slot per operator
        mail: Mailbox the confirmed actions are applied to
        chat: Transport for prompts and notifications
        orchestrator: Used for edits and forced replies
        inbox: Current pass; source of similarity candidates and processed IDs
        similarity: Bulk-candidate finder; None disables bulk offers
        audit: Optional audit store for the action log
        history: Returns the rolling conversation for forced-reply drafts
    """

    def __init__(
        self,
        operator_id: str,
        store: PendingInteractionStore,
        mail: MailProvider,
        chat: ChatTransport,
        orchestrator: AIOrchestrator,
        inbox: InboxSnapshot,
        similarity: SimilarityEngine | None = None,
        audit: AuditStore | None = None,
        history: Callable[[], Sequence[dict[str, str]]] | None = None,
    ):
        self.operator_id = operator_id
        self.store = store
        self.mail = mail
        self.chat = chat
        self.orchestrator = orchestrator
        self.inbox = inbox
        self.similarity = similarity
        self.audit = audit
        self._history = history or (lambda: [])
        self._resolver: FollowUpResolver | None = None

    def bind_resolver(self, resolver: FollowUpResolver) -> None:
        """Set the callback that re-classifies a thread once follow-up answers are in."""
        self._resolver = resolver

    def set_history(self, history: Callable[[], Sequence[dict[str, str]]]) -> None:
        self._history = history

    # ------------------------------------------------------------------
    # Prompts issued by the triage loop
    # ------------------------------------------------------------------

    async def propose(
        self,
        thread: Thread,
        email: Email,
        action: ProposedAction,
        reason: str,
        draft: str | None = None,
        replace: bool = False,
    ) -> bool:
        """Show the action menu for a thread.

        Args:
            replace: The caller already owns the operator's slot (follow-up
                resolution) and is replacing its interaction

        Returns:
            False if another interaction is pending and the prompt was not sent
        """
        interaction = AwaitingActionConfirmation(
            thread=thread, email=email, action=action, reason=reason, draft=draft
        )
        return await self._enter(interaction, replace)

    async def ask_follow_up(
        self,
        thread: Thread,
        email: Email,
        questions: Sequence[str],
        answers: tuple[tuple[str, str], ...] = (),
        round: int = 1,
        replace: bool = False,
    ) -> bool:
        interaction = AwaitingFollowUp(
            thread=thread,
            email=email,
            questions=tuple(questions),
            answers=answers,
            round=round,
        )
        return await self._enter(interaction, replace)

    async def _enter(self, interaction: PendingInteraction, replace: bool) -> bool:
        if not replace and self.store.has_pending(self.operator_id):
            logger.info("prompt_deferred_pending_interaction", operator_id=self.operator_id)
            return False

        validate(interaction, self.operator_id)
        self.store.set(self.operator_id, interaction)
        try:
            await self._render(interaction)
        except ChatTransportError:
            # An unseen prompt must not hold the slot
            self.store.clear(self.operator_id)
            raise
        return True

    # ------------------------------------------------------------------
    # Inbound messages
    # ------------------------------------------------------------------

    async def handle_message(self, operator_id: str, text: str) -> None:
        """Advance the operator's interaction with one chat message. Never raises."""
        if operator_id != self.operator_id:
            logger.warning("unauthorized_chat_message", chat_id=operator_id)
            return

        text = text.strip()
        interaction = self.store.get(operator_id)
        if interaction is None:
            logger.warning("reply_without_pending_interaction", text=text[:20])
            await self._safe_notify(messages.NOTHING_PENDING)
            return

        state = type(interaction).__name__
        try:
            validate(interaction, operator_id)
            await self._dispatch(interaction, text)
        except InteractionStateError as e:
            logger.error("interaction_state_corrupt", state=state, error=str(e))
            self.store.clear(operator_id)
            await self._safe_notify(messages.ERROR)
        except MailpilotError as e:
            logger.error(
                "chat_message_failed",
                state=state,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._safe_notify(messages.ERROR)
        except Exception as e:
            logger.exception("chat_message_unexpected_error", state=state, error=str(e))
            await self._safe_notify(messages.ERROR)

    async def _dispatch(self, interaction: PendingInteraction, text: str) -> None:
        match interaction:
            case AwaitingActionConfirmation():
                await self._on_action_choice(interaction, text)
            case AwaitingEdit():
                await self._on_edit(interaction, text)
            case AwaitingBulkChoice():
                await self._on_bulk_choice(interaction, text)
            case AwaitingIndividualSelection():
                await self._on_selection(interaction, text)
            case AwaitingFollowUp():
                await self._on_follow_up_answer(interaction, text)
            case _:
                assert_never(interaction)

    # -- AwaitingActionConfirmation -------------------------------------

    async def _on_action_choice(self, state: AwaitingActionConfirmation, choice: str) -> None:
        match (state.action, choice):
            case (_, "2"):
                self.store.clear(self.operator_id)
                logger.info("action_rejected", email_id=state.email.id, action=state.action.value)
                await self._notify(messages.CANCELLED)
            case (ProposedAction.RESPOND, "1"):
                await self._send_reply(state)
            case (ProposedAction.RESPOND, "3"):
                edit = AwaitingEdit(
                    thread=state.thread,
                    email=state.email,
                    draft=state.draft or "",
                    reason=state.reason,
                    edit_history=state.edit_history,
                )
                self.store.set(self.operator_id, edit)
                await self._notify(messages.EDIT_PROMPT)
            case (ProposedAction.RESPOND, "4") | (ProposedAction.ARCHIVE, "1"):
                await self._act_with_bulk(state.email, state.thread, BulkOperation.ARCHIVE)
            case (ProposedAction.RESPOND, "5") | (ProposedAction.ARCHIVE, "4"):
                await self._act_with_bulk(state.email, state.thread, BulkOperation.MARK_READ)
            case (ProposedAction.ARCHIVE, "3"):
                await self._force_reply(state)
            case _:
                await self._invalid_choice(state, choice)

    async def _send_reply(self, state: AwaitingActionConfirmation) -> None:
        self.store.clear(self.operator_id)

        await self.mail.send_reply(state.email.id, state.draft or "")
        self.inbox.mark_processed([state.email.id])
        await record_action(
            self.audit,
            "send_reply",
            state.email.id,
            {"thread_id": state.thread.thread_id, "edits": len(state.edit_history)},
        )
        logger.info("reply_sent", email_id=state.email.id, thread_id=state.thread.thread_id)

        await self._apply(BulkOperation.MARK_READ, thread_unread_ids(state.email, state.thread))
        await self._notify(messages.SENT)

    async def _force_reply(self, state: AwaitingActionConfirmation) -> None:
        await self._notify(messages.DRAFTING)
        draft = await self.orchestrator.draft_reply(state.thread, self._history())
        interaction = AwaitingActionConfirmation(
            thread=state.thread,
            email=state.email,
            action=ProposedAction.RESPOND,
            reason="Reply requested by operator",
            draft=draft,
        )
        self.store.set(self.operator_id, interaction)
        await self._render(interaction)

    async def _invalid_choice(self, state: PendingInteraction, choice: str) -> None:
        logger.info("invalid_operator_choice", state=type(state).__name__, choice=choice[:20])
        await self._notify(messages.ERROR)

    # -- AwaitingEdit -------------------------------------------------------

    async def _on_edit(self, state: AwaitingEdit, instruction: str) -> None:
        if not instruction:
            await self._invalid_choice(state, instruction)
            return

        history = (*state.edit_history, instruction)
        await self._notify(messages.DRAFTING)
        draft = await self.orchestrator.refine_draft(state.thread, state.draft, history)

        interaction = AwaitingActionConfirmation(
            thread=state.thread,
            email=state.email,
            action=ProposedAction.RESPOND,
            reason=state.reason,
            draft=draft,
            edit_history=history,
        )
        self.store.set(self.operator_id, interaction)
        await self._render(interaction)

    # -- Bulk -----------------------------------------------------------------

    async def _find_similar(self, email: Email) -> list[Email]:
        if self.similarity is None or not self.similarity.config.enabled:
            return []
        candidates = self.inbox.candidates(exclude=[email.id])
        return await self.similarity.find_similar(email, candidates)

    async def _act_with_bulk(self, email: Email, thread: Thread | None, operation: BulkOperation) -> None:
        """Archive or mark read, offering the similar emails first when there are any."""
        similar = await self._find_similar(email)
        if similar:
            bulk = AwaitingBulkChoice(
                original=email,
                similar=tuple(similar),
                operation=operation,
                thread=thread,
            )
            self.store.set(self.operator_id, bulk)
            logger.info("bulk_choice_offered", email_id=email.id, similar=len(similar))
            await self._render(bulk)
            return

        self.store.clear(self.operator_id)
        failed = await self._apply(operation, thread_unread_ids(email, thread))
        if email.id in failed:
            await self._notify(messages.ERROR)
            return
        await self._notify(
            messages.ARCHIVED if operation is BulkOperation.ARCHIVE else messages.MARKED_READ
        )

    async def _on_bulk_choice(self, state: AwaitingBulkChoice, choice: str) -> None:
        match choice:
            case "1":
                await self._execute_bulk(state.operation, self._bulk_ids(state, state.similar))
            case "2":
                self.store.clear(self.operator_id)
                ids = thread_unread_ids(state.original, state.thread)
                failed = await self._apply(state.operation, ids, triggered_by="operator")
                self.store.clear_referencing(ids)
                if state.original.id in failed:
                    await self._notify(messages.ERROR)
                    return
                await self._notify(
                    messages.ARCHIVED
                    if state.operation is BulkOperation.ARCHIVE
                    else messages.MARKED_READ
                )
            case "3":
                selection = AwaitingIndividualSelection(
                    original=state.original,
                    similar=state.similar,
                    operation=state.operation,
                    thread=state.thread,
                )
                self.store.set(self.operator_id, selection)
                await self._render(selection)
            case _:
                await self._invalid_choice(state, choice)

    async def _on_selection(self, state: AwaitingIndividualSelection, text: str) -> None:
        if text.lower() == "cancel":
            self.store.clear(self.operator_id)
            await self._notify(messages.SELECTION_CANCELLED)
            return

        limit = min(len(state.similar), messages.SELECTION_LIST_LIMIT)
        indices = parse_selection(text, limit)
        if indices is None:
            await self._invalid_choice(state, text)
            return

        selected = [state.similar[i - 1] for i in indices]
        await self._execute_bulk(state.operation, self._bulk_ids(state, selected))

    @staticmethod
    def _bulk_ids(
        state: AwaitingBulkChoice | AwaitingIndividualSelection, similar: Sequence[Email]
    ) -> list[str]:
        """The original with its unread thread siblings, then the chosen similar emails."""
        ids = thread_unread_ids(state.original, state.thread)
        ids.extend(e.id for e in similar)
        return list(dict.fromkeys(ids))

    async def _execute_bulk(self, operation: BulkOperation, ids: Sequence[str]) -> None:
        self.store.clear(self.operator_id)
        failed = await self._apply(operation, ids, triggered_by="operator_bulk")
        self.store.clear_referencing(ids)
        logger.info(
            "bulk_action_complete",
            operation=operation.value,
            requested=len(ids),
            failed=len(failed),
        )
        await self._notify(messages.bulk_done(len(ids) - len(failed), operation, len(failed)))

    async def _apply(
        self,
        operation: BulkOperation,
        email_ids: Sequence[str],
        triggered_by: str = "operator",
    ) -> list[str]:
        """Archive or mark read each email. Returns the IDs that failed."""
        action: Callable[[MailProvider, str], Awaitable[None]] = (
            archive if operation is BulkOperation.ARCHIVE else mark_read
        )
        failed = []
        for email_id in email_ids:
            try:
                await action(self.mail, email_id)
            except MailProviderError as e:
                logger.warning(
                    "mailbox_action_failed",
                    operation=operation.value,
                    email_id=email_id,
                    error=str(e),
                )
                failed.append(email_id)
                continue
            self.inbox.mark_processed([email_id])
            await record_action(self.audit, operation.value, email_id, triggered_by=triggered_by)
        return failed

    # -- AwaitingFollowUp ---------------------------------------------------

    async def _on_follow_up_answer(self, state: AwaitingFollowUp, answer: str) -> None:
        question = state.current_question
        if question is None:
            await self._notify(messages.STILL_WORKING)
            return
        if not answer:
            await self._invalid_choice(state, answer)
            return

        answers = (*state.answers, (question, answer))
        if state.index + 1 < len(state.questions):
            advanced = dataclasses.replace(state, index=state.index + 1, answers=answers)
            self.store.set(self.operator_id, advanced)
            await self._render(advanced)
            return

        if self._resolver is None:
            raise InteractionStateError("No follow-up resolver is bound", operator_id=self.operator_id)

        # Hold the slot while the thread is re-classified
        resolving = dataclasses.replace(state, index=len(state.questions), answers=answers)
        self.store.set(self.operator_id, resolving)
        try:
            issued = await self._resolver(state.thread, answers, state.round)
        finally:
            if self.store.get(self.operator_id) is resolving:
                self.store.clear(self.operator_id)
        if not issued:
            await self._notify(messages.NO_ACTION)

    # ------------------------------------------------------------------
    # Rendering and delivery
    # ------------------------------------------------------------------

    async def _render(self, interaction: PendingInteraction) -> None:
        match interaction:
            case AwaitingActionConfirmation(action=ProposedAction.RESPOND):
                rendered = messages.respond_menu(
                    interaction.email,
                    interaction.reason,
                    interaction.draft or "",
                    interaction.edit_history,
                )
            case AwaitingActionConfirmation(action=ProposedAction.ARCHIVE):
                rendered = messages.archive_menu(interaction.email, interaction.reason)
            case AwaitingActionConfirmation():
                raise InteractionStateError(f"Unknown action {interaction.action!r}", self.operator_id)
            case AwaitingEdit():
                rendered = RenderedMessage(title=messages.EDIT_PROMPT, body="")
            case AwaitingBulkChoice():
                rendered = messages.bulk_menu(interaction.original, interaction.similar, interaction.operation)
            case AwaitingIndividualSelection():
                rendered = messages.selection_list(interaction.similar)
            case AwaitingFollowUp():
                rendered = messages.follow_up_question(
                    interaction.current_question or "",
                    interaction.index,
                    len(interaction.questions),
                )
            case _:
                assert_never(interaction)
        await self._send(rendered)

    async def _send(self, rendered: RenderedMessage) -> None:
        """Send MarkdownV2, falling back to plain text if Telegram rejects it."""
        try:
            await self.chat.send_message(
                self.operator_id, rendered.markdown, keyboard=rendered.keyboard, markdown=True
            )
        except ChatTransportError as e:
            logger.warning("chat_markdown_rejected", error=str(e))
            await self.chat.send_message(self.operator_id, rendered.plain, keyboard=rendered.keyboard)

    async def _notify(self, text: str) -> None:
        await self.chat.send_message(self.operator_id, text)

    async def _safe_notify(self, text: str) -> None:
        try:
            await self._notify(text)
        except ChatTransportError as e:
            logger.error("chat_notify_failed", error=str(e))
