"""Pending operator interactions.

Each operator has at most one PendingInteraction: a closed set of frozen
dataclasses, one per dialog state. The store is an ordinary object handed
to whoever needs it, so tests can build isolated instances.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import assert_never

from mailpilot.core.errors import InteractionStateError
from mailpilot.core.logging import get_logger
from mailpilot.mail.models import Email, Thread

logger = get_logger(__name__)


class ProposedAction(StrEnum):
    RESPOND = "RESPOND"
    ARCHIVE = "ARCHIVE"


class BulkOperation(StrEnum):
    ARCHIVE = "archive"
    MARK_READ = "mark_read"


@dataclass(frozen=True, slots=True)
class AwaitingActionConfirmation:
    """Initial menu: confirm, reject, edit/flip, or a shortcut action."""

    thread: Thread
    email: Email
    action: ProposedAction
    reason: str = ""
    draft: str | None = None
    edit_history: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class AwaitingEdit:
    """Next free-text message is an edit instruction for the draft."""

    thread: Thread
    email: Email
    draft: str
    reason: str = ""
    edit_history: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class AwaitingBulkChoice:
    """All similar, only the original, or pick individually."""

    original: Email
    similar: tuple[Email, ...]
    operation: BulkOperation
    thread: Thread | None = None


@dataclass(frozen=True, slots=True)
class AwaitingIndividualSelection:
    """Next message is a comma-separated index list or 'cancel'."""

    original: Email
    similar: tuple[Email, ...]
    operation: BulkOperation
    thread: Thread | None = None


@dataclass(frozen=True, slots=True)
class AwaitingFollowUp:
    """Clarifying questions asked one at a time.

    Attributes:
        questions: Questions of the current round
        index: Question being asked; equal to len(questions) once all are
            answered and the thread is being re-classified
        answers: (question, answer) pairs from every round so far
        round: 1-based follow-up round number
    """

    thread: Thread
    email: Email
    questions: tuple[str, ...]
    index: int = 0
    answers: tuple[tuple[str, str], ...] = field(default_factory=tuple)
    round: int = 1

    @property
    def current_question(self) -> str | None:
        return self.questions[self.index] if self.index < len(self.questions) else None


PendingInteraction = (
    AwaitingActionConfirmation
    | AwaitingEdit
    | AwaitingBulkChoice
    | AwaitingIndividualSelection
    | AwaitingFollowUp
)


def referenced_ids(interaction: PendingInteraction) -> set[str]:
    """Email IDs an interaction would act on."""
    match interaction:
        case AwaitingActionConfirmation(email=email) | AwaitingEdit(email=email):
            return {email.id}
        case AwaitingFollowUp(email=email):
            return {email.id}
        case AwaitingBulkChoice(original=original, similar=similar) | AwaitingIndividualSelection(
            original=original, similar=similar
        ):
            return {original.id, *(e.id for e in similar)}
        case _:
            assert_never(interaction)


def validate(interaction: PendingInteraction, operator_id: str) -> None:
    """Check the fields a transition relies on.

    Raises:
        InteractionStateError: If the interaction cannot be acted on
    """
    match interaction:
        case AwaitingActionConfirmation(action=ProposedAction.RESPOND, draft=None | ""):
            raise InteractionStateError("Reply confirmation has no draft", operator_id=operator_id)
        case AwaitingActionConfirmation() | AwaitingEdit():
            if not interaction.email.id:
                raise InteractionStateError("Interaction has no email id", operator_id=operator_id)
        case AwaitingBulkChoice() | AwaitingIndividualSelection():
            if not interaction.original.id:
                raise InteractionStateError("Bulk choice has no original email", operator_id=operator_id)
        case AwaitingFollowUp():
            if not interaction.questions or interaction.index < 0:
                raise InteractionStateError("Follow-up has no questions", operator_id=operator_id)
        case _:
            assert_never(interaction)


class PendingInteractionStore:
    """One pending interaction per operator, plus a way to wait for the slot."""

    def __init__(self) -> None:
        self._pending: dict[str, PendingInteraction] = {}
        self._free: dict[str, asyncio.Event] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def _event(self, operator_id: str) -> asyncio.Event:
        event = self._free.get(operator_id)
        if event is None:
            event = asyncio.Event()
            if operator_id not in self._pending:
                event.set()
            self._free[operator_id] = event
        return event

    def get(self, operator_id: str) -> PendingInteraction | None:
        return self._pending.get(operator_id)

    def has_pending(self, operator_id: str) -> bool:
        return operator_id in self._pending

    def set(self, operator_id: str, interaction: PendingInteraction) -> None:
        """Create or replace the operator's interaction."""
        self._pending[operator_id] = interaction
        self._event(operator_id).clear()
        logger.debug(
            "interaction_set",
            operator_id=operator_id,
            state=type(interaction).__name__,
        )

    def clear(self, operator_id: str) -> PendingInteraction | None:
        interaction = self._pending.pop(operator_id, None)
        self._event(operator_id).set()
        return interaction

    def clear_referencing(self, email_ids: Iterable[str]) -> list[str]:
        """Drop every interaction that refers to any of the given emails.

        Returns:
            Operator IDs whose interaction was dropped
        """
        ids = set(email_ids)
        cleared = [
            operator_id
            for operator_id, interaction in self._pending.items()
            if referenced_ids(interaction) & ids
        ]
        for operator_id in cleared:
            self.clear(operator_id)
        if cleared:
            logger.info("interactions_cleared_for_emails", operators=len(cleared), emails=len(ids))
        return cleared

    async def wait_until_free(self, operator_id: str, timeout: float | None = None) -> bool:
        """Wait until the operator has nothing pending.

        Returns:
            True if the slot is free, False if the timeout expired first
        """
        if operator_id not in self._pending:
            return True
        try:
            await asyncio.wait_for(self._event(operator_id).wait(), timeout=timeout)
        except TimeoutError:
            return False
        return operator_id not in self._pending
