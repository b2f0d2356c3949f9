"""Rolling multi-thread conversation kept within the model's prompt budget.

Tokens are not counted locally. The prompt-token figure reported by the
last model call decides whether to trim; trimming drops the oldest share
of committed turns. Turns for the thread currently being processed are
held by the caller and only committed after the call, so a trim can never
remove them.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import StrEnum

from mailpilot.core.logging import get_logger

logger = get_logger(__name__)


class Role(StrEnum):
    OPERATOR = "operator"
    COUNTERPART = "counterpart"
    SYSTEM = "system"
    TOOL = "tool"


# Chat-completion role each turn is sent as
MODEL_ROLES = {
    Role.OPERATOR: "assistant",
    Role.COUNTERPART: "user",
    Role.SYSTEM: "system",
    Role.TOOL: "user",
}


@dataclass(frozen=True, slots=True)
class Turn:
    role: Role
    content: str

    def to_message(self) -> dict[str, str]:
        return {"role": MODEL_ROLES[self.role], "content": self.content}


@dataclass
class ConversationBudget:
    """Committed history plus the prompt size reported by the last call."""

    turns: list[Turn] = field(default_factory=list)
    last_prompt_tokens: int = 0

    def __len__(self) -> int:
        return len(self.turns)

    def to_messages(self) -> list[dict[str, str]]:
        return [turn.to_message() for turn in self.turns]


def append_turn(budget: ConversationBudget, turn: Turn) -> None:
    budget.turns.append(turn)


def should_trim(last_prompt_tokens: int, ceiling: int) -> bool:
    return last_prompt_tokens > ceiling


def trim(budget: ConversationBudget, fraction: float) -> int:
    """Drop the oldest ceil(len * fraction) turns. Returns how many were dropped."""
    if not budget.turns:
        return 0
    drop = min(len(budget.turns), math.ceil(len(budget.turns) * fraction))
    del budget.turns[:drop]
    return drop


class ContextBudgetManager:
    """Applies the trim policy to a ConversationBudget.

    Args:
        ceiling: Prompt tokens above which history is trimmed
        fraction: Share of oldest turns removed per trim
    """

    def __init__(self, ceiling: int, fraction: float):
        self.ceiling = ceiling
        self.fraction = fraction

    def record_usage(self, budget: ConversationBudget, prompt_tokens: int | None) -> None:
        if prompt_tokens is not None:
            budget.last_prompt_tokens = prompt_tokens

    def commit(self, budget: ConversationBudget, turns: list[Turn]) -> None:
        for turn in turns:
            append_turn(budget, turn)

    def enforce(self, budget: ConversationBudget) -> int:
        """Trim once if the last call exceeded the ceiling.

        The usage figure is reset after trimming so the same report does not
        trigger a second trim before the next call measures the new size.
        """
        if not should_trim(budget.last_prompt_tokens, self.ceiling):
            return 0

        before = len(budget)
        dropped = trim(budget, self.fraction)
        logger.info(
            "context_trimmed",
            prompt_tokens=budget.last_prompt_tokens,
            ceiling=self.ceiling,
            turns_before=before,
            turns_dropped=dropped,
        )
        budget.last_prompt_tokens = 0
        return dropped
