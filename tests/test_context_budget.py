"""Tests for the rolling conversation budget and its trim policy."""

import math

from mailpilot.engine.context_budget import (
    ContextBudgetManager,
    ConversationBudget,
    Role,
    Turn,
    append_turn,
    should_trim,
    trim,
)


def _make_budget(n: int, last_prompt_tokens: int = 0) -> ConversationBudget:
    return ConversationBudget(
        turns=[Turn(Role.COUNTERPART, f"turn {i}") for i in range(n)],
        last_prompt_tokens=last_prompt_tokens,
    )


class TestTrim:
    def test_drops_oldest_ceil_tenth(self):
        budget = _make_budget(25)

        dropped = trim(budget, 0.1)

        assert dropped == 3
        assert len(budget) == 25 - math.ceil(25 * 0.1)
        assert budget.turns[0].content == "turn 3"

    def test_single_turn_is_removed(self):
        budget = _make_budget(1)
        assert trim(budget, 0.1) == 1
        assert len(budget) == 0

    def test_empty_budget(self):
        assert trim(ConversationBudget(), 0.1) == 0

    def test_repeated_trims_converge_to_empty(self):
        budget = _make_budget(50)
        rounds = 0
        while budget.turns:
            trim(budget, 0.1)
            rounds += 1
            assert rounds <= 50

        assert len(budget) == 0


def test_should_trim_only_above_ceiling():
    assert should_trim(80_001, 80_000) is True
    assert should_trim(80_000, 80_000) is False
    assert should_trim(0, 80_000) is False


def test_turns_map_to_chat_roles():
    budget = ConversationBudget()
    append_turn(budget, Turn(Role.COUNTERPART, "hi"))
    append_turn(budget, Turn(Role.OPERATOR, "hello"))
    append_turn(budget, Turn(Role.TOOL, "Q: A:"))

    assert budget.to_messages() == [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
        {"role": "user", "content": "Q: A:"},
    ]


class TestContextBudgetManager:
    def test_enforce_trims_once_and_resets_usage(self):
        manager = ContextBudgetManager(ceiling=80_000, fraction=0.1)
        budget = _make_budget(20, last_prompt_tokens=95_000)

        assert manager.enforce(budget) == 2
        assert len(budget) == 18
        assert budget.last_prompt_tokens == 0
        assert manager.enforce(budget) == 0

    def test_enforce_below_ceiling_keeps_history(self):
        manager = ContextBudgetManager(ceiling=80_000, fraction=0.1)
        budget = _make_budget(20, last_prompt_tokens=10_000)

        assert manager.enforce(budget) == 0
        assert len(budget) == 20

    def test_turns_committed_after_trim_are_kept(self):
        manager = ContextBudgetManager(ceiling=1000, fraction=0.5)
        budget = _make_budget(4, last_prompt_tokens=5000)

        manager.enforce(budget)
        manager.commit(budget, [Turn(Role.COUNTERPART, "new email"), Turn(Role.OPERATOR, "reply")])

        assert [t.content for t in budget.turns] == ["turn 2", "turn 3", "new email", "reply"]

    def test_record_usage_ignores_missing_figure(self):
        manager = ContextBudgetManager(ceiling=1000, fraction=0.1)
        budget = _make_budget(1, last_prompt_tokens=700)

        manager.record_usage(budget, None)
        assert budget.last_prompt_tokens == 700

        manager.record_usage(budget, 1200)
        assert budget.last_prompt_tokens == 1200
