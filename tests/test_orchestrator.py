"""Tests for the AI orchestrator.

Covers the retry policy and combinator (seed progression, backoff,
exhaustion), classification parsing and fallbacks, follow-up coercion,
placeholder drafts and audit logging of every attempt.
"""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from mailpilot.config_schema import LLMConfig, OperatorConfig
from mailpilot.core.errors import CompletionError
from mailpilot.llm.backends import Completion, Usage
from mailpilot.llm.orchestrator import (
    PLACEHOLDER_DRAFT,
    AIOrchestrator,
    Classification,
    Decision,
    RetryPolicy,
    parse_classification,
    with_retries,
)
from mailpilot.llm.prompts import PromptBuilder

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def prompts(tmp_path: Path) -> PromptBuilder:
    operator = OperatorConfig(chat_id="1001", email="me@example.com", first_name="Morgan")
    return PromptBuilder(operator, tmp_path / "context")


@pytest.fixture
def backend() -> MagicMock:
    mock = MagicMock()
    mock.complete = AsyncMock(return_value=Completion(content="ok"))
    return mock


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def orchestrator(backend: MagicMock, prompts: PromptBuilder, sleep: AsyncMock) -> AIOrchestrator:
    return AIOrchestrator(backend, LLMConfig(), prompts, sleep=sleep)


def _seeds(backend: MagicMock) -> list[int]:
    return [call.kwargs["seed"] for call in backend.complete.await_args_list]


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


class TestRetryPolicy:
    def test_seed_increments_per_attempt(self):
        policy = RetryPolicy()
        assert [policy.seed_for(a) for a in range(4)] == [42, 43, 44, 45]

    def test_exponential_backoff(self):
        policy = RetryPolicy()
        assert [policy.delay_before(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_from_config(self):
        policy = RetryPolicy.from_config(LLMConfig(max_retries=1, base_seed=7, backoff_base_seconds=3))
        assert policy.max_attempts == 2
        assert policy.seed_for(1) == 8
        assert policy.delay_before(2) == 3.0


class TestWithRetries:
    async def test_succeeds_after_two_failures(self, sleep: AsyncMock):
        seeds: list[int] = []

        async def call(attempt: int, seed: int) -> str:
            seeds.append(seed)
            if attempt < 2:
                raise CompletionError("HTTP 503")
            return "done"

        result = await with_retries(call, RetryPolicy(), sleep=sleep)

        assert result == "done"
        assert seeds == [42, 43, 44]
        assert seeds[-1] != seeds[0]
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    async def test_exhausted_retries_raise_with_attempts(self, sleep: AsyncMock):
        async def call(attempt: int, seed: int) -> str:
            raise CompletionError("HTTP 500")

        with pytest.raises(CompletionError) as exc_info:
            await with_retries(call, RetryPolicy(), sleep=sleep)

        assert exc_info.value.attempts == 4
        assert exc_info.value.last_seed == 45
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 4.0]

    async def test_other_errors_are_not_retried(self, sleep: AsyncMock):
        call = AsyncMock(side_effect=ValueError("bug"))

        with pytest.raises(ValueError):
            await with_retries(call, RetryPolicy(), sleep=sleep)

        assert call.await_count == 1
        sleep.assert_not_awaited()


# ---------------------------------------------------------------------------
# Classification parsing
# ---------------------------------------------------------------------------


class TestParseClassification:
    def test_action_json(self):
        result = parse_classification('{"action": "archive", "reason": "Newsletter"}')

        assert result.decision is Decision.ARCHIVE
        assert result.reason == "Newsletter"
        assert result.parsed is True

    def test_code_fenced_json(self):
        text = '```json\n{"action": "RESPOND", "reason": "Direct question"}\n```'
        assert parse_classification(text).decision is Decision.RESPOND

    def test_legacy_respond_flag(self):
        assert parse_classification('{"respond": true, "reason": "x"}').decision is Decision.RESPOND
        assert parse_classification('{"respond": false, "reason": "x"}').decision is Decision.ARCHIVE

    def test_invalid_json_falls_back_to_no_action(self):
        result = parse_classification("I think you should reply.")

        assert result.decision is Decision.NONE
        assert result.parsed is False
        assert result.reason.startswith("Error parsing AI response")

    def test_unknown_action_falls_back(self):
        assert parse_classification('{"action": "FORWARD"}').decision is Decision.NONE
        assert parse_classification('{"action": "NONE"}').parsed is False

    def test_non_object_falls_back(self):
        assert parse_classification("[1, 2]").decision is Decision.NONE

    def test_missing_action_falls_back(self):
        assert parse_classification('{"reason": "?"}').decision is Decision.NONE

    def test_need_info_questions_are_capped(self):
        data = {"action": "NEED_INFO", "reason": "r", "questions": ["a", "b", " ", "c", "d"]}

        result = parse_classification(json.dumps(data))

        assert result.decision is Decision.NEED_INFO
        assert result.questions == ("a", "b", "c")

    def test_need_info_without_questions_becomes_respond(self):
        result = parse_classification('{"action": "NEED_INFO", "questions": []}')
        assert result.decision is Decision.RESPOND

    def test_to_dict(self):
        assert Classification.fallback("bad").to_dict() == {
            "decision": "NONE",
            "reason": "bad",
            "parsed": False,
        }


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class TestComplete:
    async def test_retries_with_new_seed_until_success(
        self, orchestrator: AIOrchestrator, backend: MagicMock, sleep: AsyncMock
    ):
        backend.complete.side_effect = [
            CompletionError("HTTP 502"),
            CompletionError("timeout"),
            Completion(content="third time lucky", usage=Usage(prompt_tokens=321)),
        ]

        completion = await orchestrator.complete([{"role": "user", "content": "hi"}])

        assert completion.content == "third time lucky"
        assert _seeds(backend) == [42, 43, 44]
        assert sleep.await_count == 2
        assert orchestrator.last_usage == Usage(prompt_tokens=321)

    async def test_raises_after_all_attempts(self, orchestrator: AIOrchestrator, backend: MagicMock):
        backend.complete.side_effect = CompletionError("HTTP 500")

        with pytest.raises(CompletionError):
            await orchestrator.complete([{"role": "user", "content": "hi"}])

        assert backend.complete.await_count == 4

    async def test_every_attempt_is_logged(self, backend: MagicMock, prompts: PromptBuilder, sleep: AsyncMock):
        store = MagicMock()
        store.log_llm_request = AsyncMock(return_value=1)
        orchestrator = AIOrchestrator(backend, LLMConfig(), prompts, store=store, sleep=sleep)
        backend.complete.side_effect = [CompletionError("HTTP 503"), Completion(content="ok")]

        await orchestrator.complete([{"role": "user", "content": "hi"}], task_type="draft", email_id="m1")

        calls = store.log_llm_request.await_args_list
        assert len(calls) == 2
        assert calls[0].kwargs["error"] == "HTTP 503"
        assert calls[0].kwargs["attempt"] == 1
        assert calls[1].kwargs["error"] is None
        assert calls[1].kwargs["seed"] == 43
        assert calls[1].kwargs["prompt"] is None

    async def test_audit_failure_does_not_fail_the_call(
        self, backend: MagicMock, prompts: PromptBuilder, sleep: AsyncMock
    ):
        store = MagicMock()
        store.log_llm_request = AsyncMock(side_effect=RuntimeError("disk full"))
        orchestrator = AIOrchestrator(backend, LLMConfig(), prompts, store=store, sleep=sleep)

        completion = await orchestrator.complete([{"role": "user", "content": "hi"}])

        assert completion.content == "ok"


class TestClassify:
    async def test_classify_uses_json_mode_and_classification_model(
        self, backend: MagicMock, prompts: PromptBuilder, sleep: AsyncMock, make_email, make_thread
    ):
        config = LLMConfig(model="drafter", classification_model="classifier")
        orchestrator = AIOrchestrator(backend, config, prompts, sleep=sleep)
        backend.complete.return_value = Completion(content='{"action": "RESPOND", "reason": "Question"}')

        result = await orchestrator.classify(make_thread(make_email()))

        assert result.decision is Decision.RESPOND
        kwargs = backend.complete.await_args.kwargs
        assert kwargs["json_mode"] is True
        assert kwargs["model"] == "classifier"

    async def test_need_info_coerced_when_questions_disallowed(
        self, orchestrator: AIOrchestrator, backend: MagicMock, make_email, make_thread
    ):
        backend.complete.return_value = Completion(
            content='{"action": "NEED_INFO", "reason": "r", "questions": ["When?"]}'
        )

        result = await orchestrator.classify(make_thread(make_email()), allow_questions=False)

        assert result.decision is Decision.RESPOND
        assert result.questions == ()

    async def test_need_info_kept_when_questions_allowed(
        self, orchestrator: AIOrchestrator, backend: MagicMock, make_email, make_thread
    ):
        backend.complete.return_value = Completion(
            content='{"action": "NEED_INFO", "reason": "r", "questions": ["When?"]}'
        )

        result = await orchestrator.classify(make_thread(make_email()))

        assert result.decision is Decision.NEED_INFO
        assert result.questions == ("When?",)

    async def test_unparseable_output_means_no_action(
        self, orchestrator: AIOrchestrator, backend: MagicMock, make_email, make_thread
    ):
        backend.complete.return_value = Completion(content="not json")

        result = await orchestrator.classify(make_thread(make_email()))

        assert result.decision is Decision.NONE

    async def test_answers_are_included_in_prompt(
        self, orchestrator: AIOrchestrator, backend: MagicMock, make_email, make_thread
    ):
        backend.complete.return_value = Completion(content='{"action": "RESPOND"}')

        await orchestrator.classify(make_thread(make_email()), answers=[("When?", "Friday")])

        messages = backend.complete.await_args.args[0]
        assert any("A: Friday" in m["content"] for m in messages)


class TestDrafting:
    async def test_draft_reply_is_free_text_with_history(
        self, orchestrator: AIOrchestrator, backend: MagicMock, make_email, make_thread
    ):
        backend.complete.return_value = Completion(content="  Thursday works.  ")
        history = [{"role": "user", "content": "earlier thread"}]

        draft = await orchestrator.draft_reply(make_thread(make_email()), history)

        assert draft == "Thursday works."
        messages = backend.complete.await_args.args[0]
        assert messages[0]["role"] == "system"
        assert messages[1] == history[0]
        assert backend.complete.await_args.kwargs["json_mode"] is False

    async def test_empty_draft_becomes_placeholder(
        self, orchestrator: AIOrchestrator, backend: MagicMock, make_email, make_thread
    ):
        backend.complete.return_value = Completion(content="   ")

        assert await orchestrator.draft_reply(make_thread(make_email())) == PLACEHOLDER_DRAFT

    async def test_refine_draft_sends_every_edit(
        self, orchestrator: AIOrchestrator, backend: MagicMock, make_email, make_thread
    ):
        backend.complete.return_value = Completion(content="Shorter draft")

        draft = await orchestrator.refine_draft(
            make_thread(make_email()), "Long draft", ["make it shorter", "sign as M."]
        )

        assert draft == "Shorter draft"
        messages = backend.complete.await_args.args[0]
        assert {"role": "assistant", "content": "Long draft"} in messages
        assert "1. make it shorter\n2. sign as M." in messages[-1]["content"]
