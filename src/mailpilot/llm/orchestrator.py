"""Model calls with deterministic-seed retries and structured parsing.

Every call goes through `with_retries`: the first attempt uses the base
seed, each retry increments it, and retry n waits backoff_base ** n
seconds. When all attempts fail a CompletionError is raised, which the
triage loop catches per thread.

Two call shapes sit on top:
- classification: JSON {"action", "reason", "questions"}; unparseable
  output becomes a conservative "no action" verdict instead of an error
- drafting: free text; empty output becomes a placeholder draft the
  operator must edit before sending
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, TypeVar

import regex

from mailpilot.core.errors import CompletionError
from mailpilot.core.logging import get_logger
from mailpilot.llm.backends import Completion, Usage

if TYPE_CHECKING:
    from mailpilot.config_schema import LLMConfig
    from mailpilot.db.store import AuditStore
    from mailpilot.llm.backends import CompletionBackend
    from mailpilot.llm.prompts import PromptBuilder
    from mailpilot.mail.models import Thread

logger = get_logger(__name__)

T = TypeVar("T")

REGEX_TIMEOUT = 1.0
CODE_FENCE_PATTERN = regex.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", regex.DOTALL)

PLACEHOLDER_DRAFT = (
    "[No draft could be generated for this thread. Choose Edit to write "
    "the reply instructions yourself.]"
)
MAX_QUESTIONS = 3


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """How many times to retry, how long to wait, and which seed to use."""

    max_retries: int = 3
    base_seed: int = 42
    backoff_base: float = 2.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def seed_for(self, attempt: int) -> int:
        """Seed for a zero-based attempt number."""
        return self.base_seed + attempt

    def delay_before(self, retry: int) -> float:
        """Delay before the n-th retry (1-based): 1, base, base**2, ..."""
        return self.backoff_base ** (retry - 1)

    @classmethod
    def from_config(cls, config: LLMConfig) -> RetryPolicy:
        return cls(
            max_retries=config.max_retries,
            base_seed=config.base_seed,
            backoff_base=config.backoff_base_seconds,
        )


async def with_retries(
    call: Callable[[int, int], Awaitable[T]],
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run `call(attempt, seed)` until it succeeds or the policy is exhausted.

    Only CompletionError is retried; anything else propagates at once.

    Raises:
        CompletionError: With the attempt count and last seed when every
            attempt failed
    """
    last_error: CompletionError | None = None
    seed = policy.seed_for(0)

    for attempt in range(policy.max_attempts):
        seed = policy.seed_for(attempt)
        try:
            return await call(attempt, seed)
        except CompletionError as e:
            last_error = e
            if attempt + 1 >= policy.max_attempts:
                break
            delay = policy.delay_before(attempt + 1)
            logger.warning(
                "llm_call_retry",
                attempt=attempt + 1,
                seed=seed,
                next_seed=policy.seed_for(attempt + 1),
                delay=delay,
                error=str(e),
            )
            await sleep(delay)

    raise CompletionError(
        f"Model call failed after {policy.max_attempts} attempts. Last error: {last_error}",
        attempts=policy.max_attempts,
        last_seed=seed,
    ) from last_error


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class Decision(StrEnum):
    RESPOND = "RESPOND"
    ARCHIVE = "ARCHIVE"
    NEED_INFO = "NEED_INFO"
    # Malformed output: leave the thread alone
    NONE = "NONE"


@dataclass(frozen=True, slots=True)
class Classification:
    """Verdict for one thread.

    Attributes:
        decision: What to propose to the operator
        reason: One-sentence explanation from the model
        questions: Clarifying questions (NEED_INFO only)
        parsed: False when the verdict is a fallback for malformed output
    """

    decision: Decision
    reason: str
    questions: tuple[str, ...] = field(default_factory=tuple)
    parsed: bool = True

    @staticmethod
    def fallback(reason: str) -> Classification:
        return Classification(decision=Decision.NONE, reason=reason, parsed=False)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"decision": self.decision.value, "reason": self.reason}
        if self.questions:
            result["questions"] = list(self.questions)
        if not self.parsed:
            result["parsed"] = False
        return result


def _strip_code_fence(text: str) -> str:
    try:
        match = CODE_FENCE_PATTERN.match(text, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        return text
    return match.group(1) if match else text


def parse_classification(text: str) -> Classification:
    """Parse the model's classification JSON.

    Accepts {"action": "RESPOND"|"ARCHIVE"|"NEED_INFO", ...} and the older
    {"respond": true|false, ...} shape. Never raises.
    """
    try:
        data = json.loads(_strip_code_fence(text or "").strip())
    except json.JSONDecodeError as e:
        return Classification.fallback(f"Error parsing AI response: {e}")

    if not isinstance(data, dict):
        return Classification.fallback(
            f"Error parsing AI response: expected an object, got {type(data).__name__}"
        )

    reason = str(data.get("reason") or "")

    if "action" in data:
        try:
            decision = Decision(str(data["action"]).strip().upper())
        except ValueError:
            return Classification.fallback(f"Error parsing AI response: unknown action {data['action']!r}")
        if decision is Decision.NONE:
            return Classification.fallback(f"Error parsing AI response: unknown action {data['action']!r}")
    elif isinstance(data.get("respond"), bool):
        decision = Decision.RESPOND if data["respond"] else Decision.ARCHIVE
    else:
        return Classification.fallback("Error parsing AI response: missing 'action'")

    raw_questions = data.get("questions") or []
    questions: tuple[str, ...] = ()
    if isinstance(raw_questions, list):
        questions = tuple(str(q).strip() for q in raw_questions if str(q).strip())[:MAX_QUESTIONS]

    if decision is Decision.NEED_INFO and not questions:
        # Nothing to ask: draft with what we have
        decision = Decision.RESPOND

    return Classification(decision=decision, reason=reason, questions=questions)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class AIOrchestrator:
    """Front door for every model call made by the triage engine.

    Attributes:
        last_usage: Token usage reported by the most recent successful call
    """

    def __init__(
        self,
        backend: CompletionBackend,
        config: LLMConfig,
        prompts: PromptBuilder,
        store: AuditStore | None = None,
        log_prompts: bool = False,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._backend = backend
        self._config = config
        self._prompts = prompts
        self._store = store
        self._log_prompts = log_prompts
        self._sleep = sleep
        self.policy = RetryPolicy.from_config(config)
        self.last_usage: Usage | None = None

    def update_config(self, config: LLMConfig) -> None:
        self._config = config
        self.policy = RetryPolicy.from_config(config)

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        json_mode: bool = False,
        model: str | None = None,
        task_type: str = "completion",
        email_id: str | None = None,
    ) -> Completion:
        """One logical model call, retried per the policy.

        Raises:
            CompletionError: When every attempt failed
        """
        model_name = model or self._config.model

        async def attempt_call(attempt: int, seed: int) -> Completion:
            start_time = time.monotonic()
            try:
                completion = await self._backend.complete(
                    messages, model=model_name, seed=seed, json_mode=json_mode
                )
            except CompletionError as e:
                await self._log_request(
                    task_type, model_name, seed, attempt, messages, None, start_time, email_id, str(e)
                )
                raise
            await self._log_request(
                task_type, model_name, seed, attempt, messages, completion, start_time, email_id
            )
            return completion

        completion = await with_retries(attempt_call, self.policy, sleep=self._sleep)
        self.last_usage = completion.usage
        return completion

    async def classify(
        self,
        thread: Thread,
        answers: Sequence[tuple[str, str]] = (),
        allow_questions: bool = True,
    ) -> Classification:
        """Decide RESPOND / ARCHIVE / NEED_INFO for a thread.

        With allow_questions False, a NEED_INFO verdict is turned into
        RESPOND so that follow-up rounds always terminate.

        Raises:
            CompletionError: When the model could not be reached
        """
        messages = self._prompts.classification_messages(thread, answers, allow_questions)
        email_id = thread.latest.id if thread.latest else None
        completion = await self.complete(
            messages,
            json_mode=True,
            model=self._config.effective_classification_model,
            task_type="classify",
            email_id=email_id,
        )

        classification = parse_classification(completion.content)
        if not classification.parsed:
            logger.warning(
                "classification_unparseable",
                thread_id=thread.thread_id,
                reason=classification.reason,
            )
        elif not allow_questions and classification.decision is Decision.NEED_INFO:
            classification = Classification(
                decision=Decision.RESPOND, reason=classification.reason
            )

        logger.info(
            "thread_classified",
            thread_id=thread.thread_id,
            decision=classification.decision.value,
            questions=len(classification.questions),
        )
        return classification

    async def draft_reply(
        self,
        thread: Thread,
        history: Sequence[dict[str, str]] = (),
        answers: Sequence[tuple[str, str]] = (),
    ) -> str:
        """Free-text reply to the thread, using the rolling history as context.

        Raises:
            CompletionError: When the model could not be reached
        """
        messages = self._prompts.drafting_messages(thread, history, answers)
        completion = await self.complete(
            messages,
            task_type="draft",
            email_id=thread.latest.id if thread.latest else None,
        )
        return self._draft_text(completion, thread)

    async def refine_draft(
        self,
        thread: Thread,
        current_draft: str,
        edit_history: Sequence[str],
    ) -> str:
        """Rewrite a draft applying every edit instruction given so far."""
        messages = self._prompts.refinement_messages(thread, current_draft, edit_history)
        completion = await self.complete(
            messages,
            task_type="refine",
            email_id=thread.latest.id if thread.latest else None,
        )
        return self._draft_text(completion, thread)

    def _draft_text(self, completion: Completion, thread: Thread) -> str:
        text = completion.content.strip()
        if not text:
            logger.warning("draft_empty", thread_id=thread.thread_id)
            return PLACEHOLDER_DRAFT
        return text

    async def _log_request(
        self,
        task_type: str,
        model: str,
        seed: int,
        attempt: int,
        messages: list[dict[str, str]],
        completion: Completion | None,
        start_time: float,
        email_id: str | None,
        error: str | None = None,
    ) -> None:
        """Write one attempt to the audit store. Never raises."""
        if self._store is None:
            return

        duration_ms = int((time.monotonic() - start_time) * 1000)
        usage = completion.usage if completion else None
        try:
            await self._store.log_llm_request(
                task_type=task_type,
                model=model,
                seed=seed,
                attempt=attempt + 1,
                prompt=messages if self._log_prompts else None,
                response_text=completion.content if completion and self._log_prompts else None,
                prompt_tokens=usage.prompt_tokens if usage else None,
                completion_tokens=usage.completion_tokens if usage else None,
                duration_ms=duration_ms,
                email_id=email_id,
                error=error,
            )
        except Exception as e:
            # Audit failures never block a model call
            logger.warning("llm_log_failed", error=str(e), email_id=email_id)
