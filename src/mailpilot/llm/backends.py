"""Completion backends: one model call, no retries.

Retrying, seeding and parsing live in the orchestrator. A backend turns
any transport failure or non-2xx status into CompletionError so the
orchestrator's retry policy can handle it uniformly.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import anthropic
import httpx

from mailpilot.core.errors import CompletionError
from mailpilot.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class Usage:
    prompt_tokens: int | None = None
    completion_tokens: int | None = None

    @staticmethod
    def from_openai(data: dict[str, Any] | None) -> Usage | None:
        if not isinstance(data, dict):
            return None
        return Usage(
            prompt_tokens=data.get("prompt_tokens"),
            completion_tokens=data.get("completion_tokens"),
        )


@dataclass(frozen=True, slots=True)
class Completion:
    content: str
    role: str = "assistant"
    usage: Usage | None = None
    model: str | None = None


@runtime_checkable
class CompletionBackend(Protocol):
    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        model: str,
        seed: int,
        json_mode: bool = False,
    ) -> Completion: ...


class OpenAICompatibleBackend:
    """Chat-completions endpoint speaking the OpenAI wire format.

    The response body is read as JSON ``choices[0].message.content``; a body
    that is not in that shape is taken verbatim as the content.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str | None = None,
        max_tokens: int = 1024,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.endpoint = endpoint
        self.max_tokens = max_tokens
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        model: str,
        seed: int,
        json_mode: bool = False,
    ) -> Completion:
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "seed": seed,
            "max_tokens": self.max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        try:
            response = await self._client.post(self.endpoint, json=payload, headers=self._headers)
        except httpx.HTTPError as e:
            raise CompletionError(f"Request to {self.endpoint} failed: {e}") from e

        if not response.is_success:
            raise CompletionError(
                f"Completion endpoint returned HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            data = response.json()
            message = data["choices"][0]["message"]
            return Completion(
                content=message.get("content") or "",
                role=message.get("role", "assistant"),
                usage=Usage.from_openai(data.get("usage")),
                model=data.get("model", model),
            )
        except (ValueError, KeyError, IndexError, TypeError, AttributeError):
            logger.debug("completion_raw_text_body", endpoint=self.endpoint)
            return Completion(content=response.text, model=model)

    async def aclose(self) -> None:
        await self._client.aclose()


def _to_anthropic_messages(
    messages: list[dict[str, str]],
) -> tuple[str, list[dict[str, str]]]:
    """Split out system text and merge consecutive same-role turns.

    The Messages API needs alternating user/assistant turns starting with user.
    """
    system_parts: list[str] = []
    merged: list[dict[str, str]] = []
    for message in messages:
        if message["role"] == "system":
            system_parts.append(message["content"])
            continue
        role = "assistant" if message["role"] == "assistant" else "user"
        if merged and merged[-1]["role"] == role:
            merged[-1] = {"role": role, "content": f"{merged[-1]['content']}\n\n{message['content']}"}
        else:
            merged.append({"role": role, "content": message["content"]})

    if merged and merged[0]["role"] == "assistant":
        merged.insert(0, {"role": "user", "content": "(earlier conversation)"})
    return "\n\n".join(system_parts), merged


class AnthropicBackend:
    """Claude via the Anthropic SDK.

    The Messages API has no seed parameter, so the seed is only recorded.
    SDK-level retries are disabled; the orchestrator owns retrying.
    """

    def __init__(
        self,
        api_key: str | None = None,
        max_tokens: int = 1024,
        timeout: float = 60.0,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        self.max_tokens = max_tokens
        self._client = client or anthropic.AsyncAnthropic(
            api_key=api_key, max_retries=0, timeout=timeout
        )

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        model: str,
        seed: int,
        json_mode: bool = False,
    ) -> Completion:
        system, turns = _to_anthropic_messages(messages)
        if json_mode:
            system = f"{system}\n\nReply with a single JSON object and nothing else.".strip()

        extra: dict[str, Any] = {"system": system} if system else {}
        try:
            response = await self._client.messages.create(
                model=model,
                max_tokens=self.max_tokens,
                messages=turns,
                **extra,
            )
        except anthropic.APIConnectionError as e:
            raise CompletionError(f"Anthropic API connection error: {e}") from e
        except anthropic.APIStatusError as e:
            raise CompletionError(f"Anthropic API status error {e.status_code}: {e.message}") from e

        text = "".join(block.text for block in response.content if block.type == "text")
        return Completion(
            content=text,
            usage=Usage(
                prompt_tokens=response.usage.input_tokens,
                completion_tokens=response.usage.output_tokens,
            ),
            model=response.model,
        )
