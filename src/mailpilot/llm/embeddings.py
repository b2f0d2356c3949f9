"""Text embeddings for the similarity engine."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import httpx

from mailpilot.core.errors import EmbeddingError
from mailpilot.core.logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> list[float]:
        """Return one vector for the text, raising EmbeddingError on failure."""
        ...


class OpenAICompatibleEmbeddings:
    """Embeddings from any endpoint speaking the OpenAI /embeddings format.

    Args:
        endpoint: Full embeddings URL
        model: Embedding model name
        api_key: Bearer token, sent when set
        client: Optional shared httpx.AsyncClient (tests inject a MockTransport)
    """

    def __init__(
        self,
        endpoint: str,
        model: str,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.endpoint = endpoint
        self.model = model
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(headers=headers)
        self._headers = headers

    async def embed(self, text: str) -> list[float]:
        try:
            response = await self._client.post(
                self.endpoint,
                json={"model": self.model, "input": text},
                headers=self._headers,
            )
            response.raise_for_status()
            return list(response.json()["data"][0]["embedding"])
        except httpx.HTTPError as e:
            raise EmbeddingError(f"Embedding request to {self.endpoint} failed: {e}") from e
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise EmbeddingError(f"Unexpected embedding response from {self.endpoint}: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()
