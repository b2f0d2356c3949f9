"""Duplicate and near-duplicate detection for bulk actions.

Given one email the operator is acting on, find other unprocessed emails
that are the same logical item (newsletter issues, notification bursts,
repeated automated reports) so they can be archived or marked read in one
step.

Tiers, cheapest first:
    1. Signature: same sender and same leading tokens of the cleaned
       subject + sender. Exact repeats of a template.
    2. Heuristic (only when tier 1 found nothing): same sender, similar
       subject, and matching body format or shared unsubscribe footer.
    3. Embedding refinement (only on tier-1 matches): cosine similarity of
       subject + sender + body embeddings must reach the threshold.

A single bad candidate is dropped, never raised.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING

import numpy as np
import regex

from mailpilot.core.logging import get_logger

if TYPE_CHECKING:
    from mailpilot.config_schema import SimilarityConfig
    from mailpilot.llm.embeddings import EmbeddingProvider
    from mailpilot.mail.models import Email

logger = get_logger(__name__)

REGEX_TIMEOUT = 1.0

UNSUBSCRIBE_KEYWORDS = (
    "unsubscribe",
    "opt-out",
    "opt out",
    "remove from",
    "désinscription",
    "désabonner",
)

TOKEN_PATTERN = regex.compile(r"\w+|[^\w\s]")
DIGITS_PATTERN = regex.compile(r"\d+")
NON_WORD_PATTERN = regex.compile(r"[^\w\s]+")
REPLY_PREFIX_PATTERN = regex.compile(r"\b(?:fwd|fw|re)\b")
WHITESPACE_PATTERN = regex.compile(r"\s+")
LINK_PATTERN = regex.compile(r"https?://|www\.", regex.IGNORECASE)

SUBJECT_OVERLAP_RATIO = 0.5


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def tokenize(text: str) -> list[str]:
    """Split text into word and punctuation tokens."""
    return TOKEN_PATTERN.findall(text or "", timeout=REGEX_TIMEOUT)


def truncate_tokens(text: str, budget: int) -> str:
    """Cut text after `budget` tokens, keeping original spacing."""
    end = 0
    for count, match in enumerate(TOKEN_PATTERN.finditer(text or "", timeout=REGEX_TIMEOUT), 1):
        end = match.end()
        if count >= budget:
            return text[:end]
    return text or ""


def clean_subject(subject: str) -> str:
    """Lowercase a subject and strip digits, punctuation and reply/forward prefixes."""
    text = (subject or "").lower()
    text = DIGITS_PATTERN.sub("", text, timeout=REGEX_TIMEOUT)
    text = NON_WORD_PATTERN.sub(" ", text, timeout=REGEX_TIMEOUT)
    text = REPLY_PREFIX_PATTERN.sub(" ", text, timeout=REGEX_TIMEOUT)
    return WHITESPACE_PATTERN.sub(" ", text, timeout=REGEX_TIMEOUT).strip()


def subjects_similar(a: str, b: str) -> bool:
    """Equal, one contains the other, or token overlap above half of the larger set."""
    clean_a, clean_b = clean_subject(a), clean_subject(b)
    if clean_a == clean_b:
        return True
    if not clean_a or not clean_b:
        return False
    if clean_a in clean_b or clean_b in clean_a:
        return True

    tokens_a, tokens_b = set(clean_a.split()), set(clean_b.split())
    overlap = len(tokens_a & tokens_b)
    return overlap / max(len(tokens_a), len(tokens_b)) >= SUBJECT_OVERLAP_RATIO


def has_unsubscribe(body: str) -> bool:
    lowered = (body or "").lower()
    return any(keyword in lowered for keyword in UNSUBSCRIBE_KEYWORDS)


@dataclass(frozen=True, slots=True)
class FormatSignature:
    """Structural fingerprint of a body, independent of its wording."""

    has_links: bool
    has_unsubscribe: bool
    line_count: int
    has_markup: bool

    @classmethod
    def of(cls, body: str) -> FormatSignature:
        body = body or ""
        return cls(
            has_links=LINK_PATTERN.search(body, timeout=REGEX_TIMEOUT) is not None,
            has_unsubscribe=has_unsubscribe(body),
            line_count=len(body.splitlines()),
            has_markup="<" in body and ">" in body,
        )


def email_signature(email: Email, token_count: int) -> str:
    tokens = tokenize(f"{clean_subject(email.subject)} {email.sender}")
    return " ".join(tokens[:token_count])


def embedding_text(email: Email, token_budget: int) -> str:
    return truncate_tokens(f"{email.subject} {email.sender} {email.body}", token_budget)


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    vec_a = np.asarray(a, dtype=float)
    vec_b = np.asarray(b, dtype=float)
    norm = np.linalg.norm(vec_a) * np.linalg.norm(vec_b)
    if norm == 0:
        return 0.0
    return float(np.dot(vec_a, vec_b) / norm)


# ---------------------------------------------------------------------------
# Embedding cache
# ---------------------------------------------------------------------------


class EmbeddingCache:
    """Process-lifetime memo of embedding vectors keyed by email ID.

    Concurrent requests for the same ID share one computation. A waiter
    that times out does not cancel it, so the vector still lands in the
    cache for the next lookup. Failed computations are not cached.
    """

    def __init__(self) -> None:
        self._vectors: dict[str, np.ndarray] = {}
        self._inflight: dict[str, asyncio.Future] = {}

    def __contains__(self, email_id: str) -> bool:
        return email_id in self._vectors

    def __len__(self) -> int:
        return len(self._vectors)

    def get(self, email_id: str) -> np.ndarray | None:
        return self._vectors.get(email_id)

    async def get_or_compute(
        self,
        email_id: str,
        compute: Callable[[], Awaitable[Sequence[float]]],
    ) -> np.ndarray:
        cached = self._vectors.get(email_id)
        if cached is not None:
            return cached

        future = self._inflight.get(email_id)
        if future is None:
            future = asyncio.ensure_future(compute())
            self._inflight[email_id] = future
            future.add_done_callback(partial(self._settle, email_id))

        return np.asarray(await asyncio.shield(future), dtype=float)

    def _settle(self, email_id: str, future: asyncio.Future) -> None:
        self._inflight.pop(email_id, None)
        if future.cancelled() or future.exception() is not None:
            return
        self._vectors[email_id] = np.asarray(future.result(), dtype=float)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class SimilarityEngine:
    """Finds emails that belong to the same bulk decision as a source email.

    Args:
        config: Similarity thresholds, batch size and caps
        embeddings: Optional embedding provider; without it tier-1 matches
            are returned unrefined
        cache: Embedding cache, shared across calls for the process lifetime
    """

    def __init__(
        self,
        config: SimilarityConfig,
        embeddings: EmbeddingProvider | None = None,
        cache: EmbeddingCache | None = None,
    ):
        self.config = config
        self.embeddings = embeddings
        self.cache = cache if cache is not None else EmbeddingCache()

    async def find_similar(self, source: Email, candidates: Sequence[Email]) -> list[Email]:
        if not source.id:
            return []

        seen = {source.id}
        pool = []
        for candidate in candidates:
            if candidate.id and candidate.id not in seen:
                seen.add(candidate.id)
                pool.append(candidate)

        quick = self._signature_matches(source, pool)
        logger.debug("similarity_tier1_matches", email_id=source.id, count=len(quick))

        if not quick:
            fallback = self._heuristic_matches(source, pool)
            logger.debug("similarity_tier2_matches", email_id=source.id, count=len(fallback))
            return fallback[: self.config.max_matches]

        if self.embeddings is None:
            return quick[: self.config.max_matches]

        return await self._refine_with_embeddings(source, quick)

    def _signature_matches(self, source: Email, pool: Sequence[Email]) -> list[Email]:
        token_count = self.config.signature_tokens
        source_signature = email_signature(source, token_count)
        matches = []
        for candidate in pool:
            try:
                if candidate.sender == source.sender and (
                    email_signature(candidate, token_count) == source_signature
                ):
                    matches.append(candidate)
            except (TimeoutError, regex.error) as e:
                logger.warning("similarity_candidate_skipped", email_id=candidate.id, error=str(e))
        return matches

    def _heuristic_matches(self, source: Email, pool: Sequence[Email]) -> list[Email]:
        source_format = FormatSignature.of(source.body)
        matches = []
        for candidate in pool:
            try:
                if candidate.sender != source.sender:
                    continue
                if not subjects_similar(source.subject, candidate.subject):
                    continue
                same_format = FormatSignature.of(candidate.body) == source_format
                both_unsubscribe = source_format.has_unsubscribe and has_unsubscribe(candidate.body)
                if same_format or both_unsubscribe:
                    matches.append(candidate)
            except (TimeoutError, regex.error) as e:
                logger.warning("similarity_candidate_skipped", email_id=candidate.id, error=str(e))
        return matches

    async def _embed(self, email: Email) -> np.ndarray | None:
        """Embedding for one email, or None on timeout or provider failure."""
        text = embedding_text(email, self.config.embedding_token_budget)
        try:
            return await asyncio.wait_for(
                self.cache.get_or_compute(email.id, partial(self.embeddings.embed, text)),
                timeout=self.config.embedding_timeout_seconds,
            )
        except TimeoutError:
            logger.warning("similarity_embedding_timeout", email_id=email.id)
        except Exception as e:
            # Any failure excludes only this email
            logger.warning("similarity_embedding_failed", email_id=email.id, error=str(e))
        return None

    async def _refine_with_embeddings(self, source: Email, quick: list[Email]) -> list[Email]:
        source_vector = await self._embed(source)
        if source_vector is None:
            return quick[: self.config.max_matches]

        refined: list[Email] = []
        batch_size = self.config.batch_size
        for start in range(0, len(quick), batch_size):
            batch = quick[start : start + batch_size]
            vectors = await asyncio.gather(*(self._embed(candidate) for candidate in batch))
            for candidate, vector in zip(batch, vectors, strict=True):
                if vector is None:
                    continue
                score = cosine_similarity(source_vector, vector)
                if score > self.config.threshold:
                    refined.append(candidate)

            if len(refined) >= self.config.max_matches:
                break

        logger.debug(
            "similarity_refined",
            email_id=source.id,
            tier1=len(quick),
            kept=len(refined),
        )
        return refined[: self.config.max_matches]
