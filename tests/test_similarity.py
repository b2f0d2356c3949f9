"""Tests for the similarity engine.

Covers subject cleaning, the three matching tiers, per-candidate failure
isolation, the match cap and the embedding cache.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from mailpilot.config_schema import SimilarityConfig
from mailpilot.core.errors import EmbeddingError
from mailpilot.engine.similarity import (
    EmbeddingCache,
    FormatSignature,
    SimilarityEngine,
    clean_subject,
    cosine_similarity,
    subjects_similar,
    truncate_tokens,
)

NEWSLETTER = "Acme News <news@acme.example>"
NEWSLETTER_BODY = "Top stories this week\nhttps://acme.example/read\nUnsubscribe here"


def _make_embeddings(vector_for) -> MagicMock:
    """Embedding provider whose vector is chosen from the embedded text."""
    provider = MagicMock()

    async def embed(text: str) -> list[float]:
        return vector_for(text)

    provider.embed = AsyncMock(side_effect=embed)
    return provider


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


class TestSubjectHelpers:
    def test_clean_subject_strips_prefixes_digits_and_punctuation(self):
        assert clean_subject("Re: Fwd: Invoice #12345 ready!") == "invoice ready"

    def test_clean_subject_keeps_words_containing_prefixes(self):
        assert clean_subject("Report for review") == "report for review"

    def test_equal_after_cleaning(self):
        assert subjects_similar("Weekly digest 12", "Weekly digest 13")

    def test_containment(self):
        assert subjects_similar("Your order shipped", "Your order shipped today")

    def test_half_overlap_is_similar(self):
        assert subjects_similar("alpha beta gamma delta", "alpha beta other thing")

    def test_low_overlap_is_not_similar(self):
        assert not subjects_similar("alpha beta gamma delta", "alpha other thing here")

    def test_empty_subject_only_matches_empty(self):
        assert subjects_similar("", "123")
        assert not subjects_similar("", "Hello")


def test_truncate_tokens_keeps_original_spacing():
    assert truncate_tokens("one  two, three four", 3) == "one  two,"
    assert truncate_tokens("short", 10) == "short"


def test_format_signature():
    signature = FormatSignature.of(NEWSLETTER_BODY)

    assert signature.has_links is True
    assert signature.has_unsubscribe is True
    assert signature.line_count == 3
    assert signature.has_markup is False


def test_cosine_similarity():
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0


# ---------------------------------------------------------------------------
# Tiers
# ---------------------------------------------------------------------------


class TestFindSimilar:
    async def test_tier1_matches_same_sender_and_cleaned_subject(self, make_email):
        engine = SimilarityEngine(SimilarityConfig())
        source = make_email("s", sender=NEWSLETTER, subject="Acme digest #41")
        candidate = make_email("c", sender=NEWSLETTER, subject="Acme digest #42", body="different")

        result = await engine.find_similar(source, [candidate])

        assert result == [candidate]

    async def test_different_sender_never_matches(self, make_email):
        engine = SimilarityEngine(SimilarityConfig())
        source = make_email("s", sender=NEWSLETTER, subject="Digest", body=NEWSLETTER_BODY)
        impostor = make_email(
            "c", sender="Other <other@example.com>", subject="Digest", body=NEWSLETTER_BODY
        )

        assert await engine.find_similar(source, [impostor]) == []

    async def test_tier2_used_when_tier1_is_empty(self, make_email):
        engine = SimilarityEngine(SimilarityConfig())
        source = make_email("s", sender=NEWSLETTER, subject="Your weekly report", body=NEWSLETTER_BODY)
        candidate = make_email(
            "c",
            sender=NEWSLETTER,
            subject="Your weekly report is ready",
            body="Short text. Unsubscribe anytime.",
        )

        assert await engine.find_similar(source, [candidate]) == [candidate]

    async def test_tier2_requires_format_or_unsubscribe(self, make_email):
        engine = SimilarityEngine(SimilarityConfig())
        source = make_email("s", sender=NEWSLETTER, subject="Your weekly report", body="Hello")
        candidate = make_email(
            "c",
            sender=NEWSLETTER,
            subject="Your weekly report is ready",
            body="Line one\nLine two\nhttps://acme.example",
        )

        assert await engine.find_similar(source, [candidate]) == []

    async def test_source_without_id_returns_nothing(self, make_email):
        engine = SimilarityEngine(SimilarityConfig())
        source = make_email("", sender=NEWSLETTER)

        assert await engine.find_similar(source, [make_email("c", sender=NEWSLETTER)]) == []

    async def test_source_and_duplicate_candidates_are_skipped(self, make_email):
        engine = SimilarityEngine(SimilarityConfig())
        source = make_email("s", sender=NEWSLETTER)
        candidate = make_email("c", sender=NEWSLETTER)

        result = await engine.find_similar(source, [source, candidate, candidate])

        assert result == [candidate]

    async def test_match_cap(self, make_email):
        engine = SimilarityEngine(SimilarityConfig(max_matches=2))
        source = make_email("s", sender=NEWSLETTER)
        candidates = [make_email(f"c{i}", sender=NEWSLETTER) for i in range(5)]

        result = await engine.find_similar(source, candidates)

        assert [e.id for e in result] == ["c0", "c1"]


class TestEmbeddingRefinement:
    async def test_keeps_only_candidates_above_threshold(self, make_email):
        embeddings = _make_embeddings(lambda text: [0.0, 1.0] if "unrelated" in text else [1.0, 0.0])
        engine = SimilarityEngine(SimilarityConfig(), embeddings)
        source = make_email("s", sender=NEWSLETTER, body="issue body")
        close = make_email("a", sender=NEWSLETTER, body="issue body")
        far = make_email("b", sender=NEWSLETTER, body="unrelated body")

        result = await engine.find_similar(source, [close, far])

        assert result == [close]

    async def test_score_equal_to_threshold_is_not_a_match(self, make_email):
        vectors = {"issue body": [1.0, 0.0], "orthogonal body": [0.0, 1.0], "diagonal body": [1.0, 1.0]}
        embeddings = _make_embeddings(lambda text: next(v for k, v in vectors.items() if k in text))
        engine = SimilarityEngine(SimilarityConfig(threshold=0.0), embeddings)
        source = make_email("s", sender=NEWSLETTER, body="issue body")
        orthogonal = make_email("a", sender=NEWSLETTER, body="orthogonal body")
        diagonal = make_email("b", sender=NEWSLETTER, body="diagonal body")

        result = await engine.find_similar(source, [orthogonal, diagonal])

        assert result == [diagonal]

    async def test_failed_candidate_is_dropped(self, make_email):
        def vector_for(text: str) -> list[float]:
            if "broken" in text:
                raise EmbeddingError("provider rejected input")
            return [1.0, 0.0]

        engine = SimilarityEngine(SimilarityConfig(), _make_embeddings(vector_for))
        source = make_email("s", sender=NEWSLETTER)
        good = make_email("a", sender=NEWSLETTER)
        bad = make_email("b", sender=NEWSLETTER, body="broken")

        assert await engine.find_similar(source, [good, bad]) == [good]

    async def test_timed_out_candidate_is_dropped(self, make_email):
        provider = MagicMock()

        async def embed(text: str) -> list[float]:
            if "slow" in text:
                await asyncio.sleep(0.5)
            return [1.0, 0.0]

        provider.embed = AsyncMock(side_effect=embed)
        engine = SimilarityEngine(SimilarityConfig(embedding_timeout_seconds=0.05), provider)
        source = make_email("s", sender=NEWSLETTER)
        fast = make_email("a", sender=NEWSLETTER)
        slow = make_email("b", sender=NEWSLETTER, body="slow")

        assert await engine.find_similar(source, [fast, slow]) == [fast]

    async def test_source_embedding_failure_returns_tier1_matches(self, make_email):
        def vector_for(text: str) -> list[float]:
            raise EmbeddingError("down")

        engine = SimilarityEngine(SimilarityConfig(), _make_embeddings(vector_for))
        source = make_email("s", sender=NEWSLETTER)
        candidate = make_email("a", sender=NEWSLETTER)

        assert await engine.find_similar(source, [candidate]) == [candidate]

    async def test_vectors_computed_once_per_email(self, make_email):
        embeddings = _make_embeddings(lambda text: [1.0, 0.0])
        engine = SimilarityEngine(SimilarityConfig(), embeddings)
        source = make_email("s", sender=NEWSLETTER)
        candidate = make_email("a", sender=NEWSLETTER)

        await engine.find_similar(source, [candidate])
        await engine.find_similar(source, [candidate])

        assert embeddings.embed.await_count == 2
        assert "s" in engine.cache
        assert "a" in engine.cache


class TestEmbeddingCache:
    async def test_concurrent_requests_share_one_computation(self):
        cache = EmbeddingCache()
        compute = AsyncMock(return_value=[0.5, 0.5])

        first, second = await asyncio.gather(
            cache.get_or_compute("e1", compute),
            cache.get_or_compute("e1", compute),
        )

        assert compute.await_count == 1
        assert list(first) == list(second) == [0.5, 0.5]
        assert len(cache) == 1

    async def test_failures_are_not_cached(self):
        cache = EmbeddingCache()
        compute = AsyncMock(side_effect=[EmbeddingError("down"), [1.0]])

        with pytest.raises(EmbeddingError):
            await cache.get_or_compute("e1", compute)
        vector = await cache.get_or_compute("e1", compute)

        assert list(vector) == [1.0]
        assert cache.get("e1") is not None
