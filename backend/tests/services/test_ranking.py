"""
Tests for the hybrid RankingEngine.

This test module verifies:
1. Merging of vector and lexical candidates
2. Degraded ranking when one source is down or late
3. Usage and recency sub-scores
4. Determinism and tie-breaking
5. Weight validation and scoring helpers
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest

from ragcore.core.exceptions import (
    AuthenticationFailedError,
    ConfigurationError,
    IndexUnavailableError,
    RankingWeightsError,
    SearchUnavailableError,
)
from ragcore.schemas.content import UsageStats
from ragcore.schemas.retrieval import QueryState, SearchStatus
from ragcore.services.index.lexical_index import InMemoryLexicalIndex
from ragcore.services.index.vector_index import FlatVectorIndex
from ragcore.services.processors.embedder import EmbeddingClient
from ragcore.services.rag.ranking import (
    RankingEngine,
    RankingWeights,
    min_max_normalize,
    recency_score,
    usage_scores,
)


TEST_DIMENSION = 64
T0 = datetime(2024, 3, 1, tzinfo=timezone.utc)

EVEN = RankingWeights(similarity=0.5, lexical=0.5, usage=0.0, recency=0.0)


class DownVectorIndex(FlatVectorIndex):
    async def query(self, vector, k, filters=None, **kwargs):
        raise IndexUnavailableError("vector index is down")


class DownLexicalIndex(InMemoryLexicalIndex):
    async def query(self, text, k, filters=None):
        raise ConnectionError("lexical backend refused the connection")


class SlowLexicalIndex(InMemoryLexicalIndex):
    async def query(self, text, k, filters=None):
        await asyncio.sleep(1.0)
        return await super().query(text, k, filters)


class DelayedLexicalIndex:
    """Answers from another lexical index after a fixed delay."""

    def __init__(self, inner, delay):
        self.inner = inner
        self.delay = delay

    async def query(self, text, k, filters=None):
        await asyncio.sleep(self.delay)
        return await self.inner.query(text, k, filters)


async def ingest_all(pipeline, units):
    """Ingest {unit_id: text}; every unit belongs to document "doc-<unit_id>"."""
    for unit_id, text in units.items():
        result = await pipeline.ingest(f"doc-{unit_id}", unit_id, text)
        assert result.ok


def make_engine(embedder, vector_index, lexical_index, catalog, tracker, **kwargs):
    kwargs.setdefault("weights", EVEN)
    return RankingEngine(embedder, vector_index, lexical_index, catalog, tracker, **kwargs)


@pytest.mark.asyncio
class TestHybridMerge:
    """Candidates from both sources are merged by chunk id."""

    async def test_both_sources_contribute(self, pipeline, embedder, vector_index, lexical_index, catalog, tracker):
        await ingest_all(pipeline, {"a": "The cat sat on the mat.", "b": "Dogs bark at the mailman."})
        engine = make_engine(embedder, vector_index, lexical_index, catalog, tracker)

        outcome = await engine.rank("cat", k=5)

        assert outcome.status == SearchStatus.OK
        assert outcome.degraded_sources == []
        ids = [r.chunk_id for r in outcome.results]
        assert ids[0] == "a:0"
        assert set(ids) == {"a:0", "b:0"}
        top = outcome.results[0]
        assert top.lexical == pytest.approx(1.0)
        assert top.document_id == "doc-a"
        # "b" has no lexical match but keeps its similarity contribution
        other = outcome.results[1]
        assert other.lexical == 0.0
        assert other.final_score == pytest.approx(0.5 * other.similarity)

    async def test_scores_bounded_and_sorted(self, pipeline, embedder, vector_index, lexical_index, catalog, tracker):
        await ingest_all(pipeline, {
            "a": "Cats purr when they are content.",
            "b": "A cat and a kitten nap in the sun.",
            "c": "Stock markets fell sharply today.",
        })
        engine = make_engine(embedder, vector_index, lexical_index, catalog, tracker)

        outcome = await engine.rank("cat nap", k=10)

        finals = [r.final_score for r in outcome.results]
        assert finals == sorted(finals, reverse=True)
        for r in outcome.results:
            for value in r.sub_scores().values():
                assert 0.0 <= value <= 1.0

    async def test_k_truncates(self, pipeline, embedder, vector_index, lexical_index, catalog, tracker):
        await ingest_all(pipeline, {f"u{i}": f"cat number {i} sleeps." for i in range(6)})
        engine = make_engine(embedder, vector_index, lexical_index, catalog, tracker)

        outcome = await engine.rank("cat", k=2)

        assert len(outcome.results) == 2
        assert outcome.trace[0] == QueryState.RECEIVED
        assert outcome.trace[-1] == QueryState.REPORTED

    async def test_filters_apply_to_both_sources(self, pipeline, embedder, vector_index, lexical_index, catalog, tracker):
        await ingest_all(pipeline, {"a": "The cat sat.", "b": "The cat ran."})
        engine = make_engine(embedder, vector_index, lexical_index, catalog, tracker)

        outcome = await engine.rank("cat", k=5, filters={"document_id": "doc-b"})

        assert [r.chunk_id for r in outcome.results] == ["b:0"]

    async def test_precomputed_vector_skips_embedding(self, pipeline, embedder, vector_index, lexical_index, catalog, tracker):
        await ingest_all(pipeline, {"a": "The cat sat."})
        engine = make_engine(embedder, vector_index, lexical_index, catalog, tracker)
        vector = await embedder.embed_query("cat")

        outcome = await engine.rank("cat", k=1, query_vector=vector)

        assert QueryState.EMBEDDING not in outcome.trace
        assert "embedding" not in outcome.timings_ms
        assert outcome.query_vector == vector

    async def test_non_positive_k(self, embedder, vector_index, lexical_index, catalog, tracker):
        engine = make_engine(embedder, vector_index, lexical_index, catalog, tracker)

        outcome = await engine.rank("cat", k=0)

        assert outcome.results == []

    async def test_candidates_missing_from_catalog_excluded(self, pipeline, embedder, vector_index, lexical_index, catalog, tracker):
        await ingest_all(pipeline, {"a": "The cat sat."})
        await lexical_index.upsert("ghost:0", "cat cat cat", {"document_id": "ghost"})
        engine = make_engine(embedder, vector_index, lexical_index, catalog, tracker)

        outcome = await engine.rank("cat", k=5)

        assert [r.chunk_id for r in outcome.results] == ["a:0"]


@pytest.mark.asyncio
class TestDegradedRanking:
    """One source failing still yields results from the other."""

    async def test_vector_index_down(self, pipeline, embedder, lexical_index, catalog, tracker):
        """Query "cat" with the vector index down: only the lexical match appears."""
        await ingest_all(pipeline, {"a": "The cat sat on the mat.", "b": "Dogs bark loudly."})
        engine = make_engine(embedder, DownVectorIndex(TEST_DIMENSION), lexical_index, catalog, tracker)

        outcome = await engine.rank("cat", k=5)

        assert outcome.status == SearchStatus.DEGRADED
        assert outcome.degraded_sources == ["vector"]
        assert QueryState.DEGRADED in outcome.trace
        assert [r.chunk_id for r in outcome.results] == ["a:0"]
        result = outcome.results[0]
        assert result.similarity == 0.0
        assert result.lexical == pytest.approx(1.0)
        assert result.final_score == pytest.approx(0.5)

    async def test_embedding_failure_degrades_vector_source(
        self, pipeline, vector_index, lexical_index, catalog, tracker, scripted_provider_factory, sleep_recorder
    ):
        await ingest_all(pipeline, {"a": "The cat sat."})
        broken = EmbeddingClient(
            scripted_provider_factory(errors=[AuthenticationFailedError("bad key")]),
            sleep=sleep_recorder,
        )
        engine = make_engine(broken, vector_index, lexical_index, catalog, tracker)

        outcome = await engine.rank("cat", k=5)

        assert outcome.degraded_sources == ["vector"]
        assert outcome.query_vector is None
        assert [r.chunk_id for r in outcome.results] == ["a:0"]

    async def test_lexical_timeout(self, pipeline, embedder, vector_index, catalog, tracker):
        slow = SlowLexicalIndex()
        await ingest_all(pipeline, {"a": "The cat sat."})
        engine = make_engine(embedder, vector_index, slow, catalog, tracker, lexical_timeout=0.05)

        outcome = await engine.rank("cat", k=5)

        assert outcome.status == SearchStatus.DEGRADED
        assert outcome.degraded_sources == ["lexical"]
        assert [r.chunk_id for r in outcome.results] == ["a:0"]
        assert outcome.results[0].lexical == 0.0

    async def test_hanging_embedder_leaves_lexical_budget(
        self, pipeline, vector_index, lexical_index, catalog, tracker, scripted_provider_factory, sleep_recorder
    ):
        """Embedding and lexical fetch overlap; a stuck embedder only degrades the vector source."""
        await ingest_all(pipeline, {"a": "The cat sat."})
        hanging = EmbeddingClient(scripted_provider_factory(delay=10.0), sleep=sleep_recorder)
        engine = make_engine(
            hanging, vector_index, DelayedLexicalIndex(lexical_index, 0.2), catalog, tracker,
            vector_timeout=0.5, lexical_timeout=1.0, deadline=0.6,
        )

        started = time.perf_counter()
        outcome = await engine.rank("cat", k=5)
        elapsed = time.perf_counter() - started

        assert outcome.status == SearchStatus.DEGRADED
        assert outcome.degraded_sources == ["vector"]
        assert outcome.query_vector is None
        assert [r.chunk_id for r in outcome.results] == ["a:0"]
        assert outcome.results[0].lexical == pytest.approx(1.0)
        assert elapsed < 1.0

    async def test_lexical_connection_error(self, pipeline, embedder, vector_index, catalog, tracker):
        await ingest_all(pipeline, {"a": "The cat sat."})
        engine = make_engine(embedder, vector_index, DownLexicalIndex(), catalog, tracker)

        outcome = await engine.rank("cat", k=5)

        assert outcome.degraded_sources == ["lexical"]
        assert len(outcome.results) == 1

    async def test_both_sources_down(self, embedder, catalog, tracker):
        engine = make_engine(embedder, DownVectorIndex(TEST_DIMENSION), DownLexicalIndex(), catalog, tracker)

        with pytest.raises(SearchUnavailableError) as exc_info:
            await engine.rank("cat", k=5)

        assert set(exc_info.value.details["sources"]) == {"vector", "lexical"}


@pytest.mark.asyncio
class TestUsageAndRecency:
    """Usage counters feed the usage and recency sub-scores."""

    async def seed_twins(self, pipeline, tracker):
        # Identical text: equal similarity and lexical scores
        await ingest_all(pipeline, {"a": "The cat sat on the mat.", "b": "The cat sat on the mat."})
        tracker.record(["b:0"] * 10, used_at=T0)
        await tracker.flush()

    async def test_usage_breaks_equality_when_weighted(self, pipeline, embedder, vector_index, lexical_index, catalog, tracker):
        await self.seed_twins(pipeline, tracker)
        weights = RankingWeights(similarity=0.45, lexical=0.45, usage=0.1, recency=0.0)
        engine = make_engine(embedder, vector_index, lexical_index, catalog, tracker, weights=weights)

        outcome = await engine.rank("cat", k=2)

        first, second = outcome.results
        assert first.chunk_id == "b:0"
        assert first.usage == pytest.approx(1.0)
        assert second.usage == 0.0
        assert first.final_score > second.final_score

    async def test_usage_ignored_without_weight(self, pipeline, embedder, vector_index, lexical_index, catalog, tracker):
        await self.seed_twins(pipeline, tracker)
        engine = make_engine(embedder, vector_index, lexical_index, catalog, tracker)

        outcome = await engine.rank("cat", k=2)

        first, second = outcome.results
        assert first.final_score == pytest.approx(second.final_score)
        # Equal scores fall back to chunk id order
        assert [first.chunk_id, second.chunk_id] == ["a:0", "b:0"]

    async def test_recency_uses_injected_clock(self, pipeline, embedder, vector_index, lexical_index, catalog, tracker):
        await self.seed_twins(pipeline, tracker)
        engine = make_engine(
            embedder, vector_index, lexical_index, catalog, tracker,
            half_life_days=30, clock=lambda: T0 + timedelta(days=30),
        )

        outcome = await engine.rank("cat", k=2)

        by_id = {r.chunk_id: r for r in outcome.results}
        assert by_id["b:0"].recency == pytest.approx(0.5)
        assert by_id["a:0"].recency == 0.0

    async def test_deterministic(self, pipeline, embedder, vector_index, lexical_index, catalog, tracker):
        await ingest_all(pipeline, {f"u{i}": f"cats and dogs story part {i}." for i in range(5)})
        engine = make_engine(embedder, vector_index, lexical_index, catalog, tracker)

        first = await engine.rank("cats dogs", k=5)
        second = await engine.rank("cats dogs", k=5)

        assert [(r.chunk_id, r.final_score) for r in first.results] == [
            (r.chunk_id, r.final_score) for r in second.results
        ]


class TestRankingConfiguration:
    """Weights and engine parameters are validated up front."""

    def test_weights_must_sum_to_one(self):
        with pytest.raises(RankingWeightsError):
            RankingWeights(similarity=0.5, lexical=0.5, usage=0.5, recency=0.0)

    def test_weights_must_be_non_negative(self):
        with pytest.raises(RankingWeightsError):
            RankingWeights(similarity=1.2, lexical=-0.2, usage=0.0, recency=0.0)

    def test_default_weights_valid(self):
        weights = RankingWeights()
        assert weights.similarity + weights.lexical + weights.usage + weights.recency == pytest.approx(1.0)

    def test_multiplier_and_half_life(self, embedder, vector_index, lexical_index, catalog, tracker):
        with pytest.raises(ConfigurationError):
            make_engine(embedder, vector_index, lexical_index, catalog, tracker, candidate_multiplier=1)
        with pytest.raises(ConfigurationError):
            make_engine(embedder, vector_index, lexical_index, catalog, tracker, half_life_days=0)


class TestScoringHelpers:
    """Pure scoring functions."""

    def test_min_max_normalize(self):
        assert min_max_normalize({"a": 2.0, "b": 4.0, "c": 3.0}) == {"a": 0.0, "b": 1.0, "c": 0.5}
        assert min_max_normalize({}) == {}

    def test_min_max_all_equal(self):
        assert min_max_normalize({"a": 0.7, "b": 0.7}) == {"a": 1.0, "b": 1.0}
        assert min_max_normalize({"a": 0.0}) == {"a": 0.0}

    def test_usage_scores_log_scaled(self):
        stats = {
            "a": UsageStats(chunk_id="a", usage_count=0),
            "b": UsageStats(chunk_id="b", usage_count=3),
            "c": UsageStats(chunk_id="c", usage_count=15),
        }

        scores = usage_scores(stats)

        assert scores["a"] == 0.0
        assert scores["c"] == pytest.approx(1.0)
        assert scores["b"] == pytest.approx(0.5)

    def test_usage_scores_no_usage(self):
        assert usage_scores({"a": UsageStats(chunk_id="a")}) == {"a": 0.0}

    def test_recency_score(self):
        assert recency_score(None, 30, T0) == 0.0
        assert recency_score(T0, 30, T0) == pytest.approx(1.0)
        assert recency_score(T0 - timedelta(days=60), 30, T0) == pytest.approx(0.25)
        # Clock skew never yields more than 1
        assert recency_score(T0 + timedelta(days=1), 30, T0) == pytest.approx(1.0)
