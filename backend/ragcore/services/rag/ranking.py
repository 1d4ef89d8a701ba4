"""
Ranking Engine

Hybrid ranking over the vector and lexical indexes.

Pipeline:
---------
1. Embed the query (skipped when the caller passes a vector)
2. Fetch the top M = multiplier * k candidates from the vector index and
   the lexical index. Embedding plus the vector query form one branch that
   runs concurrently with the lexical query. Each branch has its own
   timeout and the whole query has a deadline; a branch that fails or runs
   late is reported as degraded and contributes nothing
3. Merge by chunk id. A chunk found by only one source keeps a 0 for the
   other sub-score instead of being dropped
4. Min-max normalize similarity and lexical scores within the candidate set
5. usage   = log(1 + count) / log(1 + max count in the candidate set)
   recency = 0.5 ** (days since last use / half-life); 0 when never used
6. final = w_sim * similarity + w_lex * lexical + w_usage * usage + w_recency * recency
7. Sort by final score descending, ties by chunk id, and truncate to k

Recording the retrieval event and the usage feedback is the caller's job
(QueryOrchestrator), so ranking itself has no side effects.
"""

import asyncio
import math
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from ragcore.core.config import WEIGHT_SUM_TOLERANCE, settings
from ragcore.core.exceptions import (
    ConfigurationError,
    DataIntegrityError,
    EmbeddingError,
    IndexUnavailableError,
    RankingWeightsError,
    SearchUnavailableError,
)
from ragcore.core.logging import get_logger
from ragcore.schemas.content import UsageStats, utcnow
from ragcore.schemas.retrieval import QueryState, ScoredChunk, SearchStatus
from ragcore.services.index.lexical_index import LexicalIndex
from ragcore.services.index.vector_index import VectorIndex
from ragcore.services.processors.embedder import EmbeddingClient
from ragcore.services.rag.usage_tracker import UsageTracker
from ragcore.services.storage.catalog import Catalog


logger = get_logger(__name__)

VECTOR_SOURCE = "vector"
LEXICAL_SOURCE = "lexical"


class RankingWeights(BaseModel):
    """Sub-score weights. Must be non-negative and sum to 1."""

    similarity: float = 0.6
    lexical: float = 0.3
    usage: float = 0.05
    recency: float = 0.05

    def model_post_init(self, __context: Any) -> None:
        values = self.model_dump()
        negative = {name: w for name, w in values.items() if w < 0}
        if negative:
            raise RankingWeightsError("Ranking weights must be non-negative", details=negative)
        total = sum(values.values())
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise RankingWeightsError(
                f"Ranking weights must sum to 1.0, got {total:.6f}",
                details={"weights": values, "sum": total},
            )

    @classmethod
    def from_settings(cls) -> "RankingWeights":
        return cls(**settings.ranking_weights)


class RankingOutcome(BaseModel):
    """Ranked results plus how they were obtained."""

    results: List[ScoredChunk] = Field(default_factory=list)
    status: SearchStatus = SearchStatus.OK
    degraded_sources: List[str] = Field(default_factory=list)
    query_vector: Optional[List[float]] = None
    trace: List[QueryState] = Field(default_factory=list)
    timings_ms: Dict[str, float] = Field(default_factory=dict)


def min_max_normalize(scores: Mapping[str, float]) -> Dict[str, float]:
    """
    Scale scores to [0, 1] within the set.

    When every score is equal there is no spread to scale: positive values
    map to 1.0, zero or negative values to 0.0.
    """
    if not scores:
        return {}
    low = min(scores.values())
    high = max(scores.values())
    if high - low <= 1e-12:
        value = 1.0 if high > 0 else 0.0
        return {chunk_id: value for chunk_id in scores}
    span = high - low
    return {chunk_id: (score - low) / span for chunk_id, score in scores.items()}


def usage_scores(stats: Mapping[str, UsageStats]) -> Dict[str, float]:
    """log(1 + count) scaled by the largest value in the set."""
    top = max((s.usage_count for s in stats.values()), default=0)
    if top <= 0:
        return {chunk_id: 0.0 for chunk_id in stats}
    denom = math.log1p(top)
    return {chunk_id: math.log1p(max(0, s.usage_count)) / denom for chunk_id, s in stats.items()}


def recency_score(last_used_at: Optional[datetime], half_life_days: float, now: datetime) -> float:
    """Exponential decay with the given half-life. Never used -> 0."""
    if last_used_at is None:
        return 0.0
    age_days = max(0.0, (now - last_used_at).total_seconds() / 86400.0)
    return 0.5 ** (age_days / half_life_days)


class RankingEngine:
    """
    Hybrid ranking of chunks for one query.

    Usage:
    ------
    engine = RankingEngine(embedder, vector_index, lexical_index, catalog, tracker)
    outcome = await engine.rank("what do cats eat", k=10, filters={"content_type": "text"})
    for result in outcome.results:
        print(result.chunk_id, result.sub_scores())

    Outcomes:
    ---------
    - status=ok, results=[]: no matches
    - status=degraded: one source failed or timed out; results come from the other
    - SearchUnavailableError: neither source answered
    """

    def __init__(
        self,
        embedder: EmbeddingClient,
        vector_index: VectorIndex,
        lexical_index: LexicalIndex,
        catalog: Catalog,
        tracker: UsageTracker,
        weights: Optional[RankingWeights] = None,
        candidate_multiplier: Optional[int] = None,
        half_life_days: Optional[float] = None,
        vector_timeout: Optional[float] = None,
        lexical_timeout: Optional[float] = None,
        deadline: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.embedder = embedder
        self.vector_index = vector_index
        self.lexical_index = lexical_index
        self.catalog = catalog
        self.tracker = tracker
        self.weights = weights or RankingWeights.from_settings()
        self.candidate_multiplier = (
            settings.RANKING_CANDIDATE_MULTIPLIER if candidate_multiplier is None else candidate_multiplier
        )
        self.half_life_days = (
            settings.RANKING_RECENCY_HALF_LIFE_DAYS if half_life_days is None else half_life_days
        )
        self.vector_timeout = vector_timeout or settings.RANKING_VECTOR_TIMEOUT_SECONDS
        self.lexical_timeout = lexical_timeout or settings.RANKING_LEXICAL_TIMEOUT_SECONDS
        self.deadline = deadline or settings.RANKING_QUERY_DEADLINE_SECONDS
        self.clock = clock

        if self.candidate_multiplier < 2:
            raise ConfigurationError(
                f"Candidate multiplier must be >= 2, got {self.candidate_multiplier}",
                details={"candidate_multiplier": self.candidate_multiplier},
            )
        if self.half_life_days <= 0:
            raise ConfigurationError(
                f"Recency half-life must be positive, got {self.half_life_days}",
                details={"half_life_days": self.half_life_days},
            )

    async def rank(
        self,
        query: str,
        k: int,
        filters: Optional[Mapping[str, Any]] = None,
        query_vector: Optional[Sequence[float]] = None,
    ) -> RankingOutcome:
        """
        Rank chunks for a query.

        Args:
            query: Query text (used for the lexical source and for embedding)
            k: Number of results
            filters: Opaque filter map passed unchanged to both indexes
            query_vector: Pre-computed query embedding (skips step 1)

        Returns:
            RankingOutcome with results sorted by final score

        Raises:
            SearchUnavailableError: Both sources failed
        """
        started = time.perf_counter()
        deadline_at = started + self.deadline
        outcome = RankingOutcome(trace=[QueryState.RECEIVED])
        if k <= 0:
            outcome.trace.append(QueryState.REPORTED)
            return outcome

        m = k * self.candidate_multiplier
        degraded: Dict[str, str] = {}

        # Steps 1-2: (embed, then vector query) runs concurrently with the
        # lexical query, each branch under its own timeout
        outcome.query_vector = list(query_vector) if query_vector is not None else None
        if outcome.query_vector is None:
            outcome.trace.append(QueryState.EMBEDDING)
        outcome.trace.append(QueryState.CANDIDATE_FETCH)
        t0 = time.perf_counter()
        vector_hits, lexical_hits = await asyncio.gather(
            self._fetch_vector(query, m, filters, deadline_at, degraded, outcome),
            self._fetch_lexical(query, m, filters, deadline_at, degraded),
        )
        outcome.timings_ms["candidate_fetch"] = _ms(t0)

        if VECTOR_SOURCE in degraded and LEXICAL_SOURCE in degraded:
            outcome.trace.append(QueryState.DEGRADED)
            logger.error("search_unavailable", reasons=degraded)
            raise SearchUnavailableError(
                "Search unavailable: vector and lexical sources both failed",
                details={"sources": degraded},
            )
        if degraded:
            outcome.trace.append(QueryState.DEGRADED)
            outcome.status = SearchStatus.DEGRADED
            outcome.degraded_sources = sorted(degraded)

        # Step 3: merge by chunk id
        outcome.trace.append(QueryState.MERGING)
        t0 = time.perf_counter()
        similarity_raw = {hit.chunk_id: hit.similarity for hit in vector_hits}
        lexical_raw = {hit.chunk_id: hit.score for hit in lexical_hits}
        candidate_ids = sorted(set(similarity_raw) | set(lexical_raw))

        chunks, embedded = await asyncio.gather(
            self.catalog.get_chunks(candidate_ids),
            self.catalog.embedded_chunk_ids(candidate_ids),
        )
        missing = [c for c in candidate_ids if c not in chunks or c not in embedded]
        if missing:
            # Catalog and index disagree; the chunk is skipped for this query
            error = DataIntegrityError(
                "Candidates without chunk or embedding record",
                details={"chunk_ids": missing},
            )
            logger.warning("ranking_candidates_excluded", **error.to_dict())
            missing_set = set(missing)
            candidate_ids = [c for c in candidate_ids if c not in missing_set]
            similarity_raw = {c: s for c, s in similarity_raw.items() if c not in missing_set}
            lexical_raw = {c: s for c, s in lexical_raw.items() if c not in missing_set}
        outcome.timings_ms["merging"] = _ms(t0)

        # Steps 4-7: score
        outcome.trace.append(QueryState.SCORING)
        t0 = time.perf_counter()
        results = await self._score(candidate_ids, chunks, similarity_raw, lexical_raw)
        outcome.results = results[:k]
        outcome.timings_ms["scoring"] = _ms(t0)

        outcome.trace.append(QueryState.REPORTED)
        outcome.timings_ms["total"] = _ms(started)
        logger.info(
            "query_ranked",
            k=k,
            candidates=len(candidate_ids),
            returned=len(outcome.results),
            status=outcome.status.value,
            degraded_sources=outcome.degraded_sources,
            total_ms=outcome.timings_ms["total"],
        )
        return outcome

    # ----------------------------------------
    # Candidate fetch
    # ----------------------------------------

    def _remaining(self, deadline_at: float, timeout: float) -> float:
        return max(0.0, min(timeout, deadline_at - time.perf_counter()))

    async def _fetch_vector(self, query, m, filters, deadline_at, degraded: Dict[str, str], outcome: "RankingOutcome"):
        """Embed the query when no vector was given, then query the vector index."""
        embedding_started: Optional[float] = None

        async def embed_then_query():
            nonlocal embedding_started
            if outcome.query_vector is None:
                embedding_started = time.perf_counter()
                outcome.query_vector = await self.embedder.embed_query(query)
                outcome.timings_ms["embedding"] = _ms(embedding_started)
            return await self.vector_index.query(outcome.query_vector, m, filters)

        try:
            return await asyncio.wait_for(
                embed_then_query(),
                timeout=self._remaining(deadline_at, self.vector_timeout),
            )
        except asyncio.TimeoutError:
            if outcome.query_vector is None:
                degraded[VECTOR_SOURCE] = "embedding: TimeoutError"
                outcome.timings_ms["embedding"] = _ms(embedding_started)
            else:
                degraded[VECTOR_SOURCE] = "timeout"
            logger.warning("vector_source_timeout", timeout_seconds=self.vector_timeout)
        except EmbeddingError as e:
            degraded[VECTOR_SOURCE] = f"embedding: {type(e).__name__}"
            outcome.timings_ms["embedding"] = _ms(embedding_started)
            logger.warning("query_embedding_failed", error=str(e), error_type=type(e).__name__)
        except (IndexUnavailableError, OSError, ConnectionError) as e:
            degraded[VECTOR_SOURCE] = f"unavailable: {type(e).__name__}"
            logger.warning("vector_source_unavailable", error=str(e), error_type=type(e).__name__)
        return []

    async def _fetch_lexical(self, query, m, filters, deadline_at, degraded: Dict[str, str]):
        try:
            return await asyncio.wait_for(
                self.lexical_index.query(query, m, filters),
                timeout=self._remaining(deadline_at, self.lexical_timeout),
            )
        except asyncio.TimeoutError:
            degraded[LEXICAL_SOURCE] = "timeout"
            logger.warning("lexical_source_timeout", timeout_seconds=self.lexical_timeout)
        except (IndexUnavailableError, OSError, ConnectionError) as e:
            degraded[LEXICAL_SOURCE] = f"unavailable: {type(e).__name__}"
            logger.warning("lexical_source_unavailable", error=str(e), error_type=type(e).__name__)
        return []

    # ----------------------------------------
    # Scoring
    # ----------------------------------------

    async def _score(
        self,
        candidate_ids: List[str],
        chunks: Mapping[str, Any],
        similarity_raw: Mapping[str, float],
        lexical_raw: Mapping[str, float],
    ) -> List[ScoredChunk]:
        if not candidate_ids:
            return []

        similarity = min_max_normalize(similarity_raw)
        lexical = min_max_normalize(lexical_raw)
        stats = await self.tracker.stats(candidate_ids)
        usage = usage_scores(stats)
        now = self.clock()
        w = self.weights

        scored: List[Tuple[float, str, ScoredChunk]] = []
        for chunk_id in candidate_ids:
            chunk = chunks[chunk_id]
            sim = similarity.get(chunk_id, 0.0)
            lex = lexical.get(chunk_id, 0.0)
            use = usage.get(chunk_id, 0.0)
            rec = recency_score(stats[chunk_id].last_used_at, self.half_life_days, now)
            final = w.similarity * sim + w.lexical * lex + w.usage * use + w.recency * rec
            scored.append((final, chunk_id, ScoredChunk(
                chunk_id=chunk_id,
                document_id=chunk.document_id,
                content_unit_id=chunk.content_unit_id,
                chunk_index=chunk.chunk_index,
                text=chunk.text,
                content_type=chunk.content_type,
                similarity=sim,
                lexical=lex,
                usage=use,
                recency=rec,
                final_score=final,
                metadata=dict(chunk.metadata),
            )))

        scored.sort(key=lambda item: (-item[0], item[1]))
        return [item[2] for item in scored]


def _ms(since: float) -> float:
    return round((time.perf_counter() - since) * 1000.0, 3)
