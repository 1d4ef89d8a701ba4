"""
Query Orchestrator

Top-level entry point for retrieval:

1. Clean the query text
2. Rank through the RankingEngine (vector + lexical fan-out)
3. Append a RetrievalEvent (query, vector, returned ids, sub-scores, timings)
4. Report every returned chunk to the UsageTracker

Also hosts the caller-facing helpers built on top of search: explicit
feedback, "queries like this one", and context assembly for a prompt.
"""

import time
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from ragcore.core.config import settings
from ragcore.core.exceptions import ChunkNotFoundError, EmbeddingError
from ragcore.core.logging import get_logger
from ragcore.schemas.retrieval import (
    FeedbackSignal,
    RetrievalEvent,
    ScoredChunk,
    SearchResponse,
    SimilarQuery,
)
from ragcore.services.processors.chunker import create_token_estimator
from ragcore.services.processors.embedder import normalize_text
from ragcore.services.rag.ranking import RankingEngine
from ragcore.services.rag.usage_tracker import UsageTracker
from ragcore.services.storage.catalog import Catalog


logger = get_logger(__name__)


class QueryOrchestrator:
    """
    Serves search requests and feeds usage back into ranking.

    Usage:
    ------
    orchestrator = QueryOrchestrator(ranking_engine, catalog, tracker)
    response = await orchestrator.search("how do cats sleep", k=5)
    if response.status == SearchStatus.DEGRADED:
        print("partial results from", response.degraded_sources)

    context = await orchestrator.build_context(response.results)
    """

    def __init__(
        self,
        ranking: RankingEngine,
        catalog: Catalog,
        tracker: UsageTracker,
        token_estimator=None,
    ):
        self.ranking = ranking
        self.catalog = catalog
        self.tracker = tracker
        self.token_estimator = token_estimator or create_token_estimator()

    async def search(
        self,
        query: str,
        k: Optional[int] = None,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> SearchResponse:
        """
        Search for chunks relevant to a query.

        Args:
            query: Query text
            k: Number of results (default RAG_TOP_K_RETRIEVAL)
            filters: Opaque filter map passed to both indexes unchanged

        Returns:
            SearchResponse. ``status`` tells "no matches" (ok, empty) apart
            from "degraded" (one source missing)

        Raises:
            SearchUnavailableError: Neither index could answer
        """
        k = settings.RAG_TOP_K_RETRIEVAL if k is None else k
        cleaned = self._clean_query(query)
        if not cleaned or k <= 0:
            logger.info("search_skipped_empty_query", k=k)
            return SearchResponse(query=query)

        started = time.perf_counter()
        outcome = await self.ranking.rank(cleaned, k, filters)

        event = RetrievalEvent(
            query=cleaned,
            query_vector=outcome.query_vector,
            k=k,
            filters=dict(filters) if filters else None,
            chunk_ids=[r.chunk_id for r in outcome.results],
            scores=[r.sub_scores() for r in outcome.results],
            status=outcome.status,
            degraded_sources=list(outcome.degraded_sources),
            timings_ms=dict(outcome.timings_ms),
        )

        # Feedback loop: every returned chunk counts as one use
        self.tracker.record(event.chunk_ids, used_at=event.created_at)

        event_id: Optional[str] = event.id
        try:
            await self.catalog.append_event(event)
        except Exception as e:
            # The answer is still valid; only the analytics record is lost
            event_id = None
            logger.error("retrieval_event_append_failed", error=str(e), error_type=type(e).__name__)

        timings = dict(outcome.timings_ms)
        timings["search_total"] = round((time.perf_counter() - started) * 1000.0, 3)
        logger.info(
            "search_completed",
            k=k,
            returned=len(outcome.results),
            status=outcome.status.value,
            event_id=event_id,
        )
        return SearchResponse(
            query=query,
            results=outcome.results,
            status=outcome.status,
            degraded_sources=outcome.degraded_sources,
            event_id=event_id,
            timings_ms=timings,
        )

    async def record_feedback(self, chunk_id: str, signal: Union[FeedbackSignal, str, int]) -> int:
        """
        Record an explicit usage signal for a chunk (e.g. a click).

        Args:
            chunk_id: Chunk the signal refers to
            signal: FeedbackSignal (or its name), or a positive integer weight

        Returns:
            Weight added to the chunk's usage count

        Raises:
            ChunkNotFoundError: Unknown chunk
            ValueError: Unknown signal name or non-positive weight
        """
        if isinstance(signal, str) and not isinstance(signal, FeedbackSignal):
            signal = FeedbackSignal(signal)
        if isinstance(signal, int) and signal <= 0:
            raise ValueError(f"Feedback weight must be positive, got {signal}")

        if chunk_id not in await self.catalog.embedded_chunk_ids([chunk_id]):
            raise ChunkNotFoundError(f"Chunk {chunk_id} not found", details={"chunk_id": chunk_id})

        weight = self.tracker.record_feedback(chunk_id, signal)
        logger.info(
            "feedback_recorded",
            chunk_id=chunk_id,
            signal=getattr(signal, "value", signal),
            weight=weight,
        )
        return weight

    async def find_similar_queries(
        self,
        query: str,
        limit: int = 5,
        min_similarity: Optional[float] = None,
    ) -> List[SimilarQuery]:
        """
        Past queries whose embeddings resemble this one.

        Returns an empty list when the query cannot be embedded.
        """
        cleaned = self._clean_query(query)
        if not cleaned:
            return []
        threshold = settings.RAG_SIMILAR_QUERY_THRESHOLD if min_similarity is None else min_similarity
        try:
            vector = await self.ranking.embedder.embed_query(cleaned)
        except EmbeddingError as e:
            logger.warning("similar_queries_embedding_failed", error=str(e))
            return []
        return await self.catalog.find_similar_events(vector, limit=limit, min_similarity=threshold)

    async def build_context(
        self,
        results: Sequence[ScoredChunk],
        max_tokens: Optional[int] = None,
    ) -> str:
        """
        Assemble ranked chunks into a numbered context block for a prompt.

        Each chunk becomes ``[Source N] <title> (<content type>)`` followed by
        its text. Chunks are added in rank order until the next one would
        exceed ``max_tokens``.
        """
        budget = settings.RAG_MAX_CONTEXT_TOKENS if max_tokens is None else max_tokens
        titles: Dict[str, str] = {}
        for document_id in {r.document_id for r in results if r.document_id}:
            document = await self.catalog.get_document(document_id)
            if document is not None and document.title:
                titles[document_id] = document.title

        parts: List[str] = []
        used = 0
        for i, result in enumerate(results, start=1):
            title = titles.get(result.document_id or "", result.document_id or "Unknown")
            block = f"[Source {i}] {title} ({result.content_type.value})\n{result.text}\n"
            cost = self.token_estimator.count_tokens(block)
            if used + cost > budget:
                logger.info("context_truncated", included=i - 1, tokens=used)
                break
            parts.append(block)
            used += cost

        return "\n---\n\n".join(parts)

    def _clean_query(self, query: str) -> str:
        """Strip control characters and collapse whitespace. Case is kept for the embedder."""
        return normalize_text(query)
