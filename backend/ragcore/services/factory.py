"""
RagCore: the wired-up retrieval core.

Builds the component graph from settings (or explicit parts) and exposes
the three external operations plus the supporting helpers:

- ingest(document_id, content_unit_id, text, content_type)
- search(query, k, filters)
- record_feedback(chunk_id, signal)

Backends:
---------
STORAGE_BACKEND=memory    InMemoryCatalog + Flat/Clustered index + BM25
STORAGE_BACKEND=postgres  SqlCatalog + PgVectorIndex + PgLexicalIndex
USAGE_BACKEND=catalog     counters on embedding records
USAGE_BACKEND=redis       counters in Redis (shared across processes)
"""

from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union

from ragcore.core.config import Settings, settings as default_settings, validate_settings
from ragcore.core.exceptions import ConfigurationError, DimensionMismatchError
from ragcore.core.logging import get_logger
from ragcore.schemas.content import ContentType, IngestResult
from ragcore.schemas.retrieval import FeedbackSignal, ScoredChunk, SearchResponse, SimilarQuery
from ragcore.services.index.lexical_index import InMemoryLexicalIndex, LexicalIndex
from ragcore.services.index.vector_index import VectorIndex, create_vector_index
from ragcore.services.ingestion.pipeline import IngestionPipeline
from ragcore.services.ingestion.worker_pool import IngestionTask, IngestionWorkerPool
from ragcore.services.processors.chunker import ContentChunker, create_token_estimator
from ragcore.services.processors.embedder import EmbeddingClient
from ragcore.services.processors.providers import create_provider
from ragcore.services.rag.query_service import QueryOrchestrator
from ragcore.services.rag.ranking import RankingEngine, RankingWeights
from ragcore.services.rag.usage_tracker import CatalogUsageStore, UsageStore, UsageTracker
from ragcore.services.storage.catalog import Catalog, InMemoryCatalog


logger = get_logger(__name__)

# Components RagCore.create() accepts in place of the configured ones
CREATE_OVERRIDES = frozenset({
    "chunker", "embedder", "catalog", "vector_index", "lexical_index",
    "usage_store", "weights", "flush_interval", "workers",
})


class RagCore:
    """
    Container for the retrieval core components.

    Usage:
    ------
    core = await RagCore.create()
    await core.start()

    await core.ingest("doc-1", "doc-1:body", "The cat sat. The dog ran.")
    response = await core.search("cat", k=5)
    await core.record_feedback(response.results[0].chunk_id, "helpful")

    await core.shutdown()
    """

    def __init__(
        self,
        catalog: Catalog,
        embedder: EmbeddingClient,
        vector_index: VectorIndex,
        lexical_index: LexicalIndex,
        usage_store: Optional[UsageStore] = None,
        chunker: Optional[ContentChunker] = None,
        weights: Optional[RankingWeights] = None,
        flush_interval: Optional[float] = None,
        workers: Optional[int] = None,
        health_checks: Optional[Mapping[str, Callable[[], Awaitable[bool]]]] = None,
    ):
        self.catalog = catalog
        self.embedder = embedder
        self.vector_index = vector_index
        self.lexical_index = lexical_index
        self.chunker = chunker or ContentChunker()
        self.tracker = UsageTracker(usage_store or CatalogUsageStore(catalog), flush_interval=flush_interval)
        self.pipeline = IngestionPipeline(
            self.chunker, embedder, catalog, vector_index, lexical_index, tracker=self.tracker
        )
        self.ranking = RankingEngine(
            embedder, vector_index, lexical_index, catalog, self.tracker, weights=weights
        )
        self.orchestrator = QueryOrchestrator(
            self.ranking, catalog, self.tracker, token_estimator=self.chunker.estimator
        )
        self.workers = IngestionWorkerPool(self.pipeline, workers=workers)
        self.health_checks = dict(health_checks or {})
        self._started = False

    @classmethod
    async def create(cls, config: Optional[Settings] = None, **overrides: Any) -> "RagCore":
        """
        Build the core from settings.

        Keyword overrides (see CREATE_OVERRIDES) replace the configured
        components; any other keyword is a ConfigurationError. Configuration
        errors (chunk overlap, ranking weights, embedding dimension) are
        raised here, never at query time.
        """
        unknown = sorted(set(overrides) - CREATE_OVERRIDES)
        if unknown:
            raise ConfigurationError(
                f"Unknown RagCore.create() overrides: {', '.join(unknown)}",
                details={"unknown": unknown, "allowed": sorted(CREATE_OVERRIDES)},
            )
        config = validate_settings(config or default_settings)

        chunker = overrides.pop("chunker", None) or ContentChunker(
            max_tokens=config.CHUNK_SIZE_TOKENS,
            overlap_tokens=config.CHUNK_OVERLAP_TOKENS,
            boundary_mode=config.CHUNK_BOUNDARY_MODE,
            estimator=create_token_estimator(config.CHUNK_TOKEN_ESTIMATOR),
        )
        embedder = overrides.pop("embedder", None) or EmbeddingClient(create_provider(config.EMBEDDING_PROVIDER))
        await embedder.initialize()

        usage_store = overrides.pop("usage_store", None)
        health_checks: Dict[str, Callable[[], Awaitable[bool]]] = {}
        if config.STORAGE_BACKEND == "postgres":
            from ragcore.db.session import check_db_health, get_session_factory, init_db
            from ragcore.services.index.pg_lexical_index import PgLexicalIndex
            from ragcore.services.index.pgvector_index import PgVectorIndex
            from ragcore.services.storage.sql_catalog import SqlCatalog

            await init_db()
            health_checks["database"] = check_db_health
            session_factory = get_session_factory()
            catalog = overrides.pop("catalog", None) or SqlCatalog(session_factory)
            vector_index = overrides.pop("vector_index", None) or PgVectorIndex(
                session_factory, dimension=config.EMBEDDING_DIMENSION, metric=config.VECTOR_METRIC
            )
            lexical_index = overrides.pop("lexical_index", None) or PgLexicalIndex(session_factory)
        else:
            catalog = overrides.pop("catalog", None) or InMemoryCatalog()
            vector_index = overrides.pop("vector_index", None) or create_vector_index(
                config.VECTOR_INDEX_TYPE, dimension=config.EMBEDDING_DIMENSION, metric=config.VECTOR_METRIC
            )
            lexical_index = overrides.pop("lexical_index", None) or InMemoryLexicalIndex(
                k1=config.LEXICAL_BM25_K1, b=config.LEXICAL_BM25_B
            )

        if usage_store is None and config.USAGE_BACKEND == "redis":
            from ragcore.db.redis import get_redis
            from ragcore.services.storage.redis_usage import RedisUsageStore

            usage_store = RedisUsageStore(await get_redis(), key_prefix=config.REDIS_USAGE_KEY_PREFIX)

        if embedder.dimensions != vector_index.dimension:
            raise DimensionMismatchError(
                vector_index.dimension,
                embedder.dimensions,
                message=(
                    f"Embedding model {embedder.model_name} produces {embedder.dimensions}-d vectors, "
                    f"index expects {vector_index.dimension}"
                ),
                model=embedder.model_name,
            )

        core = cls(
            catalog=catalog,
            embedder=embedder,
            vector_index=vector_index,
            lexical_index=lexical_index,
            usage_store=usage_store,
            chunker=chunker,
            weights=overrides.pop("weights", None) or RankingWeights(**config.ranking_weights),
            flush_interval=overrides.pop("flush_interval", config.USAGE_FLUSH_INTERVAL_SECONDS),
            workers=overrides.pop("workers", config.INGESTION_WORKERS),
            health_checks=health_checks,
        )
        logger.info(
            "ragcore_created",
            storage_backend=config.STORAGE_BACKEND,
            usage_backend=config.USAGE_BACKEND,
            embedding_model=embedder.model_name,
            dimension=embedder.dimensions,
            vector_index=type(vector_index).__name__,
        )
        return core

    # ----------------------------------------
    # Lifecycle
    # ----------------------------------------

    async def start(self) -> None:
        """Start the periodic usage flush and the ingestion workers."""
        if self._started:
            return
        await self.tracker.start()
        await self.workers.start()
        self._started = True

    async def shutdown(self) -> None:
        """Stop workers, flush usage counters and release resources."""
        await self.workers.stop()
        await self.tracker.stop()
        await self.tracker.store.close()
        await self.embedder.shutdown()
        await self.catalog.close()
        self._started = False
        logger.info("ragcore_shutdown")

    # ----------------------------------------
    # Operations
    # ----------------------------------------

    async def ingest(
        self,
        document_id: str,
        content_unit_id: str,
        text: str,
        content_type: Union[ContentType, str] = ContentType.TEXT,
        **kwargs: Any,
    ) -> IngestResult:
        return await self.pipeline.ingest(document_id, content_unit_id, text, ContentType(content_type), **kwargs)

    def enqueue(
        self,
        document_id: str,
        content_unit_id: str,
        text: str,
        content_type: Union[ContentType, str] = ContentType.TEXT,
        **kwargs: Any,
    ) -> IngestionTask:
        """Queue ingestion on the worker pool (see start())."""
        return self.workers.enqueue(IngestionTask(
            document_id=document_id,
            content_unit_id=content_unit_id,
            text=text,
            content_type=ContentType(content_type),
            **kwargs,
        ))

    async def retry_failed(self, content_unit_id: str) -> IngestResult:
        return await self.pipeline.retry_failed(content_unit_id)

    async def delete_document(self, document_id: str) -> int:
        return await self.pipeline.delete_document(document_id)

    async def search(
        self,
        query: str,
        k: Optional[int] = None,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> SearchResponse:
        return await self.orchestrator.search(query, k=k, filters=filters)

    async def record_feedback(self, chunk_id: str, signal: Union[FeedbackSignal, str, int]) -> int:
        return await self.orchestrator.record_feedback(chunk_id, signal)

    async def find_similar_queries(self, query: str, limit: int = 5, min_similarity: Optional[float] = None) -> List[SimilarQuery]:
        return await self.orchestrator.find_similar_queries(query, limit=limit, min_similarity=min_similarity)

    async def build_context(self, results: Sequence[ScoredChunk], max_tokens: Optional[int] = None) -> str:
        return await self.orchestrator.build_context(results, max_tokens=max_tokens)

    async def health(self) -> Dict[str, bool]:
        """Index health plus any backend checks (the database for postgres)."""
        status = {
            "vector_index": await self.vector_index.health_check(),
            "lexical_index": await self.lexical_index.health_check(),
        }
        for name, check in self.health_checks.items():
            status[name] = await check()
        return status


# ========================================
# Global Instance
# ========================================

_rag_core: Optional[RagCore] = None


async def get_rag_core() -> RagCore:
    """Get or create the process-wide RagCore (started on first use)."""
    global _rag_core
    if _rag_core is None:
        _rag_core = await RagCore.create()
        await _rag_core.start()
    return _rag_core


async def shutdown_rag_core() -> None:
    """Shut down the process-wide RagCore and its pooled connections."""
    from ragcore.db.redis import close_redis
    from ragcore.db.session import close_db

    global _rag_core
    if _rag_core is not None:
        await _rag_core.shutdown()
        _rag_core = None
    await close_redis()
    await close_db()
