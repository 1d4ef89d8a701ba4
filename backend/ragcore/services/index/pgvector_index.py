"""
PostgreSQL vector index.

Uses the ``embeddings.vector`` column (pgvector, HNSW) as the index, so
vectors written by the catalog are searchable without a second copy.
Filters are evaluated against the joined ``chunks`` row.
"""

from typing import Any, Iterable, List, Mapping, Optional, Sequence

import numpy as np
from sqlalchemy import delete, func, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ragcore.core.config import settings
from ragcore.core.exceptions import IndexUnavailableError
from ragcore.core.logging import get_logger
from ragcore.models.catalog import ChunkRecord, EmbeddingRecordRow
from ragcore.services.index.filters import sql_filter_clauses
from ragcore.services.index.vector_index import DistanceMetric, VectorCandidate, VectorIndex, VectorItem


logger = get_logger(__name__)


class PgVectorIndex(VectorIndex):
    """
    Vector index over the embeddings table.

    Rows are created by ``SqlCatalog.save_embeddings``; ``upsert`` only
    replaces the vector of an existing row.

    Usage:
    ------
    index = PgVectorIndex(get_session_factory())
    hits = await index.query(query_vector, k=20, filters={"document_id": "doc-1"})
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dimension: Optional[int] = None,
        metric: Optional[str] = None,
        ef_search: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.dimension = dimension or settings.EMBEDDING_DIMENSION
        self.metric = DistanceMetric(metric or settings.VECTOR_METRIC)
        self.ef_search = ef_search

    def _distance(self, vector: List[float]):
        column = EmbeddingRecordRow.vector
        if self.metric is DistanceMetric.COSINE:
            return column.cosine_distance(vector)
        if self.metric is DistanceMetric.L2:
            return column.l2_distance(vector)
        # pgvector's <#> is the negative inner product
        return column.max_inner_product(vector)

    def _prepare(self, vector: Sequence[float]) -> List[float]:
        arr = np.asarray(vector, dtype=np.float32)
        self._check_dimension(arr)
        return arr.tolist()

    async def upsert(self, chunk_id: str, vector: Sequence[float], metadata: Optional[Mapping[str, Any]] = None) -> None:
        await self.upsert_many([(chunk_id, vector, metadata)])

    async def upsert_many(self, items: Iterable[VectorItem]) -> int:
        prepared = [(chunk_id, self._prepare(vector)) for chunk_id, vector, _ in items]
        if not prepared:
            return 0
        written = 0
        try:
            async with self.session_factory() as session:
                for chunk_id, vector in prepared:
                    result = await session.execute(
                        update(EmbeddingRecordRow)
                        .where(EmbeddingRecordRow.chunk_id == chunk_id)
                        .values(vector=vector)
                    )
                    written += result.rowcount
                await session.commit()
        except SQLAlchemyError as e:
            raise IndexUnavailableError(f"Vector upsert failed: {e}", details={"backend": "pgvector"}) from e
        if written < len(prepared):
            logger.warning("pgvector_upsert_missing_rows", requested=len(prepared), written=written)
        return written

    async def query(
        self,
        vector: Sequence[float],
        k: int,
        filters: Optional[Mapping[str, Any]] = None,
        **params: Any,
    ) -> List[VectorCandidate]:
        query_vector = self._prepare(vector)
        if k <= 0:
            return []

        distance = self._distance(query_vector).label("distance")
        stmt = (
            select(
                EmbeddingRecordRow.chunk_id,
                distance,
                ChunkRecord.document_id,
                ChunkRecord.content_unit_id,
                ChunkRecord.content_type,
                ChunkRecord.chunk_metadata,
            )
            .join(ChunkRecord, ChunkRecord.chunk_id == EmbeddingRecordRow.chunk_id)
            .where(*sql_filter_clauses(filters))
            .order_by(distance, EmbeddingRecordRow.chunk_id)
            .limit(k)
        )

        ef_search = params.get("ef_search", self.ef_search)
        try:
            async with self.session_factory() as session:
                if ef_search:
                    # Transaction-local, so pooled connections keep their defaults
                    await session.execute(text(f"SET LOCAL hnsw.ef_search = {int(ef_search)}"))
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as e:
            raise IndexUnavailableError(f"Vector query failed: {e}", details={"backend": "pgvector"}) from e

        return [
            VectorCandidate(
                chunk_id=row.chunk_id,
                distance=float(row.distance),
                similarity=self.metric.to_similarity(float(row.distance)),
                metadata={
                    **(row.chunk_metadata or {}),
                    "document_id": row.document_id,
                    "content_unit_id": row.content_unit_id,
                    "content_type": row.content_type,
                },
            )
            for row in rows
        ]

    async def delete(self, chunk_id: str) -> bool:
        return await self.delete_many([chunk_id]) > 0

    async def delete_many(self, chunk_ids: Iterable[str]) -> int:
        ids = list(chunk_ids)
        if not ids:
            return 0
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    delete(EmbeddingRecordRow).where(EmbeddingRecordRow.chunk_id.in_(ids))
                )
                await session.commit()
                return result.rowcount
        except SQLAlchemyError as e:
            raise IndexUnavailableError(f"Vector delete failed: {e}", details={"backend": "pgvector"}) from e

    async def count(self) -> int:
        async with self.session_factory() as session:
            return int((await session.execute(select(func.count()).select_from(EmbeddingRecordRow))).scalar_one())

    async def health_check(self) -> bool:
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error("pgvector_health_check_failed", error=str(e))
            return False
