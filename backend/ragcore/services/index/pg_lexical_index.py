"""
PostgreSQL lexical index.

Keyword search over ``chunks.text_search_vector`` (a generated tsvector
column with a GIN index), ranked with ts_rank. Terms are OR-ed so a chunk
matching only some query words still scores.
"""

from typing import Any, Iterable, List, Mapping, Optional

from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ragcore.core.config import settings
from ragcore.core.exceptions import IndexUnavailableError
from ragcore.core.logging import get_logger
from ragcore.models.catalog import ChunkRecord
from ragcore.services.index.filters import sql_filter_clauses
from ragcore.services.index.lexical_index import LexicalCandidate, LexicalIndex, LexicalItem
from ragcore.services.processors.text_search import prepare_search_query


logger = get_logger(__name__)


class PgLexicalIndex(LexicalIndex):
    """
    Lexical index backed by PostgreSQL full-text search.

    The tsvector is maintained by PostgreSQL whenever the catalog writes a
    chunk, so upserts and deletes are no-ops here.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], ts_config: Optional[str] = None):
        self.session_factory = session_factory
        self.ts_config = ts_config or settings.LEXICAL_TS_CONFIG

    async def upsert(self, chunk_id: str, text: str, metadata: Optional[Mapping[str, Any]] = None) -> None:
        return None

    async def upsert_many(self, items: Iterable[LexicalItem]) -> int:
        return len(list(items))

    async def delete(self, chunk_id: str) -> bool:
        # Chunk rows (and their tsvector) are removed by the catalog
        return False

    async def query(
        self,
        text_query: str,
        k: int,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> List[LexicalCandidate]:
        search_query = prepare_search_query(text_query, use_prefix_matching=True, default_operator="|")
        if not search_query or k <= 0:
            return []

        tsquery = func.to_tsquery(self.ts_config, search_query)
        rank = func.ts_rank(ChunkRecord.text_search_vector, tsquery).label("rank_score")
        stmt = (
            select(
                ChunkRecord.chunk_id,
                rank,
                ChunkRecord.document_id,
                ChunkRecord.content_unit_id,
                ChunkRecord.content_type,
                ChunkRecord.chunk_metadata,
            )
            .where(ChunkRecord.text_search_vector.op("@@")(tsquery))
            .where(*sql_filter_clauses(filters))
            .order_by(rank.desc(), ChunkRecord.chunk_id)
            .limit(k)
        )

        try:
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as e:
            raise IndexUnavailableError(f"Keyword query failed: {e}", details={"backend": "postgres_fts"}) from e

        return [
            LexicalCandidate(
                chunk_id=row.chunk_id,
                score=float(row.rank_score),
                metadata={
                    **(row.chunk_metadata or {}),
                    "document_id": row.document_id,
                    "content_unit_id": row.content_unit_id,
                    "content_type": row.content_type,
                },
            )
            for row in rows
        ]

    async def count(self) -> int:
        async with self.session_factory() as session:
            return int((await session.execute(
                select(func.count()).select_from(ChunkRecord).where(ChunkRecord.text_search_vector.is_not(None))
            )).scalar_one())

    async def health_check(self) -> bool:
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error("pg_lexical_health_check_failed", error=str(e))
            return False
