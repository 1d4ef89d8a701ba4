"""
SQL Catalog

PostgreSQL implementation of the Catalog interface using SQLAlchemy async
sessions and the models in ragcore.models.catalog.

Notes:
------
- Usage counters are updated with single atomic statements
  (usage_count = usage_count + :n, last_used_at = GREATEST(...)), so
  concurrent flushes from several workers never lose increments.
- Retrieval events are insert-only.
- Deleting a document relies on ON DELETE CASCADE for units, chunks and
  embeddings.
"""

from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ragcore.core.exceptions import DocumentNotFoundError
from ragcore.core.logging import get_logger
from ragcore.models.catalog import (
    ChunkRecord,
    ContentUnitRecord,
    DocumentRecord,
    EmbeddingRecordRow,
    RetrievalEventRecord,
)
from ragcore.schemas.content import (
    Chunk,
    ContentType,
    ContentUnit,
    Document,
    EmbeddingRecord,
    ProcessingStatus,
    UsageStats,
)
from ragcore.schemas.retrieval import RetrievalEvent, SearchStatus, SimilarQuery
from ragcore.services.storage.catalog import Catalog, UsageDelta


logger = get_logger(__name__)


# ========================================
# Row <-> schema conversion
# ========================================

def _document(row: DocumentRecord) -> Document:
    return Document(
        id=row.id,
        title=row.title,
        status=ProcessingStatus(row.status),
        metadata=dict(row.doc_metadata or {}),
        last_modified=row.last_modified,
        error=row.error,
    )


def _unit(row: ContentUnitRecord) -> ContentUnit:
    return ContentUnit(
        id=row.id,
        document_id=row.document_id,
        content_type=ContentType(row.content_type),
        payload=row.payload or {"kind": row.content_type},
        text=row.text,
        content_hash=row.content_hash,
        embedding_model=row.embedding_model,
        status=ProcessingStatus(row.status),
        chunk_count=row.chunk_count,
        failed_chunk_indices=list(row.failed_chunk_indices or []),
    )


def _chunk(row: ChunkRecord) -> Chunk:
    return Chunk(
        chunk_id=row.chunk_id,
        document_id=row.document_id,
        content_unit_id=row.content_unit_id,
        chunk_index=row.chunk_index,
        text=row.text,
        char_start=row.char_start,
        char_end=row.char_end,
        token_start=row.token_start,
        token_end=row.token_end,
        content_type=ContentType(row.content_type),
        metadata=dict(row.chunk_metadata or {}),
    )


def _embedding(row: EmbeddingRecordRow) -> EmbeddingRecord:
    return EmbeddingRecord(
        chunk_id=row.chunk_id,
        vector=[float(x) for x in row.vector],
        model=row.model,
        dimension=row.dimension,
        usage_count=row.usage_count,
        last_used_at=row.last_used_at,
    )


def _event(row: RetrievalEventRecord) -> RetrievalEvent:
    return RetrievalEvent(
        id=row.id,
        query=row.query,
        query_vector=[float(x) for x in row.query_vector] if row.query_vector is not None else None,
        k=row.k,
        filters=row.filters,
        chunk_ids=list(row.chunk_ids or []),
        scores=list(row.scores or []),
        status=SearchStatus(row.status),
        degraded_sources=list(row.degraded_sources or []),
        timings_ms=dict(row.timings_ms or {}),
        created_at=row.created_at,
    )


class SqlCatalog(Catalog):
    """
    Catalog backed by PostgreSQL.

    Usage:
    ------
    catalog = SqlCatalog(get_session_factory())
    await catalog.upsert_document(Document(id="doc-1", title="Guide"))
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ---- documents ----

    async def get_document(self, document_id: str) -> Optional[Document]:
        async with self.session_factory() as session:
            row = await session.get(DocumentRecord, document_id)
            return _document(row) if row else None

    async def upsert_document(self, document: Document) -> Document:
        table = DocumentRecord.__table__
        stmt = pg_insert(table).values({
            "id": document.id,
            "title": document.title,
            "status": document.status.value,
            "metadata": document.metadata,
            "last_modified": document.last_modified,
        })
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.id],
            set_={
                "title": func.coalesce(stmt.excluded["title"], table.c.title),
                "metadata": stmt.excluded["metadata"],
                "last_modified": stmt.excluded["last_modified"],
                "updated_at": func.now(),
            },
        )
        async with self.session_factory() as session:
            await session.execute(stmt)
            await session.commit()
            row = await session.get(DocumentRecord, document.id, populate_existing=True)
            return _document(row)

    async def set_document_status(
        self, document_id: str, status: ProcessingStatus, error: Optional[str] = None
    ) -> None:
        async with self.session_factory() as session:
            result = await session.execute(
                update(DocumentRecord)
                .where(DocumentRecord.id == document_id)
                .values(status=status.value, error=error)
            )
            if result.rowcount == 0:
                raise DocumentNotFoundError(f"Document {document_id} not found")
            await session.commit()

    async def list_documents(self, status: Optional[ProcessingStatus] = None) -> List[Document]:
        stmt = select(DocumentRecord).order_by(DocumentRecord.id)
        if status is not None:
            stmt = stmt.where(DocumentRecord.status == status.value)
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_document(r) for r in rows]

    async def delete_document(self, document_id: str) -> List[str]:
        async with self.session_factory() as session:
            chunk_ids = (await session.execute(
                select(ChunkRecord.chunk_id).where(ChunkRecord.document_id == document_id)
            )).scalars().all()
            result = await session.execute(delete(DocumentRecord).where(DocumentRecord.id == document_id))
            await session.commit()
            if result.rowcount == 0:
                return []
            return list(chunk_ids)

    # ---- content units ----

    async def get_content_unit(self, content_unit_id: str) -> Optional[ContentUnit]:
        async with self.session_factory() as session:
            row = await session.get(ContentUnitRecord, content_unit_id)
            return _unit(row) if row else None

    async def save_content_unit(self, unit: ContentUnit) -> ContentUnit:
        values = {
            "id": unit.id,
            "document_id": unit.document_id,
            "content_type": unit.content_type.value,
            "payload": unit.payload.model_dump(),
            "text": unit.text,
            "content_hash": unit.content_hash,
            "embedding_model": unit.embedding_model,
            "status": unit.status.value,
            "chunk_count": unit.chunk_count,
            "failed_chunk_indices": list(unit.failed_chunk_indices),
        }
        stmt = pg_insert(ContentUnitRecord).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[ContentUnitRecord.id],
            set_={
                key: stmt.excluded[key]
                for key in ("payload", "embedding_model", "status", "chunk_count", "failed_chunk_indices")
            } | {"updated_at": func.now()},
        )
        async with self.session_factory() as session:
            exists = await session.get(DocumentRecord, unit.document_id)
            if exists is None:
                raise DocumentNotFoundError(f"Document {unit.document_id} not found")
            await session.execute(stmt)
            await session.commit()
        return unit

    async def list_content_units(self, document_id: str) -> List[ContentUnit]:
        async with self.session_factory() as session:
            rows = (await session.execute(
                select(ContentUnitRecord)
                .where(ContentUnitRecord.document_id == document_id)
                .order_by(ContentUnitRecord.id)
            )).scalars().all()
            return [_unit(r) for r in rows]

    # ---- chunks ----

    async def replace_chunks(self, content_unit_id: str, chunks: Sequence[Chunk]) -> List[str]:
        async with self.session_factory() as session:
            old_ids = set((await session.execute(
                select(ChunkRecord.chunk_id).where(ChunkRecord.content_unit_id == content_unit_id)
            )).scalars().all())
            await session.execute(delete(ChunkRecord).where(ChunkRecord.content_unit_id == content_unit_id))
            session.add_all([
                ChunkRecord(
                    chunk_id=c.chunk_id,
                    content_unit_id=c.content_unit_id,
                    document_id=c.document_id,
                    chunk_index=c.chunk_index,
                    text=c.text,
                    char_start=c.char_start,
                    char_end=c.char_end,
                    token_start=c.token_start,
                    token_end=c.token_end,
                    content_type=c.content_type.value,
                    chunk_metadata=c.metadata,
                )
                for c in chunks
            ])
            await session.commit()
        new_ids = {c.chunk_id for c in chunks}
        return sorted(old_ids - new_ids)

    async def list_chunks(self, content_unit_id: str) -> List[Chunk]:
        async with self.session_factory() as session:
            rows = (await session.execute(
                select(ChunkRecord)
                .where(ChunkRecord.content_unit_id == content_unit_id)
                .order_by(ChunkRecord.chunk_index)
            )).scalars().all()
            return [_chunk(r) for r in rows]

    async def get_chunks(self, chunk_ids: Iterable[str]) -> Dict[str, Chunk]:
        ids = list(chunk_ids)
        if not ids:
            return {}
        async with self.session_factory() as session:
            rows = (await session.execute(
                select(ChunkRecord).where(ChunkRecord.chunk_id.in_(ids))
            )).scalars().all()
            return {r.chunk_id: _chunk(r) for r in rows}

    # ---- embeddings ----

    async def save_embeddings(self, records: Sequence[EmbeddingRecord]) -> None:
        if not records:
            return
        stmt = pg_insert(EmbeddingRecordRow).values([
            {
                "chunk_id": r.chunk_id,
                "vector": r.vector,
                "model": r.model,
                "dimension": r.dimension,
                "usage_count": r.usage_count,
                "last_used_at": r.last_used_at,
            }
            for r in records
        ])
        stmt = stmt.on_conflict_do_update(
            index_elements=[EmbeddingRecordRow.chunk_id],
            set_={
                "vector": stmt.excluded.vector,
                "model": stmt.excluded.model,
                "dimension": stmt.excluded.dimension,
                "updated_at": func.now(),
            },
        )
        async with self.session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def get_embeddings(self, chunk_ids: Iterable[str]) -> Dict[str, EmbeddingRecord]:
        ids = list(chunk_ids)
        if not ids:
            return {}
        async with self.session_factory() as session:
            rows = (await session.execute(
                select(EmbeddingRecordRow).where(EmbeddingRecordRow.chunk_id.in_(ids))
            )).scalars().all()
            return {r.chunk_id: _embedding(r) for r in rows}

    async def embedded_chunk_ids(self, chunk_ids: Iterable[str]) -> Set[str]:
        ids = list(chunk_ids)
        if not ids:
            return set()
        async with self.session_factory() as session:
            rows = (await session.execute(
                select(EmbeddingRecordRow.chunk_id).where(EmbeddingRecordRow.chunk_id.in_(ids))
            )).scalars().all()
            return set(rows)

    # ---- usage ----

    async def apply_usage(self, deltas: Mapping[str, UsageDelta]) -> None:
        if not deltas:
            return
        async with self.session_factory() as session:
            # Sorted to take row locks in a consistent order across workers
            for chunk_id in sorted(deltas):
                delta = deltas[chunk_id]
                await session.execute(
                    update(EmbeddingRecordRow)
                    .where(EmbeddingRecordRow.chunk_id == chunk_id)
                    .values(
                        usage_count=EmbeddingRecordRow.usage_count + delta.count,
                        last_used_at=func.greatest(
                            func.coalesce(EmbeddingRecordRow.last_used_at, delta.last_used_at),
                            delta.last_used_at,
                        ),
                    )
                )
            await session.commit()

    async def get_usage(self, chunk_ids: Iterable[str]) -> Dict[str, UsageStats]:
        ids = list(chunk_ids)
        if not ids:
            return {}
        async with self.session_factory() as session:
            rows = (await session.execute(
                select(
                    EmbeddingRecordRow.chunk_id,
                    EmbeddingRecordRow.usage_count,
                    EmbeddingRecordRow.last_used_at,
                ).where(EmbeddingRecordRow.chunk_id.in_(ids))
            )).all()
            return {
                chunk_id: UsageStats(chunk_id=chunk_id, usage_count=count, last_used_at=last_used)
                for chunk_id, count, last_used in rows
            }

    # ---- retrieval events ----

    async def append_event(self, event: RetrievalEvent) -> None:
        async with self.session_factory() as session:
            session.add(RetrievalEventRecord(
                id=event.id,
                query=event.query,
                query_vector=event.query_vector,
                k=event.k,
                filters=event.filters,
                chunk_ids=event.chunk_ids,
                scores=event.scores,
                status=event.status.value,
                degraded_sources=event.degraded_sources,
                timings_ms=event.timings_ms,
                total_ms=event.timings_ms.get("total"),
                created_at=event.created_at,
            ))
            await session.commit()

    async def list_events(self, limit: int = 100) -> List[RetrievalEvent]:
        async with self.session_factory() as session:
            rows = (await session.execute(
                select(RetrievalEventRecord)
                .order_by(RetrievalEventRecord.created_at.desc())
                .limit(limit)
            )).scalars().all()
            return [_event(r) for r in rows]

    async def find_similar_events(
        self, vector: Sequence[float], limit: int = 5, min_similarity: float = 0.0
    ) -> List[SimilarQuery]:
        distance = RetrievalEventRecord.query_vector.cosine_distance(list(vector))
        async with self.session_factory() as session:
            rows = (await session.execute(
                select(RetrievalEventRecord, distance.label("distance"))
                .where(RetrievalEventRecord.query_vector.is_not(None))
                .where(distance <= 1.0 - min_similarity)
                .order_by(distance, RetrievalEventRecord.id)
                .limit(limit)
            )).all()
            return [
                SimilarQuery(
                    event_id=row.id,
                    query=row.query,
                    similarity=1.0 - float(dist),
                    chunk_ids=list(row.chunk_ids or []),
                    created_at=row.created_at,
                )
                for row, dist in rows
            ]
