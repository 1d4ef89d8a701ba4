"""
Ingestion Pipeline

Turns one content unit into searchable chunks:

    text -> ContentChunker -> EmbeddingClient -> catalog (chunks + embeddings)
                                              -> vector index
                                              -> lexical index

Guarantees:
-----------
- Idempotent: re-submitting a unit with the same text is a no-op once it
  is processed with the current embedding model
- Immutable: re-submitting a unit id with different text is rejected
  (ContentUnitImmutableError); new content needs a new unit id
- Failure isolation: chunks that fail to embed are recorded by index on
  the unit, their siblings are indexed, and retry_failed() re-embeds only
  the failed subset
- Only chunks with an embedding are written to either index, so every
  search candidate resolves to a chunk with an embedding record
- A document is ``processed`` only when all its units are; any failed
  unit marks it ``failed``
"""

import time
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ragcore.core.exceptions import (
    AuthenticationFailedError,
    ContentUnitImmutableError,
    DimensionMismatchError,
    IngestionError,
)
from ragcore.core.logging import get_logger
from ragcore.schemas.content import (
    Chunk,
    ContentType,
    ContentUnit,
    Document,
    EmbeddingRecord,
    IngestResult,
    ProcessingStatus,
    content_hash,
    default_payload,
    make_chunk_id,
    utcnow,
)
from ragcore.services.index.lexical_index import LexicalIndex
from ragcore.services.index.vector_index import VectorIndex
from ragcore.services.processors.chunker import ContentChunker
from ragcore.services.processors.embedder import EmbeddingClient
from ragcore.services.rag.usage_tracker import UsageTracker
from ragcore.services.storage.catalog import Catalog


logger = get_logger(__name__)

_FATAL_EMBEDDING_ERRORS = (AuthenticationFailedError, DimensionMismatchError)


def index_metadata(chunk: Chunk) -> Dict[str, Any]:
    """Metadata stored next to a chunk in both indexes (filterable keys)."""
    return {
        **chunk.metadata,
        "document_id": chunk.document_id,
        "content_unit_id": chunk.content_unit_id,
        "content_type": chunk.content_type.value,
        "chunk_index": chunk.chunk_index,
    }


class IngestionPipeline:
    """
    Orchestrates chunking, embedding and indexing for content units.

    Usage:
    ------
    pipeline = IngestionPipeline(chunker, embedder, catalog, vector_index, lexical_index)
    result = await pipeline.ingest("doc-1", "doc-1:body", text, ContentType.TEXT)
    if result.failed_chunk_indices:
        result = await pipeline.retry_failed("doc-1:body")
    """

    def __init__(
        self,
        chunker: ContentChunker,
        embedder: EmbeddingClient,
        catalog: Catalog,
        vector_index: VectorIndex,
        lexical_index: LexicalIndex,
        tracker: Optional[UsageTracker] = None,
    ):
        self.chunker = chunker
        self.embedder = embedder
        self.catalog = catalog
        self.vector_index = vector_index
        self.lexical_index = lexical_index
        self.tracker = tracker

    # ----------------------------------------
    # Ingest
    # ----------------------------------------

    async def ingest(
        self,
        document_id: str,
        content_unit_id: str,
        text: str,
        content_type: ContentType = ContentType.TEXT,
        payload: Optional[Mapping[str, Any]] = None,
        title: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> IngestResult:
        """
        Chunk, embed and index one content unit.

        Args:
            document_id: Owning document (created when missing)
            content_unit_id: Unit identifier, unique across documents
            text: Extracted text (image description / audio transcript for
                non-text content)
            content_type: text, image or audio
            payload: Type-specific payload fields
            title: Document title
            metadata: Document metadata, copied onto every chunk for filtering

        Returns:
            IngestResult with chunk count and failed chunk indices

        Raises:
            ContentUnitImmutableError: The unit exists with different text
            AuthenticationFailedError / DimensionMismatchError: Provider
                misconfiguration (the unit is marked failed first)
        """
        start = time.perf_counter()
        content_type = ContentType(content_type)
        digest = content_hash(text or "")

        existing = await self.catalog.get_content_unit(content_unit_id)
        if existing is not None:
            if existing.content_hash != digest:
                raise ContentUnitImmutableError(
                    f"Content unit {content_unit_id} already exists with different text",
                    details={"content_unit_id": content_unit_id, "document_id": existing.document_id},
                )
            if existing.document_id != document_id:
                raise IngestionError(
                    f"Content unit {content_unit_id} belongs to document {existing.document_id}",
                    details={"content_unit_id": content_unit_id, "document_id": existing.document_id},
                )
            if (
                existing.status == ProcessingStatus.PROCESSED
                and existing.embedding_model == self.embedder.model_name
            ):
                logger.info("content_unit_unchanged", content_unit_id=content_unit_id)
                return IngestResult(
                    document_id=document_id,
                    content_unit_id=content_unit_id,
                    chunk_count=existing.chunk_count,
                    embedded_count=existing.chunk_count,
                    skipped=True,
                )
            if (
                existing.status == ProcessingStatus.FAILED
                and existing.failed_chunk_indices
                and existing.embedding_model == self.embedder.model_name
            ):
                return await self.retry_failed(content_unit_id)

        document = await self.catalog.get_document(document_id)
        await self.catalog.upsert_document(Document(
            id=document_id,
            title=title if title is not None else (document.title if document else None),
            status=document.status if document else ProcessingStatus.PENDING,
            metadata=dict(metadata) if metadata is not None else (document.metadata if document else {}),
            last_modified=utcnow(),
        ))
        await self.catalog.set_document_status(document_id, ProcessingStatus.PROCESSING)

        unit = ContentUnit(
            id=content_unit_id,
            document_id=document_id,
            content_type=content_type,
            payload={**default_payload(content_type).model_dump(), **dict(payload or {}), "kind": content_type.value},
            text=text or "",
            content_hash=digest,
            embedding_model=self.embedder.model_name,
            status=ProcessingStatus.PROCESSING,
        )
        await self.catalog.save_content_unit(unit)

        logger.info(
            "ingestion_started",
            document_id=document_id,
            content_unit_id=content_unit_id,
            content_type=content_type.value,
            chars=len(unit.text),
        )

        # Chunk creation is sequential per unit; indices are dense from 0
        chunk_metadata = dict(metadata) if metadata is not None else (document.metadata if document else {})
        spans = self.chunker.chunk(unit.text)
        chunks = [
            Chunk(
                chunk_id=make_chunk_id(content_unit_id, span.index),
                document_id=document_id,
                content_unit_id=content_unit_id,
                chunk_index=span.index,
                text=span.text,
                char_start=span.char_start,
                char_end=span.char_end,
                token_start=span.token_start,
                token_end=span.token_end,
                content_type=content_type,
                metadata=dict(chunk_metadata),
            )
            for span in spans
        ]

        stale = await self.catalog.replace_chunks(content_unit_id, chunks)
        if stale:
            await self._remove_from_indexes(stale)

        failed = await self._embed_and_index(unit, chunks)
        result = await self._finish_unit(unit, chunks, failed)

        logger.info(
            "ingestion_completed",
            document_id=document_id,
            content_unit_id=content_unit_id,
            chunks=result.chunk_count,
            embedded=result.embedded_count,
            failed_indices=result.failed_chunk_indices,
            duration_ms=round((time.perf_counter() - start) * 1000.0, 3),
        )
        return result

    async def retry_failed(self, content_unit_id: str) -> IngestResult:
        """
        Re-embed only the chunks that failed last time.

        Returns:
            IngestResult for the unit after the retry

        Raises:
            IngestionError: Unknown content unit
        """
        unit = await self.catalog.get_content_unit(content_unit_id)
        if unit is None:
            raise IngestionError(
                f"Content unit {content_unit_id} not found",
                details={"content_unit_id": content_unit_id},
            )

        chunks = await self.catalog.list_chunks(content_unit_id)
        if not unit.failed_chunk_indices:
            return IngestResult(
                document_id=unit.document_id,
                content_unit_id=unit.id,
                chunk_count=len(chunks),
                embedded_count=len(chunks),
                skipped=True,
            )

        if unit.embedding_model != self.embedder.model_name:
            # Vectors of one unit must come from one model
            pending = list(chunks)
        else:
            wanted = set(unit.failed_chunk_indices)
            pending = [c for c in chunks if c.chunk_index in wanted]
        logger.info("ingestion_retry_started", content_unit_id=content_unit_id, chunks=len(pending))

        await self.catalog.set_document_status(unit.document_id, ProcessingStatus.PROCESSING)
        failed = await self._embed_and_index(unit, pending)
        return await self._finish_unit(unit, chunks, failed)

    async def delete_document(self, document_id: str) -> int:
        """
        Delete a document with its units, chunks and embeddings.

        Returns:
            Number of chunks removed
        """
        units = await self.catalog.list_content_units(document_id)
        chunk_ids: List[str] = []
        for unit in units:
            chunk_ids.extend(c.chunk_id for c in await self.catalog.list_chunks(unit.id))

        # Indexes first so queries stop returning the chunks before their rows go
        if chunk_ids:
            await self._remove_from_indexes(chunk_ids)
        removed = await self.catalog.delete_document(document_id)
        leftover = sorted(set(removed) - set(chunk_ids))
        if leftover:
            await self._remove_from_indexes(leftover)

        logger.info("document_deleted", document_id=document_id, chunks=len(set(removed) | set(chunk_ids)))
        return len(set(removed) | set(chunk_ids))

    # ----------------------------------------
    # Internals
    # ----------------------------------------

    async def _embed_and_index(self, unit: ContentUnit, chunks: Sequence[Chunk]) -> List[int]:
        """Embed chunks, persist and index the successes. Returns failed chunk indices."""
        if not chunks:
            return []

        try:
            batch = await self.embedder.embed([c.text for c in chunks])
        except _FATAL_EMBEDDING_ERRORS as e:
            await self._mark_failed(unit, [c.chunk_index for c in chunks], e.message)
            logger.error(
                "ingestion_fatal_embedding_error",
                content_unit_id=unit.id,
                error_code=e.code,
                error=e.message,
            )
            raise

        embedded: List[Chunk] = []
        records: List[EmbeddingRecord] = []
        for position, chunk in enumerate(chunks):
            vector = batch.vectors[position]
            if vector is None:
                continue
            embedded.append(chunk)
            records.append(EmbeddingRecord(
                chunk_id=chunk.chunk_id,
                vector=vector,
                model=batch.model,
                dimension=len(vector),
            ))

        if records:
            await self.catalog.save_embeddings(records)
            vectors = {r.chunk_id: r.vector for r in records}
            await self.vector_index.upsert_many(
                (c.chunk_id, vectors[c.chunk_id], index_metadata(c)) for c in embedded
            )
            await self.lexical_index.upsert_many(
                (c.chunk_id, c.text, index_metadata(c)) for c in embedded
            )

        failed = sorted(chunks[i].chunk_index for i in batch.failures)
        for i, error in sorted(batch.failures.items()):
            logger.warning(
                "chunk_embedding_failed",
                chunk_id=chunks[i].chunk_id,
                error_code=error.code,
                error=error.message,
            )
        return failed

    async def _finish_unit(self, unit: ContentUnit, chunks: Sequence[Chunk], failed: List[int]) -> IngestResult:
        unit = unit.model_copy(update={
            "status": ProcessingStatus.FAILED if failed else ProcessingStatus.PROCESSED,
            "chunk_count": len(chunks),
            "failed_chunk_indices": failed,
            "embedding_model": self.embedder.model_name,
        })
        await self.catalog.save_content_unit(unit)
        await self._refresh_document_status(unit.document_id)
        return IngestResult(
            document_id=unit.document_id,
            content_unit_id=unit.id,
            chunk_count=len(chunks),
            embedded_count=len(chunks) - len(failed),
            failed_chunk_indices=failed,
            error=f"{len(failed)} chunk(s) failed to embed" if failed else None,
        )

    async def _mark_failed(self, unit: ContentUnit, failed: List[int], error: str) -> None:
        chunks = await self.catalog.list_chunks(unit.id)
        previously = set(unit.failed_chunk_indices)
        await self.catalog.save_content_unit(unit.model_copy(update={
            "status": ProcessingStatus.FAILED,
            "chunk_count": len(chunks),
            "failed_chunk_indices": sorted(previously | set(failed)),
        }))
        await self.catalog.set_document_status(unit.document_id, ProcessingStatus.FAILED, error=error)

    async def _refresh_document_status(self, document_id: str) -> None:
        units = await self.catalog.list_content_units(document_id)
        failed_units = sorted(u.id for u in units if u.status == ProcessingStatus.FAILED)
        error = None
        if failed_units:
            status = ProcessingStatus.FAILED
            error = f"Chunks failed to embed in content units: {', '.join(failed_units)}"
        elif units and all(u.status == ProcessingStatus.PROCESSED for u in units):
            status = ProcessingStatus.PROCESSED
        else:
            status = ProcessingStatus.PROCESSING
        await self.catalog.set_document_status(document_id, status, error=error)

    async def _remove_from_indexes(self, chunk_ids: Sequence[str]) -> None:
        await self.vector_index.delete_many(chunk_ids)
        await self.lexical_index.delete_many(chunk_ids)
        if self.tracker is not None:
            await self.tracker.forget(chunk_ids)
