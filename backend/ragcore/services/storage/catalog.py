"""
Catalog

Persistence interface for documents, content units, chunks, embedding
records and retrieval events, with an in-process implementation.

The core services (ingestion pipeline, ranking engine, usage tracker) only
talk to the Catalog interface; ``SqlCatalog`` (sql_catalog.py) stores the
same data in PostgreSQL.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

import numpy as np
from pydantic import BaseModel

from ragcore.core.exceptions import DocumentNotFoundError
from ragcore.schemas.content import (
    Chunk,
    ContentUnit,
    Document,
    EmbeddingRecord,
    ProcessingStatus,
    UsageStats,
)
from ragcore.schemas.retrieval import RetrievalEvent, SimilarQuery


class UsageDelta(BaseModel):
    """Pending usage increment for one chunk."""

    count: int
    last_used_at: datetime


class Catalog(ABC):
    """Storage interface for the retrieval catalog."""

    # ---- documents ----

    @abstractmethod
    async def get_document(self, document_id: str) -> Optional[Document]: ...

    @abstractmethod
    async def upsert_document(self, document: Document) -> Document:
        """Create the document or update its title/metadata/last_modified."""

    @abstractmethod
    async def set_document_status(
        self, document_id: str, status: ProcessingStatus, error: Optional[str] = None
    ) -> None: ...

    @abstractmethod
    async def list_documents(self, status: Optional[ProcessingStatus] = None) -> List[Document]: ...

    @abstractmethod
    async def delete_document(self, document_id: str) -> List[str]:
        """Delete a document with its units, chunks and embeddings. Returns removed chunk ids."""

    # ---- content units ----

    @abstractmethod
    async def get_content_unit(self, content_unit_id: str) -> Optional[ContentUnit]: ...

    @abstractmethod
    async def save_content_unit(self, unit: ContentUnit) -> ContentUnit:
        """Insert or update a unit's record (status, counters, failed indices)."""

    @abstractmethod
    async def list_content_units(self, document_id: str) -> List[ContentUnit]: ...

    # ---- chunks ----

    @abstractmethod
    async def replace_chunks(self, content_unit_id: str, chunks: Sequence[Chunk]) -> List[str]:
        """Replace a unit's chunk set. Returns the chunk ids that were removed."""

    @abstractmethod
    async def list_chunks(self, content_unit_id: str) -> List[Chunk]: ...

    @abstractmethod
    async def get_chunks(self, chunk_ids: Iterable[str]) -> Dict[str, Chunk]: ...

    # ---- embeddings ----

    @abstractmethod
    async def save_embeddings(self, records: Sequence[EmbeddingRecord]) -> None:
        """Insert or replace embedding vectors; existing usage counters are kept."""

    @abstractmethod
    async def get_embeddings(self, chunk_ids: Iterable[str]) -> Dict[str, EmbeddingRecord]: ...

    @abstractmethod
    async def embedded_chunk_ids(self, chunk_ids: Iterable[str]) -> Set[str]:
        """Subset of ``chunk_ids`` that have an embedding record."""

    # ---- usage ----

    @abstractmethod
    async def apply_usage(self, deltas: Mapping[str, UsageDelta]) -> None:
        """Atomically add counts and advance last_used_at (never backwards)."""

    @abstractmethod
    async def get_usage(self, chunk_ids: Iterable[str]) -> Dict[str, UsageStats]: ...

    # ---- retrieval events ----

    @abstractmethod
    async def append_event(self, event: RetrievalEvent) -> None: ...

    @abstractmethod
    async def list_events(self, limit: int = 100) -> List[RetrievalEvent]:
        """Most recent events first."""

    @abstractmethod
    async def find_similar_events(
        self, vector: Sequence[float], limit: int = 5, min_similarity: float = 0.0
    ) -> List[SimilarQuery]:
        """Past queries ranked by cosine similarity of their query vectors."""

    async def close(self) -> None:
        """Release resources."""


class InMemoryCatalog(Catalog):
    """
    Process-local catalog.

    Every operation runs to completion under a short lock, so concurrent
    coroutines and threads always observe consistent state.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._documents: Dict[str, Document] = {}
        self._units: Dict[str, ContentUnit] = {}
        self._chunks: Dict[str, Chunk] = {}
        self._unit_chunks: Dict[str, List[str]] = {}
        self._embeddings: Dict[str, EmbeddingRecord] = {}
        self._events: List[RetrievalEvent] = []

    # ---- documents ----

    async def get_document(self, document_id: str) -> Optional[Document]:
        with self._lock:
            doc = self._documents.get(document_id)
            return doc.model_copy(deep=True) if doc else None

    async def upsert_document(self, document: Document) -> Document:
        with self._lock:
            existing = self._documents.get(document.id)
            if existing is None:
                stored = document.model_copy(deep=True)
            else:
                stored = existing.model_copy(update={
                    "title": document.title if document.title is not None else existing.title,
                    "metadata": dict(document.metadata) or existing.metadata,
                    "last_modified": document.last_modified,
                })
            self._documents[document.id] = stored
            return stored.model_copy(deep=True)

    async def set_document_status(
        self, document_id: str, status: ProcessingStatus, error: Optional[str] = None
    ) -> None:
        with self._lock:
            doc = self._documents.get(document_id)
            if doc is None:
                raise DocumentNotFoundError(f"Document {document_id} not found")
            self._documents[document_id] = doc.model_copy(update={"status": status, "error": error})

    async def list_documents(self, status: Optional[ProcessingStatus] = None) -> List[Document]:
        with self._lock:
            return [
                d.model_copy(deep=True) for d in self._documents.values()
                if status is None or d.status == status
            ]

    async def delete_document(self, document_id: str) -> List[str]:
        with self._lock:
            if self._documents.pop(document_id, None) is None:
                return []
            removed: List[str] = []
            for unit_id in [u.id for u in self._units.values() if u.document_id == document_id]:
                removed.extend(self._drop_unit_chunks(unit_id))
                del self._units[unit_id]
            return removed

    # ---- content units ----

    async def get_content_unit(self, content_unit_id: str) -> Optional[ContentUnit]:
        with self._lock:
            unit = self._units.get(content_unit_id)
            return unit.model_copy(deep=True) if unit else None

    async def save_content_unit(self, unit: ContentUnit) -> ContentUnit:
        with self._lock:
            if unit.document_id not in self._documents:
                raise DocumentNotFoundError(f"Document {unit.document_id} not found")
            self._units[unit.id] = unit.model_copy(deep=True)
            return unit

    async def list_content_units(self, document_id: str) -> List[ContentUnit]:
        with self._lock:
            return [u.model_copy(deep=True) for u in self._units.values() if u.document_id == document_id]

    # ---- chunks ----

    def _drop_unit_chunks(self, content_unit_id: str) -> List[str]:
        removed = self._unit_chunks.pop(content_unit_id, [])
        for chunk_id in removed:
            self._chunks.pop(chunk_id, None)
            self._embeddings.pop(chunk_id, None)
        return removed

    async def replace_chunks(self, content_unit_id: str, chunks: Sequence[Chunk]) -> List[str]:
        with self._lock:
            removed = self._drop_unit_chunks(content_unit_id)
            ordered = sorted(chunks, key=lambda c: c.chunk_index)
            for chunk in ordered:
                self._chunks[chunk.chunk_id] = chunk.model_copy(deep=True)
            self._unit_chunks[content_unit_id] = [c.chunk_id for c in ordered]
            new_ids = set(self._unit_chunks[content_unit_id])
            return [c for c in removed if c not in new_ids]

    async def list_chunks(self, content_unit_id: str) -> List[Chunk]:
        with self._lock:
            return [self._chunks[c].model_copy() for c in self._unit_chunks.get(content_unit_id, [])]

    async def get_chunks(self, chunk_ids: Iterable[str]) -> Dict[str, Chunk]:
        with self._lock:
            return {c: self._chunks[c].model_copy() for c in chunk_ids if c in self._chunks}

    # ---- embeddings ----

    async def save_embeddings(self, records: Sequence[EmbeddingRecord]) -> None:
        with self._lock:
            for record in records:
                existing = self._embeddings.get(record.chunk_id)
                stored = record.model_copy(deep=True)
                if existing is not None:
                    stored.usage_count = existing.usage_count
                    stored.last_used_at = existing.last_used_at
                self._embeddings[record.chunk_id] = stored

    async def get_embeddings(self, chunk_ids: Iterable[str]) -> Dict[str, EmbeddingRecord]:
        with self._lock:
            return {c: self._embeddings[c].model_copy() for c in chunk_ids if c in self._embeddings}

    async def embedded_chunk_ids(self, chunk_ids: Iterable[str]) -> Set[str]:
        with self._lock:
            return {c for c in chunk_ids if c in self._embeddings}

    # ---- usage ----

    async def apply_usage(self, deltas: Mapping[str, UsageDelta]) -> None:
        with self._lock:
            for chunk_id, delta in deltas.items():
                record = self._embeddings.get(chunk_id)
                if record is None:
                    continue
                record.usage_count += delta.count
                if record.last_used_at is None or delta.last_used_at > record.last_used_at:
                    record.last_used_at = delta.last_used_at

    async def get_usage(self, chunk_ids: Iterable[str]) -> Dict[str, UsageStats]:
        with self._lock:
            return {
                c: UsageStats(
                    chunk_id=c,
                    usage_count=self._embeddings[c].usage_count,
                    last_used_at=self._embeddings[c].last_used_at,
                )
                for c in chunk_ids if c in self._embeddings
            }

    # ---- retrieval events ----

    async def append_event(self, event: RetrievalEvent) -> None:
        with self._lock:
            self._events.append(event.model_copy(deep=True))

    async def list_events(self, limit: int = 100) -> List[RetrievalEvent]:
        with self._lock:
            return [e.model_copy() for e in reversed(self._events[-limit:])]

    async def find_similar_events(
        self, vector: Sequence[float], limit: int = 5, min_similarity: float = 0.0
    ) -> List[SimilarQuery]:
        with self._lock:
            events = [e for e in self._events if e.query_vector]
        if not events:
            return []

        query = np.asarray(vector, dtype=np.float32)
        matrix = np.asarray([e.query_vector for e in events], dtype=np.float32)
        denom = np.linalg.norm(matrix, axis=1) * float(np.linalg.norm(query))
        dots = matrix @ query
        sims = np.divide(dots, denom, out=np.zeros_like(dots), where=denom > 0)

        matches = [
            SimilarQuery(
                event_id=e.id,
                query=e.query,
                similarity=float(s),
                chunk_ids=list(e.chunk_ids),
                created_at=e.created_at,
            )
            for e, s in zip(events, sims) if s >= min_similarity
        ]
        matches.sort(key=lambda m: (-m.similarity, m.event_id))
        return matches[:limit]
