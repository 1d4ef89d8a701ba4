"""
Catalog Models

SQLAlchemy ORM models for the persisted retrieval catalog.

Tables:
-------
- documents: Logical source items (status, metadata, last_modified)
- content_units: One typed payload per row, immutable text + content hash
- chunks: Contiguous spans of a unit's text, keyed by (content_unit_id, chunk_index)
- embeddings: One vector per chunk plus usage counters
- retrieval_events: Append-only log of served queries

Deletion cascades document -> content units -> chunks -> embeddings, both
through foreign keys (ON DELETE CASCADE) and ORM relationships.

Hybrid Search Support:
----------------------
1. Semantic search: ``embeddings.vector`` (pgvector) with an HNSW index
2. Keyword search: ``chunks.text_search_vector`` (generated tsvector) with a
   GIN index, ranked with ts_rank
"""

from datetime import datetime
from typing import Any, Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    Computed,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB, TSVECTOR
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ragcore.core.config import settings
from ragcore.db.base import Base, String20, String64, String255, TimestampMixin, utcnow


class DocumentRecord(Base, TimestampMixin):
    """A document and its processing status."""

    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String255, primary_key=True)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        String20,
        nullable=False,
        default="pending",
        index=True,
        comment="Processing status: pending, processing, processed, failed"
    )

    # "metadata" is reserved on declarative classes
    doc_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
    )

    last_modified: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        comment="Source modification time, used for change detection"
    )

    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    content_units: Mapped[list["ContentUnitRecord"]] = relationship(
        "ContentUnitRecord",
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"DocumentRecord(id={self.id!r}, status={self.status!r})"


class ContentUnitRecord(Base, TimestampMixin):
    """One typed payload of a document. Text never changes once stored."""

    __tablename__ = "content_units"

    id: Mapped[str] = mapped_column(String255, primary_key=True)

    document_id: Mapped[str] = mapped_column(
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    content_type: Mapped[str] = mapped_column(String20, nullable=False, default="text")
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String64, nullable=False)
    embedding_model: Mapped[Optional[str]] = mapped_column(String255, nullable=True)

    status: Mapped[str] = mapped_column(String20, nullable=False, default="pending", index=True)
    chunk_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_chunk_indices: Mapped[list[int]] = mapped_column(JSONB, nullable=False, default=list)

    document: Mapped["DocumentRecord"] = relationship("DocumentRecord", back_populates="content_units")
    chunks: Mapped[list["ChunkRecord"]] = relationship(
        "ChunkRecord",
        back_populates="content_unit",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ChunkRecord.chunk_index",
    )

    def __repr__(self) -> str:
        return f"ContentUnitRecord(id={self.id!r}, document_id={self.document_id!r})"


class ChunkRecord(Base, TimestampMixin):
    """A chunk of a content unit's text."""

    __tablename__ = "chunks"

    chunk_id: Mapped[str] = mapped_column(String255, primary_key=True)

    content_unit_id: Mapped[str] = mapped_column(
        ForeignKey("content_units.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    document_id: Mapped[str] = mapped_column(
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    char_start: Mapped[int] = mapped_column(Integer, nullable=False)
    char_end: Mapped[int] = mapped_column(Integer, nullable=False)
    token_start: Mapped[int] = mapped_column(Integer, nullable=False)
    token_end: Mapped[int] = mapped_column(Integer, nullable=False)
    content_type: Mapped[str] = mapped_column(String20, nullable=False, default="text")

    chunk_metadata: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)

    # Maintained by PostgreSQL from ``text``
    text_search_vector = mapped_column(
        TSVECTOR,
        Computed(f"to_tsvector('{settings.LEXICAL_TS_CONFIG}', text)", persisted=True),
        nullable=True,
    )

    content_unit: Mapped["ContentUnitRecord"] = relationship("ContentUnitRecord", back_populates="chunks")
    embedding: Mapped[Optional["EmbeddingRecordRow"]] = relationship(
        "EmbeddingRecordRow",
        back_populates="chunk",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint("content_unit_id", "chunk_index", name="uq_content_unit_chunk_index"),
        Index("ix_chunks_text_search_vector", "text_search_vector", postgresql_using="gin"),
    )

    def __repr__(self) -> str:
        preview = self.text[:50] + "..." if self.text else ""
        return f"ChunkRecord(chunk_id={self.chunk_id!r}, text='{preview}')"


class EmbeddingRecordRow(Base, TimestampMixin):
    """Vector for exactly one chunk, plus usage counters used by ranking."""

    __tablename__ = "embeddings"

    chunk_id: Mapped[str] = mapped_column(
        ForeignKey("chunks.chunk_id", ondelete="CASCADE"),
        primary_key=True,
    )

    vector = mapped_column(
        Vector(settings.EMBEDDING_DIMENSION),
        nullable=False,
        comment="Embedding vector for semantic search"
    )
    model: Mapped[str] = mapped_column(String255, nullable=False)
    dimension: Mapped[int] = mapped_column(Integer, nullable=False)

    # Monotonic counters; only ever incremented with atomic UPDATEs
    usage_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    chunk: Mapped["ChunkRecord"] = relationship("ChunkRecord", back_populates="embedding")

    __table_args__ = (
        Index(
            "ix_embeddings_vector_hnsw",
            "vector",
            postgresql_using="hnsw",
            postgresql_with={"m": 16, "ef_construction": 64},
            postgresql_ops={"vector": "vector_cosine_ops"},
        ),
    )


class RetrievalEventRecord(Base):
    """Append-only record of one served query. Never updated."""

    __tablename__ = "retrieval_events"

    id: Mapped[str] = mapped_column(String64, primary_key=True)
    query: Mapped[str] = mapped_column(Text, nullable=False)
    query_vector = mapped_column(Vector(settings.EMBEDDING_DIMENSION), nullable=True)
    k: Mapped[int] = mapped_column(Integer, nullable=False)
    filters: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    chunk_ids: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list)
    scores: Mapped[list[dict[str, float]]] = mapped_column(JSONB, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String20, nullable=False)
    degraded_sources: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list)
    timings_ms: Mapped[dict[str, float]] = mapped_column(JSONB, nullable=False, default=dict)
    total_ms: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        index=True,
    )
