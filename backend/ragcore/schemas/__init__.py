"""
Pydantic schemas shared across the retrieval core.

Import all schemas here for easy access.
"""

from ragcore.schemas.content import (
    AudioPayload,
    Chunk,
    ChunkSpan,
    ContentType,
    ContentUnit,
    Document,
    EmbeddingRecord,
    ImagePayload,
    IngestResult,
    ProcessingStatus,
    TextPayload,
    UsageStats,
)
from ragcore.schemas.retrieval import (
    FeedbackSignal,
    QueryState,
    RetrievalEvent,
    ScoredChunk,
    SearchResponse,
    SearchStatus,
    SimilarQuery,
)

__all__ = [
    # Content
    "ContentType",
    "ProcessingStatus",
    "TextPayload",
    "ImagePayload",
    "AudioPayload",
    "Document",
    "ContentUnit",
    "ChunkSpan",
    "Chunk",
    "EmbeddingRecord",
    "UsageStats",
    "IngestResult",
    # Retrieval
    "SearchStatus",
    "QueryState",
    "FeedbackSignal",
    "ScoredChunk",
    "SearchResponse",
    "RetrievalEvent",
    "SimilarQuery",
]
