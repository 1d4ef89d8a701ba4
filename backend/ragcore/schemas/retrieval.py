"""
Pydantic schemas for retrieval: scored results, search responses,
retrieval events and feedback.
"""

import enum
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ragcore.schemas.content import ContentType, utcnow


class SearchStatus(str, enum.Enum):
    """ok: both sources answered. degraded: one source failed or timed out."""

    OK = "ok"
    DEGRADED = "degraded"


class QueryState(str, enum.Enum):
    """Stages a query passes through; recorded in the ranking trace."""

    RECEIVED = "received"
    EMBEDDING = "embedding"
    CANDIDATE_FETCH = "candidate_fetch"
    MERGING = "merging"
    SCORING = "scoring"
    REPORTED = "reported"
    DEGRADED = "degraded"


class FeedbackSignal(str, enum.Enum):
    """Explicit usage signals reported by callers."""

    VIEWED = "viewed"
    CLICKED = "clicked"
    HELPFUL = "helpful"

    @property
    def weight(self) -> int:
        return {"viewed": 1, "clicked": 1, "helpful": 3}[self.value]


class ScoredChunk(BaseModel):
    """One ranked result with its sub-scores."""

    chunk_id: str
    document_id: Optional[str] = None
    content_unit_id: Optional[str] = None
    chunk_index: Optional[int] = None
    text: str = ""
    content_type: ContentType = ContentType.TEXT
    similarity: float = Field(default=0.0, description="Normalized vector similarity in [0, 1]")
    lexical: float = Field(default=0.0, description="Normalized lexical score in [0, 1]")
    usage: float = Field(default=0.0, description="log-scaled usage count in [0, 1]")
    recency: float = Field(default=0.0, description="Half-life decay of last use in [0, 1]")
    final_score: float = 0.0
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def sub_scores(self) -> Dict[str, float]:
        return {
            "similarity": self.similarity,
            "lexical": self.lexical,
            "usage": self.usage,
            "recency": self.recency,
            "final": self.final_score,
        }


class SearchResponse(BaseModel):
    """Result of a search call."""

    query: str
    results: List[ScoredChunk] = Field(default_factory=list)
    status: SearchStatus = SearchStatus.OK
    degraded_sources: List[str] = Field(default_factory=list)
    event_id: Optional[str] = None
    timings_ms: Dict[str, float] = Field(default_factory=dict)


class RetrievalEvent(BaseModel):
    """Append-only record of one served query."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    query: str
    query_vector: Optional[List[float]] = None
    k: int
    filters: Optional[Dict[str, Any]] = None
    chunk_ids: List[str] = Field(default_factory=list)
    scores: List[Dict[str, float]] = Field(default_factory=list)
    status: SearchStatus = SearchStatus.OK
    degraded_sources: List[str] = Field(default_factory=list)
    timings_ms: Dict[str, float] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class SimilarQuery(BaseModel):
    """A past query that resembles the current one."""

    event_id: str
    query: str
    similarity: float
    chunk_ids: List[str] = Field(default_factory=list)
    created_at: datetime
