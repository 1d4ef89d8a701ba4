"""
Pydantic schemas for the content catalog.

Documents own Content Units; each unit holds one typed payload (text, an
image description or an audio transcript) and is split into Chunks. Each
Chunk carries exactly one EmbeddingRecord.
"""

import enum
import hashlib
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def content_hash(text: str) -> str:
    """SHA-256 of the unit text, used to detect resubmission with different text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def make_chunk_id(content_unit_id: str, chunk_index: int) -> str:
    """Stable chunk identifier: ``{content_unit_id}:{chunk_index}``."""
    return f"{content_unit_id}:{chunk_index}"


# ========================================
# Enums
# ========================================

class ContentType(str, enum.Enum):
    """Kind of payload a content unit holds."""

    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"


class ProcessingStatus(str, enum.Enum):
    """
    Lifecycle of a Document / Content Unit.

    pending -> processing -> processed | failed
    """

    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


# ========================================
# Type-specific payloads
# ========================================

class TextPayload(BaseModel):
    """Plain text content."""

    kind: Literal["text"] = "text"
    language: Optional[str] = None


class ImagePayload(BaseModel):
    """Image content. The indexed text is a description/caption derived upstream."""

    kind: Literal["image"] = "image"
    width: Optional[int] = None
    height: Optional[int] = None
    caption_source: Optional[str] = Field(default=None, description="Captioning model or 'manual'")


class AudioPayload(BaseModel):
    """Audio content. The indexed text is a transcript derived upstream."""

    kind: Literal["audio"] = "audio"
    duration_seconds: Optional[float] = None
    language: Optional[str] = None
    transcript_source: Optional[str] = Field(default=None, description="ASR model or 'manual'")


ContentPayload = Annotated[
    Union[TextPayload, ImagePayload, AudioPayload],
    Field(discriminator="kind"),
]

_PAYLOAD_BY_TYPE = {
    ContentType.TEXT: TextPayload,
    ContentType.IMAGE: ImagePayload,
    ContentType.AUDIO: AudioPayload,
}


def default_payload(content_type: ContentType) -> BaseModel:
    """Empty payload matching ``content_type``."""
    return _PAYLOAD_BY_TYPE[ContentType(content_type)]()


# ========================================
# Catalog entities
# ========================================

class Document(BaseModel):
    """A logical source item owning one or more content units."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Document ID")
    title: Optional[str] = Field(default=None, description="Human readable title")
    status: ProcessingStatus = Field(default=ProcessingStatus.PENDING)
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Free-form metadata")
    last_modified: datetime = Field(default_factory=utcnow, description="Used for change detection")
    error: Optional[str] = None


class ContentUnit(BaseModel):
    """One typed payload of a document. Immutable once its text is stored."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Content unit ID")
    document_id: str
    content_type: ContentType = ContentType.TEXT
    payload: ContentPayload = Field(default_factory=TextPayload)
    text: str = Field(description="Text (or derived text) that gets chunked")
    content_hash: str
    embedding_model: Optional[str] = None
    status: ProcessingStatus = ProcessingStatus.PENDING
    chunk_count: int = 0
    failed_chunk_indices: List[int] = Field(default_factory=list)


class ChunkSpan(BaseModel):
    """
    Chunker output: a contiguous span of the source text.

    Token offsets are measured in the token estimator's units.
    """

    index: int
    text: str
    char_start: int
    char_end: int
    token_start: int
    token_end: int

    @property
    def token_count(self) -> int:
        return self.token_end - self.token_start


class Chunk(BaseModel):
    """A stored chunk, the unit of embedding and retrieval."""

    model_config = ConfigDict(from_attributes=True)

    chunk_id: str
    document_id: str
    content_unit_id: str
    chunk_index: int
    text: str
    char_start: int
    char_end: int
    token_start: int
    token_end: int
    content_type: ContentType = ContentType.TEXT
    metadata: Dict[str, Any] = Field(default_factory=dict)


class EmbeddingRecord(BaseModel):
    """Vector for exactly one chunk, plus its usage counters."""

    model_config = ConfigDict(from_attributes=True)

    chunk_id: str
    vector: List[float]
    model: str
    dimension: int
    usage_count: int = 0
    last_used_at: Optional[datetime] = None


class UsageStats(BaseModel):
    """Usage counters for one chunk as seen by the ranking engine."""

    chunk_id: str
    usage_count: int = 0
    last_used_at: Optional[datetime] = None


class IngestResult(BaseModel):
    """Outcome of ingesting one content unit."""

    document_id: str
    content_unit_id: str
    chunk_count: int = 0
    embedded_count: int = 0
    failed_chunk_indices: List[int] = Field(default_factory=list)
    error: Optional[str] = None
    skipped: bool = Field(default=False, description="True when identical content was already ingested")

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failed_chunk_indices
