"""
Database Models

Import models from this module to ensure they're registered with SQLAlchemy:

    from ragcore.models import DocumentRecord, ChunkRecord
"""

from ragcore.models.catalog import (
    ChunkRecord,
    ContentUnitRecord,
    DocumentRecord,
    EmbeddingRecordRow,
    RetrievalEventRecord,
)

__all__ = [
    "DocumentRecord",
    "ContentUnitRecord",
    "ChunkRecord",
    "EmbeddingRecordRow",
    "RetrievalEventRecord",
]
