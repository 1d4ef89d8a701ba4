"""
Celery tasks for background processing.
"""

from ragcore.tasks.ingestion_tasks import (
    delete_document,
    ingest_content_unit,
    retry_failed_documents,
)

__all__ = [
    "ingest_content_unit",
    "retry_failed_documents",
    "delete_document",
]
