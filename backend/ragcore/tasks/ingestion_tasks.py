"""
Celery tasks for ingestion.

This module contains background tasks for:
- Ingesting a content unit (chunk, embed, index)
- Retrying units whose chunks failed to embed
- Deleting a document with all of its index entries

Each task builds a RagCore from settings for the duration of the run and
shuts it down afterwards, so buffered usage counters are flushed and
pooled connections are released before the event loop closes.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from celery import Task

from ragcore.core.exceptions import (
    AuthenticationFailedError,
    ConfigurationError,
    ContentUnitImmutableError,
    DimensionMismatchError,
)
from ragcore.core.logging import get_logger
from ragcore.schemas.content import ContentType, ProcessingStatus
from ragcore.services.factory import RagCore
from ragcore.workers.celery_app import celery_app

logger = get_logger(__name__)

# Retrying these cannot change the outcome
NON_RETRYABLE_ERRORS = (
    ContentUnitImmutableError,
    AuthenticationFailedError,
    DimensionMismatchError,
    ConfigurationError,
)


# ========================================
# Async Helper
# ========================================

def run_async(coro):
    """
    Run async coroutine, handling both event loop and no event loop scenarios.

    This helper allows tasks to work in both:
    - Production (Celery worker with no event loop) - uses asyncio.run()
    - Tests (pytest with existing event loop) - runs in thread pool
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        # No event loop running - we're in a Celery worker
        return asyncio.run(coro)
    else:
        # Event loop is running - run in a new thread to avoid "loop already running"
        import concurrent.futures

        with concurrent.futures.ThreadPoolExecutor() as executor:
            future = executor.submit(asyncio.run, coro)
            return future.result()


@asynccontextmanager
async def rag_core_session() -> AsyncIterator[RagCore]:
    """RagCore for one task run; connections never outlive the run's event loop."""
    from ragcore.db.redis import close_redis
    from ragcore.db.session import close_db

    core = await RagCore.create()
    try:
        yield core
    finally:
        await core.shutdown()
        await close_redis()
        await close_db()


# ========================================
# Base Task Class
# ========================================

class IngestionTaskBase(Task):
    """
    Base task for ingestion with retry logic.
    """
    autoretry_for = (Exception,)
    retry_kwargs = {'max_retries': 3}
    retry_backoff = True
    retry_backoff_max = 600  # 10 minutes
    retry_jitter = True

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger.error("ingestion_task_failed", task=self.name, task_id=task_id, error=str(exc))


# ========================================
# Tasks
# ========================================

@celery_app.task(
    base=IngestionTaskBase,
    name='ingestion.ingest_content_unit',
    bind=True,
    max_retries=3
)
def ingest_content_unit(
    self,
    document_id: str,
    content_unit_id: str,
    text: str,
    content_type: str = ContentType.TEXT.value,
    payload: Optional[Dict[str, Any]] = None,
    title: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> dict:
    """
    Chunk, embed and index one content unit.

    Raises on transient failures (and when chunks failed to embed) so that
    Celery retries with backoff; a retry only re-embeds the failed chunks.

    Returns:
        Dictionary with the IngestResult fields plus ``success``
    """
    async def _ingest():
        start_time = time.time()
        async with rag_core_session() as core:
            try:
                result = await core.ingest(
                    document_id,
                    content_unit_id,
                    text,
                    content_type,
                    payload=payload,
                    title=title,
                    metadata=metadata,
                )
            except NON_RETRYABLE_ERRORS as e:
                logger.error("ingest_task_rejected", content_unit_id=content_unit_id, **e.to_dict())
                return {
                    'success': False,
                    'document_id': document_id,
                    'content_unit_id': content_unit_id,
                    'error': e.message,
                    'error_code': e.code,
                }

        if result.failed_chunk_indices:
            raise RuntimeError(f"{content_unit_id}: {result.error}")

        return {
            'success': True,
            **result.model_dump(),
            'processing_time_seconds': round(time.time() - start_time, 2),
        }

    return run_async(_ingest())


@celery_app.task(
    base=IngestionTaskBase,
    name='ingestion.retry_failed_documents',
    bind=True,
    max_retries=2
)
def retry_failed_documents(self, limit: int = 50) -> dict:
    """
    Re-embed the failed chunks of failed content units.

    Args:
        limit: Maximum number of content units to retry per run

    Returns:
        Dictionary with retry counts
    """
    async def _retry():
        retried = 0
        recovered = 0
        still_failed = []

        async with rag_core_session() as core:
            documents = await core.catalog.list_documents(status=ProcessingStatus.FAILED)
            for document in documents:
                for unit in await core.catalog.list_content_units(document.id):
                    if unit.status != ProcessingStatus.FAILED or retried >= limit:
                        continue
                    retried += 1
                    try:
                        result = await core.retry_failed(unit.id)
                    except NON_RETRYABLE_ERRORS as e:
                        logger.error("retry_failed_unit_rejected", content_unit_id=unit.id, **e.to_dict())
                        still_failed.append(unit.id)
                        continue
                    if result.ok:
                        recovered += 1
                    else:
                        still_failed.append(unit.id)

        logger.info(
            "retry_failed_documents_completed",
            retried=retried,
            recovered=recovered,
            still_failed=len(still_failed),
        )
        return {
            'success': True,
            'units_retried': retried,
            'units_recovered': recovered,
            'still_failed': still_failed,
        }

    return run_async(_retry())


@celery_app.task(
    base=IngestionTaskBase,
    name='ingestion.delete_document',
    bind=True,
    max_retries=3
)
def delete_document(self, document_id: str) -> dict:
    """
    Delete a document, its chunks, embeddings and index entries.

    Returns:
        Dictionary with the number of chunks removed
    """
    async def _delete():
        async with rag_core_session() as core:
            removed = await core.delete_document(document_id)
        return {
            'success': True,
            'document_id': document_id,
            'chunks_removed': removed,
        }

    return run_async(_delete())
