"""
Tests for ingestion Celery tasks.

This module tests:
- Ingesting a content unit through the task
- Rejection of non-retryable errors
- Retry of partially failed units (task raises, periodic retry recovers)
- Document deletion
- Beat schedule and routing

Tasks are called directly (synchronously). RagCore.create is patched to
return a core over shared in-memory stores so state survives across runs.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from ragcore.schemas.content import ProcessingStatus
from ragcore.services.factory import RagCore
from ragcore.services.processors.embedder import EmbeddingClient
from ragcore.tasks.ingestion_tasks import (
    delete_document,
    ingest_content_unit,
    retry_failed_documents,
)
from ragcore.workers.celery_app import celery_app


TEXT = "The cat sat on the mat. A POISON sentence sits here in the middle. The dog ran home."


# ========================================
# Fixtures
# ========================================

@pytest.fixture
def provider_box(scripted_provider_factory):
    """Holds the provider the next RagCore is built with; tests swap it."""
    return {"provider": scripted_provider_factory()}


@pytest.fixture
def patched_core(provider_box, catalog, vector_index, lexical_index, chunker, sleep_recorder):
    def build():
        return RagCore(
            catalog=catalog,
            embedder=EmbeddingClient(provider_box["provider"], sleep=sleep_recorder),
            vector_index=vector_index,
            lexical_index=lexical_index,
            chunker=chunker,
            flush_interval=0,
            workers=1,
        )

    with patch("ragcore.tasks.ingestion_tasks.RagCore.create", new=AsyncMock(side_effect=build)) as mock_create, \
         patch("ragcore.db.redis.close_redis", new=AsyncMock()) as mock_close_redis, \
         patch("ragcore.db.session.close_db", new=AsyncMock()) as mock_close_db:
        yield {
            "create": mock_create,
            "close_redis": mock_close_redis,
            "close_db": mock_close_db,
        }


# ========================================
# ingest_content_unit
# ========================================

def test_ingest_content_unit_success(patched_core, catalog):
    """Test ingesting a unit end to end."""
    result = ingest_content_unit("doc-1", "doc-1:body", "The cat sat on the mat.", title="Cats")

    assert result['success'] is True
    assert result['document_id'] == "doc-1"
    assert result['content_unit_id'] == "doc-1:body"
    assert result['chunk_count'] == 1
    assert result['failed_chunk_indices'] == []
    assert 'processing_time_seconds' in result

    patched_core["create"].assert_awaited_once()
    patched_core["close_db"].assert_awaited_once()
    patched_core["close_redis"].assert_awaited_once()


def test_ingest_content_unit_idempotent(patched_core):
    """Test re-running the task with the same text."""
    ingest_content_unit("doc-1", "doc-1:body", "The cat sat on the mat.")

    result = ingest_content_unit("doc-1", "doc-1:body", "The cat sat on the mat.")

    assert result['success'] is True
    assert result['skipped'] is True


def test_ingest_content_unit_immutable(patched_core):
    """Test that changed text for an existing unit is rejected without retry."""
    ingest_content_unit("doc-1", "doc-1:body", "The cat sat on the mat.")

    result = ingest_content_unit("doc-1", "doc-1:body", "Completely different text.")

    assert result['success'] is False
    assert result['error_code'] == "CONTENT_UNIT_IMMUTABLE"


def test_ingest_content_unit_partial_failure_raises(patched_core, provider_box, scripted_provider_factory, catalog):
    """Test that failed chunks make the task raise so Celery retries it."""
    provider_box["provider"] = scripted_provider_factory(fail_markers=["POISON"])

    with pytest.raises(RuntimeError, match="failed to embed"):
        ingest_content_unit("doc-1", "doc-1:body", TEXT)

    document = asyncio.run(catalog.get_document("doc-1"))
    assert document.status == ProcessingStatus.FAILED
    # The core is still shut down after the failed run
    patched_core["close_db"].assert_awaited_once()


# ========================================
# retry_failed_documents
# ========================================

def test_retry_failed_documents_recovers(patched_core, provider_box, scripted_provider_factory, catalog):
    """Test the periodic retry re-embeds failed chunks once the provider recovers."""
    provider_box["provider"] = scripted_provider_factory(fail_markers=["POISON"])
    with pytest.raises(RuntimeError):
        ingest_content_unit("doc-1", "doc-1:body", TEXT)

    healthy = scripted_provider_factory()
    provider_box["provider"] = healthy
    result = retry_failed_documents()

    assert result['success'] is True
    assert result['units_retried'] == 1
    assert result['units_recovered'] == 1
    assert result['still_failed'] == []
    assert len(healthy.calls) == 1
    assert asyncio.run(catalog.get_document("doc-1")).status == ProcessingStatus.PROCESSED


def test_retry_failed_documents_still_failing(patched_core, provider_box, scripted_provider_factory):
    """Test units that fail again are reported."""
    provider_box["provider"] = scripted_provider_factory(fail_markers=["POISON"])
    with pytest.raises(RuntimeError):
        ingest_content_unit("doc-1", "doc-1:body", TEXT)

    result = retry_failed_documents()

    assert result['units_retried'] == 1
    assert result['units_recovered'] == 0
    assert result['still_failed'] == ["doc-1:body"]


def test_retry_failed_documents_none_found(patched_core):
    """Test the periodic retry with nothing to do."""
    result = retry_failed_documents()

    assert result == {
        'success': True,
        'units_retried': 0,
        'units_recovered': 0,
        'still_failed': [],
    }


def test_retry_failed_documents_respects_limit(patched_core, provider_box, scripted_provider_factory):
    """Test the per-run limit."""
    provider_box["provider"] = scripted_provider_factory(fail_markers=["POISON"])
    for i in range(3):
        with pytest.raises(RuntimeError):
            ingest_content_unit(f"doc-{i}", f"doc-{i}:body", TEXT)

    result = retry_failed_documents(limit=2)

    assert result['units_retried'] == 2


# ========================================
# delete_document
# ========================================

def test_delete_document(patched_core, vector_index, lexical_index):
    """Test deleting a document removes its index entries."""
    ingest_content_unit("doc-1", "doc-1:body", "The cat sat on the mat.")

    result = delete_document("doc-1")

    assert result == {'success': True, 'document_id': "doc-1", 'chunks_removed': 1}
    assert len(vector_index) == 0


def test_delete_unknown_document(patched_core):
    """Test deleting a document that does not exist."""
    assert delete_document("ghost")['chunks_removed'] == 0


# ========================================
# Celery configuration
# ========================================

def test_beat_schedule():
    """Test the periodic retry is scheduled on the ingestion queue."""
    entry = celery_app.conf.beat_schedule['retry-failed-documents']

    assert entry['task'] == 'ingestion.retry_failed_documents'
    assert isinstance(entry['schedule'], timedelta)
    assert entry['options'] == {'queue': 'ingestion'}


def test_tasks_registered():
    """Test task names and routing."""
    assert ingest_content_unit.name == 'ingestion.ingest_content_unit'
    assert 'ingestion.delete_document' in celery_app.tasks
    assert celery_app.conf.task_routes['ingestion.*'] == {'queue': 'ingestion'}
