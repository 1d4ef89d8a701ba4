"""
Fixtures for tests against real PostgreSQL (pgvector) and Redis.

Connection settings come from DATABASE_URL and REDIS_URL. Tables are
created with the model metadata and truncated after every test.
"""

import uuid
from typing import AsyncGenerator, List

import pytest
import pytest_asyncio
from redis.asyncio import Redis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ragcore.db.redis import close_redis, init_redis
from ragcore.db.session import close_db, get_session_factory, init_db
from ragcore.schemas.content import (
    Chunk,
    ContentUnit,
    Document,
    EmbeddingRecord,
    content_hash,
    make_chunk_id,
)
from ragcore.services.processors.providers import HashingEmbeddingProvider
from ragcore.services.storage.sql_catalog import SqlCatalog


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    await init_db(create_tables=True)
    factory = get_session_factory()
    yield factory
    async with factory() as session:
        await session.execute(text(
            "TRUNCATE documents, content_units, chunks, embeddings, retrieval_events CASCADE"
        ))
        await session.commit()
    await close_db()


@pytest_asyncio.fixture
async def sql_catalog(session_factory) -> SqlCatalog:
    return SqlCatalog(session_factory)


@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[Redis, None]:
    client = await init_redis()
    yield client
    await close_redis()


@pytest_asyncio.fixture
async def usage_prefix(redis_client) -> AsyncGenerator[str, None]:
    """Unique key prefix per test; keys are removed afterwards."""
    prefix = f"test-usage-{uuid.uuid4().hex[:8]}"
    yield prefix
    await redis_client.delete(f"{prefix}:count", f"{prefix}:last_used")


@pytest.fixture
def seed_unit(sql_catalog):
    """Async helper: write a document, one unit, its chunks and their embeddings."""
    return lambda *args, **kwargs: _seed_unit(sql_catalog, *args, **kwargs)


async def _seed_unit(
    catalog: SqlCatalog,
    document_id: str,
    content_unit_id: str,
    texts: List[str],
    metadata: dict = None,
) -> List[str]:
    provider = HashingEmbeddingProvider()
    await catalog.upsert_document(Document(id=document_id, title=document_id.title(), metadata=metadata or {}))
    body = " ".join(texts)
    await catalog.save_content_unit(ContentUnit(
        id=content_unit_id,
        document_id=document_id,
        text=body,
        content_hash=content_hash(body),
        embedding_model=provider.model_name,
        chunk_count=len(texts),
    ))

    chunks = []
    offset = 0
    for i, chunk_text in enumerate(texts):
        words = len(chunk_text.split())
        chunks.append(Chunk(
            chunk_id=make_chunk_id(content_unit_id, i),
            document_id=document_id,
            content_unit_id=content_unit_id,
            chunk_index=i,
            text=chunk_text,
            char_start=offset,
            char_end=offset + len(chunk_text),
            token_start=0,
            token_end=words,
            metadata=dict(metadata or {}),
        ))
        offset += len(chunk_text) + 1
    await catalog.replace_chunks(content_unit_id, chunks)

    vectors = await provider.embed(texts)
    await catalog.save_embeddings([
        EmbeddingRecord(chunk_id=c.chunk_id, vector=v, model=provider.model_name, dimension=provider.dimensions)
        for c, v in zip(chunks, vectors)
    ])
    return [c.chunk_id for c in chunks]
