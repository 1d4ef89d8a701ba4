"""
Pytest configuration and fixtures.

This file is automatically discovered by pytest and provides
shared fixtures for all test modules.

Unit tests run entirely in memory: word-count token estimator, feature
hashing embeddings, in-process catalog and indexes. Tests marked
``integration`` need PostgreSQL (with pgvector) and Redis and only run
with ``--run-integration``.

References:
-----------
- Pytest Fixtures: https://docs.pytest.org/en/stable/fixture.html
- pytest-asyncio: https://pytest-asyncio.readthedocs.io/
"""

import os

# Settings are read once at import time; pin the test configuration first
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("CHUNK_TOKEN_ESTIMATOR", "word")
os.environ.setdefault("EMBEDDING_PROVIDER", "hashing")
os.environ.setdefault("EMBEDDING_DIMENSION", "64")
os.environ.setdefault("VECTOR_INDEX_TYPE", "flat")
os.environ.setdefault("USAGE_FLUSH_INTERVAL_SECONDS", "0")
os.environ.setdefault("LOG_FORMAT", "text")

import asyncio
from typing import AsyncGenerator, List, Optional, Sequence

import pytest
import pytest_asyncio

from ragcore.core.exceptions import InvalidInputError
from ragcore.services.factory import RagCore
from ragcore.services.index.lexical_index import InMemoryLexicalIndex
from ragcore.services.index.vector_index import FlatVectorIndex
from ragcore.services.ingestion.pipeline import IngestionPipeline
from ragcore.services.processors.chunker import ContentChunker, WordTokenEstimator
from ragcore.services.processors.embedder import EmbeddingClient
from ragcore.services.processors.providers import EmbeddingProvider, HashingEmbeddingProvider
from ragcore.services.rag.ranking import RankingWeights
from ragcore.services.rag.usage_tracker import CatalogUsageStore, UsageTracker
from ragcore.services.storage.catalog import InMemoryCatalog


TEST_DIMENSION = 64


# ================================
# Pytest Configuration
# ================================

def pytest_addoption(parser):
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run tests that need PostgreSQL and Redis",
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--run-integration"):
        return
    skip_integration = pytest.mark.skip(reason="needs --run-integration")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


# ================================
# Providers
# ================================

class ScriptedProvider(EmbeddingProvider):
    """
    Embedding provider whose failures are scripted by the test.

    - ``errors``: raised in order, one per call (None = succeed that call)
    - ``fail_markers``: any text containing a marker is rejected as invalid
    - ``delay``: seconds to sleep inside every call
    - ``wrong_dimension``: return vectors one element too short
    """

    def __init__(
        self,
        dimension: int = TEST_DIMENSION,
        model_name: str = "scripted-v1",
        max_batch_size: int = 8,
        supports_batch: bool = True,
        errors: Optional[Sequence[Optional[Exception]]] = None,
        fail_markers: Sequence[str] = (),
        delay: float = 0.0,
        wrong_dimension: bool = False,
    ):
        self.model_name = model_name
        self.max_batch_size = max_batch_size
        self.supports_batch = supports_batch
        self.errors = list(errors or [])
        self.fail_markers = tuple(fail_markers)
        self.delay = delay
        self.wrong_dimension = wrong_dimension
        self.calls: List[List[str]] = []
        self._hashing = HashingEmbeddingProvider(dimension=dimension, model_name=model_name)

    @property
    def dimensions(self) -> int:
        return self._hashing.dimensions

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        for text in texts:
            if any(marker in text for marker in self.fail_markers):
                raise InvalidInputError(f"Rejected input: {text[:20]}", model=self.model_name)
        vectors = [self._hashing.vectorize(text).tolist() for text in texts]
        if self.wrong_dimension:
            vectors = [v[:-1] for v in vectors]
        return vectors


class SleepRecorder:
    """Stands in for asyncio.sleep between retries; records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def scripted_provider_factory():
    """Build ScriptedProviders with per-test scripts."""
    return ScriptedProvider


@pytest.fixture
def hashing_provider() -> HashingEmbeddingProvider:
    return HashingEmbeddingProvider(dimension=TEST_DIMENSION)


# ================================
# Component Fixtures
# ================================

@pytest.fixture
def estimator() -> WordTokenEstimator:
    return WordTokenEstimator()


@pytest.fixture
def chunker(estimator) -> ContentChunker:
    """Small windows so short test texts produce several chunks."""
    return ContentChunker(max_tokens=12, overlap_tokens=2, boundary_mode="sentence", estimator=estimator)


@pytest.fixture
def embedder(hashing_provider, sleep_recorder) -> EmbeddingClient:
    return EmbeddingClient(hashing_provider, sleep=sleep_recorder)


@pytest.fixture
def catalog() -> InMemoryCatalog:
    return InMemoryCatalog()


@pytest.fixture
def vector_index() -> FlatVectorIndex:
    return FlatVectorIndex(dimension=TEST_DIMENSION, metric="cosine")


@pytest.fixture
def lexical_index() -> InMemoryLexicalIndex:
    return InMemoryLexicalIndex()


@pytest.fixture
def tracker(catalog) -> UsageTracker:
    return UsageTracker(CatalogUsageStore(catalog), flush_interval=0)


@pytest.fixture
def pipeline(chunker, embedder, catalog, vector_index, lexical_index, tracker) -> IngestionPipeline:
    return IngestionPipeline(chunker, embedder, catalog, vector_index, lexical_index, tracker=tracker)


@pytest_asyncio.fixture
async def rag_core(chunker, embedder, catalog, vector_index, lexical_index) -> AsyncGenerator[RagCore, None]:
    """
    Fully wired in-memory core.

    Yields a started core and shuts it down after the test.
    """
    core = RagCore(
        catalog=catalog,
        embedder=embedder,
        vector_index=vector_index,
        lexical_index=lexical_index,
        chunker=chunker,
        weights=RankingWeights(similarity=0.5, lexical=0.4, usage=0.05, recency=0.05),
        flush_interval=0,
        workers=2,
    )
    await core.start()
    yield core
    await core.shutdown()
