"""
Embedding Client

Provider-agnostic orchestration around an EmbeddingProvider. Adding a new
provider only requires an adapter; everything below is shared.

Features:
---------
- Text normalization (control characters stripped, whitespace collapsed)
- Batching up to the provider's max batch size
- Concurrent batches bounded by EMBEDDING_MAX_CONCURRENCY
- Per-call timeout (a timeout counts as a transient failure)
- Retry with exponential backoff via tenacity; rate limits honour the
  provider's retry-after hint
- Failure isolation: a batch that keeps failing is bisected until the bad
  item is found; siblings still get their vectors
- Fatal errors (authentication, dimension mismatch) abort immediately

Usage:
------
client = EmbeddingClient(provider)
await client.initialize()

result = await client.embed(["Text 1", "Text 2"])
result.vectors      # [vector | None, ...] aligned with the input
result.failures     # {index: EmbeddingError}
"""

import asyncio
import re
import unicodedata
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, wait_exponential

from ragcore.core.config import settings
from ragcore.core.exceptions import (
    AuthenticationFailedError,
    DimensionMismatchError,
    EmbeddingError,
    InvalidInputError,
    RateLimitedError,
    TransientProviderError,
)
from ragcore.core.logging import get_logger
from ragcore.services.processors.providers import EmbeddingProvider, create_provider


logger = get_logger(__name__)

_WHITESPACE = re.compile(r"\s+")
_FATAL_ERRORS = (AuthenticationFailedError, DimensionMismatchError)


def normalize_text(text: Optional[str]) -> str:
    """Strip control characters, collapse whitespace and trim."""
    if not text:
        return ""
    cleaned = "".join(
        ch if (ch.isspace() or unicodedata.category(ch) not in ("Cc", "Cf")) else " "
        for ch in text
    )
    return _WHITESPACE.sub(" ", cleaned).strip()


class EmbeddingBatchResult(BaseModel):
    """Vectors aligned with the input, plus per-index failures."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    vectors: List[Optional[List[float]]] = Field(default_factory=list)
    failures: Dict[int, EmbeddingError] = Field(default_factory=dict)
    model: str = ""

    @property
    def failed_indices(self) -> list[int]:
        return sorted(self.failures)


class EmbeddingClient:
    """
    Batching, retrying, failure-isolating front end for an embedding provider.

    Holds no lock while awaiting the provider; concurrency is bounded by a
    semaphore only.
    """

    def __init__(
        self,
        provider: Optional[EmbeddingProvider] = None,
        batch_size: Optional[int] = None,
        max_concurrency: Optional[int] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        rate_limit_max_attempts: Optional[int] = None,
        backoff_min: Optional[float] = None,
        backoff_max: Optional[float] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        """
        Initialize the embedding client.

        Args:
            provider: Embedding backend (default from EMBEDDING_PROVIDER)
            batch_size: Upper bound on texts per call (default from settings)
            max_concurrency: Batches in flight at once (default from settings)
            timeout: Seconds per provider call (default from settings)
            max_retries: Retries for transient failures (default 1)
            rate_limit_max_attempts: Total attempts when rate limited
            backoff_min: Exponential backoff base in seconds
            backoff_max: Backoff ceiling in seconds (also caps retry-after)
            sleep: Awaitable sleep used between retries (tests inject a fake)
        """
        self.provider = provider or create_provider()
        self.batch_size = batch_size or settings.EMBEDDING_BATCH_SIZE
        self.max_concurrency = max_concurrency or settings.EMBEDDING_MAX_CONCURRENCY
        self.timeout = settings.EMBEDDING_TIMEOUT_SECONDS if timeout is None else timeout
        self.max_retries = settings.EMBEDDING_MAX_RETRIES if max_retries is None else max_retries
        self.rate_limit_max_attempts = (
            settings.EMBEDDING_RATE_LIMIT_MAX_ATTEMPTS
            if rate_limit_max_attempts is None else rate_limit_max_attempts
        )
        self.backoff_min = settings.EMBEDDING_BACKOFF_MIN_SECONDS if backoff_min is None else backoff_min
        self.backoff_max = settings.EMBEDDING_BACKOFF_MAX_SECONDS if backoff_max is None else backoff_max
        self._sleep = sleep or asyncio.sleep
        self._exp_wait = wait_exponential(multiplier=self.backoff_min, min=self.backoff_min, max=self.backoff_max)

    @property
    def model_name(self) -> str:
        return self.provider.model_name

    @property
    def dimensions(self) -> int:
        return self.provider.dimensions

    @property
    def effective_batch_size(self) -> int:
        if not self.provider.supports_batch:
            return 1
        return max(1, min(self.provider.max_batch_size, self.batch_size))

    async def initialize(self) -> None:
        await self.provider.initialize()

    async def shutdown(self) -> None:
        await self.provider.shutdown()

    # ----------------------------------------
    # Public API
    # ----------------------------------------

    async def embed(self, texts: List[str]) -> EmbeddingBatchResult:
        """
        Embed a list of texts with failure isolation.

        Args:
            texts: Raw texts (normalized here)

        Returns:
            EmbeddingBatchResult aligned with ``texts``

        Raises:
            AuthenticationFailedError: Provider rejected credentials
            DimensionMismatchError: Provider returned vectors of the wrong size
        """
        normalized = [normalize_text(t) for t in texts]
        result = EmbeddingBatchResult(vectors=[None] * len(texts), model=self.model_name)

        pending = []
        for i, text in enumerate(normalized):
            if text:
                pending.append(i)
            else:
                result.failures[i] = InvalidInputError(
                    "Text is empty after normalization", model=self.model_name
                )

        if not pending:
            return result

        size = self.effective_batch_size
        semaphore = asyncio.Semaphore(self.max_concurrency)
        tasks = [
            asyncio.create_task(
                self._embed_group(pending[i:i + size], normalized, result, semaphore)
            )
            for i in range(0, len(pending), size)
        ]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

        if result.failures:
            logger.warning(
                "embedding_items_failed",
                model=self.model_name,
                total=len(texts),
                failed=len(result.failures),
                failed_indices=result.failed_indices,
            )
        return result

    async def embed_query(self, text: str) -> List[float]:
        """
        Embed a single query text.

        Raises:
            EmbeddingError: The text could not be embedded
        """
        result = await self.embed([text])
        if 0 in result.failures:
            raise result.failures[0]
        return result.vectors[0]

    # ----------------------------------------
    # Internals
    # ----------------------------------------

    async def _embed_group(
        self,
        indices: List[int],
        texts: List[str],
        result: EmbeddingBatchResult,
        semaphore: asyncio.Semaphore,
    ) -> None:
        try:
            async with semaphore:
                vectors = await self._call_with_retry([texts[i] for i in indices])
        except _FATAL_ERRORS:
            raise
        except EmbeddingError as e:
            if len(indices) == 1:
                result.failures[indices[0]] = e
                logger.debug("embedding_item_failed", index=indices[0], error=e.code)
                return
            mid = len(indices) // 2
            logger.info(
                "embedding_batch_bisected",
                batch_size=len(indices),
                error_type=type(e).__name__,
            )
            await asyncio.gather(
                self._embed_group(indices[:mid], texts, result, semaphore),
                self._embed_group(indices[mid:], texts, result, semaphore),
            )
            return

        for i, vector in zip(indices, vectors):
            result.vectors[i] = vector

    async def _call_with_retry(self, texts: List[str]) -> List[List[float]]:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type((TransientProviderError, RateLimitedError)),
            stop=self._should_stop,
            wait=self._wait_time,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._call_provider(texts)

    def _should_stop(self, retry_state: RetryCallState) -> bool:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, RateLimitedError):
            return retry_state.attempt_number >= self.rate_limit_max_attempts
        return retry_state.attempt_number >= self.max_retries + 1

    def _wait_time(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, RateLimitedError) and error.retry_after is not None:
            return min(float(error.retry_after), self.backoff_max)
        return self._exp_wait(retry_state)

    async def _call_provider(self, texts: List[str]) -> List[List[float]]:
        try:
            vectors = await asyncio.wait_for(self.provider.embed(texts), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise TransientProviderError(
                f"Embedding call timed out after {self.timeout}s", model=self.model_name
            ) from e
        except EmbeddingError:
            raise
        except Exception as e:
            raise TransientProviderError(
                f"Unexpected provider failure: {e}", model=self.model_name
            ) from e

        if len(vectors) != len(texts):
            raise TransientProviderError(
                f"Provider returned {len(vectors)} vectors for {len(texts)} texts",
                model=self.model_name,
            )
        expected = self.provider.dimensions
        for vector in vectors:
            if len(vector) != expected:
                raise DimensionMismatchError(expected, len(vector), model=self.model_name)
        return [[float(x) for x in vector] for vector in vectors]
