"""
Embedding Providers

Adapters that turn a batch of texts into vectors. Providers only translate
their backend's failures into the EmbeddingError taxonomy; batching, retry,
timeouts and failure isolation live once in EmbeddingClient.

Providers:
----------
- sentence_transformers: local inference (CPU/CUDA/MPS), no API costs
- openai: OpenAI embeddings API (text-embedding-3-*)
- hashing: deterministic feature-hashing vectors for development and tests
"""

import asyncio
import hashlib
import re
from abc import ABC, abstractmethod
from typing import Optional

import numpy as np
import openai
import torch
from openai import AsyncOpenAI
from sentence_transformers import SentenceTransformer

from ragcore.core.config import settings
from ragcore.core.exceptions import (
    AuthenticationFailedError,
    ConfigurationError,
    EmbeddingError,
    InvalidInputError,
    RateLimitedError,
    TransientProviderError,
)
from ragcore.core.logging import get_logger


logger = get_logger(__name__)


class EmbeddingProvider(ABC):
    """
    Capability interface every embedding backend implements.

    Attributes:
        model_name: Model identifier recorded on each embedding
        max_batch_size: Largest number of texts accepted per ``embed`` call
        supports_batch: False means the client sends one text per call
    """

    model_name: str
    max_batch_size: int = 32
    supports_batch: bool = True

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Length of every vector this provider returns."""

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed a batch of already-normalized texts, in order."""

    async def initialize(self) -> None:
        """Load models / open clients. Idempotent."""

    async def shutdown(self) -> None:
        """Release resources."""


# ========================================
# sentence-transformers (local)
# ========================================

class SentenceTransformerProvider(EmbeddingProvider):
    """
    Local embeddings with sentence-transformers.

    Model loading and encoding run in a worker thread so the event loop
    stays responsive.
    """

    def __init__(
        self,
        model_name: Optional[str] = None,
        device: Optional[str] = None,
        max_batch_size: Optional[int] = None,
        normalize: Optional[bool] = None,
        dimension: Optional[int] = None,
    ):
        self.model_name = model_name or settings.EMBEDDING_MODEL
        self.device = device or settings.EMBEDDING_DEVICE
        self.max_batch_size = max_batch_size or settings.EMBEDDING_BATCH_SIZE
        self.normalize = settings.EMBEDDING_NORMALIZE if normalize is None else normalize
        self._configured_dimension = dimension or settings.EMBEDDING_DIMENSION

        self.model: Optional[SentenceTransformer] = None
        self._initialized = False

        self._validate_device()

    def _validate_device(self) -> None:
        """Validate and adjust device setting based on availability."""
        if self.device == "cuda" and not torch.cuda.is_available():
            logger.warning("cuda_unavailable_falling_back_to_cpu")
            self.device = "cpu"
        elif self.device == "mps" and not torch.backends.mps.is_available():
            logger.warning("mps_unavailable_falling_back_to_cpu")
            self.device = "cpu"

    async def initialize(self) -> None:
        """
        Load the embedding model.

        Downloads the model if not cached. Should be called once at startup.
        """
        if self._initialized:
            return

        logger.info("loading_embedding_model", model=self.model_name, device=self.device)
        self.model = await asyncio.to_thread(
            SentenceTransformer,
            self.model_name,
            device=self.device,
        )
        self._initialized = True
        logger.info("embedding_model_loaded", model=self.model_name, dimension=self.dimensions)

    @property
    def dimensions(self) -> int:
        if self.model is None:
            return self._configured_dimension
        return self.model.get_sentence_embedding_dimension()

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not self._initialized:
            await self.initialize()
        try:
            embeddings = await asyncio.to_thread(self._encode, texts)
        except (ValueError, TypeError) as e:
            raise InvalidInputError(f"Model rejected input: {e}", model=self.model_name) from e
        except RuntimeError as e:
            # CUDA OOM and similar runtime failures may clear on a smaller batch
            raise TransientProviderError(f"Encoding failed: {e}", model=self.model_name) from e
        return embeddings.tolist()

    def _encode(self, texts: list[str]) -> np.ndarray:
        return self.model.encode(
            texts,
            batch_size=self.max_batch_size,
            normalize_embeddings=self.normalize,
            convert_to_numpy=True,
            show_progress_bar=False,
        )

    async def shutdown(self) -> None:
        """Release model memory."""
        if self.model is not None:
            del self.model
            self.model = None
            if self.device == "cuda":
                torch.cuda.empty_cache()
        self._initialized = False
        logger.info("embedding_model_unloaded", model=self.model_name)


# ========================================
# OpenAI
# ========================================

class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embeddings through the OpenAI API."""

    max_batch_size = 2048

    def __init__(
        self,
        model_name: Optional[str] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        dimension: Optional[int] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model_name = model_name or settings.EMBEDDING_MODEL
        self._api_key = api_key or settings.OPENAI_API_KEY
        self._base_url = base_url or settings.OPENAI_BASE_URL
        self._dimension = dimension or settings.EMBEDDING_DIMENSION
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        """Create the OpenAI client lazily."""
        if self._client is not None:
            return self._client
        if not self._api_key:
            raise ConfigurationError(
                "OPENAI_API_KEY is required when EMBEDDING_PROVIDER=openai",
                details={"model": self.model_name},
            )
        self._client = AsyncOpenAI(
            api_key=self._api_key,
            base_url=self._base_url,
            max_retries=0,  # retries are handled by EmbeddingClient
        )
        return self._client

    async def initialize(self) -> None:
        self._get_client()

    @property
    def dimensions(self) -> int:
        return self._dimension

    async def embed(self, texts: list[str]) -> list[list[float]]:
        client = self._get_client()
        kwargs = {}
        if self.model_name.startswith("text-embedding-3"):
            kwargs["dimensions"] = self._dimension
        try:
            resp = await client.embeddings.create(model=self.model_name, input=texts, **kwargs)
        except openai.RateLimitError as e:
            raise RateLimitedError(
                f"OpenAI rate limit: {e}",
                retry_after=_retry_after_seconds(e),
                model=self.model_name,
            ) from e
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise AuthenticationFailedError(f"OpenAI rejected credentials: {e}", model=self.model_name) from e
        except (openai.BadRequestError, openai.UnprocessableEntityError) as e:
            raise InvalidInputError(f"OpenAI rejected input: {e}", model=self.model_name) from e
        except (openai.APITimeoutError, openai.APIConnectionError, openai.InternalServerError) as e:
            raise TransientProviderError(f"OpenAI request failed: {e}", model=self.model_name) from e
        except openai.APIError as e:
            raise EmbeddingError(f"OpenAI embedding request failed: {e}", model=self.model_name) from e

        data = sorted(resp.data, key=lambda d: d.index)
        return [d.embedding for d in data]

    async def shutdown(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


def _retry_after_seconds(error: "openai.APIStatusError") -> Optional[float]:
    """Read the Retry-After header (seconds) from an OpenAI error, if present."""
    response = getattr(error, "response", None)
    if response is None:
        return None
    value = response.headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


# ========================================
# Feature hashing (deterministic)
# ========================================

_HASH_TOKEN = re.compile(r"[\w']+")


class HashingEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic bag-of-words vectors via signed feature hashing.

    Texts sharing words get similar vectors, which is enough for local
    development and reproducible tests without downloading a model.
    """

    def __init__(self, dimension: Optional[int] = None, model_name: str = "hashing-v1", max_batch_size: int = 64):
        self._dimension = dimension or settings.EMBEDDING_DIMENSION
        self.model_name = model_name
        self.max_batch_size = max_batch_size

    @property
    def dimensions(self) -> int:
        return self._dimension

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return [self.vectorize(text).tolist() for text in texts]

    def vectorize(self, text: str) -> np.ndarray:
        vec = np.zeros(self._dimension, dtype=np.float32)
        for token in _HASH_TOKEN.findall(text.lower()):
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
            bucket = int.from_bytes(digest[:4], "little") % self._dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vec[bucket] += sign
        norm = np.linalg.norm(vec)
        if norm > 0:
            vec /= norm
        return vec


def create_provider(kind: Optional[str] = None) -> EmbeddingProvider:
    """Build the provider named by EMBEDDING_PROVIDER."""
    kind = kind or settings.EMBEDDING_PROVIDER
    if kind == "sentence_transformers":
        return SentenceTransformerProvider()
    if kind == "openai":
        return OpenAIEmbeddingProvider()
    if kind == "hashing":
        return HashingEmbeddingProvider()
    raise ConfigurationError(f"Unknown embedding provider: {kind}")
