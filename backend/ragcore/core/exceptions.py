"""
Exception hierarchy for the retrieval core.

Every error raised by ragcore derives from RagCoreError so callers can catch
the whole family, or pick out a branch:

    RagCoreError
    ├── ConfigurationError          (raised at construction/startup only)
    │   ├── ChunkingConfigError
    │   └── RankingWeightsError
    ├── EmbeddingError              (provider failures, classified)
    │   ├── RateLimitedError
    │   ├── AuthenticationFailedError
    │   ├── InvalidInputError
    │   ├── TransientProviderError
    │   └── DimensionMismatchError
    ├── IndexUnavailableError
    ├── SearchUnavailableError
    ├── IngestionError
    │   ├── ContentUnitImmutableError
    │   └── DocumentNotFoundError
    ├── DataIntegrityError
    └── ChunkNotFoundError

Errors carry a machine-readable ``code`` and a ``details`` dict and can be
serialized with ``to_dict()`` for task results and event logs.
"""

from typing import Any, Dict, Optional


class RagCoreError(Exception):
    """Base exception for the retrieval core."""

    default_code = "RAGCORE_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a serializable dictionary."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


# ================================
# Configuration
# ================================

class ConfigurationError(RagCoreError):
    """Invalid configuration detected at construction or startup."""

    default_code = "CONFIGURATION_ERROR"


class ChunkingConfigError(ConfigurationError):
    """Chunker parameters are inconsistent (e.g. overlap >= max tokens)."""

    default_code = "CHUNKING_CONFIG_ERROR"


class RankingWeightsError(ConfigurationError):
    """Ranking weights are negative or do not sum to 1."""

    default_code = "RANKING_WEIGHTS_ERROR"


# ================================
# Embedding
# ================================

class EmbeddingError(RagCoreError):
    """
    Base class for embedding provider failures.

    Attributes:
        model: Model name that produced the failure, if known
        retryable: Whether the client may retry the same request
    """

    default_code = "EMBEDDING_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        model: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = dict(details or {})
        if model:
            details.setdefault("model", model)
        super().__init__(message, code=code, details=details)
        self.model = model


class RateLimitedError(EmbeddingError):
    """Provider refused the request because of rate limiting."""

    default_code = "EMBEDDING_RATE_LIMITED"
    retryable = True

    def __init__(
        self,
        message: str = "Embedding provider rate limit exceeded",
        retry_after: Optional[float] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        if retry_after is not None:
            self.details["retry_after"] = retry_after


class AuthenticationFailedError(EmbeddingError):
    """Provider rejected the credentials. Never retried."""

    default_code = "EMBEDDING_AUTH_FAILED"


class InvalidInputError(EmbeddingError):
    """Provider (or the client's own validation) rejected the input text."""

    default_code = "EMBEDDING_INVALID_INPUT"


class TransientProviderError(EmbeddingError):
    """Timeouts, connection resets and 5xx responses."""

    default_code = "EMBEDDING_TRANSIENT"
    retryable = True


class DimensionMismatchError(EmbeddingError):
    """A vector does not have the dimensionality the index/provider declares."""

    default_code = "DIMENSION_MISMATCH"

    def __init__(self, expected: int, actual: int, message: Optional[str] = None, **kwargs: Any):
        details = dict(kwargs.pop("details", None) or {})
        details.update({"expected": expected, "actual": actual})
        super().__init__(
            message or f"Expected vector of dimension {expected}, got {actual}",
            details=details,
            **kwargs,
        )
        self.expected = expected
        self.actual = actual


# ================================
# Index / Search
# ================================

class IndexUnavailableError(RagCoreError):
    """A vector or lexical index could not serve the request."""

    default_code = "INDEX_UNAVAILABLE"


class SearchUnavailableError(RagCoreError):
    """Neither the vector nor the lexical source produced candidates."""

    default_code = "SEARCH_UNAVAILABLE"


# ================================
# Ingestion
# ================================

class IngestionError(RagCoreError):
    """Base class for ingestion failures."""

    default_code = "INGESTION_ERROR"


class ContentUnitImmutableError(IngestionError):
    """An existing content unit was submitted again with different text."""

    default_code = "CONTENT_UNIT_IMMUTABLE"


class DocumentNotFoundError(IngestionError):
    """Referenced document does not exist in the catalog."""

    default_code = "DOCUMENT_NOT_FOUND"


class DataIntegrityError(RagCoreError):
    """Catalog and indexes disagree (e.g. a candidate with no embedding record)."""

    default_code = "DATA_INTEGRITY_ERROR"


class ChunkNotFoundError(RagCoreError):
    """Referenced chunk does not exist (or has no embedding)."""

    default_code = "CHUNK_NOT_FOUND"
