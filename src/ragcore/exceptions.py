"""
RAG-specific exceptions.
"""

from typing import Any, Optional


class RAGError(Exception):
    """Base exception for ragcore errors."""

    def __init__(self, message: str, code: str | None = None):
        self.message = message
        self.code = code
        super().__init__(self.message)


class ChunkingConfigError(RAGError, ValueError):
    """Raised when a chunking configuration cannot be used."""

    def __init__(self, message: str):
        super().__init__(message, code="invalid_chunking_config")


class DimensionMismatch(RAGError):
    """Raised when an embedding does not match the index dimension."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Embedding dimension {actual} does not match index dimension {expected}",
            code="dimension_mismatch",
        )


class UnsupportedIndexType(RAGError):
    """Raised when an index recommendation names an unknown index type."""

    def __init__(self, index_type: str):
        self.index_type = index_type
        super().__init__(f"Unsupported index type: {index_type!r}", code="unsupported_index_type")


class NotInitialized(RAGError):
    """Raised when a service is used before its collaborators are ready."""

    def __init__(self, component: str):
        self.component = component
        super().__init__(f"{component} is not initialized", code="not_initialized")


class NoContextError(RAGError):
    """Raised when retrieval fails or finds nothing to ground an answer on."""

    def __init__(self, message: str = "No relevant context found"):
        super().__init__(message, code="no_context")


class PromptTooLarge(RAGError):
    """Raised when the prompt without any context already exceeds the token budget."""

    def __init__(self, tokens: int, budget: int):
        self.tokens = tokens
        self.budget = budget
        super().__init__(
            f"Prompt needs ~{tokens} tokens before any context, budget is {budget}",
            code="prompt_too_large",
        )


class GenerationError(RAGError):
    """Base class for generation-stage failures.

    Carries the metadata collected before the failure (retrieval timings etc.)
    so callers can still report it.
    """

    def __init__(self, message: str, code: str, metadata: Optional[Any] = None):
        self.metadata = metadata
        super().__init__(message, code=code)


class GenerationFailure(GenerationError):
    """Raised when the generation provider fails."""

    def __init__(self, message: str, metadata: Optional[Any] = None):
        super().__init__(f"Generation failed: {message}", code="generation_failure", metadata=metadata)


class GenerationTimeout(GenerationError):
    """Raised when generation exceeds the caller-imposed timeout."""

    def __init__(self, timeout: float, metadata: Optional[Any] = None):
        self.timeout = timeout
        super().__init__(
            f"Generation timed out after {timeout}s", code="generation_timeout", metadata=metadata
        )


class EmbeddingError(RAGError):
    """Raised when an embedding provider fails or returns malformed output."""

    def __init__(self, message: str):
        super().__init__(message, code="embedding_error")


class StorageError(RAGError):
    """Raised when the storage backend fails. The driver error is chained as __cause__."""

    def __init__(self, message: str):
        super().__init__(f"Storage error: {message}", code="storage_error")
