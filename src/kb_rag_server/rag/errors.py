"""Error types raised by the knowledge base pipeline."""


class KnowledgeBaseError(Exception):
    """Base class for all knowledge base errors."""


class ValidationError(KnowledgeBaseError, ValueError):
    """Raised for malformed options or identifiers before any I/O happens."""


class EmbeddingError(KnowledgeBaseError):
    """Raised when an embedding provider fails for a given text."""


class VectorStoreError(KnowledgeBaseError):
    """Base class for vector store failures."""


class StoreUnavailable(VectorStoreError):
    """Raised when the vector store could not be reached after all retries."""


class CircuitOpenError(StoreUnavailable):
    """Raised when a call is rejected because the circuit breaker is open."""


class VectorStoreRequestError(VectorStoreError):
    """Raised when the vector store rejects a request (HTTP 4xx)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class CollectionNotInitialized(KnowledgeBaseError):
    """Raised when a collection handle was expected in the registry but is missing."""


class IngestionCancelled(KnowledgeBaseError):
    """Raised inside the ingestion pipeline when a document was cancelled."""
