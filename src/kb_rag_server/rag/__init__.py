from .errors import (
    KnowledgeBaseError,
    ValidationError,
    EmbeddingError,
    VectorStoreError,
    StoreUnavailable,
    CircuitOpenError,
    VectorStoreRequestError,
    CollectionNotInitialized,
    IngestionCancelled,
)
from .models import (
    DocumentMetadata,
    ChunkMetadata,
    TextChunk,
    ChunkingStats,
    VectorRecord,
    Collection,
    StoredRecord,
    QueryMatch,
    SearchResult,
    DocumentUpload,
    DocumentUploadResult,
    CollectionStats,
    KnowledgeBaseStats,
)
from .chunking import (
    ChunkingOptions,
    DocumentChunker,
    chunk_text,
    get_chunking_stats,
    split_into_sentences,
)
from .embeddings import (
    EmbeddingProvider,
    EmbeddingResult,
    OpenAIEmbeddingProvider,
    SentenceTransformerEmbeddingProvider,
    HashEmbeddingProvider,
    CachedEmbeddingProvider,
)
from .resilience import ConnectionManager, CircuitBreaker, CircuitState
from .vector_store import ChromaVectorStore, CollectionRegistry, build_where
from .keyword_index import KeywordIndex, KeywordHit, PostgresKeywordIndex
from .hybrid import HybridSearchEngine, HybridWeights, recency_score
from .knowledge_base import KnowledgeBaseService, get_collection_name

__all__ = [
    # Errors
    "KnowledgeBaseError",
    "ValidationError",
    "EmbeddingError",
    "VectorStoreError",
    "StoreUnavailable",
    "CircuitOpenError",
    "VectorStoreRequestError",
    "CollectionNotInitialized",
    "IngestionCancelled",
    # Models
    "DocumentMetadata",
    "ChunkMetadata",
    "TextChunk",
    "ChunkingStats",
    "VectorRecord",
    "Collection",
    "StoredRecord",
    "QueryMatch",
    "SearchResult",
    "DocumentUpload",
    "DocumentUploadResult",
    "CollectionStats",
    "KnowledgeBaseStats",
    # Chunking
    "ChunkingOptions",
    "DocumentChunker",
    "chunk_text",
    "get_chunking_stats",
    "split_into_sentences",
    # Embeddings
    "EmbeddingProvider",
    "EmbeddingResult",
    "OpenAIEmbeddingProvider",
    "SentenceTransformerEmbeddingProvider",
    "HashEmbeddingProvider",
    "CachedEmbeddingProvider",
    # Resilience
    "ConnectionManager",
    "CircuitBreaker",
    "CircuitState",
    # Vector store
    "ChromaVectorStore",
    "CollectionRegistry",
    "build_where",
    # Keyword search
    "KeywordIndex",
    "KeywordHit",
    "PostgresKeywordIndex",
    # Hybrid search
    "HybridSearchEngine",
    "HybridWeights",
    "recency_score",
    # Knowledge base
    "KnowledgeBaseService",
    "get_collection_name",
]
