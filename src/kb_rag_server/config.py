"""Server settings read from environment variables."""

import os
from typing import Literal

from pydantic import BaseModel, Field

from .rag.chunking import ChunkingOptions, resolve_options
from .rag.hybrid import HybridWeights


class Settings(BaseModel):
    """Every field is read from the environment variable of the same name, upper-cased.

    EMBEDDING_CACHE_MAX_ENTRIES=0 disables the embedding cache.
    KEYWORD_INDEX_DATABASE_URL enables the Postgres keyword index and hybrid search.
    """

    chroma_url: str = "http://localhost:8000"
    chroma_api_path: str = "/api/v1"
    vector_store_timeout_seconds: float = Field(default=10.0, gt=0)
    vector_store_max_retries: int = Field(default=3, ge=0)
    vector_store_retry_base_delay_seconds: float = Field(default=0.5, ge=0)
    circuit_failure_threshold: int = Field(default=5, gt=0)
    circuit_reset_timeout_seconds: float = Field(default=30.0, ge=0)

    embedding_provider: Literal["openai", "local", "hash"] = "openai"
    embedding_model: str | None = None
    embedding_cache_max_entries: int = Field(default=10_000, ge=0)
    embedding_workers: int = Field(default=4, ge=1)

    chunk_size: int = 512
    chunk_overlap: int = 64
    min_chunk_size: int = 128
    max_chunk_size: int = 1024

    keyword_index_database_url: str | None = None
    hybrid_semantic_weight: float = Field(default=0.7, ge=0)
    hybrid_keyword_weight: float = Field(default=0.3, ge=0)
    hybrid_recency_weight: float = Field(default=0.1, ge=0)

    @classmethod
    def from_env(cls) -> "Settings":
        values = {}
        for field_name in cls.model_fields:
            value = os.getenv(field_name.upper())
            if value:
                values[field_name] = value
        return cls(**values)

    def chunking_options(self) -> ChunkingOptions:
        return resolve_options(
            chunk_size=self.chunk_size,
            overlap_size=self.chunk_overlap,
            min_chunk_size=self.min_chunk_size,
            max_chunk_size=self.max_chunk_size,
        )

    def hybrid_weights(self) -> HybridWeights:
        return HybridWeights(
            semantic=self.hybrid_semantic_weight,
            keyword=self.hybrid_keyword_weight,
            recency=self.hybrid_recency_weight,
        )
