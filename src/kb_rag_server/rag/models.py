from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

ProcessingStatus = Literal["pending", "processing", "completed", "failed"]

EMBEDDING_SCHEMA_VERSION = "1"


class DocumentMetadata(BaseModel):
    """Metadata describing an uploaded source document.

    Field aliases are the camelCase keys stored next to every chunk in the
    vector store and shared with other consumers of the collection.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    document_id: str
    filename: str
    filepath: str
    file_type: str
    file_size: int = Field(ge=0)
    upload_timestamp: datetime
    uploader_id: str

    title: str | None = None
    author: str | None = None
    creation_date: datetime | None = None
    modification_date: datetime | None = None
    language: str | None = None
    summary: str | None = None

    chunk_count: int = 0
    processing_status: ProcessingStatus = "pending"
    processing_time_ms: float | None = None
    error_message: str | None = None

    embedding_model: str = ""
    chunk_size: int = 0
    overlap_size: int = 0

    def to_store_metadata(self) -> dict[str, Any]:
        """Flatten to the scalar-only mapping accepted by the vector store."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ChunkMetadata(DocumentMetadata):
    chunk_index: int = Field(ge=0)
    start_position: int = Field(ge=0)
    end_position: int = Field(ge=0)
    token_count: int = Field(gt=0)
    embedding_version: str = EMBEDDING_SCHEMA_VERSION

    @classmethod
    def try_from_store_metadata(cls, metadata: dict[str, Any] | None) -> "ChunkMetadata | None":
        """Parse stored metadata, returning None for records written by other producers."""
        if not metadata:
            return None
        try:
            return cls.model_validate(metadata)
        except PydanticValidationError:
            return None


class TextChunk(BaseModel):
    """A chunk of document text produced by the chunker, ready for embedding."""

    text: str
    start_position: int
    end_position: int
    token_count: int
    sentences: list[str]
    chunk_index: int = 0


class ChunkingStats(BaseModel):
    total_chunks: int
    average_chunk_size: int
    total_tokens: int
    min_tokens: int
    max_tokens: int


class VectorRecord(BaseModel):
    id: str
    content: str
    metadata: ChunkMetadata
    embedding: list[float]


class Collection(BaseModel):
    """Handle to a collection living in the external vector store."""

    model_config = ConfigDict(frozen=True)

    name: str
    id: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class StoredRecord(BaseModel):
    id: str
    content: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class QueryMatch(StoredRecord):
    distance: float


class SearchResult(BaseModel):
    id: str
    content: str
    metadata: ChunkMetadata | None = None
    distance: float | None = None
    score: float
    semantic_score: float | None = None
    keyword_hit: bool = False
    recency_score: float | None = None


class DocumentUploadResult(BaseModel):
    """Result of ingesting a single document."""

    document_id: str
    chunks_processed: int = 0
    processing_time_ms: float = 0.0
    status: ProcessingStatus
    error: str | None = None
    document: DocumentMetadata | None = None


class DocumentUpload(BaseModel):
    """One document of a batch upload, with its already extracted text."""

    file_name: str
    file_type: str = "text/plain"
    file_size_bytes: int = Field(default=0, ge=0)
    extracted_text: str
    title: str | None = None
    author: str | None = None
    language: str | None = None
    summary: str | None = None


class CollectionStats(BaseModel):
    count: int
    document_count: int
    total_size_bytes: int
    approximate: bool = False


class KnowledgeBaseStats(BaseModel):
    document_count: int = 0
    chunk_count: int = 0
    total_size_bytes: int = 0
