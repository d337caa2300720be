"""FastAPI REST API for the knowledge base service."""

import asyncio
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import Settings
from .logger import logger
from .rag import (
    CachedEmbeddingProvider,
    ChromaVectorStore,
    CircuitBreaker,
    CollectionNotInitialized,
    ConnectionManager,
    DocumentChunker,
    DocumentUpload,
    DocumentUploadResult,
    EmbeddingProvider,
    HashEmbeddingProvider,
    HybridSearchEngine,
    KnowledgeBaseService,
    KnowledgeBaseStats,
    OpenAIEmbeddingProvider,
    PostgresKeywordIndex,
    SearchResult,
    SentenceTransformerEmbeddingProvider,
    ValidationError,
    VectorStoreError,
)

# Extracted text accepted per document (10M characters)
MAX_TEXT_LENGTH = 10_000_000
MAX_BATCH_SIZE = 50


# --- Request/Response Models ---


class DocumentIngestRequest(BaseModel):
    file_name: str = Field(..., min_length=1, max_length=512)
    file_type: str = Field(default="text/plain", max_length=255)
    file_size_bytes: int | None = Field(default=None, ge=0)
    extracted_text: str = Field(..., max_length=MAX_TEXT_LENGTH)
    document_id: str | None = Field(default=None, min_length=1, max_length=128)
    title: str | None = None
    author: str | None = None
    language: str | None = None
    summary: str | None = None


class ReprocessRequest(BaseModel):
    file_name: str = Field(..., min_length=1, max_length=512)
    file_type: str = Field(default="text/plain", max_length=255)
    file_size_bytes: int | None = Field(default=None, ge=0)
    extracted_text: str = Field(..., max_length=MAX_TEXT_LENGTH)


class BatchIngestRequest(BaseModel):
    documents: list[DocumentUpload] = Field(..., min_length=1, max_length=MAX_BATCH_SIZE)


class BatchIngestResponse(BaseModel):
    results: list[DocumentUploadResult]
    successful: int
    failed: int


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=10000)
    limit: int = Field(default=5, ge=1, le=50)
    similarity_threshold: float = Field(default=0.1, ge=0, le=1)
    filters: dict[str, str | int | float | bool] | None = None
    hybrid: bool = False


class SearchResponse(BaseModel):
    results: list[SearchResult]
    count: int


class DeleteResponse(BaseModel):
    deleted: bool


class CancelResponse(BaseModel):
    document_id: str
    cancelled: bool


class HealthResponse(BaseModel):
    status: str
    checks: dict[str, bool] = Field(default_factory=dict)
    circuit: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    code: str
    message: str


# --- Service Composition ---


def build_embedding_provider(settings: Settings) -> EmbeddingProvider:
    if settings.embedding_provider == "local":
        provider: EmbeddingProvider = SentenceTransformerEmbeddingProvider(settings.embedding_model)
    elif settings.embedding_provider == "hash":
        provider = HashEmbeddingProvider()
    else:
        provider = OpenAIEmbeddingProvider(model=settings.embedding_model)

    if settings.embedding_cache_max_entries == 0:
        return provider
    return CachedEmbeddingProvider(provider, max_entries=settings.embedding_cache_max_entries)


def build_service(settings: Settings) -> KnowledgeBaseService:
    """Wire the knowledge base service and its collaborators from settings."""
    vector_store = ChromaVectorStore(
        base_url=settings.chroma_url,
        api_path=settings.chroma_api_path,
        timeout_seconds=settings.vector_store_timeout_seconds,
        connection_manager=ConnectionManager(
            max_retries=settings.vector_store_max_retries,
            base_delay_seconds=settings.vector_store_retry_base_delay_seconds,
        ),
        circuit_breaker=CircuitBreaker(
            failure_threshold=settings.circuit_failure_threshold,
            reset_timeout_seconds=settings.circuit_reset_timeout_seconds,
        ),
    )

    keyword_index = None
    hybrid_engine = None
    if settings.keyword_index_database_url:
        keyword_index = PostgresKeywordIndex(settings.keyword_index_database_url)
        keyword_index.connect()
        keyword_index.run_migrations()
        hybrid_engine = HybridSearchEngine(
            vector_store, keyword_index, weights=settings.hybrid_weights()
        )

    return KnowledgeBaseService(
        vector_store=vector_store,
        embedding_provider=build_embedding_provider(settings),
        chunker=DocumentChunker(settings.chunking_options()),
        keyword_index=keyword_index,
        hybrid_engine=hybrid_engine,
        embedding_workers=settings.embedding_workers,
    )


def create_app(
    service: KnowledgeBaseService | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Create the API application.

    Without a service, one is built from settings (or the environment) at
    startup and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("starting server")
        owns_service = app.state.service is None
        if owns_service:
            app.state.service = build_service(app.state.settings or Settings.from_env())

        yield

        if owns_service:
            app.state.service.close()
            app.state.service = None
        logger.info("server shutdown")

    app = FastAPI(
        title="Knowledge Base RAG API",
        description="Document ingestion and similarity search over per-owner knowledge bases",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.settings = settings

    def get_service(request: Request) -> KnowledgeBaseService:
        current = request.app.state.service
        if current is None:
            raise HTTPException(status_code=503, detail="Service not initialized")
        return current

    # --- Exception Handlers ---

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(code="VALIDATION_ERROR", message=str(exc)).model_dump(),
        )

    @app.exception_handler(VectorStoreError)
    async def vector_store_error_handler(request: Request, exc: VectorStoreError):
        logger.error("vector store error", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=503,
            content=ErrorResponse(code="STORE_UNAVAILABLE", message=str(exc)).model_dump(),
        )

    @app.exception_handler(CollectionNotInitialized)
    async def collection_error_handler(request: Request, exc: CollectionNotInitialized):
        logger.error("collection not initialized", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(code="COLLECTION_NOT_INITIALIZED", message=str(exc)).model_dump(),
        )

    # --- Health Endpoints ---

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Liveness check."""
        return HealthResponse(status="healthy")

    @app.get("/ready", response_model=HealthResponse)
    async def ready(request: Request):
        """Readiness check - verifies vector store connectivity."""
        current = request.app.state.service
        if current is None:
            return HealthResponse(status="unhealthy", checks={"vector_store": False})

        result = await asyncio.to_thread(current.health_check)
        checks = {"vector_store": bool(result["vector_store"])}
        status = "healthy" if all(checks.values()) else "unhealthy"
        return HealthResponse(status=status, checks=checks, circuit=result.get("circuit"))

    # --- Knowledge Base Endpoints ---

    @app.post("/api/v1/kb/{owner_id}/{kb_name}/documents", response_model=DocumentUploadResult)
    async def ingest_document(owner_id: str, kb_name: str, body: DocumentIngestRequest, request: Request):
        """Chunk, embed and store one document's extracted text."""
        service = get_service(request)
        file_size = body.file_size_bytes
        if file_size is None:
            file_size = len(body.extracted_text.encode("utf-8"))

        # Run in thread pool to avoid blocking event loop (embedding + store calls)
        return await asyncio.to_thread(
            lambda: service.process_document(
                owner_id,
                kb_name,
                body.file_name,
                body.file_type,
                file_size,
                body.extracted_text,
                document_id=body.document_id,
                title=body.title,
                author=body.author,
                language=body.language,
                summary=body.summary,
            )
        )

    @app.post(
        "/api/v1/kb/{owner_id}/{kb_name}/documents/batch",
        response_model=BatchIngestResponse,
    )
    async def ingest_documents(owner_id: str, kb_name: str, body: BatchIngestRequest, request: Request):
        """Ingest several documents; one failure does not fail the batch."""
        service = get_service(request)
        results = await asyncio.to_thread(service.process_documents, owner_id, kb_name, body.documents)
        successful = sum(1 for r in results if r.status == "completed")
        return BatchIngestResponse(
            results=results, successful=successful, failed=len(results) - successful
        )

    @app.post(
        "/api/v1/kb/{owner_id}/{kb_name}/documents/{document_id}/reprocess",
        response_model=DocumentUploadResult,
    )
    async def reprocess_document(
        owner_id: str, kb_name: str, document_id: str, body: ReprocessRequest, request: Request
    ):
        """Replace a document's chunks with a fresh ingestion of its text."""
        service = get_service(request)
        file_size = body.file_size_bytes
        if file_size is None:
            file_size = len(body.extracted_text.encode("utf-8"))
        return await asyncio.to_thread(
            service.reprocess_document,
            owner_id,
            kb_name,
            document_id,
            body.file_name,
            body.file_type,
            file_size,
            body.extracted_text,
        )

    @app.post(
        "/api/v1/kb/{owner_id}/{kb_name}/documents/{document_id}/cancel",
        response_model=CancelResponse,
    )
    async def cancel_document(owner_id: str, kb_name: str, document_id: str, request: Request):
        """Cancel an in-flight ingestion."""
        service = get_service(request)
        cancelled = service.cancel_document(document_id)
        if not cancelled:
            raise HTTPException(
                status_code=404, detail=f"No ingestion in progress for document {document_id}"
            )
        return CancelResponse(document_id=document_id, cancelled=True)

    @app.delete(
        "/api/v1/kb/{owner_id}/{kb_name}/documents/{document_id}",
        response_model=DeleteResponse,
    )
    async def delete_document(owner_id: str, kb_name: str, document_id: str, request: Request):
        """Delete a document's chunks."""
        service = get_service(request)
        deleted = await asyncio.to_thread(service.delete_document, owner_id, kb_name, document_id)
        if not deleted:
            raise HTTPException(status_code=404, detail=f"Document {document_id} not found")
        return DeleteResponse(deleted=True)

    @app.post("/api/v1/kb/{owner_id}/{kb_name}/search", response_model=SearchResponse)
    async def search(owner_id: str, kb_name: str, body: SearchRequest, request: Request):
        """Similarity search, or hybrid ranking when requested."""
        service = get_service(request)
        if body.hybrid:
            results = await asyncio.to_thread(
                service.hybrid_search,
                owner_id,
                kb_name,
                body.query,
                body.limit,
                body.filters,
                body.similarity_threshold,
            )
        else:
            results = await asyncio.to_thread(
                service.search,
                owner_id,
                kb_name,
                body.query,
                body.limit,
                body.similarity_threshold,
                body.filters,
            )
        return SearchResponse(results=results, count=len(results))

    @app.get("/api/v1/kb/{owner_id}/{kb_name}/stats", response_model=KnowledgeBaseStats)
    async def stats(owner_id: str, kb_name: str, request: Request):
        service = get_service(request)
        return await asyncio.to_thread(service.get_stats, owner_id, kb_name)

    @app.delete("/api/v1/kb/{owner_id}/{kb_name}", response_model=DeleteResponse)
    async def clear_knowledge_base(owner_id: str, kb_name: str, request: Request):
        """Delete the whole knowledge base."""
        service = get_service(request)
        cleared = await asyncio.to_thread(service.clear_knowledge_base, owner_id, kb_name)
        if not cleared:
            raise HTTPException(status_code=503, detail="Knowledge base could not be cleared")
        return DeleteResponse(deleted=True)

    return app


app = create_app()
