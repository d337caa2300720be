"""Knowledge base service: document ingestion and search over per-owner collections."""

import contextvars
import re
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import Any

from ..logger import log_context, logger
from .chunking import ChunkingOptions, DocumentChunker, resolve_options
from .embeddings import EmbeddingProvider
from .errors import (
    CircuitOpenError,
    CollectionNotInitialized,
    EmbeddingError,
    IngestionCancelled,
    KnowledgeBaseError,
    ValidationError,
    VectorStoreError,
)
from .hybrid import HybridSearchEngine
from .keyword_index import KeywordIndex
from .models import (
    EMBEDDING_SCHEMA_VERSION,
    ChunkMetadata,
    Collection,
    DocumentMetadata,
    DocumentUpload,
    DocumentUploadResult,
    KnowledgeBaseStats,
    SearchResult,
    TextChunk,
    VectorRecord,
)
from .vector_store import ChromaVectorStore, similarity_from_distance

DEFAULT_SEARCH_LIMIT = 5
DEFAULT_SIMILARITY_THRESHOLD = 0.1
DEFAULT_EMBEDDING_WORKERS = 4
DEFAULT_BATCH_WORKERS = 4

# Only fully ingested chunks are visible to search
SEARCHABLE_FILTER = {"processingStatus": "completed"}

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_]")


def _require(value: str, name: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} must be a non-empty string")


def get_collection_name(owner_id: str, kb_name: str) -> str:
    """Deterministic vector store collection name for an owner's knowledge base.

    Every character outside ``[A-Za-z0-9_]`` becomes ``_`` and the result is
    lowercased, so distinct pairs can collide: ("a-b", "c") and ("a_b", "c")
    share one collection.
    """
    _require(owner_id, "owner_id")
    _require(kb_name, "kb_name")
    safe_name = _UNSAFE_NAME_CHARS.sub("_", f"{owner_id}_{kb_name}")
    return f"kb_{safe_name}".lower()


def chunk_id(document_id: str, chunk_index: int) -> str:
    return f"{document_id}_chunk_{chunk_index}"


class KnowledgeBaseService:
    """Ingests extracted document text and answers similarity queries.

    Each (owner_id, kb_name) pair maps to one vector store collection. A
    document becomes searchable only once every one of its chunks has been
    embedded and stored.
    """

    def __init__(
        self,
        vector_store: ChromaVectorStore,
        embedding_provider: EmbeddingProvider,
        chunker: DocumentChunker | None = None,
        keyword_index: KeywordIndex | None = None,
        hybrid_engine: HybridSearchEngine | None = None,
        embedding_workers: int = DEFAULT_EMBEDDING_WORKERS,
    ):
        if embedding_workers < 1:
            raise ValueError("embedding_workers must be at least 1")
        self.vector_store = vector_store
        self.embedding_provider = embedding_provider
        self.chunker = chunker or DocumentChunker()
        self.keyword_index = keyword_index
        self.hybrid_engine = hybrid_engine
        self.embedding_workers = embedding_workers

        self._cancel_events: dict[str, threading.Event] = {}
        self._cancel_lock = threading.Lock()

    def close(self):
        self.vector_store.close()
        if self.keyword_index is not None and hasattr(self.keyword_index, "disconnect"):
            self.keyword_index.disconnect()

    # Ingestion

    def process_document(
        self,
        owner_id: str,
        kb_name: str,
        file_name: str,
        file_type: str,
        file_size_bytes: int,
        extracted_text: str,
        *,
        document_id: str | None = None,
        chunking_options: ChunkingOptions | None = None,
        title: str | None = None,
        author: str | None = None,
        language: str | None = None,
        summary: str | None = None,
    ) -> DocumentUploadResult:
        """Chunk, embed and store one document.

        Embedding and store failures do not raise: they produce a result with
        status ``failed``, ``chunks_processed=0`` and the error message, and
        no chunk of the document is left searchable.

        Raises:
            ValidationError: For empty identifiers, a negative size or invalid
                chunking options. Nothing is written in that case.
        """
        collection_name = get_collection_name(owner_id, kb_name)
        _require(file_name, "file_name")
        if file_size_bytes < 0:
            raise ValidationError("file_size_bytes must be non-negative")
        options = resolve_options(chunking_options or self.chunker.options)

        document_id = document_id or uuid.uuid4().hex
        metadata = DocumentMetadata(
            document_id=document_id,
            filename=file_name,
            filepath=f"{owner_id}/{kb_name}/{file_name}",
            file_type=file_type,
            file_size=file_size_bytes,
            upload_timestamp=datetime.now(timezone.utc),
            uploader_id=owner_id,
            title=title,
            author=author,
            language=language,
            summary=summary,
            processing_status="processing",
            embedding_model=self.embedding_provider.model_name,
            chunk_size=options.chunk_size,
            overlap_size=options.overlap_size,
        )

        cancel_event = self._register(document_id)
        start = time.perf_counter()
        with log_context(owner_id=owner_id, kb_name=kb_name, document_id=document_id):
            logger.info("processing document", file_name=file_name, text_length=len(extracted_text))
            try:
                records = self._ingest(collection_name, metadata, extracted_text, options, cancel_event)
            except CollectionNotInitialized:
                raise
            except KnowledgeBaseError as e:
                return self._failed(metadata, start, e)
            finally:
                self._unregister(document_id)

            duration_ms = (time.perf_counter() - start) * 1000
            metadata.processing_time_ms = round(duration_ms, 2)
            if not records:
                logger.warn("document produced no chunks", file_name=file_name)
            logger.info(
                "document processed",
                file_name=file_name,
                chunks_count=len(records),
                duration_ms=round(duration_ms, 2),
            )
            return DocumentUploadResult(
                document_id=document_id,
                chunks_processed=len(records),
                processing_time_ms=round(duration_ms, 2),
                status="completed",
                document=metadata,
            )

    def _ingest(
        self,
        collection_name: str,
        metadata: DocumentMetadata,
        text: str,
        options: ChunkingOptions,
        cancel_event: threading.Event,
    ) -> list[VectorRecord]:
        collection = self.vector_store.get_or_create_collection(collection_name)
        chunks = self.chunker.chunk(text, options)
        embeddings = self._embed_chunks(chunks, cancel_event)

        # Records are written only once every embedding exists
        metadata.chunk_count = len(chunks)
        metadata.processing_status = "completed"
        records = self._build_records(metadata, chunks, embeddings)

        self._check_cancelled(cancel_event)
        self.vector_store.add_records(collection, records)
        if cancel_event.is_set():
            self._remove_records(collection, [r.id for r in records])
            raise IngestionCancelled("ingestion cancelled")

        self._index_keywords(collection_name, records)
        return records

    def _embed_chunks(
        self, chunks: list[TextChunk], cancel_event: threading.Event
    ) -> list[list[float]]:
        embeddings: list[list[float] | None] = [None] * len(chunks)
        if self.embedding_workers == 1 or len(chunks) <= 1:
            for chunk in chunks:
                embeddings[chunk.chunk_index] = self._embed_chunk(chunk, cancel_event)
            return embeddings

        with ThreadPoolExecutor(max_workers=min(self.embedding_workers, len(chunks))) as executor:
            future_to_index = {
                executor.submit(
                    contextvars.copy_context().run, self._embed_chunk, chunk, cancel_event
                ): chunk.chunk_index
                for chunk in chunks
            }
            try:
                for future in as_completed(future_to_index):
                    embeddings[future_to_index[future]] = future.result()
            except KnowledgeBaseError:
                for future in future_to_index:
                    future.cancel()
                raise
        return embeddings

    def _embed_chunk(self, chunk: TextChunk, cancel_event: threading.Event) -> list[float]:
        self._check_cancelled(cancel_event)
        try:
            return self._embed_text(chunk.text)
        except EmbeddingError as e:
            logger.error(
                "chunk embedding failed",
                chunk_index=chunk.chunk_index,
                error=str(e),
            )
            raise

    def _embed_text(self, text: str) -> list[float]:
        try:
            embedding = self.embedding_provider.embed(text)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"embedding provider failed: {e}") from e
        if not embedding:
            raise EmbeddingError("embedding provider returned an empty vector")
        return embedding

    @staticmethod
    def _build_records(
        metadata: DocumentMetadata,
        chunks: list[TextChunk],
        embeddings: list[list[float]],
    ) -> list[VectorRecord]:
        document_fields = metadata.model_dump()
        return [
            VectorRecord(
                id=chunk_id(metadata.document_id, chunk.chunk_index),
                content=chunk.text,
                metadata=ChunkMetadata(
                    **document_fields,
                    chunk_index=chunk.chunk_index,
                    start_position=chunk.start_position,
                    end_position=chunk.end_position,
                    token_count=chunk.token_count,
                    embedding_version=EMBEDDING_SCHEMA_VERSION,
                ),
                embedding=embedding,
            )
            for chunk, embedding in zip(chunks, embeddings)
        ]

    def _failed(
        self, metadata: DocumentMetadata, start: float, error: Exception
    ) -> DocumentUploadResult:
        duration_ms = (time.perf_counter() - start) * 1000
        message = str(error) or type(error).__name__
        metadata.processing_status = "failed"
        metadata.error_message = message
        metadata.processing_time_ms = round(duration_ms, 2)

        if isinstance(error, CircuitOpenError):
            logger.warn("document processing skipped, vector store circuit open", error=message)
        elif isinstance(error, IngestionCancelled):
            logger.info("document processing cancelled", duration_ms=round(duration_ms, 2))
        else:
            logger.error(
                "document processing failed",
                error_type=type(error).__name__,
                error=message,
                duration_ms=round(duration_ms, 2),
            )
        return DocumentUploadResult(
            document_id=metadata.document_id,
            chunks_processed=0,
            processing_time_ms=round(duration_ms, 2),
            status="failed",
            error=message,
            document=metadata,
        )

    def process_documents(
        self,
        owner_id: str,
        kb_name: str,
        uploads: list[DocumentUpload],
        max_workers: int = DEFAULT_BATCH_WORKERS,
        chunking_options: ChunkingOptions | None = None,
    ) -> list[DocumentUploadResult]:
        """Ingest several documents concurrently.

        A document that fails, including on validation, yields a failed
        result and never fails the batch. Results are in input order.
        """
        get_collection_name(owner_id, kb_name)
        if not uploads:
            return []

        document_ids = [uuid.uuid4().hex for _ in uploads]
        results: list[DocumentUploadResult | None] = [None] * len(uploads)
        start = time.perf_counter()
        logger.info("starting batch ingestion", owner_id=owner_id, kb_name=kb_name, total_files=len(uploads))

        def process(upload: DocumentUpload, document_id: str) -> DocumentUploadResult:
            return self.process_document(
                owner_id,
                kb_name,
                upload.file_name,
                upload.file_type,
                upload.file_size_bytes,
                upload.extracted_text,
                document_id=document_id,
                chunking_options=chunking_options,
                title=upload.title,
                author=upload.author,
                language=upload.language,
                summary=upload.summary,
            )

        with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(uploads)))) as executor:
            future_to_index = {
                executor.submit(process, upload, document_id): i
                for i, (upload, document_id) in enumerate(zip(uploads, document_ids))
            }
            for future in as_completed(future_to_index):
                i = future_to_index[future]
                try:
                    results[i] = future.result()
                except KnowledgeBaseError as e:
                    logger.error(
                        "failed to ingest document",
                        file_name=uploads[i].file_name,
                        error=str(e),
                    )
                    results[i] = DocumentUploadResult(
                        document_id=document_ids[i], status="failed", error=str(e)
                    )

        duration_ms = (time.perf_counter() - start) * 1000
        successful = sum(1 for r in results if r.status == "completed")
        logger.info(
            "batch ingestion complete",
            owner_id=owner_id,
            kb_name=kb_name,
            total_files=len(uploads),
            successful=successful,
            failed=len(uploads) - successful,
            duration_ms=round(duration_ms, 2),
        )
        return results

    def reprocess_document(
        self,
        owner_id: str,
        kb_name: str,
        document_id: str,
        file_name: str,
        file_type: str,
        file_size_bytes: int,
        extracted_text: str,
        **kwargs: Any,
    ) -> DocumentUploadResult:
        """Replace a document's chunks by ingesting it again under the same id."""
        _require(document_id, "document_id")
        collection_name = get_collection_name(owner_id, kb_name)
        try:
            collection = self.vector_store.get_or_create_collection(collection_name)
            self.vector_store.delete_records(collection, where={"documentId": document_id})
        except VectorStoreError as e:
            logger.error(
                "failed to remove previous chunks",
                document_id=document_id,
                error=str(e),
            )
            return DocumentUploadResult(document_id=document_id, status="failed", error=str(e))
        self._remove_keywords(collection_name, document_id)

        logger.info("reprocessing document", document_id=document_id, file_name=file_name)
        return self.process_document(
            owner_id,
            kb_name,
            file_name,
            file_type,
            file_size_bytes,
            extracted_text,
            document_id=document_id,
            **kwargs,
        )

    # Cancellation

    def cancel_document(self, document_id: str) -> bool:
        """Request cancellation of an in-flight ingestion.

        Returns False when no ingestion of document_id is running.
        """
        with self._cancel_lock:
            event = self._cancel_events.get(document_id)
        if event is None:
            return False
        event.set()
        logger.info("document cancellation requested", document_id=document_id)
        return True

    def _register(self, document_id: str) -> threading.Event:
        with self._cancel_lock:
            if document_id in self._cancel_events:
                raise ValidationError(f"document {document_id} is already being processed")
            event = threading.Event()
            self._cancel_events[document_id] = event
            return event

    def _unregister(self, document_id: str) -> None:
        with self._cancel_lock:
            self._cancel_events.pop(document_id, None)

    @staticmethod
    def _check_cancelled(cancel_event: threading.Event) -> None:
        if cancel_event.is_set():
            raise IngestionCancelled("ingestion cancelled")

    def _remove_records(self, collection: Collection, ids: list[str]) -> None:
        if not ids:
            return
        try:
            self.vector_store.delete_records(collection, ids=ids)
        except VectorStoreError as e:
            logger.error("failed to remove cancelled records", ids_count=len(ids), error=str(e))

    # Search

    def search(
        self,
        owner_id: str,
        kb_name: str,
        query_text: str,
        limit: int = DEFAULT_SEARCH_LIMIT,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        filters: dict[str, Any] | None = None,
    ) -> list[SearchResult]:
        """Return up to limit chunks with score at least similarity_threshold.

        score is ``max(0, 1 - distance)``. Store and embedding failures are
        logged and yield an empty list.
        """
        collection_name = get_collection_name(owner_id, kb_name)
        if limit <= 0:
            raise ValidationError("limit must be positive")
        if not query_text or not query_text.strip():
            return []

        start = time.perf_counter()
        with log_context(owner_id=owner_id, kb_name=kb_name):
            try:
                query_embedding = self._embed_text(query_text)
                collection = self.vector_store.get_or_create_collection(collection_name)
                matches = self.vector_store.query(
                    collection,
                    query_embedding,
                    limit,
                    where={**(filters or {}), **SEARCHABLE_FILTER},
                )
            except (VectorStoreError, EmbeddingError) as e:
                self._log_search_failure(e)
                return []

            results = []
            for match in matches:
                score = similarity_from_distance(match.distance)
                if score < similarity_threshold:
                    continue
                results.append(
                    SearchResult(
                        id=match.id,
                        content=match.content or "",
                        metadata=ChunkMetadata.try_from_store_metadata(match.metadata),
                        distance=match.distance,
                        score=score,
                        semantic_score=score,
                    )
                )
            results.sort(key=lambda r: r.score, reverse=True)
            results = results[:limit]

            duration_ms = (time.perf_counter() - start) * 1000
            logger.info(
                "search completed",
                query_length=len(query_text),
                limit=limit,
                candidates=len(matches),
                results_count=len(results),
                duration_ms=round(duration_ms, 2),
            )
            return results

    def hybrid_search(
        self,
        owner_id: str,
        kb_name: str,
        query_text: str,
        limit: int = DEFAULT_SEARCH_LIMIT,
        filters: dict[str, Any] | None = None,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    ) -> list[SearchResult]:
        """Rank by semantic, keyword and recency signals.

        Falls back to plain search when no hybrid engine is configured.
        """
        if self.hybrid_engine is None:
            return self.search(owner_id, kb_name, query_text, limit, similarity_threshold, filters)

        collection_name = get_collection_name(owner_id, kb_name)
        if limit <= 0:
            raise ValidationError("limit must be positive")
        if not query_text or not query_text.strip():
            return []

        with log_context(owner_id=owner_id, kb_name=kb_name):
            try:
                query_embedding = self._embed_text(query_text)
                collection = self.vector_store.get_or_create_collection(collection_name)
                return self.hybrid_engine.search(
                    collection,
                    query_text,
                    query_embedding,
                    limit,
                    where={**(filters or {}), **SEARCHABLE_FILTER},
                )
            except (VectorStoreError, EmbeddingError) as e:
                self._log_search_failure(e)
                return []

    @staticmethod
    def _log_search_failure(error: Exception) -> None:
        if isinstance(error, CircuitOpenError):
            logger.warn("search skipped, vector store circuit open", error=str(error))
        else:
            logger.error("search failed", error_type=type(error).__name__, error=str(error))

    # Management

    def get_stats(self, owner_id: str, kb_name: str) -> KnowledgeBaseStats:
        """Document count, chunk count and total source size; zeros on store failure."""
        collection_name = get_collection_name(owner_id, kb_name)
        try:
            collection = self.vector_store.get_or_create_collection(collection_name)
            stats = self.vector_store.stats(collection)
        except VectorStoreError as e:
            logger.error(
                "failed to get knowledge base stats",
                collection=collection_name,
                error=str(e),
            )
            return KnowledgeBaseStats()

        if stats.approximate:
            logger.debug("knowledge base stats are approximate", collection=collection_name)
        return KnowledgeBaseStats(
            document_count=stats.document_count,
            chunk_count=stats.count,
            total_size_bytes=stats.total_size_bytes,
        )

    def delete_document(self, owner_id: str, kb_name: str, document_id: str) -> bool:
        """Delete every chunk of a document. Returns False if it does not exist."""
        collection_name = get_collection_name(owner_id, kb_name)
        _require(document_id, "document_id")
        where = {"documentId": document_id}
        try:
            collection = self.vector_store.get_or_create_collection(collection_name)
            if not self.vector_store.get_records(collection, where=where, limit=1):
                logger.info("document not found", collection=collection_name, document_id=document_id)
                return False
            self.vector_store.delete_records(collection, where=where)
        except VectorStoreError as e:
            logger.error(
                "failed to delete document",
                collection=collection_name,
                document_id=document_id,
                error=str(e),
            )
            return False

        self._remove_keywords(collection_name, document_id)
        logger.info("document deleted", collection=collection_name, document_id=document_id)
        return True

    def clear_knowledge_base(self, owner_id: str, kb_name: str) -> bool:
        """Drop the knowledge base's collection and everything in it.

        A knowledge base whose collection does not exist counts as cleared.
        """
        collection_name = get_collection_name(owner_id, kb_name)
        try:
            existed = self.vector_store.delete_collection(collection_name)
        except VectorStoreError as e:
            logger.error("failed to clear knowledge base", collection=collection_name, error=str(e))
            return False

        if self.keyword_index is not None:
            try:
                self.keyword_index.clear_collection(collection_name)
            except Exception as e:
                logger.warn("keyword index clear failed", collection=collection_name, error=str(e))
        logger.info("knowledge base cleared", collection=collection_name, existed=existed)
        return True

    def health_check(self) -> dict[str, Any]:
        return {
            "vector_store": self.vector_store.health_check(),
            "circuit": self.vector_store.circuit_breaker.snapshot(),
        }

    # Keyword index upkeep, best effort

    def _index_keywords(self, collection_name: str, records: list[VectorRecord]) -> None:
        if self.keyword_index is None or not records:
            return
        try:
            self.keyword_index.index_records(collection_name, records)
        except Exception as e:
            logger.warn("keyword indexing failed", collection=collection_name, error=str(e))

    def _remove_keywords(self, collection_name: str, document_id: str) -> None:
        if self.keyword_index is None:
            return
        try:
            self.keyword_index.delete_document(collection_name, document_id)
        except Exception as e:
            logger.warn(
                "keyword index delete failed",
                collection=collection_name,
                document_id=document_id,
                error=str(e),
            )
