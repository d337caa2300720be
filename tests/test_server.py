"""API tests against a mocked knowledge base service."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from kb_rag_server.config import Settings
from kb_rag_server.rag import (
    CachedEmbeddingProvider,
    ChunkMetadata,
    DocumentUpload,
    DocumentUploadResult,
    HashEmbeddingProvider,
    KnowledgeBaseService,
    KnowledgeBaseStats,
    SearchResult,
    StoreUnavailable,
    ValidationError,
)
from kb_rag_server.server import build_embedding_provider, create_app

BASE = "/api/v1/kb/u1/kb1"


@pytest.fixture
def service():
    return MagicMock(spec=KnowledgeBaseService)


@pytest.fixture
def client(service):
    return TestClient(create_app(service=service))


def completed(document_id: str = "doc1", chunks: int = 2) -> DocumentUploadResult:
    return DocumentUploadResult(
        document_id=document_id, chunks_processed=chunks, processing_time_ms=12.5, status="completed"
    )


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_ready_reports_store_and_circuit(self, client, service):
        service.health_check.return_value = {
            "vector_store": True,
            "circuit": {"name": "chroma", "state": "closed", "failure_count": 0},
        }

        body = client.get("/ready").json()

        assert body["status"] == "healthy"
        assert body["checks"] == {"vector_store": True}
        assert body["circuit"]["state"] == "closed"

    def test_ready_unhealthy_when_store_down(self, client, service):
        service.health_check.return_value = {"vector_store": False, "circuit": None}
        assert client.get("/ready").json()["status"] == "unhealthy"


class TestIngest:
    def test_ingest_document(self, client, service):
        service.process_document.return_value = completed()

        response = client.post(
            f"{BASE}/documents",
            json={"file_name": "notes.txt", "extracted_text": "héllo world.", "title": "Notes"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert response.json()["chunks_processed"] == 2
        args = service.process_document.call_args
        # Size defaults to the UTF-8 length of the text
        assert args.args == ("u1", "kb1", "notes.txt", "text/plain", 13, "héllo world.")
        assert args.kwargs["title"] == "Notes"
        assert args.kwargs["document_id"] is None

    def test_validation_error_is_400(self, client, service):
        service.process_document.side_effect = ValidationError("file_name is required")

        response = client.post(f"{BASE}/documents", json={"file_name": "a.txt", "extracted_text": "x"})

        assert response.status_code == 400
        assert response.json() == {"code": "VALIDATION_ERROR", "message": "file_name is required"}

    def test_failed_ingestion_is_reported_in_body(self, client, service):
        service.process_document.return_value = DocumentUploadResult(
            document_id="doc1", status="failed", error="embedding failed"
        )

        response = client.post(f"{BASE}/documents", json={"file_name": "a.txt", "extracted_text": "x"})

        assert response.status_code == 200
        assert response.json()["error"] == "embedding failed"

    def test_malformed_body_is_422(self, client, service):
        response = client.post(f"{BASE}/documents", json={"extracted_text": "x"})
        assert response.status_code == 422
        service.process_document.assert_not_called()

    def test_batch(self, client, service):
        service.process_documents.return_value = [
            completed("a"),
            DocumentUploadResult(document_id="b", status="failed", error="boom"),
        ]

        response = client.post(
            f"{BASE}/documents/batch",
            json={"documents": [
                {"file_name": "a.txt", "extracted_text": "alpha"},
                {"file_name": "b.txt", "extracted_text": "beta"},
            ]},
        )

        body = response.json()
        assert body["successful"] == 1
        assert body["failed"] == 1
        owner_id, kb_name, uploads = service.process_documents.call_args.args
        assert (owner_id, kb_name) == ("u1", "kb1")
        assert all(isinstance(u, DocumentUpload) for u in uploads)

    def test_empty_batch_rejected(self, client):
        assert client.post(f"{BASE}/documents/batch", json={"documents": []}).status_code == 422

    def test_reprocess(self, client, service):
        service.reprocess_document.return_value = completed("doc9", chunks=1)

        response = client.post(
            f"{BASE}/documents/doc9/reprocess",
            json={"file_name": "a.txt", "extracted_text": "new text", "file_size_bytes": 99},
        )

        assert response.json()["document_id"] == "doc9"
        service.reprocess_document.assert_called_once_with(
            "u1", "kb1", "doc9", "a.txt", "text/plain", 99, "new text"
        )


class TestCancelAndDelete:
    def test_cancel_in_flight(self, client, service):
        service.cancel_document.return_value = True
        response = client.post(f"{BASE}/documents/doc1/cancel")
        assert response.json() == {"document_id": "doc1", "cancelled": True}

    def test_cancel_unknown_is_404(self, client, service):
        service.cancel_document.return_value = False
        assert client.post(f"{BASE}/documents/doc1/cancel").status_code == 404

    def test_delete_document(self, client, service):
        service.delete_document.return_value = True
        assert client.delete(f"{BASE}/documents/doc1").json() == {"deleted": True}
        service.delete_document.assert_called_once_with("u1", "kb1", "doc1")

    def test_delete_missing_document_is_404(self, client, service):
        service.delete_document.return_value = False
        assert client.delete(f"{BASE}/documents/doc1").status_code == 404

    def test_clear_knowledge_base(self, client, service):
        service.clear_knowledge_base.return_value = True
        assert client.delete(BASE).json() == {"deleted": True}

    def test_clear_failure_is_503(self, client, service):
        service.clear_knowledge_base.return_value = False
        assert client.delete(BASE).status_code == 503


class TestSearchAndStats:
    def search_result(self) -> SearchResult:
        metadata = ChunkMetadata(
            document_id="doc1",
            filename="a.txt",
            filepath="u1/kb1/a.txt",
            file_type="text/plain",
            file_size=5,
            upload_timestamp=datetime(2026, 1, 1, tzinfo=timezone.utc),
            uploader_id="u1",
            processing_status="completed",
            chunk_index=0,
            start_position=0,
            end_position=5,
            token_count=1,
        )
        return SearchResult(id="doc1_chunk_0", content="alpha", metadata=metadata, distance=0.2, score=0.8)

    def test_search(self, client, service):
        service.search.return_value = [self.search_result()]

        response = client.post(
            f"{BASE}/search",
            json={"query": "alpha", "limit": 3, "similarity_threshold": 0.5, "filters": {"language": "en"}},
        )

        body = response.json()
        assert body["count"] == 1
        assert body["results"][0]["id"] == "doc1_chunk_0"
        assert body["results"][0]["metadata"]["documentId"] == "doc1"
        service.search.assert_called_once_with("u1", "kb1", "alpha", 3, 0.5, {"language": "en"})
        service.hybrid_search.assert_not_called()

    def test_hybrid_search(self, client, service):
        service.hybrid_search.return_value = []

        response = client.post(f"{BASE}/search", json={"query": "alpha", "hybrid": True})

        assert response.json() == {"results": [], "count": 0}
        service.hybrid_search.assert_called_once_with("u1", "kb1", "alpha", 5, None, 0.1)

    def test_search_limit_bounds(self, client):
        assert client.post(f"{BASE}/search", json={"query": "alpha", "limit": 0}).status_code == 422
        assert client.post(f"{BASE}/search", json={"query": "alpha", "limit": 51}).status_code == 422

    def test_store_error_is_503(self, client, service):
        service.hybrid_search.side_effect = StoreUnavailable("chroma down")

        response = client.post(f"{BASE}/search", json={"query": "alpha", "hybrid": True})

        assert response.status_code == 503
        assert response.json()["code"] == "STORE_UNAVAILABLE"

    def test_stats(self, client, service):
        service.get_stats.return_value = KnowledgeBaseStats(document_count=2, chunk_count=7, total_size_bytes=300)

        assert client.get(f"{BASE}/stats").json() == {
            "document_count": 2,
            "chunk_count": 7,
            "total_size_bytes": 300,
        }


class TestServiceComposition:
    def test_hash_provider_with_cache(self):
        provider = build_embedding_provider(Settings(embedding_provider="hash"))
        assert isinstance(provider, CachedEmbeddingProvider)

    def test_cache_disabled(self):
        provider = build_embedding_provider(
            Settings(embedding_provider="hash", embedding_cache_max_entries=0)
        )
        assert isinstance(provider, HashEmbeddingProvider)

    def test_uninitialized_service_is_503(self):
        client = TestClient(create_app(service=None))
        response = client.get(f"{BASE}/stats")
        assert response.status_code == 503
