"""Shared fixtures: an in-memory Chroma server behind httpx.MockTransport."""

import json
import math
import threading
import uuid

import httpx
import pytest

from kb_rag_server.rag import (
    ChromaVectorStore,
    CircuitBreaker,
    ConnectionManager,
    DocumentChunker,
    HashEmbeddingProvider,
    KnowledgeBaseService,
)

API_PREFIX = "/api/v1"


def _cosine_distance(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if norm == 0:
        return 1.0
    return 1.0 - dot / norm


def _matches(metadata: dict, where: dict | None) -> bool:
    if not where:
        return True
    if "$and" in where:
        return all(_matches(metadata, clause) for clause in where["$and"])
    return all(metadata.get(key) == value for key, value in where.items())


class FakeChromaServer:
    """Enough of the Chroma v1 REST API for the client under test."""

    def __init__(self):
        self.collections: dict[str, dict] = {}
        self.requests: list[tuple[str, str, dict | None]] = []
        # Queue of status codes returned instead of handling the next requests
        self.fail_with: list[int] = []
        self.raise_transport_error = False
        self._lock = threading.Lock()

    def _by_id(self, collection_id: str) -> dict:
        for collection in self.collections.values():
            if collection["id"] == collection_id:
                return collection
        raise KeyError(collection_id)

    def records(self, name: str) -> dict[str, dict]:
        return self.collections[name]["records"]

    def handle(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            return self._handle(request)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        path = request.url.path
        self.requests.append((request.method, path, body))

        if self.raise_transport_error:
            raise httpx.ConnectError("connection refused", request=request)
        if self.fail_with:
            return httpx.Response(self.fail_with.pop(0), json={"error": "injected failure"})

        assert path.startswith(API_PREFIX), path
        parts = path[len(API_PREFIX):].strip("/").split("/")

        if parts == ["heartbeat"]:
            return httpx.Response(200, json={"nanosecond heartbeat": 1})

        if parts == ["collections"] and request.method == "POST":
            name = body["name"]
            if name not in self.collections:
                self.collections[name] = {
                    "id": str(uuid.uuid4()),
                    "name": name,
                    "metadata": body.get("metadata"),
                    "records": {},
                }
            collection = self.collections[name]
            return httpx.Response(
                200,
                json={"id": collection["id"], "name": name, "metadata": collection["metadata"]},
            )

        if len(parts) == 2 and parts[0] == "collections" and request.method == "DELETE":
            if parts[1] not in self.collections:
                return httpx.Response(400, json={"error": f"Collection {parts[1]} does not exist."})
            del self.collections[parts[1]]
            return httpx.Response(200, json=None)

        try:
            collection = self._by_id(parts[1])
        except KeyError:
            return httpx.Response(400, json={"error": f"Collection {parts[1]} does not exist."})
        records = collection["records"]
        action = parts[2]

        if action == "add":
            for i, record_id in enumerate(body["ids"]):
                records[record_id] = {
                    "document": body["documents"][i],
                    "embedding": body["embeddings"][i],
                    "metadata": body["metadatas"][i],
                }
            return httpx.Response(201, json=True)

        if action == "count":
            return httpx.Response(200, json=len(records))

        if action == "query":
            embedding = body["query_embeddings"][0]
            candidates = [
                (record_id, record, _cosine_distance(embedding, record["embedding"]))
                for record_id, record in records.items()
                if _matches(record["metadata"], body.get("where"))
            ]
            candidates.sort(key=lambda c: c[2])
            candidates = candidates[: body["n_results"]]
            return httpx.Response(
                200,
                json={
                    "ids": [[c[0] for c in candidates]],
                    "documents": [[c[1]["document"] for c in candidates]],
                    "metadatas": [[c[1]["metadata"] for c in candidates]],
                    "distances": [[c[2] for c in candidates]],
                },
            )

        if action == "get":
            selected = [
                (record_id, record)
                for record_id, record in records.items()
                if _matches(record["metadata"], body.get("where"))
                and (not body.get("ids") or record_id in body["ids"])
            ]
            offset = body.get("offset") or 0
            limit = body.get("limit")
            selected = selected[offset: offset + limit if limit is not None else None]
            include = body.get("include", [])
            return httpx.Response(
                200,
                json={
                    "ids": [s[0] for s in selected],
                    "documents": [s[1]["document"] for s in selected] if "documents" in include else None,
                    "metadatas": [s[1]["metadata"] for s in selected] if "metadatas" in include else None,
                },
            )

        if action == "delete":
            doomed = [
                record_id
                for record_id, record in records.items()
                if (not body.get("ids") or record_id in body["ids"])
                and _matches(record["metadata"], body.get("where"))
            ]
            for record_id in doomed:
                del records[record_id]
            return httpx.Response(200, json=doomed)

        return httpx.Response(404, json={"error": f"unknown route {path}"})


@pytest.fixture
def chroma():
    return FakeChromaServer()


@pytest.fixture
def http_client(chroma):
    client = httpx.Client(transport=httpx.MockTransport(chroma.handle), base_url="http://chroma.test")
    yield client
    client.close()


@pytest.fixture
def store(http_client):
    return ChromaVectorStore(
        base_url="http://chroma.test",
        connection_manager=ConnectionManager(max_retries=2, base_delay_seconds=0),
        circuit_breaker=CircuitBreaker(failure_threshold=3, reset_timeout_seconds=30),
        client=http_client,
    )


@pytest.fixture
def embedder():
    return HashEmbeddingProvider(dimensions=64)


@pytest.fixture
def service(store, embedder):
    return KnowledgeBaseService(
        vector_store=store,
        embedding_provider=embedder,
        chunker=DocumentChunker(chunk_size=20, overlap_size=5, min_chunk_size=1, max_chunk_size=40),
        embedding_workers=1,
    )
