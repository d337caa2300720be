"""Client for the Chroma vector database REST API."""

import os
import threading
import time
from typing import Any

import httpx

from ..logger import logger
from .errors import (
    CollectionNotInitialized,
    ValidationError,
    VectorStoreError,
    VectorStoreRequestError,
)
from .models import Collection, CollectionStats, QueryMatch, StoredRecord, VectorRecord
from .resilience import CircuitBreaker, ConnectionManager

DEFAULT_CHROMA_URL = "http://localhost:8000"
DEFAULT_API_PATH = "/api/v1"
DEFAULT_TIMEOUT_SECONDS = 10.0
DISTANCE_METRIC = "cosine"
STATS_PAGE_SIZE = 100
DEFAULT_STATS_SCAN_LIMIT = 1000


def similarity_from_distance(distance: float) -> float:
    """Convert a cosine distance (0..2) into a similarity score clamped to 0..1."""
    return max(0.0, 1.0 - distance)


def build_where(filters: dict[str, Any] | None) -> dict[str, Any] | None:
    """Build a where clause from equality predicates.

    Chroma accepts one field per clause, so several predicates are combined
    with ``$and``.
    """
    if not filters:
        return None
    if len(filters) == 1:
        return dict(filters)
    return {"$and": [{key: value} for key, value in filters.items()]}


def _first(values: list | None) -> list:
    # Query responses hold one inner list per query embedding
    if not values:
        return []
    return values[0] or []


def _is_missing_collection(error: VectorStoreRequestError) -> bool:
    # Chroma answers an unknown collection id with 404, or 400 on older servers
    if error.status_code == 404:
        return True
    return error.status_code == 400 and "does not exist" in str(error).lower()


class CollectionRegistry:
    """Cache of collection handles keyed by collection name.

    The remote store owns the collections; a missing entry only means the
    handle has to be fetched again.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._collections: dict[str, Collection] = {}

    def get(self, name: str) -> Collection | None:
        with self._lock:
            return self._collections.get(name)

    def add_if_absent(self, collection: Collection) -> Collection:
        """Insert the handle unless one is cached already; return the cached handle."""
        with self._lock:
            return self._collections.setdefault(collection.name, collection)

    def evict(self, name: str) -> Collection | None:
        with self._lock:
            return self._collections.pop(name, None)

    def discard(self, collection: Collection) -> None:
        """Evict collection only if it is still the cached handle for its name."""
        with self._lock:
            if self._collections.get(collection.name) == collection:
                del self._collections[collection.name]

    def clear(self) -> None:
        with self._lock:
            self._collections.clear()

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._collections

    def __len__(self) -> int:
        with self._lock:
            return len(self._collections)


class ChromaVectorStore:
    """Typed access to collections and records in a Chroma server.

    Every remote call runs through the circuit breaker, which wraps the
    connection manager's bounded retries.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_path: str = DEFAULT_API_PATH,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        connection_manager: ConnectionManager | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        client: httpx.Client | None = None,
    ):
        self.base_url = (base_url or os.getenv("CHROMA_URL", DEFAULT_CHROMA_URL)).rstrip("/")
        stripped_path = api_path.strip("/")
        self.api_path = f"/{stripped_path}" if stripped_path else ""
        self.connection_manager = connection_manager or ConnectionManager()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(name=f"chroma:{self.base_url}")
        self.registry = CollectionRegistry()
        self._owns_client = client is None
        self._client = client or httpx.Client(base_url=self.base_url, timeout=timeout_seconds)

    def close(self):
        if self._owns_client:
            self._client.close()
        self.registry.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        description: str,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self.api_path}{path}"

        def send() -> httpx.Response:
            response = self._client.request(method, url, json=payload)
            response.raise_for_status()
            return response

        start = time.perf_counter()
        response = self.circuit_breaker.call(
            lambda: self.connection_manager.execute(send, description)
        )
        duration_ms = (time.perf_counter() - start) * 1000
        logger.debug(
            "vector store call completed",
            operation=description,
            duration_ms=round(duration_ms, 2),
        )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise VectorStoreError(f"{description} returned an invalid JSON body") from e

    def _resolve(self, collection: Collection | str) -> Collection:
        if isinstance(collection, Collection):
            return collection
        return self.get_cached_collection(collection)

    def _collection_request(
        self,
        method: str,
        handle: Collection,
        action: str,
        operation: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        """Send a record operation, recreating the collection once if it vanished.

        A cached handle goes stale when the collection is deleted behind this
        client's back (another process clearing the knowledge base, a store
        reset). The stale handle is dropped and the operation is retried once
        against the recreated collection.
        """
        description = f"{operation or action} {handle.name}"
        try:
            return self._request(
                method, f"/collections/{handle.id}/{action}", description, payload=payload
            )
        except VectorStoreRequestError as e:
            if not _is_missing_collection(e):
                raise
            logger.warn(
                "collection handle is stale, recreating collection",
                collection=handle.name,
                collection_id=handle.id,
                error=str(e),
            )

        self.registry.discard(handle)
        fresh = self.get_or_create_collection(handle.name, handle.metadata)
        return self._request(
            method, f"/collections/{fresh.id}/{action}", description, payload=payload
        )

    def get_cached_collection(self, name: str) -> Collection:
        """Return the cached handle for name.

        Raises:
            CollectionNotInitialized: If no handle for name has been created.
        """
        handle = self.registry.get(name)
        if handle is None:
            raise CollectionNotInitialized(f"Collection {name} not initialized")
        return handle

    def get_or_create_collection(
        self, name: str, metadata: dict[str, Any] | None = None
    ) -> Collection:
        """Return the collection handle, creating the collection if absent.

        Creation is idempotent on the server side; concurrent first calls may
        both reach the server but only one handle is cached.
        """
        if not name:
            raise ValidationError("collection name must not be empty")

        cached = self.registry.get(name)
        if cached is not None:
            return cached

        start = time.perf_counter()
        body = self._request(
            "POST",
            "/collections",
            f"get_or_create_collection {name}",
            payload={
                "name": name,
                "metadata": {"hnsw:space": DISTANCE_METRIC, **(metadata or {})},
                "get_or_create": True,
            },
        )
        if not isinstance(body, dict) or "id" not in body:
            raise VectorStoreError(f"unexpected response creating collection {name}: {body!r}")

        handle = self.registry.add_if_absent(
            Collection(
                name=body.get("name", name),
                id=str(body["id"]),
                metadata=body.get("metadata") or {},
            )
        )
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "collection ready",
            collection=name,
            collection_id=handle.id,
            duration_ms=round(duration_ms, 2),
        )
        return handle

    def add_records(self, collection: Collection | str, records: list[VectorRecord]) -> int:
        """Add records in a single call.

        A failed call leaves visibility to the store's own atomicity; callers
        retry the whole batch.
        """
        handle = self._resolve(collection)
        if not records:
            return 0

        dimensions = {len(r.embedding) for r in records}
        if len(dimensions) != 1 or 0 in dimensions:
            raise ValidationError(
                f"records must share one non-empty embedding dimension, got {sorted(dimensions)}"
            )

        start = time.perf_counter()
        self._collection_request(
            "POST",
            handle,
            "add",
            operation="add_records",
            payload={
                "ids": [r.id for r in records],
                "documents": [r.content for r in records],
                "embeddings": [r.embedding for r in records],
                "metadatas": [r.metadata.to_store_metadata() for r in records],
            },
        )
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "records added",
            collection=handle.name,
            records_count=len(records),
            duration_ms=round(duration_ms, 2),
        )
        return len(records)

    def query(
        self,
        collection: Collection | str,
        query_embedding: list[float],
        limit: int = 5,
        where: dict[str, Any] | None = None,
    ) -> list[QueryMatch]:
        """Return up to limit nearest records, closest first."""
        handle = self._resolve(collection)
        if limit <= 0:
            raise ValidationError("limit must be positive")

        payload: dict[str, Any] = {
            "query_embeddings": [query_embedding],
            "n_results": limit,
            "include": ["documents", "metadatas", "distances"],
        }
        where_clause = build_where(where)
        if where_clause:
            payload["where"] = where_clause

        start = time.perf_counter()
        body = self._collection_request("POST", handle, "query", payload=payload) or {}

        ids = _first(body.get("ids"))
        documents = _first(body.get("documents"))
        metadatas = _first(body.get("metadatas"))
        distances = _first(body.get("distances"))

        matches = []
        for i, record_id in enumerate(ids):
            distance = distances[i] if i < len(distances) else None
            matches.append(
                QueryMatch(
                    id=record_id,
                    content=documents[i] if i < len(documents) else None,
                    metadata=(metadatas[i] if i < len(metadatas) else None) or {},
                    distance=distance if distance is not None else 0.0,
                )
            )
        matches.sort(key=lambda m: m.distance)

        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "similarity query completed",
            collection=handle.name,
            limit=limit,
            results_count=len(matches),
            duration_ms=round(duration_ms, 2),
        )
        return matches

    def get_records(
        self,
        collection: Collection | str,
        ids: list[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        include: tuple[str, ...] = ("metadatas",),
    ) -> list[StoredRecord]:
        handle = self._resolve(collection)
        payload: dict[str, Any] = {"include": list(include)}
        if ids:
            payload["ids"] = ids
        where_clause = build_where(where)
        if where_clause:
            payload["where"] = where_clause
        if limit is not None:
            payload["limit"] = limit
        if offset is not None:
            payload["offset"] = offset

        body = self._collection_request(
            "POST", handle, "get", operation="get_records", payload=payload
        ) or {}

        record_ids = body.get("ids") or []
        documents = body.get("documents") or []
        metadatas = body.get("metadatas") or []
        return [
            StoredRecord(
                id=record_id,
                content=documents[i] if i < len(documents) else None,
                metadata=(metadatas[i] if i < len(metadatas) else None) or {},
            )
            for i, record_id in enumerate(record_ids)
        ]

    def delete_records(
        self,
        collection: Collection | str,
        ids: list[str] | None = None,
        where: dict[str, Any] | None = None,
    ) -> None:
        """Delete records by id, by metadata filter, or both."""
        handle = self._resolve(collection)
        if not ids and not where:
            raise ValidationError("delete_records requires ids or a where filter")

        payload: dict[str, Any] = {}
        if ids:
            payload["ids"] = ids
        where_clause = build_where(where)
        if where_clause:
            payload["where"] = where_clause

        start = time.perf_counter()
        self._collection_request(
            "POST", handle, "delete", operation="delete_records", payload=payload
        )
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "records deleted",
            collection=handle.name,
            ids_count=len(ids or []),
            where=where_clause,
            duration_ms=round(duration_ms, 2),
        )

    def count(self, collection: Collection | str) -> int:
        handle = self._resolve(collection)
        body = self._collection_request("GET", handle, "count")
        return int(body or 0)

    def stats(
        self, collection: Collection | str, scan_limit: int = DEFAULT_STATS_SCAN_LIMIT
    ) -> CollectionStats:
        """Count records and estimate document count and total source size.

        Document sizes come from record metadata, counted once per documentId.
        Only the first scan_limit records are scanned; beyond that the result
        is flagged approximate.
        """
        handle = self._resolve(collection)
        total = self.count(handle)

        sizes: dict[str, int] = {}
        scanned = 0
        target = min(total, scan_limit)
        while scanned < target:
            page = self.get_records(
                handle, limit=min(STATS_PAGE_SIZE, target - scanned), offset=scanned
            )
            if not page:
                break
            for record in page:
                document_id = str(record.metadata.get("documentId", record.id))
                sizes.setdefault(document_id, int(record.metadata.get("fileSize") or 0))
            scanned += len(page)

        return CollectionStats(
            count=total,
            document_count=len(sizes),
            total_size_bytes=sum(sizes.values()),
            approximate=scanned < total,
        )

    def delete_collection(self, name: str) -> bool:
        """Drop a collection and forget its cached handle.

        Returns False when the store has no collection of that name.
        """
        try:
            self._request("DELETE", f"/collections/{name}", f"delete_collection {name}")
        except VectorStoreRequestError as e:
            if not _is_missing_collection(e):
                raise
            logger.info("collection already absent", collection=name)
            return False
        finally:
            self.registry.evict(name)
        logger.info("collection deleted", collection=name)
        return True

    def health_check(self) -> bool:
        """Liveness check against the heartbeat endpoint."""
        try:
            self._request("GET", "/heartbeat", "heartbeat")
        except VectorStoreError as e:
            logger.warn("vector store health check failed", error=str(e))
            return False
        return True
