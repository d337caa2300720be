"""Hybrid relevance ranking over semantic similarity, keyword hits and recency."""

import contextvars
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import BaseModel, Field

from ..logger import logger
from .errors import VectorStoreError
from .keyword_index import KeywordHit, KeywordIndex
from .models import ChunkMetadata, Collection, QueryMatch, SearchResult
from .vector_store import ChromaVectorStore, similarity_from_distance

RECENCY_HORIZON_DAYS = 365
SECONDS_PER_DAY = 86_400


class HybridWeights(BaseModel):
    """Weights of the hybrid score.

    The score is not normalised: its maximum is the sum of the three weights.
    ``keyword_only_semantic`` is the semantic similarity assumed for results
    found only by the keyword search.
    """

    semantic: float = Field(default=0.7, ge=0)
    keyword: float = Field(default=0.3, ge=0)
    recency: float = Field(default=0.1, ge=0)
    keyword_only_semantic: float = Field(default=0.0, ge=0, le=1)

    @property
    def max_score(self) -> float:
        return self.semantic + self.keyword + self.recency


def recency_score(age_days: float, horizon_days: float = RECENCY_HORIZON_DAYS) -> float:
    """Linear decay from 1.0 for a new document to 0.0 at horizon_days."""
    return max(0.0, 1.0 - max(age_days, 0.0) / horizon_days)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _outcome(future: Future) -> tuple[Any, Exception | None]:
    try:
        return future.result(), None
    except Exception as e:
        return None, e


class HybridSearchEngine:
    """Merges vector and keyword results into one ranking.

    Both searches run concurrently and fetch ``limit * candidate_multiplier``
    candidates so that the merge has room to reorder.
    """

    def __init__(
        self,
        vector_store: ChromaVectorStore,
        keyword_index: KeywordIndex,
        weights: HybridWeights | None = None,
        candidate_multiplier: int = 2,
        now: Callable[[], datetime] = _utcnow,
    ):
        if candidate_multiplier < 1:
            raise ValueError("candidate_multiplier must be at least 1")
        self.vector_store = vector_store
        self.keyword_index = keyword_index
        self.weights = weights or HybridWeights()
        self.candidate_multiplier = candidate_multiplier
        self._now = now

    def search(
        self,
        collection: Collection,
        query_text: str,
        query_embedding: list[float],
        limit: int = 5,
        where: dict[str, Any] | None = None,
    ) -> list[SearchResult]:
        """Run both searches and return the top limit merged results.

        Raises:
            VectorStoreError: If the vector search failed and the keyword
                search produced nothing to fall back on.
        """
        candidates = limit * self.candidate_multiplier
        start = time.perf_counter()

        with ThreadPoolExecutor(max_workers=2) as executor:
            vector_future = executor.submit(
                contextvars.copy_context().run,
                self.vector_store.query, collection, query_embedding, candidates, where
            )
            keyword_future = executor.submit(
                contextvars.copy_context().run,
                self.keyword_index.search, collection.name, query_text, candidates, where
            )
            matches, vector_error = _outcome(vector_future)
            hits, keyword_error = _outcome(keyword_future)

        if keyword_error is not None:
            logger.warn(
                "keyword search failed, using vector results only",
                collection=collection.name,
                error=str(keyword_error),
            )
            hits = []

        if vector_error is not None:
            if not isinstance(vector_error, VectorStoreError) or not hits:
                raise vector_error
            logger.warn(
                "vector search failed, using keyword results only",
                collection=collection.name,
                error=str(vector_error),
            )
            matches = []

        results = self.merge(matches, hits)[:limit]
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "hybrid search completed",
            collection=collection.name,
            vector_candidates=len(matches),
            keyword_candidates=len(hits),
            results_count=len(results),
            duration_ms=round(duration_ms, 2),
        )
        return results

    def merge(self, matches: list[QueryMatch], hits: list[KeywordHit]) -> list[SearchResult]:
        """Combine both result lists by record id, best score first."""
        now = self._now()
        results: dict[str, SearchResult] = {}
        raw_metadata: dict[str, dict[str, Any]] = {}

        for match in matches:
            raw_metadata[match.id] = match.metadata
            results[match.id] = self._score(
                match.id,
                match.content or "",
                match.metadata,
                similarity_from_distance(match.distance),
                match.distance,
                keyword_hit=False,
                now=now,
            )

        for hit in hits:
            existing = results.get(hit.id)
            if existing is not None:
                results[hit.id] = self._score(
                    hit.id,
                    existing.content,
                    raw_metadata[hit.id],
                    existing.semantic_score or 0.0,
                    existing.distance,
                    keyword_hit=True,
                    now=now,
                )
            else:
                results[hit.id] = self._score(
                    hit.id,
                    hit.content,
                    hit.metadata,
                    self.weights.keyword_only_semantic,
                    None,
                    keyword_hit=True,
                    now=now,
                )

        return sorted(results.values(), key=lambda r: r.score, reverse=True)

    def _score(
        self,
        record_id: str,
        content: str,
        metadata: dict[str, Any],
        semantic: float,
        distance: float | None,
        keyword_hit: bool,
        now: datetime,
    ) -> SearchResult:
        chunk_metadata = ChunkMetadata.try_from_store_metadata(metadata)
        recency = 0.0
        if chunk_metadata is not None:
            uploaded = chunk_metadata.upload_timestamp
            if uploaded.tzinfo is None:
                uploaded = uploaded.replace(tzinfo=timezone.utc)
            recency = recency_score((now - uploaded).total_seconds() / SECONDS_PER_DAY)

        score = (
            semantic * self.weights.semantic
            + (self.weights.keyword if keyword_hit else 0.0)
            + recency * self.weights.recency
        )
        return SearchResult(
            id=record_id,
            content=content,
            metadata=chunk_metadata,
            distance=distance,
            score=score,
            semantic_score=semantic,
            keyword_hit=keyword_hit,
            recency_score=recency,
        )
