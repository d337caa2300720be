"""Embedding providers for the knowledge base pipeline."""

import hashlib
import math
import os
import re
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from functools import lru_cache

import tiktoken
from openai import APIStatusError, OpenAI, RateLimitError
from sentence_transformers import SentenceTransformer

from ..logger import logger
from .errors import EmbeddingError

# Constants
DEFAULT_OPENAI_MODEL = "text-embedding-3-small"
MAX_TOKENS_PER_BATCH = 100_000
MAX_RETRIES = 3
INITIAL_RETRY_DELAY_SECONDS = 1


@lru_cache(maxsize=1)
def _get_encoding() -> tiktoken.Encoding:
    return tiktoken.get_encoding("cl100k_base")


def count_tokens(text: str) -> int:
    """Count tokens in text with the cl100k_base encoding used by OpenAI embeddings."""
    if not text:
        return 0
    return len(_get_encoding().encode(text))


class EmbeddingProvider(ABC):
    """Converts text into fixed-length vectors.

    Implementations raise EmbeddingError when a text cannot be embedded.
    """

    model_name: str = "unknown"

    @abstractmethod
    def embed(self, text: str) -> list[float]:
        """Embed a single text."""

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts, returning vectors in input order."""
        return [self.embed(text) for text in texts]


@dataclass
class EmbeddingResult:
    """Result of a batched embedding call with support for partial failures.

    Attributes:
        embeddings: List of embedding vectors. None for texts that failed.
        failed_indices: Indices of texts that failed to embed.
        errors: Mapping from failed index to error message.
    """

    embeddings: list[list[float] | None] = field(default_factory=list)
    failed_indices: list[int] = field(default_factory=list)
    errors: dict[int, str] = field(default_factory=dict)

    @property
    def all_succeeded(self) -> bool:
        return len(self.failed_indices) == 0

    @property
    def success_count(self) -> int:
        return len(self.embeddings) - len(self.failed_indices)

    @property
    def failure_count(self) -> int:
        return len(self.failed_indices)


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embedding provider backed by the OpenAI embeddings API."""

    def __init__(self, api_key: str | None = None, model: str | None = None):
        """Initialize the OpenAI provider.

        Args:
            api_key: OpenAI API key. If not provided, uses OPENAI_API_KEY env var.
            model: Embedding model name. Defaults to text-embedding-3-small.
        """
        self._api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not self._api_key:
            raise ValueError(
                "OpenAI API key required: provide api_key or set OPENAI_API_KEY"
            )
        self.model_name = model or DEFAULT_OPENAI_MODEL
        self._client = OpenAI(api_key=self._api_key)

    def embed(self, text: str) -> list[float]:
        result = self.generate_embeddings([text])
        if result.failed_indices:
            raise EmbeddingError(f"Embedding generation failed: {result.errors[0]}")
        return result.embeddings[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        result = self.generate_embeddings(texts)
        if result.failed_indices:
            first = result.failed_indices[0]
            raise EmbeddingError(
                f"Embedding generation failed for {result.failure_count} of "
                f"{len(texts)} texts: {result.errors[first]}"
            )
        return result.embeddings

    def generate_embeddings(self, texts: list[str]) -> EmbeddingResult:
        """Generate embeddings for a batch of texts.

        Requests are split to stay within the per-request token limit and
        retried with exponential backoff on rate limit and server errors.
        Failures are reported per text instead of raised.

        Args:
            texts: Texts to embed.

        Returns:
            EmbeddingResult whose embeddings are in input order.
        """
        if not texts:
            return EmbeddingResult()

        batches = self._split_into_batches(texts)
        result = EmbeddingResult(embeddings=[None] * len(texts))

        offset = 0
        for batch_idx, batch in enumerate(batches):
            indices = list(range(offset, offset + len(batch)))
            offset += len(batch)

            embeddings, error = self._generate_batch_with_retry(
                batch, batch_idx, len(batches)
            )
            for i, embedding in zip(indices, embeddings):
                result.embeddings[i] = embedding

            if error:
                for i in indices:
                    result.failed_indices.append(i)
                    result.errors[i] = error

        return result

    def _split_into_batches(self, texts: list[str]) -> list[list[str]]:
        batches = []
        current_batch: list[str] = []
        current_tokens = 0

        for text in texts:
            text_tokens = count_tokens(text)

            # A single text over the limit gets its own batch
            if text_tokens >= MAX_TOKENS_PER_BATCH:
                if current_batch:
                    batches.append(current_batch)
                    current_batch = []
                    current_tokens = 0
                batches.append([text])
                continue

            if current_tokens + text_tokens > MAX_TOKENS_PER_BATCH:
                batches.append(current_batch)
                current_batch = [text]
                current_tokens = text_tokens
            else:
                current_batch.append(text)
                current_tokens += text_tokens

        if current_batch:
            batches.append(current_batch)

        return batches

    def _generate_batch_with_retry(
        self, texts: list[str], batch_idx: int, total_batches: int
    ) -> tuple[list[list[float] | None], str | None]:
        last_error = None

        for attempt in range(MAX_RETRIES):
            delay = INITIAL_RETRY_DELAY_SECONDS * (2**attempt)  # 1s, 2s, 4s
            try:
                start = time.perf_counter()
                response = self._client.embeddings.create(
                    model=self.model_name,
                    input=texts,
                )
                duration_ms = (time.perf_counter() - start) * 1000

                # The response carries each item's input index
                embeddings: list[list[float] | None] = [None] * len(texts)
                for item in response.data:
                    embeddings[item.index] = item.embedding

                logger.info(
                    "embeddings generated",
                    batch=f"{batch_idx + 1}/{total_batches}",
                    texts_count=len(texts),
                    model=self.model_name,
                    duration_ms=round(duration_ms, 2),
                )
                return embeddings, None

            except RateLimitError as e:
                last_error = str(e)
                logger.warn(
                    "rate limit hit, retrying",
                    attempt=attempt + 1,
                    max_retries=MAX_RETRIES,
                    delay_seconds=delay,
                    error=last_error,
                )

            except APIStatusError as e:
                last_error = str(e)
                if e.status_code < 500:
                    # 4xx errors (except 429) are not retried
                    logger.error(
                        "embedding generation failed",
                        batch=f"{batch_idx + 1}/{total_batches}",
                        status_code=e.status_code,
                        error=last_error,
                    )
                    return [None] * len(texts), last_error
                logger.warn(
                    "server error, retrying",
                    attempt=attempt + 1,
                    max_retries=MAX_RETRIES,
                    delay_seconds=delay,
                    status_code=e.status_code,
                    error=last_error,
                )

            except Exception as e:
                last_error = str(e)
                logger.error(
                    "unexpected error during embedding generation",
                    batch=f"{batch_idx + 1}/{total_batches}",
                    error=last_error,
                )
                return [None] * len(texts), last_error

            if attempt < MAX_RETRIES - 1:
                time.sleep(delay)

        logger.error(
            "embedding generation failed after retries",
            batch=f"{batch_idx + 1}/{total_batches}",
            max_retries=MAX_RETRIES,
            error=last_error,
        )
        return [None] * len(texts), last_error


class SentenceTransformerEmbeddingProvider(EmbeddingProvider):
    """Embedding provider running a local sentence-transformers model."""

    DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"

    def __init__(self, model_name: str | None = None, device: str | None = None):
        self.model_name = model_name or self.DEFAULT_MODEL
        start = time.perf_counter()
        self._model = SentenceTransformer(self.model_name, device=device)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "embedding model loaded",
            model=self.model_name,
            duration_ms=round(duration_ms, 2),
        )

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            vectors = self._model.encode(texts, normalize_embeddings=True)
        except Exception as e:
            raise EmbeddingError(f"Local embedding failed: {e}") from e
        return [[float(value) for value in vector] for vector in vectors]


class HashEmbeddingProvider(EmbeddingProvider):
    """Deterministic feature-hashing embeddings for tests and offline use.

    Each lowercased word is hashed (with the seed) to a signed dimension, so
    identical texts map to identical unit vectors and texts sharing words
    are closer under cosine distance. Carries no semantic model.
    """

    def __init__(self, dimensions: int = 256, seed: int = 0):
        if dimensions <= 0:
            raise ValueError("dimensions must be positive")
        self.dimensions = dimensions
        self.seed = seed
        self.model_name = f"hash-{dimensions}"

    def embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dimensions
        tokens = re.findall(r"\w+", text.lower()) or [text]
        for token in tokens:
            digest = hashlib.blake2b(
                f"{self.seed}:{token}".encode("utf-8"), digest_size=8
            ).digest()
            index = int.from_bytes(digest[:4], "big") % self.dimensions
            vector[index] += 1.0 if digest[4] & 1 else -1.0

        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            # Every token cancelled out; fall back to a single axis picked by the full text
            digest = hashlib.blake2b(
                f"{self.seed}:{text}".encode("utf-8"), digest_size=4
            ).digest()
            vector[int.from_bytes(digest, "big") % self.dimensions] = 1.0
            return vector
        return [v / norm for v in vector]


class CachedEmbeddingProvider(EmbeddingProvider):
    """Caches embeddings by exact text in front of another provider.

    Args:
        provider: The provider computing embeddings on cache misses.
        max_entries: Optional LRU bound. None keeps every entry.
    """

    def __init__(self, provider: EmbeddingProvider, max_entries: int | None = None):
        if max_entries is not None and max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._provider = provider
        self._max_entries = max_entries
        self._cache: OrderedDict[str, list[float]] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @property
    def model_name(self) -> str:
        return self._provider.model_name

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._cache)

    def _lookup(self, text: str) -> list[float] | None:
        with self._lock:
            cached = self._cache.get(text)
            if cached is None:
                self.misses += 1
                return None
            self._cache.move_to_end(text)
            self.hits += 1
            return list(cached)

    def _store(self, text: str, embedding: list[float]) -> None:
        with self._lock:
            self._cache[text] = list(embedding)
            self._cache.move_to_end(text)
            if self._max_entries is not None:
                while len(self._cache) > self._max_entries:
                    self._cache.popitem(last=False)

    def embed(self, text: str) -> list[float]:
        cached = self._lookup(text)
        if cached is not None:
            return cached
        embedding = self._provider.embed(text)
        self._store(text, embedding)
        return embedding

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        results: list[list[float] | None] = [self._lookup(text) for text in texts]
        missing = list(dict.fromkeys(t for t, r in zip(texts, results) if r is None))
        if missing:
            computed = dict(zip(missing, self._provider.embed_batch(missing)))
            for text, embedding in computed.items():
                self._store(text, embedding)
            results = [r if r is not None else computed[t] for t, r in zip(texts, results)]
        return results

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self.hits = 0
            self.misses = 0
