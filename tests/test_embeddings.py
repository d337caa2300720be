"""Tests for embedding providers with a mocked OpenAI API."""

import math
from unittest.mock import Mock, patch

import pytest
from openai import APIStatusError, RateLimitError

from kb_rag_server.rag.embeddings import (
    CachedEmbeddingProvider,
    EmbeddingProvider,
    EmbeddingResult,
    HashEmbeddingProvider,
    OpenAIEmbeddingProvider,
    SentenceTransformerEmbeddingProvider,
    count_tokens,
)
from kb_rag_server.rag.errors import EmbeddingError


def rate_limit_error() -> RateLimitError:
    return RateLimitError(
        message="Rate limit exceeded",
        response=Mock(status_code=429),
        body={"error": {"message": "Rate limit exceeded"}},
    )


def status_error(status_code: int) -> APIStatusError:
    error = APIStatusError(
        message=f"status {status_code}",
        response=Mock(status_code=status_code),
        body={"error": {"message": f"status {status_code}"}},
    )
    error.status_code = status_code
    return error


def embeddings_response(*vectors):
    response = Mock()
    response.data = [Mock(index=i, embedding=v) for i, v in enumerate(vectors)]
    return response


class CountingProvider(EmbeddingProvider):
    model_name = "counting"

    def __init__(self):
        self.calls: list[str] = []

    def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        return [float(len(text)), 1.0]


class TestCountTokens:
    def test_empty_string(self):
        assert count_tokens("") == 0

    def test_realistic_text(self):
        assert count_tokens("The quick brown fox jumps over the lazy dog.") == 10


class TestEmbeddingResult:
    def test_partial_failure(self):
        result = EmbeddingResult(
            embeddings=[[0.1], None, [0.3]],
            failed_indices=[1],
            errors={1: "Rate limit exceeded"},
        )
        assert not result.all_succeeded
        assert result.success_count == 2
        assert result.failure_count == 1


class TestOpenAIEmbeddingProvider:
    def test_init_with_api_key(self):
        with patch("kb_rag_server.rag.embeddings.OpenAI") as mock_openai:
            provider = OpenAIEmbeddingProvider(api_key="test-key")
            mock_openai.assert_called_once_with(api_key="test-key")
            assert provider.model_name == "text-embedding-3-small"

    def test_init_from_env(self):
        with patch("kb_rag_server.rag.embeddings.OpenAI") as mock_openai:
            with patch.dict("os.environ", {"OPENAI_API_KEY": "env-key"}):
                OpenAIEmbeddingProvider()
                mock_openai.assert_called_once_with(api_key="env-key")

    def test_init_no_key_raises(self):
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(ValueError, match="OpenAI API key required"):
                OpenAIEmbeddingProvider()

    def test_embed_single(self):
        with patch("kb_rag_server.rag.embeddings.OpenAI") as mock_openai_class:
            mock_client = Mock()
            mock_openai_class.return_value = mock_client
            mock_client.embeddings.create.return_value = embeddings_response([0.1] * 8)

            provider = OpenAIEmbeddingProvider(api_key="test-key", model="text-embedding-3-large")
            result = provider.embed("test text")

            assert result == [0.1] * 8
            mock_client.embeddings.create.assert_called_once_with(
                model="text-embedding-3-large",
                input=["test text"],
            )

    def test_embed_batch_preserves_order(self):
        with patch("kb_rag_server.rag.embeddings.OpenAI") as mock_openai_class:
            mock_client = Mock()
            mock_openai_class.return_value = mock_client
            response = Mock()
            response.data = [Mock(index=1, embedding=[2.0]), Mock(index=0, embedding=[1.0])]
            mock_client.embeddings.create.return_value = response

            provider = OpenAIEmbeddingProvider(api_key="test-key")
            assert provider.embed_batch(["first", "second"]) == [[1.0], [2.0]]

    def test_retry_on_rate_limit_then_succeed(self):
        with patch("kb_rag_server.rag.embeddings.OpenAI") as mock_openai_class:
            with patch("kb_rag_server.rag.embeddings.time.sleep") as mock_sleep:
                mock_client = Mock()
                mock_openai_class.return_value = mock_client
                mock_client.embeddings.create.side_effect = [
                    rate_limit_error(),
                    rate_limit_error(),
                    embeddings_response([0.5]),
                ]

                provider = OpenAIEmbeddingProvider(api_key="test-key")
                result = provider.generate_embeddings(["test"])

                assert result.all_succeeded
                assert result.embeddings == [[0.5]]
                assert mock_client.embeddings.create.call_count == 3
                assert [c.args[0] for c in mock_sleep.call_args_list] == [1, 2]

    def test_retry_on_server_error_then_succeed(self):
        with patch("kb_rag_server.rag.embeddings.OpenAI") as mock_openai_class:
            with patch("kb_rag_server.rag.embeddings.time.sleep"):
                mock_client = Mock()
                mock_openai_class.return_value = mock_client
                mock_client.embeddings.create.side_effect = [
                    status_error(503),
                    embeddings_response([0.5]),
                ]

                provider = OpenAIEmbeddingProvider(api_key="test-key")
                assert provider.embed("test") == [0.5]
                assert mock_client.embeddings.create.call_count == 2

    def test_client_error_not_retried(self):
        with patch("kb_rag_server.rag.embeddings.OpenAI") as mock_openai_class:
            with patch("kb_rag_server.rag.embeddings.time.sleep") as mock_sleep:
                mock_client = Mock()
                mock_openai_class.return_value = mock_client
                mock_client.embeddings.create.side_effect = status_error(400)

                provider = OpenAIEmbeddingProvider(api_key="test-key")
                result = provider.generate_embeddings(["test"])

                assert result.failed_indices == [0]
                assert result.embeddings == [None]
                assert mock_client.embeddings.create.call_count == 1
                mock_sleep.assert_not_called()

    def test_exhausted_retries_raise_embedding_error(self):
        with patch("kb_rag_server.rag.embeddings.OpenAI") as mock_openai_class:
            with patch("kb_rag_server.rag.embeddings.time.sleep") as mock_sleep:
                mock_client = Mock()
                mock_openai_class.return_value = mock_client
                mock_client.embeddings.create.side_effect = rate_limit_error()

                provider = OpenAIEmbeddingProvider(api_key="test-key")
                with pytest.raises(EmbeddingError, match="Embedding generation failed"):
                    provider.embed("test")

                assert mock_client.embeddings.create.call_count == 3
                # No sleep after the final attempt
                assert mock_sleep.call_count == 2

    def test_large_batch_splits(self):
        large_text = "hello world " * 30_000
        with patch("kb_rag_server.rag.embeddings.OpenAI") as mock_openai_class:
            mock_client = Mock()
            mock_openai_class.return_value = mock_client

            def create_response(*args, **kwargs):
                return embeddings_response(*[[0.1] for _ in kwargs["input"]])

            mock_client.embeddings.create.side_effect = create_response

            provider = OpenAIEmbeddingProvider(api_key="test-key")
            result = provider.generate_embeddings([large_text, large_text, large_text])

            assert result.all_succeeded
            assert len(result.embeddings) == 3
            assert mock_client.embeddings.create.call_count >= 2


class TestSentenceTransformerEmbeddingProvider:
    def test_encodes_normalized_vectors(self):
        with patch("kb_rag_server.rag.embeddings.SentenceTransformer") as mock_model_class:
            mock_model = Mock()
            mock_model.encode.return_value = [[0.6, 0.8], [1.0, 0.0]]
            mock_model_class.return_value = mock_model

            provider = SentenceTransformerEmbeddingProvider(device="cpu")
            vectors = provider.embed_batch(["a", "b"])

            assert vectors == [[0.6, 0.8], [1.0, 0.0]]
            assert provider.model_name == "sentence-transformers/all-MiniLM-L6-v2"
            mock_model_class.assert_called_once_with(
                "sentence-transformers/all-MiniLM-L6-v2", device="cpu"
            )
            mock_model.encode.assert_called_once_with(["a", "b"], normalize_embeddings=True)

    def test_model_failure_raises_embedding_error(self):
        with patch("kb_rag_server.rag.embeddings.SentenceTransformer") as mock_model_class:
            mock_model_class.return_value.encode.side_effect = RuntimeError("CUDA out of memory")

            provider = SentenceTransformerEmbeddingProvider()
            with pytest.raises(EmbeddingError, match="CUDA out of memory"):
                provider.embed("text")


class TestHashEmbeddingProvider:
    def test_deterministic(self):
        provider = HashEmbeddingProvider(dimensions=32)
        assert provider.embed("same text") == provider.embed("same text")
        assert HashEmbeddingProvider(dimensions=32).embed("same text") == provider.embed("same text")

    def test_unit_length(self):
        vector = HashEmbeddingProvider(dimensions=32).embed("a few words of text")
        assert len(vector) == 32
        assert math.isclose(math.sqrt(sum(v * v for v in vector)), 1.0)

    def test_seed_changes_vectors(self):
        text = "contract termination clause"
        assert HashEmbeddingProvider(seed=1).embed(text) != HashEmbeddingProvider(seed=2).embed(text)

    def test_invalid_dimensions(self):
        with pytest.raises(ValueError):
            HashEmbeddingProvider(dimensions=0)


class TestCachedEmbeddingProvider:
    def test_cache_hit_skips_provider(self):
        inner = CountingProvider()
        cached = CachedEmbeddingProvider(inner)

        first = cached.embed("hello")
        second = cached.embed("hello")

        assert first == second
        assert inner.calls == ["hello"]
        assert cached.hits == 1
        assert cached.misses == 1
        assert cached.model_name == "counting"

    def test_batch_only_embeds_missing_texts_once(self):
        inner = CountingProvider()
        cached = CachedEmbeddingProvider(inner)
        cached.embed("a")

        vectors = cached.embed_batch(["a", "bb", "bb", "ccc"])

        assert vectors == [[1.0, 1.0], [2.0, 1.0], [2.0, 1.0], [3.0, 1.0]]
        assert inner.calls == ["a", "bb", "ccc"]

    def test_lru_bound_evicts_oldest(self):
        inner = CountingProvider()
        cached = CachedEmbeddingProvider(inner, max_entries=2)
        cached.embed("a")
        cached.embed("b")
        cached.embed("a")
        cached.embed("c")

        assert cached.size == 2
        cached.embed("b")
        assert inner.calls == ["a", "b", "c", "b"]

    def test_clear(self):
        inner = CountingProvider()
        cached = CachedEmbeddingProvider(inner)
        cached.embed("a")
        cached.clear()

        assert cached.size == 0
        cached.embed("a")
        assert inner.calls == ["a", "a"]

    def test_errors_are_not_cached(self):
        inner = Mock(spec=EmbeddingProvider)
        inner.embed.side_effect = [EmbeddingError("boom"), [1.0]]
        cached = CachedEmbeddingProvider(inner)

        with pytest.raises(EmbeddingError):
            cached.embed("a")
        assert cached.embed("a") == [1.0]
        assert cached.size == 1

    def test_invalid_max_entries(self):
        with pytest.raises(ValueError):
            CachedEmbeddingProvider(CountingProvider(), max_entries=0)
