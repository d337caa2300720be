from unittest.mock import patch

import pydantic
import pytest

from kb_rag_server.config import Settings


class TestSettings:
    def test_defaults(self):
        with patch.dict("os.environ", {}, clear=True):
            settings = Settings.from_env()

        assert settings.chroma_url == "http://localhost:8000"
        assert settings.embedding_provider == "openai"
        assert settings.embedding_cache_max_entries == 10_000
        assert settings.keyword_index_database_url is None

    def test_reads_upper_cased_environment_variables(self):
        env = {
            "CHROMA_URL": "http://chroma:8000",
            "EMBEDDING_PROVIDER": "hash",
            "EMBEDDING_CACHE_MAX_ENTRIES": "0",
            "VECTOR_STORE_MAX_RETRIES": "5",
            "CIRCUIT_RESET_TIMEOUT_SECONDS": "2.5",
            "KEYWORD_INDEX_DATABASE_URL": "postgresql://pg/kb",
        }
        with patch.dict("os.environ", env, clear=True):
            settings = Settings.from_env()

        assert settings.chroma_url == "http://chroma:8000"
        assert settings.embedding_provider == "hash"
        assert settings.embedding_cache_max_entries == 0
        assert settings.vector_store_max_retries == 5
        assert settings.circuit_reset_timeout_seconds == 2.5
        assert settings.keyword_index_database_url == "postgresql://pg/kb"

    def test_invalid_provider_rejected(self):
        with patch.dict("os.environ", {"EMBEDDING_PROVIDER": "cohere"}, clear=True):
            with pytest.raises(pydantic.ValidationError):
                Settings.from_env()

    def test_chunking_options(self):
        options = Settings(chunk_size=100, chunk_overlap=10, min_chunk_size=20, max_chunk_size=200).chunking_options()

        assert options.chunk_size == 100
        assert options.overlap_size == 10
        assert options.min_chunk_size == 20
        assert options.max_chunk_size == 200
        assert options.merge_short_tail is True

    def test_hybrid_weights(self):
        weights = Settings(hybrid_semantic_weight=0.5, hybrid_keyword_weight=0.4, hybrid_recency_weight=0.0).hybrid_weights()

        assert (weights.semantic, weights.keyword, weights.recency) == (0.5, 0.4, 0.0)
        assert weights.max_score == pytest.approx(0.9)
