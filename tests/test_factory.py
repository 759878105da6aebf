"""Tests for settings-driven bootstrap and logging setup."""
import logging

import pytest

from config import settings
from core.errors import ConfigurationError
from infrastructure.memory_store import InMemoryStorageAdapter
from infrastructure.sql_store import SQLStorageAdapter
from services.factory import build_adapters, build_pipeline, get_embedding_adapter, get_llm_adapter, get_storage_adapter
from services.llm_service import HeuristicLLMAdapter, OllamaLLMAdapter
from services.logger_config import setup_logging


@pytest.fixture
def offline(monkeypatch):
    monkeypatch.setattr(settings, "STORAGE_BACKEND", "memory")
    monkeypatch.setattr(settings, "EMBEDDING_PROVIDER", "none")
    monkeypatch.setattr(settings, "LLM_PROVIDER", "none")


class TestProviders:

    def test_storage_backends(self, monkeypatch, tmp_path):
        monkeypatch.setattr(settings, "STORAGE_BACKEND", "memory")
        assert isinstance(get_storage_adapter(), InMemoryStorageAdapter)

        monkeypatch.setattr(settings, "STORAGE_BACKEND", "sql")
        monkeypatch.setattr(settings, "DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'f.db'}")
        assert isinstance(get_storage_adapter(), SQLStorageAdapter)

    @pytest.mark.parametrize("setting, value, provider", [
        ("STORAGE_BACKEND", "redis", get_storage_adapter),
        ("EMBEDDING_PROVIDER", "openai", get_embedding_adapter),
        ("LLM_PROVIDER", "gpt", get_llm_adapter),
    ])
    def test_unknown_provider(self, monkeypatch, setting, value, provider):
        monkeypatch.setattr(settings, setting, value)
        with pytest.raises(ConfigurationError):
            provider()

    def test_llm_providers(self, monkeypatch):
        monkeypatch.setattr(settings, "LLM_PROVIDER", "none")
        assert get_llm_adapter() is None
        monkeypatch.setattr(settings, "LLM_PROVIDER", "heuristic")
        assert isinstance(get_llm_adapter(), HeuristicLLMAdapter)
        monkeypatch.setattr(settings, "LLM_PROVIDER", "ollama")
        assert isinstance(get_llm_adapter(), OllamaLLMAdapter)

    def test_no_embedding_provider_means_mock(self, offline):
        assert get_embedding_adapter() is None


class TestBuildPipeline:

    def test_offline_pipeline(self, offline, monkeypatch):
        monkeypatch.setattr(settings, "MAX_CHUNK_TOKENS", 120)
        monkeypatch.setattr(settings, "PROGRESS_MAX_ENTRIES", 7)
        pipeline = build_pipeline()
        assert isinstance(pipeline.storage, InMemoryStorageAdapter)
        assert pipeline.llm is None
        assert pipeline.config.max_chunk_tokens == 120
        assert pipeline.progress_store.max_entries == 7

    def test_passed_adapters_win(self, offline):
        storage = InMemoryStorageAdapter()
        adapters = build_adapters(storage=storage, llm=HeuristicLLMAdapter())
        assert adapters.storage is storage
        assert isinstance(adapters.llm, HeuristicLLMAdapter)
        assert adapters.embedding is None

    async def test_built_pipeline_indexes(self, offline, hello_world):
        pipeline = build_pipeline()
        document = await pipeline.index_document(hello_world, "user-1")
        assert document.chunks
        assert all(c.metadata.embedding_source == "mock" for c in document.chunks)


def test_setup_logging_is_idempotent(monkeypatch, tmp_path):
    log_file = tmp_path / "logs" / "index.log"
    monkeypatch.setattr(settings, "LOG_FILE_PATH", str(log_file))
    logger = setup_logging()
    try:
        setup_logging()
        assert len(logger.handlers) == 2
        assert log_file.exists()
        assert logging.getLogger("urllib3").level == logging.WARNING
    finally:
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)
