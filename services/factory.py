# services/factory.py
"""Explicit construction of the pipeline and its adapters from settings"""
import logging
from typing import Optional

from config import settings
from core.domain import IndexingConfig
from core.errors import ConfigurationError
from core.interfaces import IEmbeddingAdapter, ILLMAdapter, IStorageAdapter
from infrastructure.memory_store import InMemoryStorageAdapter
from infrastructure.progress_store import ProgressStore
from infrastructure.sql_store import SQLStorageAdapter
from services.llm_service import HeuristicLLMAdapter, OllamaLLMAdapter
from services.pipeline import IndexingPipeline, PipelineAdapters

logger = logging.getLogger(settings.LOGGER_NAME)


# Provider functions for each component
def get_storage_adapter() -> IStorageAdapter:
    """Create storage adapter based on configuration."""
    if settings.STORAGE_BACKEND == "sql":
        return SQLStorageAdapter(settings.DATABASE_URL)
    if settings.STORAGE_BACKEND == "memory":
        return InMemoryStorageAdapter()
    raise ConfigurationError(f"Unknown storage backend: {settings.STORAGE_BACKEND}")


def get_embedding_adapter() -> Optional[IEmbeddingAdapter]:
    """Create embedding adapter based on configuration; None selects mock vectors."""
    if settings.EMBEDDING_PROVIDER == "none":
        return None
    if settings.EMBEDDING_PROVIDER == "sentence-transformers":
        # Imported here so offline setups never load torch
        from infrastructure.embedding_services import SentenceTransformerEmbedding
        return SentenceTransformerEmbedding(settings.EMBEDDING_MODEL_NAME)
    raise ConfigurationError(f"Unknown embedding provider: {settings.EMBEDDING_PROVIDER}")


def get_llm_adapter() -> Optional[ILLMAdapter]:
    """Create language-model adapter based on configuration."""
    if settings.LLM_PROVIDER == "none":
        return None
    if settings.LLM_PROVIDER == "heuristic":
        return HeuristicLLMAdapter()
    if settings.LLM_PROVIDER == "ollama":
        return OllamaLLMAdapter(settings.LLM_BASE_URL, settings.LLM_MODEL_NAME, settings.REQUEST_TIMEOUT)
    raise ConfigurationError(f"Unknown LLM provider: {settings.LLM_PROVIDER}")


def build_adapters(
    storage: Optional[IStorageAdapter] = None,
    embedding: Optional[IEmbeddingAdapter] = None,
    llm: Optional[ILLMAdapter] = None,
) -> PipelineAdapters:
    """Adapter bundle; anything not passed in comes from the configured providers."""
    return PipelineAdapters(
        storage=storage or get_storage_adapter(),
        embedding=embedding or get_embedding_adapter(),
        llm=llm or get_llm_adapter(),
    )


def build_pipeline(adapters: Optional[PipelineAdapters] = None) -> IndexingPipeline:
    """
    Create the indexing pipeline with full dependency injection.

    Easy to override individual components for testing: pass a ready
    PipelineAdapters bundle.
    """
    adapters = adapters or build_adapters()
    pipeline = IndexingPipeline(
        adapters,
        config=IndexingConfig.from_settings(settings),
        progress_store=ProgressStore(max_entries=settings.PROGRESS_MAX_ENTRIES),
    )
    logger.info(
        f"Pipeline ready (storage={type(adapters.storage).__name__}, "
        f"embedding={type(adapters.embedding).__name__ if adapters.embedding else 'mock'}, "
        f"llm={type(adapters.llm).__name__ if adapters.llm else 'none'})"
    )
    return pipeline
