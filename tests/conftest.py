"""
Shared test fixtures for the indexing pipeline test suite.

Provides configs, sample documents, storage adapters (memory and SQLite)
and a pipeline wired to mock embeddings.
"""
from datetime import datetime, timezone
from typing import List

import pytest

from core.domain import (
    ChunkMetadata, ChunkPosition, DocumentChunk, IndexedDocument, IndexingConfig, RawDocument
)
from core.enums import DocumentType
from infrastructure.memory_store import InMemoryStorageAdapter
from infrastructure.progress_store import ProgressStore
from infrastructure.sql_store import SQLStorageAdapter
from services.pipeline import IndexingPipeline, PipelineAdapters


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config():
    return IndexingConfig()


@pytest.fixture
def small_config():
    """Tiny limits so short texts split into several chunks."""
    return IndexingConfig(max_chunk_tokens=50, chunk_overlap_tokens=10, min_chunk_tokens=10)


# ---------------------------------------------------------------------------
# Sample data fixtures
# ---------------------------------------------------------------------------

def make_raw(filename: str, content, path: str = None) -> RawDocument:
    return RawDocument(path=path or f"/docs/{filename}", filename=filename, content=content)


def make_chunk(document_id: str, order: int, content: str, embedding: List[float],
               is_decision: bool = False) -> DocumentChunk:
    return DocumentChunk(
        id=f"{document_id}-chunk-{order}",
        document_id=document_id,
        content=content,
        position=ChunkPosition(start_line=order + 1, end_line=order + 1, section=None, order=order),
        metadata=ChunkMetadata(token_count=len(content) // 4, is_decision=is_decision),
        embedding=embedding,
    )


def make_document(document_id: str, user_id: str = "user-1", filename: str = "notes.md",
                  project_id: str = None, summary: str = "", chunks: List[DocumentChunk] = None,
                  created_at: datetime = None, topics: List[str] = None) -> IndexedDocument:
    moment = created_at or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    return IndexedDocument(
        id=document_id,
        user_id=user_id,
        filename=filename,
        filetype=DocumentType.MARKDOWN,
        content="content of " + filename,
        chunks=chunks or [],
        source_project_id=project_id,
        source_path=f"/docs/{filename}",
        summary=summary,
        topics=topics or [],
        created_at=moment,
        modified_at=moment,
        last_accessed_at=moment,
    )


@pytest.fixture
def hello_world():
    return make_raw("hello.md", "# Hello World\n\nThis is a test document.")


@pytest.fixture
def long_markdown():
    sections = []
    for n in range(1, 6):
        body = " ".join(f"Sentence {n}.{i} describes part of the design in some detail." for i in range(12))
        sections.append(f"## Part {n}\n\n{body}\n\n- point one for part {n}\n- point two for part {n}\n")
    return "# Handbook\n\nIntro paragraph.\n\n" + "\n".join(sections)


# ---------------------------------------------------------------------------
# Storage fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def memory_storage():
    return InMemoryStorageAdapter()


@pytest.fixture
async def sql_storage(tmp_path):
    adapter = SQLStorageAdapter(f"sqlite+aiosqlite:///{tmp_path / 'index.db'}")
    await adapter.initialize()
    yield adapter
    await adapter.close()


@pytest.fixture(params=["memory", "sql"])
async def storage(request, tmp_path):
    """Every storage implementation, for contract tests."""
    if request.param == "memory":
        adapter = InMemoryStorageAdapter()
    else:
        adapter = SQLStorageAdapter(f"sqlite+aiosqlite:///{tmp_path / 'contract.db'}")
    await adapter.initialize()
    yield adapter
    if request.param == "sql":
        await adapter.close()


# ---------------------------------------------------------------------------
# Pipeline fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def progress_store():
    return ProgressStore(max_entries=50)


@pytest.fixture
def pipeline(memory_storage, config, progress_store):
    """Memory storage, mock embeddings, no language model."""
    return IndexingPipeline(PipelineAdapters(storage=memory_storage), config=config, progress_store=progress_store)


@pytest.fixture
async def sql_pipeline(sql_storage, config):
    return IndexingPipeline(PipelineAdapters(storage=sql_storage), config=config)
