"""End-to-end tests for the indexing pipeline and its query facade."""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import make_raw
from core.domain import DocumentEvent, QueryRequest, TimeRange, utc_now
from core.enums import ChangeType, ErrorCode, EventKind, IndexingStage, InterfaceType, QueryMode
from core.errors import (
    ConfigurationError, DocumentIdConflictError, DocumentNotFoundError, ExtractionError, QueryValidationError,
    StorageError, UnsupportedDocumentTypeError
)
from core.interfaces import ILLMAdapter
from infrastructure.memory_store import InMemoryStorageAdapter
from services.pipeline import IndexingPipeline, PipelineAdapters


class FailingSaveStorage(InMemoryStorageAdapter):

    def __init__(self):
        super().__init__()
        self.deleted = []

    async def save_indexed_document(self, document, relationships):
        raise RuntimeError("disk full")

    async def delete_document(self, document_id, user_id):
        self.deleted.append(document_id)
        return await super().delete_document(document_id, user_id)


class BlockingSaveStorage(InMemoryStorageAdapter):

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()

    async def save_indexed_document(self, document, relationships):
        self.entered.set()
        await asyncio.Event().wait()


class OwnerBlindStorage(InMemoryStorageAdapter):
    """Hides ownership from the pipeline so only the store guards the id."""

    async def get_document_owner(self, document_id):
        return None


class BrokenLLM(ILLMAdapter):

    async def generate_summary(self, text, max_length=200):
        raise RuntimeError("model offline")

    async def generate_questions(self, text, count=3):
        raise RuntimeError("model offline")

    async def extract_entities(self, text):
        raise RuntimeError("model offline")

    async def detect_semantic_flags(self, text):
        raise RuntimeError("model offline")


def concept(text, user_id="user-1"):
    return QueryRequest(mode=QueryMode.CONCEPT, user_id=user_id, query=text)


def by_name(text, user_id="user-1"):
    return QueryRequest(mode=QueryMode.NAME, user_id=user_id, query=text)


# ---------------------------------------------------------------------------
# Indexing
# ---------------------------------------------------------------------------

class TestIndexing:

    async def test_hello_world(self, pipeline, hello_world, config):
        document = await pipeline.index_document(hello_world, "user-1")

        assert len(document.chunks) >= 1
        assert document.summary
        assert all(len(c.embedding) == config.embedding_dimensions for c in document.chunks)
        assert document.chunks[0].embeddings is not None
        assert [v.change_type for v in document.version_history] == [ChangeType.CREATED]

        progress = pipeline.get_progress(document.id)
        assert progress.stage == IndexingStage.COMPLETE
        assert progress.progress == 100

        stored = await pipeline.get_document(document.id, "user-1")
        assert [c.id for c in stored.chunks] == [f"{document.id}-chunk-{i}" for i in range(len(document.chunks))]

    async def test_source_fields_are_kept(self, pipeline, hello_world):
        document = await pipeline.index_document(
            hello_world, "user-1", interface=InterfaceType.VSCODE,
            conversation_id="conv-1", project_id="proj-1",
        )
        stored = await pipeline.get_document(document.id, "user-1")
        assert stored.source_interface == InterfaceType.VSCODE
        assert stored.source_conversation_id == "conv-1"
        assert stored.source_project_id == "proj-1"
        assert stored.source_path == "/docs/hello.md"

    async def test_chunk_order_is_preserved(self, small_config, memory_storage, long_markdown):
        pipeline = IndexingPipeline(PipelineAdapters(storage=memory_storage), config=small_config)
        document = await pipeline.index_document(make_raw("handbook.md", long_markdown), "user-1")
        stored = await pipeline.get_document(document.id, "user-1")
        assert len(stored.chunks) > 1
        assert [c.position.order for c in stored.chunks] == list(range(len(stored.chunks)))

    async def test_identical_documents_are_related(self, pipeline):
        first = await pipeline.index_document(make_raw("one.md", "# Caching\n\nCache every response."), "user-1")
        second = await pipeline.index_document(make_raw("two.md", "# Caching\n\nCache every response."), "user-1")
        assert second.related_documents == [first.id]
        related = await pipeline.get_related(second.id, "user-1")
        assert [d.id for d in related] == [first.id]

    async def test_language_model_failures_do_not_fail_indexing(self, memory_storage, config, hello_world):
        pipeline = IndexingPipeline(PipelineAdapters(storage=memory_storage, llm=BrokenLLM()), config=config)
        document = await pipeline.index_document(hello_world, "user-1")
        assert document.summary == "Hello World"
        assert document.chunks


class TestReindexing:

    async def test_same_id_new_version(self, pipeline):
        original = await pipeline.index_document(make_raw("plan.md", "# Plan\n\nOld text."), "user-1")
        updated = await pipeline.reindex_document(original.id, make_raw("plan.md", "# Plan\n\nNew text entirely."), "user-1")

        assert updated.id == original.id
        assert updated.created_at == original.created_at
        assert [v.change_type for v in updated.version_history] == [ChangeType.CREATED, ChangeType.MODIFIED]
        assert updated.version_history[1].change_summary == "1 line(s) added, 1 line(s) removed"

        stored = await pipeline.get_document(original.id, "user-1")
        assert "New text" in "".join(c.content for c in stored.chunks)
        assert "Old text" not in "".join(c.content for c in stored.chunks)
        assert len(await pipeline.storage.get_user_documents("user-1")) == 1

    async def test_index_with_known_id_reindexes(self, pipeline):
        original = await pipeline.index_document(make_raw("plan.md", "first"), "user-1")
        again = await pipeline.index_document(make_raw("plan.md", "second"), "user-1", document_id=original.id)
        assert again.id == original.id
        assert len(again.version_history) == 2

    async def test_unknown_id_raises(self, pipeline, hello_world):
        with pytest.raises(DocumentNotFoundError):
            await pipeline.reindex_document("missing", hello_world, "user-1")

    async def test_usage_counters_survive(self, pipeline, hello_world):
        original = await pipeline.index_document(hello_world, "user-1")
        await pipeline.storage.update_document(original.id, "user-1", retrieval_count=7)
        updated = await pipeline.reindex_document(original.id, hello_world, "user-1")
        assert updated.retrieval_count == 7


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class TestFailures:

    def test_storage_is_required(self):
        with pytest.raises(ConfigurationError):
            IndexingPipeline(PipelineAdapters(storage=None))

    @pytest.mark.parametrize("filename", ["photo.png", "page.html", "Makefile"])
    async def test_unsupported_type(self, pipeline, filename):
        with pytest.raises(UnsupportedDocumentTypeError):
            await pipeline.index_document(make_raw(filename, "data"), "user-1", document_id="doc-x")

        progress = pipeline.get_progress("doc-x")
        assert progress.stage == IndexingStage.FAILED
        assert progress.error_code == ErrorCode.UNSUPPORTED_TYPE
        assert await pipeline.storage.get_user_documents("user-1") == []

    async def test_extraction_failure(self, pipeline):
        with pytest.raises(ExtractionError):
            await pipeline.index_document(make_raw("broken.pdf", b"not a pdf"), "user-1", document_id="doc-pdf")
        assert pipeline.get_progress("doc-pdf").error_code == ErrorCode.EXTRACTION_FAILED

    async def test_storage_failure_cleans_up(self, config, hello_world):
        storage = FailingSaveStorage()
        pipeline = IndexingPipeline(PipelineAdapters(storage=storage), config=config)
        with pytest.raises(StorageError):
            await pipeline.index_document(hello_world, "user-1", document_id="doc-s")

        assert storage.deleted == ["doc-s"]
        progress = pipeline.get_progress("doc-s")
        assert progress.stage == IndexingStage.FAILED
        assert progress.error_code == ErrorCode.STORAGE_FAILED

    async def test_failed_reindex_keeps_previous_version(self, pipeline):
        original = await pipeline.index_document(make_raw("plan.md", "# Plan\n\nKeep me."), "user-1")
        with pytest.raises(UnsupportedDocumentTypeError):
            await pipeline.reindex_document(original.id, make_raw("plan.png", "binary"), "user-1")
        stored = await pipeline.get_document(original.id, "user-1")
        assert "Keep me." in stored.content
        assert len(stored.version_history) == 1

    async def test_id_owned_by_another_user_is_rejected(self, pipeline, hello_world):
        secret = await pipeline.index_document(make_raw("secret.md", "# Secret\n\nAlice only."), "alice")
        with pytest.raises(DocumentIdConflictError):
            await pipeline.index_document(hello_world, "bob", document_id=secret.id)

        kept = await pipeline.get_document(secret.id, "alice")
        assert kept is not None
        assert kept.filename == "secret.md"
        assert await pipeline.get_document(secret.id, "bob") is None
        assert await pipeline.storage.get_user_documents("bob") == []

    async def test_store_guards_foreign_id(self, config, hello_world):
        pipeline = IndexingPipeline(PipelineAdapters(storage=OwnerBlindStorage()), config=config)
        secret = await pipeline.index_document(make_raw("secret.md", "# Secret\n\nAlice only."), "alice")
        with pytest.raises(StorageError):
            await pipeline.index_document(hello_world, "bob", document_id=secret.id)

        assert pipeline.get_progress(secret.id).error_code == ErrorCode.STORAGE_FAILED
        kept = await pipeline.get_document(secret.id, "alice")
        assert "Alice only." in kept.content

    async def test_cancellation_is_recorded(self, config, hello_world):
        storage = BlockingSaveStorage()
        pipeline = IndexingPipeline(PipelineAdapters(storage=storage), config=config)
        task = asyncio.create_task(pipeline.index_document(hello_world, "user-1", document_id="doc-c"))
        await storage.entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        progress = pipeline.get_progress("doc-c")
        assert progress.stage == IndexingStage.FAILED
        assert progress.error_code == ErrorCode.CANCELLED


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

class TestQueries:

    async def test_name_query_ranks_filename_first(self, pipeline):
        await pipeline.index_document(make_raw("meeting.txt", "We discussed auth tokens today."), "user-1")
        auth = await pipeline.index_document(make_raw("auth.md", "# Authentication\n\nLogin flow."), "user-1")
        await pipeline.index_document(make_raw("misc.md", "# Misc\n\nNothing relevant."), "user-1")

        results = await pipeline.query(by_name("auth"))
        assert results[0].document.id == auth.id
        assert results[0].score == 1.0
        assert [r.score for r in results] == [1.0, 0.8]

    async def test_concept_query_records_access(self, pipeline, hello_world):
        document = await pipeline.index_document(hello_world, "user-1")
        results = await pipeline.query(concept(document.chunks[0].content))

        assert results[0].document.id == document.id
        assert results[0].score == pytest.approx(1.0)
        assert results[0].relevant_chunks[0].id == document.chunks[0].id
        stored = await pipeline.get_document(document.id, "user-1")
        assert stored.retrieval_count == 1

    async def test_concurrent_concept_queries_count_every_retrieval(self, pipeline, hello_world):
        document = await pipeline.index_document(hello_world, "user-1")
        request = concept(document.chunks[0].content)
        await asyncio.gather(*(pipeline.query(request) for _ in range(5)))
        stored = await pipeline.get_document(document.id, "user-1")
        assert stored.retrieval_count == 5

    async def test_time_query(self, pipeline, hello_world):
        document = await pipeline.index_document(hello_world, "user-1")
        now = utc_now()
        recent = await pipeline.query(QueryRequest(
            mode=QueryMode.TIME, user_id="user-1",
            time_range=TimeRange(start=now - timedelta(hours=1), end=now + timedelta(hours=1)),
        ))
        assert [d.id for d in recent.documents] == [document.id]
        assert recent.conversations == []

        old = await pipeline.query(QueryRequest(
            mode=QueryMode.TIME, user_id="user-1",
            time_range=TimeRange(start=now - timedelta(days=10), end=now - timedelta(days=9)),
        ))
        assert old.documents == []

    async def test_cross_project_comparison(self, pipeline):
        await pipeline.index_document(
            make_raw("rest.md", "# API Design\n\nREST endpoints for orders."), "user-1", project_id="p1")
        await pipeline.index_document(
            make_raw("graph.md", "# API Design\n\nGraphQL schema.\n\n## Caching\n\nEdge caches."),
            "user-1", project_id="p2")

        comparison = await pipeline.query(QueryRequest(
            mode=QueryMode.CROSS_PROJECT, user_id="user-1", projects=["p1", "p2"], topic="API",
        ))
        assert set(comparison.by_project) == {"p1", "p2"}
        assert "API Design" in comparison.common_themes
        caching = [d for d in comparison.differences if d.topic == "Caching"]
        assert caching[0].description_a == "Not found in p1"
        assert caching[0].description_b == "Present in p2"

    async def test_users_are_isolated(self, pipeline, hello_world):
        document = await pipeline.index_document(hello_world, "user-1")
        assert await pipeline.get_document(document.id, "user-2") is None
        assert await pipeline.query(by_name("hello", user_id="user-2")) == []
        assert await pipeline.query(concept(document.chunks[0].content, user_id="user-2")) == []
        assert await pipeline.get_related(document.id, "user-2") == []

    async def test_deleted_documents_disappear_from_every_query(self, pipeline, hello_world):
        document = await pipeline.index_document(hello_world, "user-1")
        content = document.chunks[0].content
        assert await pipeline.remove_document(document.id, "user-1")

        assert await pipeline.get_document(document.id, "user-1") is None
        assert await pipeline.query(by_name("hello")) == []
        assert await pipeline.query(concept(content)) == []
        now = utc_now()
        timed = await pipeline.query(QueryRequest(
            mode=QueryMode.TIME, user_id="user-1",
            time_range=TimeRange(start=now - timedelta(days=1), end=now + timedelta(days=1)),
        ))
        assert timed.documents == []
        assert pipeline.get_progress(document.id) is None
        assert not await pipeline.remove_document(document.id, "user-1")

    async def test_stats(self, pipeline, hello_world):
        document = await pipeline.index_document(hello_world, "user-1")
        stats = await pipeline.get_stats("user-1")
        assert stats.document_count == 1
        assert stats.chunk_count == len(document.chunks)


class TestQueryValidation:

    @pytest.mark.parametrize("request_, message", [
        (QueryRequest(mode=QueryMode.NAME, user_id="", query="x"), "user_id required"),
        (QueryRequest(mode=QueryMode.NAME, user_id="u", query="  "), "query required for name queries"),
        (QueryRequest(mode=QueryMode.CONCEPT, user_id="u"), "query required for concept queries"),
        (QueryRequest(mode=QueryMode.NAME, user_id="u", query="x", limit=0), "limit must be a positive number"),
        (QueryRequest(mode=QueryMode.TIME, user_id="u"), "time_range required for time queries"),
        (QueryRequest(mode=QueryMode.CROSS_PROJECT, user_id="u", topic="api"),
         "projects required for cross-project queries"),
        (QueryRequest(mode=QueryMode.CROSS_PROJECT, user_id="u", projects=["p1"]),
         "topic required for cross-project queries"),
    ])
    async def test_rejected_before_storage(self, config, request_, message):
        storage = AsyncMock()
        pipeline = IndexingPipeline(PipelineAdapters(storage=storage), config=config)
        with pytest.raises(QueryValidationError) as exc_info:
            await pipeline.query(request_)
        assert exc_info.value.message == message
        assert exc_info.value.error_code == ErrorCode.INVALID_QUERY
        assert storage.mock_calls == []

    def test_reversed_time_range(self):
        now = utc_now()
        request = QueryRequest(mode=QueryMode.TIME, user_id="u",
                               time_range=TimeRange(start=now, end=now - timedelta(days=1)))
        with pytest.raises(QueryValidationError):
            IndexingPipeline.validate_query(request)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

class TestHandleEvent:

    @pytest.fixture
    def files(self):
        return {"/work/notes.md": "# Notes\n\nFirst draft."}

    @pytest.fixture
    def loader(self, files):
        async def load(path):
            return make_raw(path.rsplit("/", 1)[-1], files[path], path=path)
        return load

    def event(self, kind, path="/work/notes.md"):
        return DocumentEvent(kind=kind, document_path=path, interface=InterfaceType.VSCODE)

    async def test_lifecycle(self, pipeline, files, loader):
        created = await pipeline.handle_event(self.event(EventKind.CREATED), "user-1", loader)
        assert created.source_interface == InterfaceType.VSCODE

        files["/work/notes.md"] = "# Notes\n\nSecond draft."
        modified = await pipeline.handle_event(self.event(EventKind.MODIFIED), "user-1", loader)
        assert modified.id == created.id
        assert len(modified.version_history) == 2

        assert await pipeline.handle_event(self.event(EventKind.DELETED), "user-1", loader) is True
        assert await pipeline.handle_event(self.event(EventKind.DELETED), "user-1", loader) is False

    async def test_modified_unknown_document_is_indexed(self, pipeline, loader):
        document = await pipeline.handle_event(self.event(EventKind.MODIFIED), "user-1", loader)
        assert len(document.version_history) == 1

    async def test_unsupported_path_is_skipped(self, pipeline, loader):
        assert await pipeline.handle_event(self.event(EventKind.CREATED, "/work/image.png"), "user-1", loader) is None

    async def test_detected_type_without_extractor_is_skipped(self, pipeline, loader):
        # loader would raise KeyError for this path
        assert await pipeline.handle_event(self.event(EventKind.CREATED, "/work/page.html"), "user-1", loader) is None

    async def test_event_with_foreign_id_is_rejected(self, pipeline, loader):
        secret = await pipeline.index_document(make_raw("secret.md", "# Secret\n\nAlice only."), "alice")
        event = DocumentEvent(
            kind=EventKind.CREATED, document_path="/work/notes.md",
            interface=InterfaceType.VSCODE, document_id=secret.id,
        )
        with pytest.raises(DocumentIdConflictError):
            await pipeline.handle_event(event, "bob", loader)
        assert (await pipeline.get_document(secret.id, "alice")).filename == "secret.md"


# ---------------------------------------------------------------------------
# SQL-backed pipeline
# ---------------------------------------------------------------------------

async def test_sql_pipeline_round_trip(sql_pipeline, hello_world):
    document = await sql_pipeline.index_document(hello_world, "user-1")
    stored = await sql_pipeline.get_document(document.id, "user-1")
    assert len(stored.chunks) == len(document.chunks)
    assert len(stored.chunks[0].embedding) == 1536

    updated = await sql_pipeline.reindex_document(document.id, make_raw("hello.md", "# Hello\n\nChanged."), "user-1")
    assert len(updated.version_history) == 2
    assert (await sql_pipeline.query(by_name("hello")))[0].document.id == document.id
