# services/pipeline.py
"""Indexing pipeline: detection → extraction → chunking → embedding → relationships → storage"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Union
from uuid import uuid4

from config import settings
from core.domain import (
    ComparisonResult, ConversationRecord, DocumentChunk, DocumentEvent, DocumentVersion,
    EmbeddingContext, ExtractedContent, IndexedDocument, IndexingConfig, IndexingProgress,
    QueryRequest, RawDocument, RelationshipMap, RetrievalResult, StorageStats,
    TimeQueryResult, utc_now
)
from core.enums import ChangeType, DocumentType, ErrorCode, EventKind, IndexingStage, InterfaceType, QueryMode
from core.errors import (
    ConfigurationError, DocumentIdConflictError, DocumentNotFoundError, ExtractionError, IndexingError,
    QueryValidationError, StorageError, UnsupportedDocumentTypeError
)
from core.interfaces import IEmbeddingAdapter, ILLMAdapter, IStorageAdapter
from infrastructure.progress_store import ProgressStore
from services.chunker import SemanticChunker
from services.embedding import EmbeddingGenerator
from services.events import should_index
from services.extractor_factory import ExtractorFactory
from services.query_service import DocumentQueryService
from services.relationships import RelationshipMapper
from services.text_analysis import extract_topics, summarize, summarize_change
from utils.detection import detect_document_type

logger = logging.getLogger(settings.LOGGER_NAME)

DocumentLoader = Callable[[str], Awaitable[RawDocument]]
QueryResult = Union[List[RetrievalResult], TimeQueryResult, ComparisonResult]


@dataclass
class PipelineAdapters:
    """Explicitly injected collaborators. Storage is mandatory."""
    storage: Optional[IStorageAdapter]
    embedding: Optional[IEmbeddingAdapter] = None
    llm: Optional[ILLMAdapter] = None


def chunk_id(document_id: str, index: int) -> str:
    return f"{document_id}-chunk-{index}"


class IndexingPipeline:
    """
    Turns raw documents into indexed, searchable documents for one store.

    Everything up to the storage stage runs in memory; the store is written
    once, so a failure before that leaves previously stored data untouched.
    Progress for each document id is tracked in the ProgressStore.
    """

    def __init__(
        self,
        adapters: PipelineAdapters,
        config: Optional[IndexingConfig] = None,
        progress_store: Optional[ProgressStore] = None,
        extractor_factory: Optional[ExtractorFactory] = None,
        similarity_threshold: float = settings.DOCUMENT_SIMILARITY_THRESHOLD,
        max_related: int = settings.MAX_RELATED_DOCUMENTS,
        relationship_workers: int = settings.RELATIONSHIP_MAX_WORKERS,
        concept_threshold: float = settings.CONCEPT_SIMILARITY_THRESHOLD,
        default_limit: int = settings.DEFAULT_QUERY_LIMIT,
        embedding_batch_size: int = settings.EMBEDDING_BATCH_SIZE,
        embedding_concurrency: int = settings.EMBEDDING_MAX_CONCURRENCY,
    ):
        if adapters is None or adapters.storage is None:
            raise ConfigurationError("A storage adapter is required to build the indexing pipeline")

        self.storage = adapters.storage
        self.llm = adapters.llm
        self.config = config or IndexingConfig()
        self.progress_store = progress_store or ProgressStore()
        self.extractor_factory = extractor_factory or ExtractorFactory()
        self.chunker = SemanticChunker(self.config)
        self.embedder = EmbeddingGenerator(
            adapters.embedding, self.config, llm=adapters.llm,
            batch_size=embedding_batch_size, max_concurrency=embedding_concurrency,
        )
        self.mapper = RelationshipMapper(
            self.embedder, llm=adapters.llm,
            similarity_threshold=similarity_threshold,
            max_related=max_related,
            max_workers=relationship_workers,
            extract_entities=self.config.extract_entities,
        )
        self.queries = DocumentQueryService(
            self.storage, self.embedder,
            similarity_threshold=concept_threshold, default_limit=default_limit,
        )

    # ============= Indexing =============

    async def index_document(
        self,
        raw: RawDocument,
        user_id: str,
        interface: InterfaceType = InterfaceType.API,
        conversation_id: Optional[str] = None,
        project_id: Optional[str] = None,
        document_id: Optional[str] = None,
        conversation_history: Optional[List[ConversationRecord]] = None,
    ) -> IndexedDocument:
        """
        Index a new document. An id that already exists for this user is re-indexed
        in place; an id owned by another user raises DocumentIdConflictError.
        """
        if document_id and await self.storage.get_document(document_id, user_id):
            return await self.reindex_document(
                document_id, raw, user_id, interface=interface, conversation_id=conversation_id,
                project_id=project_id, conversation_history=conversation_history,
            )
        if document_id and await self.storage.get_document_owner(document_id) is not None:
            logger.warning(f"[INDEX] Rejected id {document_id} for user {user_id}: owned by another user")
            raise DocumentIdConflictError(f"Document id {document_id} is already in use")

        document_id = document_id or str(uuid4())
        now = utc_now()
        template = IndexedDocument(
            id=document_id,
            user_id=user_id,
            filename=raw.filename,
            filetype=DocumentType.UNSUPPORTED,
            content="",
            source_interface=interface,
            source_conversation_id=conversation_id,
            source_project_id=project_id,
            source_path=raw.path,
            created_at=raw.created_at or now,
            modified_at=raw.modified_at or now,
            last_accessed_at=now,
        )
        return await self._run(template, raw, conversation_history, previous=None)

    async def reindex_document(
        self,
        document_id: str,
        raw: RawDocument,
        user_id: str,
        interface: Optional[InterfaceType] = None,
        conversation_id: Optional[str] = None,
        project_id: Optional[str] = None,
        conversation_history: Optional[List[ConversationRecord]] = None,
    ) -> IndexedDocument:
        """
        Re-index an existing document under the same id.

        created_at, usage counters and earlier versions are kept; chunks and
        relationships are replaced and a "modified" version is appended.
        """
        previous = await self.storage.get_document(document_id, user_id)
        if previous is None:
            raise DocumentNotFoundError(f"Document {document_id} not found")

        now = utc_now()
        template = IndexedDocument(
            id=document_id,
            user_id=user_id,
            filename=raw.filename,
            filetype=previous.filetype,
            content="",
            source_interface=interface or previous.source_interface,
            source_conversation_id=conversation_id or previous.source_conversation_id,
            source_project_id=project_id or previous.source_project_id,
            source_path=raw.path or previous.source_path,
            parent_document=previous.parent_document,
            created_at=previous.created_at,
            modified_at=now,
            last_accessed_at=previous.last_accessed_at,
            retrieval_count=previous.retrieval_count,
            utility_score=previous.utility_score,
        )
        return await self._run(template, raw, conversation_history, previous=previous)

    async def _run(
        self,
        document: IndexedDocument,
        raw: RawDocument,
        conversation_history: Optional[List[ConversationRecord]],
        previous: Optional[IndexedDocument],
    ) -> IndexedDocument:
        document_id = document.id
        self.progress_store.start(document_id, raw.filename)
        logger.info(f"[INDEX] Started '{raw.filename}' ({document_id})")
        try:
            relationships = await self._prepare(document, raw, conversation_history, previous)
            self._advance(document_id, IndexingStage.STORAGE)
            await self._store(document, relationships, is_new=previous is None)
        except asyncio.CancelledError:
            logger.warning(f"[INDEX] Cancelled while indexing '{raw.filename}'")
            self.progress_store.fail(document_id, "Indexing was cancelled", ErrorCode.CANCELLED)
            raise
        except IndexingError as e:
            logger.error(f"[INDEX] Indexing failed for '{raw.filename}': {e}")
            self.progress_store.fail(document_id, e.message, e.error_code)
            raise
        except Exception as e:
            logger.exception(f"[INDEX] Unexpected error indexing '{raw.filename}'")
            self.progress_store.fail(document_id, f"System error: {str(e)[:100]}", ErrorCode.PROCESSING_FAILED)
            raise

        self.progress_store.complete(document_id)
        logger.info(
            f"[INDEX] Indexed '{raw.filename}': {len(document.chunks)} chunk(s), "
            f"{len(document.related_documents)} related document(s)"
        )
        return document

    def _advance(self, document_id: str, stage: IndexingStage) -> None:
        self.progress_store.update(document_id, stage)
        logger.debug(f"[INDEX] {document_id}: {stage.value} ({stage.progress}%)")

    async def _prepare(
        self,
        document: IndexedDocument,
        raw: RawDocument,
        conversation_history: Optional[List[ConversationRecord]],
        previous: Optional[IndexedDocument],
    ) -> RelationshipMap:
        """Run every stage before storage, filling in the document. Nothing is persisted here."""
        self._advance(document.id, IndexingStage.DETECTION)
        document.filetype = self._detect(raw)

        self._advance(document.id, IndexingStage.EXTRACTION)
        extracted = await self._extract(raw, document.filetype)
        document.content = extracted.source
        document.summary = await self._summarize(extracted.text or extracted.source)
        document.topics = extract_topics(extracted.source)

        self._advance(document.id, IndexingStage.CHUNKING)
        document.chunks = await self._chunk(document.id, extracted)

        self._advance(document.id, IndexingStage.EMBEDDING)
        context = EmbeddingContext(title=extracted.metadata.title or raw.filename, summary=document.summary)
        await self.embedder.embed_chunks(document.chunks, context)

        self._advance(document.id, IndexingStage.RELATIONSHIPS)
        existing = await self.storage.get_user_documents(document.user_id)
        relationships = await self.mapper.map_relationships(document, existing, conversation_history)
        document.entities = relationships.entities
        document.related_documents = [s.document_id for s in relationships.documents]
        document.related_conversations = [c.id for c in relationships.conversations]

        document.version_history = await self._versions(document, previous)
        return relationships

    # ============= Stages =============

    def _detect(self, raw: RawDocument) -> DocumentType:
        document_type = raw.declared_type or detect_document_type(raw.filename)
        if document_type == DocumentType.UNSUPPORTED or not self.extractor_factory.supports(document_type):
            raise UnsupportedDocumentTypeError(
                f"Unsupported document type '{document_type.value}' for {raw.filename}"
            )
        return document_type

    async def _extract(self, raw: RawDocument, document_type: DocumentType) -> ExtractedContent:
        extractor = self.extractor_factory.get_extractor(document_type)
        try:
            return await asyncio.to_thread(extractor.extract, raw)
        except IndexingError:
            raise
        except Exception as e:
            raise ExtractionError(f"Could not extract {raw.filename}: {e}") from e

    async def _summarize(self, text: str) -> str:
        if self.llm is not None:
            try:
                summary = await self.llm.generate_summary(text)
                if summary:
                    return summary
            except Exception as e:
                logger.warning(f"Summary generation failed, using first paragraph: {e}")
        return summarize(text)

    async def _chunk(self, document_id: str, extracted: ExtractedContent) -> List[DocumentChunk]:
        candidates = self.chunker.chunk(extracted)
        chunks = [
            DocumentChunk(
                id=chunk_id(document_id, i),
                document_id=document_id,
                content=candidate.content,
                position=candidate.position,
                metadata=candidate.metadata,
            )
            for i, candidate in enumerate(candidates)
        ]
        if self.llm is not None and chunks:
            await self._refine_flags(chunks)
        return chunks

    async def _refine_flags(self, chunks: List[DocumentChunk]) -> None:
        """Replace the regex flags with the language model's, where it answers."""
        results = await asyncio.gather(
            *(self.llm.detect_semantic_flags(chunk.content) for chunk in chunks),
            return_exceptions=True,
        )
        for chunk, flags in zip(chunks, results):
            if isinstance(flags, asyncio.CancelledError):
                raise flags
            if isinstance(flags, BaseException):
                logger.warning(f"Flag detection failed for {chunk.id}, keeping pattern flags: {flags}")
                continue
            chunk.metadata.is_decision = flags.get("is_decision", chunk.metadata.is_decision)
            chunk.metadata.is_question = flags.get("is_question", chunk.metadata.is_question)
            chunk.metadata.is_action = flags.get("is_action", chunk.metadata.is_action)

    async def _versions(self, document: IndexedDocument, previous: Optional[IndexedDocument]) -> List[DocumentVersion]:
        if previous is None:
            return [DocumentVersion(
                id=str(uuid4()),
                document_id=document.id,
                content=document.content,
                created_at=document.created_at,
                change_type=ChangeType.CREATED,
                change_summary="Initial version",
            )]
        change_summary = await self._describe_change(previous.content, document.content)
        return list(previous.version_history) + [DocumentVersion(
            id=str(uuid4()),
            document_id=document.id,
            content=document.content,
            created_at=document.modified_at,
            change_type=ChangeType.MODIFIED,
            change_summary=change_summary,
        )]

    async def _describe_change(self, old_content: str, new_content: str) -> str:
        if self.llm is not None and self.llm.supports_change_summary:
            try:
                return await self.llm.generate_change_summary(old_content, new_content)
            except Exception as e:
                logger.warning(f"Change summary failed, using line diff: {e}")
        return summarize_change(old_content, new_content)

    async def _store(self, document: IndexedDocument, relationships: RelationshipMap, is_new: bool) -> None:
        try:
            await self.storage.save_indexed_document(document, relationships)
        except Exception as e:
            if is_new:
                await self._discard_partial(document)
            if isinstance(e, IndexingError):
                raise
            raise StorageError(f"Failed to store {document.filename}: {e}") from e

    async def _discard_partial(self, document: IndexedDocument) -> None:
        """Best-effort removal of a half-written new document. Logs, never raises."""
        try:
            await self.storage.delete_document(document.id, document.user_id)
        except Exception as e:
            logger.warning(f"[INDEX] Cleanup of {document.id} after storage failure failed: {e}")

    # ============= Removal & progress =============

    async def remove_document(self, document_id: str, user_id: str) -> bool:
        removed = await self.storage.delete_document(document_id, user_id)
        self.progress_store.remove(document_id)
        if removed:
            logger.info(f"[INDEX] Removed document {document_id}")
        return removed

    def get_progress(self, document_id: str) -> Optional[IndexingProgress]:
        return self.progress_store.get(document_id)

    # ============= Retrieval =============

    async def get_document(self, document_id: str, user_id: str) -> Optional[IndexedDocument]:
        return await self.storage.get_document(document_id, user_id)

    async def get_related(self, document_id: str, user_id: str, limit: Optional[int] = None) -> List[IndexedDocument]:
        return await self.queries.get_related(document_id, user_id, limit)

    async def get_stats(self, user_id: str) -> StorageStats:
        return await self.storage.get_stats(user_id)

    @staticmethod
    def validate_query(request: QueryRequest) -> None:
        """Raise QueryValidationError when the request lacks what its mode needs."""
        if not request.user_id:
            raise QueryValidationError("user_id required")
        if request.limit is not None and request.limit < 1:
            raise QueryValidationError("limit must be a positive number")
        if request.mode in (QueryMode.NAME, QueryMode.CONCEPT):
            if not request.query or not request.query.strip():
                raise QueryValidationError(f"query required for {request.mode.value} queries")
        elif request.mode == QueryMode.TIME:
            if request.time_range is None:
                raise QueryValidationError("time_range required for time queries")
            if request.time_range.start > request.time_range.end:
                raise QueryValidationError("time_range start must not be after its end")
        elif request.mode == QueryMode.CROSS_PROJECT:
            if not request.projects:
                raise QueryValidationError("projects required for cross-project queries")
            if not (request.topic or request.query):
                raise QueryValidationError("topic required for cross-project queries")

    async def query(self, request: QueryRequest) -> QueryResult:
        self.validate_query(request)
        if request.mode == QueryMode.NAME:
            return await self.queries.query_by_name(request.query, request.user_id, request.limit)
        if request.mode == QueryMode.CONCEPT:
            return await self.queries.query_by_concept(
                request.query, request.user_id, request.limit, request.project_id
            )
        if request.mode == QueryMode.TIME:
            return await self.queries.query_by_time(request.user_id, request.time_range)
        return await self.queries.compare_across_projects(
            request.user_id, request.projects, request.topic or request.query
        )

    # ============= Events =============

    async def handle_event(
        self, event: DocumentEvent, user_id: str, loader: DocumentLoader
    ) -> Optional[Union[IndexedDocument, bool]]:
        """
        created → index, modified → re-index (index when unknown), deleted → remove.
        Paths with no detected type or no registered extractor are skipped (returns None).
        """
        if not should_index(event.document_path, self.extractor_factory):
            logger.debug(f"Skipping event for unsupported path {event.document_path}")
            return None

        existing = await self._find_event_target(event, user_id)

        if event.kind == EventKind.DELETED:
            if existing is None:
                return False
            return await self.remove_document(existing.id, user_id)

        raw = await loader(event.document_path)
        if existing is not None:
            return await self.reindex_document(
                existing.id, raw, user_id, interface=event.interface,
                conversation_id=event.conversation_id, project_id=event.project_id,
            )
        return await self.index_document(
            raw, user_id, interface=event.interface,
            conversation_id=event.conversation_id, project_id=event.project_id,
            document_id=event.document_id,
        )

    async def _find_event_target(self, event: DocumentEvent, user_id: str) -> Optional[IndexedDocument]:
        if event.document_id:
            return await self.storage.get_document(event.document_id, user_id)
        return await self.storage.get_document_by_path(user_id, event.document_path)
