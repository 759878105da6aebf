# infrastructure/memory_store.py
"""Dictionary-backed storage adapter, the reference implementation of the storage port"""
import asyncio
import copy
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from config import settings
from core.domain import (
    DocumentChunk, IndexedDocument, RelationshipMap, StorageSearchOptions,
    StorageSearchResult, StorageStats, TimeRange
)
from core.errors import StorageError
from core.interfaces import IStorageAdapter
from services.embedding import cosine_similarity

logger = logging.getLogger(settings.LOGGER_NAME)

UPDATABLE_FIELDS = {
    "utility_score", "retrieval_count", "last_accessed_at", "topics", "summary",
    "modified_at", "version_history", "content", "related_documents",
    "related_conversations", "entities",
}


def chunk_result_metadata(chunk: DocumentChunk) -> Dict[str, Any]:
    return {
        "order": chunk.position.order,
        "start_line": chunk.position.start_line,
        "end_line": chunk.position.end_line,
        "section": chunk.position.section,
        "heading_context": list(chunk.metadata.heading_context),
        "is_decision": chunk.metadata.is_decision,
        "is_question": chunk.metadata.is_question,
        "is_action": chunk.metadata.is_action,
        "token_count": chunk.metadata.token_count,
    }


def matches_filters(document: IndexedDocument, chunk: DocumentChunk, options: StorageSearchOptions) -> bool:
    """Metadata filters shared by the storage adapters."""
    if document.user_id != options.user_id:
        return False
    if options.project_id and document.source_project_id != options.project_id:
        return False
    if options.source_interface and document.source_interface != options.source_interface:
        return False
    if options.document_type and document.filetype != options.document_type:
        return False
    if options.decisions_only and not chunk.metadata.is_decision:
        return False
    if options.time_range and not (
        options.time_range.contains(document.created_at)
        or options.time_range.contains(document.modified_at)
    ):
        return False
    return True


class InMemoryStorageAdapter(IStorageAdapter):
    """
    In-process storage for development and tests. Lost on restart.

    All state sits behind one asyncio.Lock; callers always receive copies,
    so mutating a returned document never changes stored state.
    """

    def __init__(self):
        self._documents: Dict[str, IndexedDocument] = {}
        self._chunks: Dict[str, List[DocumentChunk]] = {}
        self._relationships: Dict[str, RelationshipMap] = {}
        self._lock = asyncio.Lock()

    # ============= Writes =============

    async def store_document(self, document: IndexedDocument) -> None:
        async with self._lock:
            self._put_document(document)

    async def store_chunks(self, chunks: List[DocumentChunk]) -> None:
        async with self._lock:
            self._put_chunks(chunks)

    async def store_relationships(self, document_id: str, relationships: RelationshipMap) -> None:
        async with self._lock:
            self._relationships[document_id] = copy.deepcopy(relationships)

    async def save_indexed_document(self, document: IndexedDocument, relationships: RelationshipMap) -> None:
        async with self._lock:
            self._check_owner(document)
            self._chunks.pop(document.id, None)
            self._put_document(document)
            self._put_chunks(document.chunks)
            self._relationships[document.id] = copy.deepcopy(relationships)

    async def update_document(self, document_id: str, user_id: str, **updates: Any) -> bool:
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        async with self._lock:
            stored = self._documents.get(document_id)
            if not stored or stored.user_id != user_id:
                return False
            for name, value in updates.items():
                setattr(stored, name, copy.deepcopy(value))
            stored.utility_score = min(1.0, max(0.0, stored.utility_score))
            return True

    async def record_retrieval(self, document_id: str, user_id: str, accessed_at: datetime) -> Optional[int]:
        async with self._lock:
            stored = self._documents.get(document_id)
            if not stored or stored.user_id != user_id:
                return None
            stored.retrieval_count += 1
            stored.last_accessed_at = accessed_at
            return stored.retrieval_count

    async def delete_document(self, document_id: str, user_id: str) -> bool:
        async with self._lock:
            stored = self._documents.get(document_id)
            if not stored or stored.user_id != user_id:
                return False
            del self._documents[document_id]
            self._chunks.pop(document_id, None)
            self._relationships.pop(document_id, None)
            return True

    async def delete_chunks(self, document_id: str) -> None:
        async with self._lock:
            self._chunks.pop(document_id, None)

    def _check_owner(self, document: IndexedDocument) -> None:
        stored = self._documents.get(document.id)
        if stored is not None and stored.user_id != document.user_id:
            raise StorageError(f"Document id {document.id} belongs to another user")

    def _put_document(self, document: IndexedDocument) -> None:
        self._check_owner(document)
        stored = copy.deepcopy(document)
        stored.chunks = []
        self._documents[document.id] = stored

    def _put_chunks(self, chunks: List[DocumentChunk]) -> None:
        for chunk in chunks:
            bucket = self._chunks.setdefault(chunk.document_id, [])
            bucket[:] = [c for c in bucket if c.id != chunk.id]
            bucket.append(copy.deepcopy(chunk))

    # ============= Reads =============

    def _assemble(self, document_id: str) -> IndexedDocument:
        document = copy.deepcopy(self._documents[document_id])
        document.chunks = sorted(
            (copy.deepcopy(c) for c in self._chunks.get(document_id, [])),
            key=lambda c: c.position.order,
        )
        return document

    def _owned(self, user_id: str) -> List[str]:
        return [doc_id for doc_id, doc in self._documents.items() if doc.user_id == user_id]

    async def get_document(self, document_id: str, user_id: str) -> Optional[IndexedDocument]:
        async with self._lock:
            stored = self._documents.get(document_id)
            if not stored or stored.user_id != user_id:
                return None
            return self._assemble(document_id)

    async def get_document_owner(self, document_id: str) -> Optional[str]:
        async with self._lock:
            stored = self._documents.get(document_id)
            return stored.user_id if stored else None

    async def get_document_by_path(self, user_id: str, path: str) -> Optional[IndexedDocument]:
        async with self._lock:
            for doc_id in self._owned(user_id):
                if self._documents[doc_id].source_path == path:
                    return self._assemble(doc_id)
            return None

    async def get_user_documents(
        self, user_id: str, limit: Optional[int] = None, offset: int = 0,
        project_id: Optional[str] = None
    ) -> List[IndexedDocument]:
        async with self._lock:
            ids = [
                doc_id for doc_id in self._owned(user_id)
                if project_id is None or self._documents[doc_id].source_project_id == project_id
            ]
            ids.sort(key=lambda doc_id: self._documents[doc_id].modified_at, reverse=True)
            ids = ids[offset:offset + limit] if limit is not None else ids[offset:]
            return [self._assemble(doc_id) for doc_id in ids]

    async def get_relationships(self, document_id: str) -> Optional[RelationshipMap]:
        async with self._lock:
            stored = self._relationships.get(document_id)
            return copy.deepcopy(stored) if stored else None

    async def search_by_embedding(
        self, embedding: List[float], options: StorageSearchOptions
    ) -> List[StorageSearchResult]:
        async with self._lock:
            results = []
            for doc_id in self._owned(options.user_id):
                document = self._documents[doc_id]
                for chunk in self._chunks.get(doc_id, []):
                    if chunk.embedding is None or len(chunk.embedding) != len(embedding):
                        continue
                    if not matches_filters(document, chunk, options):
                        continue
                    similarity = cosine_similarity(embedding, chunk.embedding)
                    if similarity < options.similarity_threshold:
                        continue
                    results.append(StorageSearchResult(
                        id=chunk.id,
                        document_id=doc_id,
                        content=chunk.content,
                        similarity=similarity,
                        document_title=document.filename,
                        metadata=chunk_result_metadata(chunk),
                    ))
        results.sort(key=lambda r: r.similarity, reverse=True)
        return results[:options.limit]

    async def search_by_name(self, pattern: str, user_id: str, limit: int = 10) -> List[IndexedDocument]:
        needle = pattern.lower()
        async with self._lock:
            by_filename, by_summary = [], []
            for doc_id in self._owned(user_id):
                document = self._documents[doc_id]
                if needle in document.filename.lower():
                    by_filename.append(doc_id)
                elif needle in (document.summary or "").lower():
                    by_summary.append(doc_id)
            return [self._assemble(doc_id) for doc_id in (by_filename + by_summary)[:limit]]

    async def search_by_time_range(self, user_id: str, time_range: TimeRange) -> List[IndexedDocument]:
        async with self._lock:
            ids = [
                doc_id for doc_id in self._owned(user_id)
                if time_range.contains(self._documents[doc_id].created_at)
                or time_range.contains(self._documents[doc_id].modified_at)
            ]
            ids.sort(key=lambda doc_id: self._documents[doc_id].modified_at, reverse=True)
            return [self._assemble(doc_id) for doc_id in ids]

    async def get_related_documents(self, document_id: str, user_id: str, limit: int = 10) -> List[IndexedDocument]:
        async with self._lock:
            source = self._documents.get(document_id)
            if not source or source.user_id != user_id:
                return []
            relationships = self._relationships.get(document_id)
            ranked = [s.document_id for s in sorted(
                relationships.documents if relationships else [],
                key=lambda s: s.similarity, reverse=True,
            )]
            ranked += [d for d in source.related_documents if d not in ranked]
            related = [
                doc_id for doc_id in ranked
                if doc_id in self._documents and self._documents[doc_id].user_id == user_id
            ]
            return [self._assemble(doc_id) for doc_id in related[:limit]]

    async def get_stats(self, user_id: str) -> StorageStats:
        async with self._lock:
            ids = self._owned(user_id)
            chunks = [c for doc_id in ids for c in self._chunks.get(doc_id, [])]
            return StorageStats(
                document_count=len(ids),
                chunk_count=len(chunks),
                total_tokens=sum(c.metadata.token_count for c in chunks),
                last_indexed_at=max((self._documents[d].modified_at for d in ids), default=None),
            )
