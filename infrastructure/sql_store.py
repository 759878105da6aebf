# infrastructure/sql_store.py
"""SQLAlchemy implementation of the storage port"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import settings
from core.domain import (
    ChunkEmbeddings, ChunkMetadata, ChunkPosition, ConversationLink, DocumentChunk,
    DocumentSimilarity, DocumentVersion, EntityReference, ExplicitLink, IndexedDocument,
    RelationshipMap, StorageSearchOptions, StorageSearchResult, StorageStats, TimeRange
)
from core.enums import ChangeType, DocumentType, EntityType, InterfaceType, LinkType
from core.errors import StorageError
from core.interfaces import IStorageAdapter
from database.session import (
    Base, ChunkEntity, DocumentEntity, RelationshipEntity,
    create_engine_and_sessionmaker, transaction
)
from infrastructure.memory_store import UPDATABLE_FIELDS, chunk_result_metadata, matches_filters
from services.embedding import cosine_similarity

logger = logging.getLogger(settings.LOGGER_NAME)


# ============= Column conversions =============

def to_naive_utc(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is None or moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def from_naive_utc(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is None or moment.tzinfo is not None:
        return moment
    return moment.replace(tzinfo=timezone.utc)


def _iso(moment: datetime) -> str:
    return from_naive_utc(moment).isoformat()


def entities_to_json(entities: List[EntityReference]) -> List[Dict[str, Any]]:
    return [
        {"type": e.type.value, "name": e.name, "mentions": e.mentions, "positions": list(e.positions)}
        for e in entities
    ]


def entities_from_json(items: List[Dict[str, Any]]) -> List[EntityReference]:
    return [
        EntityReference(
            type=EntityType(item["type"]), name=item["name"],
            mentions=item.get("mentions", 1), positions=list(item.get("positions", [])),
        )
        for item in items or []
    ]


def versions_to_json(versions: List[DocumentVersion]) -> List[Dict[str, Any]]:
    return [
        {
            "id": v.id,
            "document_id": v.document_id,
            "content": v.content,
            "created_at": _iso(v.created_at),
            "change_type": v.change_type.value,
            "change_summary": v.change_summary,
        }
        for v in versions
    ]


def versions_from_json(items: List[Dict[str, Any]]) -> List[DocumentVersion]:
    return [
        DocumentVersion(
            id=item["id"],
            document_id=item["document_id"],
            content=item["content"],
            created_at=from_naive_utc(datetime.fromisoformat(item["created_at"])),
            change_type=ChangeType(item["change_type"]),
            change_summary=item.get("change_summary"),
        )
        for item in items or []
    ]


def relationships_to_json(relationships: RelationshipMap) -> Dict[str, Any]:
    return {
        "conversations": [
            {"id": c.id, "mentions": c.mentions, "relevance": c.relevance, "timestamp": _iso(c.timestamp)}
            for c in relationships.conversations
        ],
        "documents": [
            {
                "document_id": d.document_id, "similarity": d.similarity,
                "shared_topics": list(d.shared_topics), "shared_entities": list(d.shared_entities),
            }
            for d in relationships.documents
        ],
        "entities": entities_to_json(relationships.entities),
        "explicit_links": [
            {"type": l.type.value, "target": l.target, "context": l.context, "position": l.position}
            for l in relationships.explicit_links
        ],
    }


def relationships_from_json(payload: Dict[str, Any]) -> RelationshipMap:
    return RelationshipMap(
        conversations=[
            ConversationLink(
                id=c["id"], mentions=c["mentions"], relevance=c["relevance"],
                timestamp=from_naive_utc(datetime.fromisoformat(c["timestamp"])),
            )
            for c in payload.get("conversations", [])
        ],
        documents=[
            DocumentSimilarity(
                document_id=d["document_id"], similarity=d["similarity"],
                shared_topics=d.get("shared_topics", []), shared_entities=d.get("shared_entities", []),
            )
            for d in payload.get("documents", [])
        ],
        entities=entities_from_json(payload.get("entities", [])),
        explicit_links=[
            ExplicitLink(type=LinkType(l["type"]), target=l["target"], context=l["context"], position=l["position"])
            for l in payload.get("explicit_links", [])
        ],
    )


# ============= Adapter =============

class SQLStorageAdapter(IStorageAdapter):
    """
    Storage on a SQLAlchemy async engine (aiosqlite by default).

    Vectors live in JSON columns; similarity is computed in process over the
    requesting user's chunks. Engine errors surface as StorageError.
    """

    def __init__(self, database_url: Optional[str] = None, session_maker: Optional[async_sessionmaker] = None):
        if session_maker is not None:
            self.engine = None
            self.session_maker = session_maker
        else:
            self.engine, self.session_maker = create_engine_and_sessionmaker(database_url)

    async def initialize(self) -> None:
        engine = self.engine or self.session_maker.kw["bind"]
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to create schema: {e}") from e
        logger.info("Storage schema ready.")

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    @asynccontextmanager
    async def _session(self, action: str):
        try:
            async with transaction(self.session_maker) as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Storage failure while trying to {action}: {e}", exc_info=True)
            raise StorageError(f"Failed to {action}: {e}") from e

    # ============= Mapping =============

    def _document_entity(self, document: IndexedDocument) -> DocumentEntity:
        return DocumentEntity(
            id=document.id,
            user_id=document.user_id,
            filename=document.filename,
            filetype=document.filetype.value,
            content=document.content,
            summary=document.summary or "",
            source_interface=document.source_interface.value,
            source_conversation_id=document.source_conversation_id,
            source_project_id=document.source_project_id,
            source_path=document.source_path,
            parent_document=document.parent_document,
            related_documents=list(document.related_documents),
            related_conversations=list(document.related_conversations),
            version_history=versions_to_json(document.version_history),
            topics=list(document.topics),
            entities=entities_to_json(document.entities),
            created_at=to_naive_utc(document.created_at),
            modified_at=to_naive_utc(document.modified_at),
            last_accessed_at=to_naive_utc(document.last_accessed_at),
            retrieval_count=document.retrieval_count,
            utility_score=document.utility_score,
        )

    def _chunk_entity(self, chunk: DocumentChunk) -> ChunkEntity:
        metadata = chunk.metadata
        embeddings = None
        if chunk.embeddings is not None:
            embeddings = {
                "content": chunk.embeddings.content,
                "contextual": chunk.embeddings.contextual,
                "queryable": chunk.embeddings.queryable,
            }
        return ChunkEntity(
            id=chunk.id,
            document_id=chunk.document_id,
            chunk_order=chunk.position.order,
            content=chunk.content,
            start_line=chunk.position.start_line,
            end_line=chunk.position.end_line,
            section=chunk.position.section,
            chunk_metadata={
                "heading_context": list(metadata.heading_context),
                "code_language": metadata.code_language,
                "is_decision": metadata.is_decision,
                "is_question": metadata.is_question,
                "is_action": metadata.is_action,
                "token_count": metadata.token_count,
                "overlap_chars": metadata.overlap_chars,
                "embedding_source": metadata.embedding_source,
            },
            embedding=chunk.embedding,
            embeddings=embeddings,
        )

    def _chunk_to_domain(self, row: ChunkEntity) -> DocumentChunk:
        embeddings = ChunkEmbeddings(**row.embeddings) if row.embeddings else None
        return DocumentChunk(
            id=row.id,
            document_id=row.document_id,
            content=row.content,
            position=ChunkPosition(
                start_line=row.start_line, end_line=row.end_line,
                section=row.section, order=row.chunk_order,
            ),
            metadata=ChunkMetadata(**(row.chunk_metadata or {})),
            embedding=row.embedding,
            embeddings=embeddings,
        )

    def _to_domain(self, row: DocumentEntity, chunks: Optional[List[ChunkEntity]] = None) -> IndexedDocument:
        return IndexedDocument(
            id=row.id,
            user_id=row.user_id,
            filename=row.filename,
            filetype=DocumentType(row.filetype),
            content=row.content,
            chunks=[self._chunk_to_domain(c) for c in sorted(chunks or [], key=lambda c: c.chunk_order)],
            source_interface=InterfaceType(row.source_interface),
            source_conversation_id=row.source_conversation_id,
            source_project_id=row.source_project_id,
            source_path=row.source_path,
            related_documents=list(row.related_documents or []),
            related_conversations=list(row.related_conversations or []),
            parent_document=row.parent_document,
            created_at=from_naive_utc(row.created_at),
            modified_at=from_naive_utc(row.modified_at),
            last_accessed_at=from_naive_utc(row.last_accessed_at),
            version_history=versions_from_json(row.version_history),
            topics=list(row.topics or []),
            entities=entities_from_json(row.entities),
            summary=row.summary or "",
            retrieval_count=row.retrieval_count,
            utility_score=row.utility_score,
        )

    async def _load_chunks(self, session, document_ids: List[str]) -> Dict[str, List[ChunkEntity]]:
        grouped: Dict[str, List[ChunkEntity]] = {doc_id: [] for doc_id in document_ids}
        if not document_ids:
            return grouped
        result = await session.execute(select(ChunkEntity).where(ChunkEntity.document_id.in_(document_ids)))
        for row in result.scalars().all():
            grouped[row.document_id].append(row)
        return grouped

    async def _assemble(self, session, rows: List[DocumentEntity]) -> List[IndexedDocument]:
        chunks = await self._load_chunks(session, [row.id for row in rows])
        return [self._to_domain(row, chunks[row.id]) for row in rows]

    # ============= Writes =============

    async def store_document(self, document: IndexedDocument) -> None:
        async with self._session("store document") as session:
            await self._check_owner(session, document)
            await session.merge(self._document_entity(document))

    async def _check_owner(self, session, document: IndexedDocument) -> None:
        owner = await session.scalar(select(DocumentEntity.user_id).where(DocumentEntity.id == document.id))
        if owner is not None and owner != document.user_id:
            raise StorageError(f"Document id {document.id} belongs to another user")

    async def store_chunks(self, chunks: List[DocumentChunk]) -> None:
        async with self._session("store chunks") as session:
            for chunk in chunks:
                await session.merge(self._chunk_entity(chunk))

    async def store_relationships(self, document_id: str, relationships: RelationshipMap) -> None:
        async with self._session("store relationships") as session:
            await session.merge(RelationshipEntity(
                document_id=document_id, payload=relationships_to_json(relationships)
            ))

    async def save_indexed_document(self, document: IndexedDocument, relationships: RelationshipMap) -> None:
        async with self._session("save indexed document") as session:
            await self._check_owner(session, document)
            await session.execute(delete(ChunkEntity).where(ChunkEntity.document_id == document.id))
            await session.merge(self._document_entity(document))
            await session.flush()
            session.add_all([self._chunk_entity(chunk) for chunk in document.chunks])
            await session.merge(RelationshipEntity(
                document_id=document.id, payload=relationships_to_json(relationships)
            ))

    async def update_document(self, document_id: str, user_id: str, **updates: Any) -> bool:
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        async with self._session("update document") as session:
            row = await session.get(DocumentEntity, document_id)
            if row is None or row.user_id != user_id:
                return False
            for name, value in updates.items():
                if name in ("last_accessed_at", "modified_at"):
                    value = to_naive_utc(value)
                elif name == "version_history":
                    value = versions_to_json(value)
                elif name == "entities":
                    value = entities_to_json(value)
                elif name == "utility_score":
                    value = min(1.0, max(0.0, value))
                elif isinstance(value, list):
                    value = list(value)
                setattr(row, name, value)
            return True

    async def record_retrieval(self, document_id: str, user_id: str, accessed_at: datetime) -> Optional[int]:
        async with self._session("record retrieval") as session:
            result = await session.execute(
                update(DocumentEntity)
                .where(DocumentEntity.id == document_id, DocumentEntity.user_id == user_id)
                .values(
                    retrieval_count=DocumentEntity.retrieval_count + 1,
                    last_accessed_at=to_naive_utc(accessed_at),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            return await session.scalar(
                select(DocumentEntity.retrieval_count).where(DocumentEntity.id == document_id)
            )

    async def delete_document(self, document_id: str, user_id: str) -> bool:
        async with self._session("delete document") as session:
            row = await session.get(DocumentEntity, document_id)
            if row is None or row.user_id != user_id:
                return False
            await session.execute(delete(ChunkEntity).where(ChunkEntity.document_id == document_id))
            await session.execute(delete(RelationshipEntity).where(RelationshipEntity.document_id == document_id))
            await session.delete(row)
            return True

    async def delete_chunks(self, document_id: str) -> None:
        async with self._session("delete chunks") as session:
            await session.execute(delete(ChunkEntity).where(ChunkEntity.document_id == document_id))

    # ============= Reads =============

    async def get_document(self, document_id: str, user_id: str) -> Optional[IndexedDocument]:
        async with self._session("get document") as session:
            row = await session.get(DocumentEntity, document_id)
            if row is None or row.user_id != user_id:
                return None
            return (await self._assemble(session, [row]))[0]

    async def get_document_owner(self, document_id: str) -> Optional[str]:
        async with self._session("get document owner") as session:
            return await session.scalar(select(DocumentEntity.user_id).where(DocumentEntity.id == document_id))

    async def get_document_by_path(self, user_id: str, path: str) -> Optional[IndexedDocument]:
        async with self._session("get document by path") as session:
            result = await session.execute(
                select(DocumentEntity)
                .where(DocumentEntity.user_id == user_id, DocumentEntity.source_path == path)
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return (await self._assemble(session, [row]))[0] if row else None

    async def get_user_documents(
        self, user_id: str, limit: Optional[int] = None, offset: int = 0,
        project_id: Optional[str] = None
    ) -> List[IndexedDocument]:
        query = select(DocumentEntity).where(DocumentEntity.user_id == user_id)
        if project_id is not None:
            query = query.where(DocumentEntity.source_project_id == project_id)
        query = query.order_by(DocumentEntity.modified_at.desc()).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        async with self._session("list documents") as session:
            result = await session.execute(query)
            return await self._assemble(session, list(result.scalars().all()))

    async def get_relationships(self, document_id: str) -> Optional[RelationshipMap]:
        async with self._session("get relationships") as session:
            row = await session.get(RelationshipEntity, document_id)
            return relationships_from_json(row.payload) if row else None

    async def search_by_embedding(
        self, embedding: List[float], options: StorageSearchOptions
    ) -> List[StorageSearchResult]:
        query = (
            select(ChunkEntity, DocumentEntity)
            .join(DocumentEntity, ChunkEntity.document_id == DocumentEntity.id)
            .where(DocumentEntity.user_id == options.user_id)
        )
        if options.project_id:
            query = query.where(DocumentEntity.source_project_id == options.project_id)
        if options.source_interface:
            query = query.where(DocumentEntity.source_interface == options.source_interface.value)
        if options.document_type:
            query = query.where(DocumentEntity.filetype == options.document_type.value)

        async with self._session("search by embedding") as session:
            rows = (await session.execute(query)).all()

        documents: Dict[str, IndexedDocument] = {}
        results = []
        for chunk_row, document_row in rows:
            if chunk_row.embedding is None or len(chunk_row.embedding) != len(embedding):
                continue
            if document_row.id not in documents:
                documents[document_row.id] = self._to_domain(document_row)
            document = documents[document_row.id]
            chunk = self._chunk_to_domain(chunk_row)
            if not matches_filters(document, chunk, options):
                continue
            similarity = cosine_similarity(embedding, chunk.embedding)
            if similarity < options.similarity_threshold:
                continue
            results.append(StorageSearchResult(
                id=chunk.id,
                document_id=document.id,
                content=chunk.content,
                similarity=similarity,
                document_title=document.filename,
                metadata=chunk_result_metadata(chunk),
            ))
        results.sort(key=lambda r: r.similarity, reverse=True)
        return results[:options.limit]

    async def search_by_name(self, pattern: str, user_id: str, limit: int = 10) -> List[IndexedDocument]:
        needle = pattern.lower()
        async with self._session("search by name") as session:
            result = await session.execute(
                select(DocumentEntity).where(
                    DocumentEntity.user_id == user_id,
                    or_(
                        func.lower(DocumentEntity.filename).contains(needle, autoescape=True),
                        func.lower(DocumentEntity.summary).contains(needle, autoescape=True),
                    ),
                )
            )
            rows = list(result.scalars().all())
            by_filename = [r for r in rows if needle in r.filename.lower()]
            by_summary = [r for r in rows if needle not in r.filename.lower()]
            return await self._assemble(session, (by_filename + by_summary)[:limit])

    async def search_by_time_range(self, user_id: str, time_range: TimeRange) -> List[IndexedDocument]:
        start, end = to_naive_utc(time_range.start), to_naive_utc(time_range.end)
        async with self._session("search by time range") as session:
            result = await session.execute(
                select(DocumentEntity)
                .where(
                    DocumentEntity.user_id == user_id,
                    or_(
                        DocumentEntity.created_at.between(start, end),
                        DocumentEntity.modified_at.between(start, end),
                    ),
                )
                .order_by(DocumentEntity.modified_at.desc())
            )
            return await self._assemble(session, list(result.scalars().all()))

    async def get_related_documents(self, document_id: str, user_id: str, limit: int = 10) -> List[IndexedDocument]:
        async with self._session("get related documents") as session:
            source = await session.get(DocumentEntity, document_id)
            if source is None or source.user_id != user_id:
                return []
            relationships = await session.get(RelationshipEntity, document_id)
            ranked = []
            if relationships is not None:
                similar = sorted(
                    relationships.payload.get("documents", []),
                    key=lambda d: d["similarity"], reverse=True,
                )
                ranked = [d["document_id"] for d in similar]
            ranked += [d for d in (source.related_documents or []) if d not in ranked]
            if not ranked:
                return []

            result = await session.execute(
                select(DocumentEntity).where(DocumentEntity.id.in_(ranked), DocumentEntity.user_id == user_id)
            )
            rows = {row.id: row for row in result.scalars().all()}
            ordered = [rows[doc_id] for doc_id in ranked if doc_id in rows][:limit]
            return await self._assemble(session, ordered)

    async def get_stats(self, user_id: str) -> StorageStats:
        async with self._session("get stats") as session:
            documents = await session.execute(
                select(func.count(DocumentEntity.id), func.max(DocumentEntity.modified_at))
                .where(DocumentEntity.user_id == user_id)
            )
            document_count, last_indexed_at = documents.one()
            chunks = await session.execute(
                select(ChunkEntity.chunk_metadata)
                .join(DocumentEntity, ChunkEntity.document_id == DocumentEntity.id)
                .where(DocumentEntity.user_id == user_id)
            )
            metadata = list(chunks.scalars().all())
            return StorageStats(
                document_count=document_count or 0,
                chunk_count=len(metadata),
                total_tokens=sum((m or {}).get("token_count", 0) for m in metadata),
                last_indexed_at=from_naive_utc(last_indexed_at),
            )
