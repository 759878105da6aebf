# core/interfaces.py
"""Adapter ports for the indexing pipeline"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.domain import (
    ChunkEmbeddings, CodeBlock, DocumentChunk, DocumentStructure, EmbeddingContext,
    EntityReference, ExtractedContent, ExtractedMetadata, IndexedDocument, IndexingConfig,
    RawDocument, RelationshipMap, StorageSearchOptions, StorageSearchResult, StorageStats, TimeRange
)
from core.enums import DocumentType

# ============= Embedding Adapter =============
class IEmbeddingAdapter(ABC):
    """Base embedding capability: one vector per text."""

    @abstractmethod
    async def embed(self, text: str, config: IndexingConfig) -> List[float]:
        """Embed a single text"""
        pass

    @abstractmethod
    async def embed_batch(self, texts: List[str], config: IndexingConfig) -> List[List[float]]:
        """Embed several texts, preserving order"""
        pass


class IMultiVectorEmbeddingAdapter(IEmbeddingAdapter):
    """
    Extended capability: content, contextual and queryable vectors in one call.

    Callers test for this class explicitly; a plain IEmbeddingAdapter gets the
    three vectors composed by the EmbeddingGenerator instead.
    """

    @abstractmethod
    async def embed_multi_vector(
        self, content: str, context: EmbeddingContext, config: IndexingConfig
    ) -> ChunkEmbeddings:
        pass

# ============= Language-Model Adapter =============
class ILLMAdapter(ABC):
    """Interface for language-model helpers used during indexing"""

    @abstractmethod
    async def generate_summary(self, text: str, max_length: int = 200) -> str:
        pass

    @abstractmethod
    async def generate_questions(self, text: str, count: int = 3) -> List[str]:
        """Hypothetical questions the text answers"""
        pass

    @abstractmethod
    async def extract_entities(self, text: str) -> List[EntityReference]:
        pass

    @abstractmethod
    async def detect_semantic_flags(self, text: str) -> Dict[str, bool]:
        """Returns {"is_decision": .., "is_question": .., "is_action": ..}"""
        pass

    @property
    def supports_change_summary(self) -> bool:
        return False

    async def generate_change_summary(self, old_content: str, new_content: str) -> str:
        """Optional capability, see supports_change_summary"""
        raise NotImplementedError

# ============= Storage Adapter =============
class IStorageAdapter(ABC):
    """
    Persistence and retrieval port. Every read is scoped by user id.

    Writes must be durable when the call returns. Implementations:
    InMemoryStorageAdapter (reference), SQLStorageAdapter (SQLAlchemy).
    """

    async def initialize(self) -> None:
        """Create schema or warm caches. No-op by default."""
        return None

    @abstractmethod
    async def store_document(self, document: IndexedDocument) -> None:
        """
        Insert or replace the document record (chunks stored separately).
        Replacing a record owned by another user raises StorageError.
        """
        pass

    @abstractmethod
    async def store_chunks(self, chunks: List[DocumentChunk]) -> None:
        pass

    @abstractmethod
    async def store_relationships(self, document_id: str, relationships: RelationshipMap) -> None:
        pass

    async def save_indexed_document(self, document: IndexedDocument, relationships: RelationshipMap) -> None:
        """
        Persist one indexing result: the document record, a replacement chunk
        set and the relationship map. Engines with transactions override this
        to make the write all-or-nothing.
        """
        await self.delete_chunks(document.id)
        await self.store_document(document)
        await self.store_chunks(document.chunks)
        await self.store_relationships(document.id, relationships)

    @abstractmethod
    async def get_document(self, document_id: str, user_id: str) -> Optional[IndexedDocument]:
        """Document with its chunks, or None when missing or owned by another user"""
        pass

    @abstractmethod
    async def get_document_owner(self, document_id: str) -> Optional[str]:
        """User id that owns the document id, or None when the id is free. Never returns content."""
        pass

    @abstractmethod
    async def get_document_by_path(self, user_id: str, path: str) -> Optional[IndexedDocument]:
        pass

    @abstractmethod
    async def get_user_documents(
        self, user_id: str, limit: Optional[int] = None, offset: int = 0,
        project_id: Optional[str] = None
    ) -> List[IndexedDocument]:
        pass

    @abstractmethod
    async def update_document(self, document_id: str, user_id: str, **updates: Any) -> bool:
        pass

    @abstractmethod
    async def record_retrieval(self, document_id: str, user_id: str, accessed_at: datetime) -> Optional[int]:
        """
        Increment retrieval_count in place and set last_accessed_at.

        Returns the new count, or None when the document is missing or owned
        by another user. Concurrent calls must not lose increments.
        """
        pass

    @abstractmethod
    async def delete_document(self, document_id: str, user_id: str) -> bool:
        """Remove document, chunks and relationships together"""
        pass

    @abstractmethod
    async def delete_chunks(self, document_id: str) -> None:
        pass

    @abstractmethod
    async def get_relationships(self, document_id: str) -> Optional[RelationshipMap]:
        pass

    @abstractmethod
    async def search_by_embedding(
        self, embedding: List[float], options: StorageSearchOptions
    ) -> List[StorageSearchResult]:
        """Chunks above the threshold, highest similarity first"""
        pass

    @abstractmethod
    async def search_by_name(self, pattern: str, user_id: str, limit: int = 10) -> List[IndexedDocument]:
        pass

    @abstractmethod
    async def search_by_time_range(self, user_id: str, time_range: TimeRange) -> List[IndexedDocument]:
        pass

    @abstractmethod
    async def get_related_documents(
        self, document_id: str, user_id: str, limit: int = 10
    ) -> List[IndexedDocument]:
        pass

    @abstractmethod
    async def get_stats(self, user_id: str) -> StorageStats:
        pass

# ============= Content Extractor =============
class IContentExtractor(ABC):
    """
    Turns one content category into normalized text, an outline, metadata and code blocks.

    read() decodes the raw document once; the four operations work on that source.
    """

    supported_types: tuple = ()

    def supports(self, document_type: DocumentType) -> bool:
        return document_type in self.supported_types

    def read(self, document: RawDocument) -> str:
        return document.text()

    @abstractmethod
    def get_text(self, source: str, document: RawDocument) -> str:
        pass

    @abstractmethod
    def get_structure(self, source: str, document: RawDocument) -> DocumentStructure:
        pass

    @abstractmethod
    def get_metadata(self, source: str, document: RawDocument) -> ExtractedMetadata:
        pass

    @abstractmethod
    def get_code_blocks(self, source: str, document: RawDocument) -> List[CodeBlock]:
        pass

    def extract(self, document: RawDocument) -> ExtractedContent:
        source = self.read(document)
        return ExtractedContent(
            source=source,
            text=self.get_text(source, document),
            structure=self.get_structure(source, document),
            metadata=self.get_metadata(source, document),
            code_blocks=self.get_code_blocks(source, document),
        )
