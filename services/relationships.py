# services/relationships.py
"""Relationship mapping: entities, explicit links, conversation references and similar documents"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from config import settings
from core.domain import (
    ConversationLink, ConversationRecord, DocumentSimilarity, EntityReference,
    ExplicitLink, IndexedDocument, RelationshipMap
)
from core.interfaces import ILLMAdapter
from services.embedding import EmbeddingGenerator, cosine_similarity
from services.text_analysis import detect_explicit_links, extract_entities, extract_key_terms

logger = logging.getLogger(settings.LOGGER_NAME)

RECENCY_WINDOW_DAYS = 365
MIN_RECENCY_BOOST = 0.5


def recency_boost(timestamp: datetime, now: Optional[datetime] = None) -> float:
    """Linear falloff over a year, never below MIN_RECENCY_BOOST."""
    now = now or datetime.now(timezone.utc)
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    days = (now - timestamp).total_seconds() / 86400
    return max(MIN_RECENCY_BOOST, 1 - days / RECENCY_WINDOW_DAYS)


def shared_topics(topics_a: Sequence[str], topics_b: Sequence[str]) -> List[str]:
    lowered = {t.lower() for t in topics_b}
    return [t for t in topics_a if t.lower() in lowered]


def shared_entities(entities_a: Sequence[EntityReference], entities_b: Sequence[EntityReference]) -> List[str]:
    lowered = {e.name.lower() for e in entities_b}
    return [e.name for e in entities_a if e.name.lower() in lowered]


class RelationshipMapper:
    """
    Computes a fresh RelationshipMap for one document.

    The four sub-computations run concurrently and independently; one that
    raises is logged and contributes an empty list.
    """

    def __init__(
        self,
        embedder: EmbeddingGenerator,
        llm: Optional[ILLMAdapter] = None,
        similarity_threshold: float = 0.7,
        max_related: int = 10,
        max_workers: int = 8,
        extract_entities: bool = True,
    ):
        self.embedder = embedder
        self.llm = llm
        self.similarity_threshold = similarity_threshold
        self.max_related = max_related
        self.max_workers = max(1, max_workers)
        self.entities_enabled = extract_entities

    async def map_relationships(
        self,
        document: IndexedDocument,
        existing_documents: Optional[List[IndexedDocument]] = None,
        conversation_history: Optional[List[ConversationRecord]] = None,
    ) -> RelationshipMap:
        existing_documents = existing_documents or []
        conversation_history = conversation_history or []

        # Entities first: similarity reports shared entity names
        entities = await self._isolated("entities", self.find_entities(document.content))
        document.entities = entities

        conversations, documents, links = await asyncio.gather(
            self._isolated("conversations", self.find_conversation_references(document, conversation_history)),
            self._isolated("documents", self.find_similar_documents(document, existing_documents)),
            self._isolated("explicit_links", self.find_explicit_links(document.content)),
        )
        return RelationshipMap(
            conversations=conversations,
            documents=documents,
            entities=entities,
            explicit_links=links,
        )

    async def _isolated(self, name: str, coro) -> list:
        results = await asyncio.gather(coro, return_exceptions=True)
        outcome = results[0]
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, BaseException):
            logger.warning(f"Relationship step '{name}' failed: {outcome}", exc_info=outcome)
            return []
        return outcome

    # ============= Sub-computations =============

    async def find_entities(self, content: str) -> List[EntityReference]:
        if not self.entities_enabled:
            return []
        if self.llm is not None:
            try:
                entities = await self.llm.extract_entities(content)
                if entities:
                    return entities
            except Exception as e:
                logger.warning(f"LLM entity extraction failed, using patterns: {e}")
        return extract_entities(content)

    async def find_explicit_links(self, content: str) -> List[ExplicitLink]:
        return detect_explicit_links(content)

    async def find_conversation_references(
        self, document: IndexedDocument, conversation_history: List[ConversationRecord]
    ) -> List[ConversationLink]:
        terms = extract_key_terms(document.content)
        if not terms:
            return []

        links = []
        for conversation in conversation_history:
            lowered = conversation.content.lower()
            mentions = sum(1 for term in terms if term in lowered)
            if mentions == 0:
                continue
            relevance = min(1.0, mentions / len(terms) * recency_boost(conversation.timestamp))
            links.append(ConversationLink(
                id=conversation.id, mentions=mentions, relevance=relevance,
                timestamp=conversation.timestamp,
            ))
        links.sort(key=lambda link: link.relevance, reverse=True)
        return links

    async def lead_embedding(self, document: IndexedDocument) -> List[float]:
        """First chunk's content vector, else an embedding of the summary."""
        if document.chunks and document.chunks[0].embedding is not None:
            return document.chunks[0].embedding
        return await self.embedder.embed(document.summary or document.content)

    async def find_similar_documents(
        self, document: IndexedDocument, existing_documents: List[IndexedDocument]
    ) -> List[DocumentSimilarity]:
        candidates = [d for d in existing_documents if d.id != document.id]
        if not candidates:
            return []

        lead = await self.lead_embedding(document)
        semaphore = asyncio.Semaphore(self.max_workers)

        async def compare(other: IndexedDocument) -> Optional[DocumentSimilarity]:
            async with semaphore:
                other_lead = await self.lead_embedding(other)
            if len(other_lead) != len(lead):
                logger.debug(f"Skipping {other.id}: embedding dimensions differ")
                return None
            similarity = cosine_similarity(lead, other_lead)
            if similarity < self.similarity_threshold:
                return None
            return DocumentSimilarity(
                document_id=other.id,
                similarity=similarity,
                shared_topics=shared_topics(document.topics, other.topics),
                shared_entities=shared_entities(document.entities, other.entities),
            )

        results = await asyncio.gather(*(compare(other) for other in candidates), return_exceptions=True)
        similarities = []
        for other, result in zip(candidates, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.warning(f"Similarity against {other.id} failed: {result}")
            elif result is not None:
                similarities.append(result)

        similarities.sort(key=lambda s: s.similarity, reverse=True)
        return similarities[:self.max_related]
