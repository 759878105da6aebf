# services/query_service.py
"""Retrieval by name, concept, time range and cross-project comparison"""
import logging
from typing import Dict, List, Optional, Sequence

from config import settings
from core.domain import (
    ComparisonResult, Difference, IndexedDocument, RetrievalResult,
    StorageSearchOptions, TimeQueryResult, TimeRange, utc_now
)
from core.interfaces import IStorageAdapter
from services.embedding import EmbeddingGenerator, cosine_similarity

logger = logging.getLogger(settings.LOGGER_NAME)

FILENAME_MATCH_SCORE = 1.0
SUMMARY_MATCH_SCORE = 0.8
LEXICAL_TOPIC_SCORE = 0.9
NAME_RESULT_CHUNKS = 3
CONCEPT_RESULT_CHUNKS = 5
COMPARISON_RESULT_CHUNKS = 3
COMPARISON_RESULTS_PER_PROJECT = 5


def mentions_topic(document: IndexedDocument, topic: str) -> bool:
    needle = topic.lower()
    return (
        any(needle in t.lower() for t in document.topics)
        or needle in document.filename.lower()
        or needle in (document.summary or "").lower()
    )


def find_common_themes(by_project: Dict[str, List[RetrievalResult]]) -> List[str]:
    """Topics present in the results of every project, in first-seen order."""
    topic_sets = [
        [topic for result in results for topic in result.document.topics]
        for results in by_project.values()
    ]
    if not topic_sets:
        return []
    common = set(topic_sets[0])
    for topics in topic_sets[1:]:
        common &= set(topics)
    return [topic for topic in dict.fromkeys(topic_sets[0]) if topic in common]


def find_differences(by_project: Dict[str, List[RetrievalResult]]) -> List[Difference]:
    """Topics that only one of the first two projects covers."""
    project_ids = list(by_project)
    if len(project_ids) < 2:
        return []
    project_a, project_b = project_ids[:2]
    topics_a = list(dict.fromkeys(t for r in by_project[project_a] for t in r.document.topics))
    topics_b = list(dict.fromkeys(t for r in by_project[project_b] for t in r.document.topics))

    differences = [
        Difference(topic, project_a, project_b, f"Present in {project_a}", f"Not found in {project_b}")
        for topic in topics_a if topic not in topics_b
    ]
    differences += [
        Difference(topic, project_a, project_b, f"Not found in {project_a}", f"Present in {project_b}")
        for topic in topics_b if topic not in topics_a
    ]
    return differences


class DocumentQueryService:
    """Read side of the pipeline. Every query is scoped to one user."""

    def __init__(
        self,
        storage: IStorageAdapter,
        embedder: EmbeddingGenerator,
        similarity_threshold: float = 0.5,
        default_limit: int = 10,
    ):
        self.storage = storage
        self.embedder = embedder
        self.similarity_threshold = similarity_threshold
        self.default_limit = default_limit

    async def query_by_name(self, name: str, user_id: str, limit: Optional[int] = None) -> List[RetrievalResult]:
        limit = limit or self.default_limit
        needle = name.lower()
        documents = await self.storage.search_by_name(name, user_id, limit)
        results = [
            RetrievalResult(
                document=document,
                relevant_chunks=document.chunks[:NAME_RESULT_CHUNKS],
                score=FILENAME_MATCH_SCORE if needle in document.filename.lower() else SUMMARY_MATCH_SCORE,
            )
            for document in documents
        ]
        results.sort(key=lambda r: r.score, reverse=True)
        logger.info(f"Name query '{name}' matched {len(results)} document(s)")
        return results

    async def query_by_concept(
        self, concept: str, user_id: str, limit: Optional[int] = None,
        project_id: Optional[str] = None
    ) -> List[RetrievalResult]:
        limit = limit or self.default_limit
        query_vector = await self.embedder.embed(concept)
        hits = await self.storage.search_by_embedding(query_vector, StorageSearchOptions(
            user_id=user_id,
            # Chunks are grouped afterwards, so fetch more than the document limit
            limit=limit * CONCEPT_RESULT_CHUNKS,
            similarity_threshold=self.similarity_threshold,
            project_id=project_id,
        ))

        grouped: Dict[str, Dict] = {}
        for hit in hits:
            entry = grouped.setdefault(hit.document_id, {"score": hit.similarity, "chunk_ids": []})
            entry["score"] = max(entry["score"], hit.similarity)
            entry["chunk_ids"].append(hit.id)

        results = []
        for document_id, entry in grouped.items():
            document = await self.storage.get_document(document_id, user_id)
            if document is None:
                continue
            by_id = {chunk.id: chunk for chunk in document.chunks}
            chunks = [by_id[c] for c in entry["chunk_ids"] if c in by_id][:CONCEPT_RESULT_CHUNKS]
            results.append(RetrievalResult(document=document, relevant_chunks=chunks, score=entry["score"]))

        results.sort(key=lambda r: r.score, reverse=True)
        results = results[:limit]
        await self._record_access(results, user_id)
        logger.info(f"Concept query matched {len(results)} document(s) for user {user_id}")
        return results

    async def query_by_time(self, user_id: str, time_range: TimeRange) -> TimeQueryResult:
        documents = await self.storage.search_by_time_range(user_id, time_range)
        documents.sort(key=lambda d: d.modified_at, reverse=True)
        return TimeQueryResult(documents=documents, conversations=[])

    async def compare_across_projects(self, user_id: str, projects: Sequence[str], topic: str) -> ComparisonResult:
        topic_vector = await self.embedder.embed(topic)
        by_project: Dict[str, List[RetrievalResult]] = {}

        for project_id in projects:
            documents = await self.storage.get_user_documents(user_id, project_id=project_id)
            if not documents:
                continue
            results = [r for r in (self._score_for_topic(d, topic, topic_vector) for d in documents) if r]
            results.sort(key=lambda r: r.score, reverse=True)
            by_project[project_id] = results[:COMPARISON_RESULTS_PER_PROJECT]

        return ComparisonResult(
            by_project=by_project,
            common_themes=find_common_themes(by_project),
            differences=find_differences(by_project),
        )

    async def get_related(self, document_id: str, user_id: str, limit: Optional[int] = None) -> List[IndexedDocument]:
        return await self.storage.get_related_documents(document_id, user_id, limit or self.default_limit)

    # ============= Helpers =============

    def _score_for_topic(
        self, document: IndexedDocument, topic: str, topic_vector: List[float]
    ) -> Optional[RetrievalResult]:
        scored = [
            (chunk, cosine_similarity(topic_vector, chunk.embedding))
            for chunk in document.chunks
            if chunk.embedding is not None and len(chunk.embedding) == len(topic_vector)
        ]
        matching = sorted(
            (item for item in scored if item[1] >= self.similarity_threshold),
            key=lambda item: item[1], reverse=True,
        )
        best = matching[0][1] if matching else 0.0

        if mentions_topic(document, topic):
            best = max(best, LEXICAL_TOPIC_SCORE)
            if not matching:
                matching = [(chunk, LEXICAL_TOPIC_SCORE) for chunk in document.chunks]
        if not matching and best < self.similarity_threshold:
            return None
        return RetrievalResult(
            document=document,
            relevant_chunks=[chunk for chunk, _ in matching[:COMPARISON_RESULT_CHUNKS]],
            score=best,
        )

    async def _record_access(self, results: List[RetrievalResult], user_id: str) -> None:
        now = utc_now()
        for result in results:
            count = await self.storage.record_retrieval(result.document.id, user_id, now)
            if count is not None:
                result.document.retrieval_count = count
                result.document.last_accessed_at = now
