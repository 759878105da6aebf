# services/embedding.py
"""Embedding generation: batched adapter calls, multi-vector bundles and the offline mock"""
import asyncio
import logging
from dataclasses import replace
from typing import List, Optional, Sequence, Tuple

import numpy as np

from config import settings
from core.domain import ChunkEmbeddings, DocumentChunk, EmbeddingContext, IndexingConfig
from core.interfaces import IEmbeddingAdapter, ILLMAdapter, IMultiVectorEmbeddingAdapter
from services.text_analysis import heuristic_questions

logger = logging.getLogger(settings.LOGGER_NAME)

SOURCE_ADAPTER = "adapter"
SOURCE_MOCK = "mock"
QUESTIONS_PER_CHUNK = 3


# ============= Vector math =============

def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between a and b; 0.0 when either has zero magnitude."""
    va = np.asarray(a, dtype="float64")
    vb = np.asarray(b, dtype="float64")
    if va.shape != vb.shape:
        raise ValueError(f"Vectors must have the same length ({va.size} != {vb.size})")

    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / (norm_a * norm_b), -1.0, 1.0))


def find_similar_chunks(
    query_embedding: Sequence[float],
    chunks: List[DocumentChunk],
    limit: int = 10,
    threshold: float = 0.5,
) -> List[Tuple[DocumentChunk, float]]:
    """Chunks at or above threshold, most similar first, at most limit."""
    scored = [
        (chunk, cosine_similarity(query_embedding, chunk.embedding))
        for chunk in chunks
        if chunk.embedding is not None
    ]
    scored = [item for item in scored if item[1] >= threshold]
    scored.sort(key=lambda item: item[1], reverse=True)
    return scored[:limit]


def mock_embed(text: str, dimensions: int) -> List[float]:
    """
    Deterministic offline vector from character codes and word positions.

    Not semantically meaningful; exists so the pipeline runs without an
    embedding backend. Chunks embedded this way are tagged "mock".
    """
    vector = np.zeros(dimensions, dtype="float64")
    words = text.lower().split()
    for i, word in enumerate(words):
        for j, char in enumerate(word[:dimensions]):
            vector[(i + j) % dimensions] += (ord(char) - 97) / 26 / len(words)

    norm = np.linalg.norm(vector)
    if norm > 0:
        vector /= norm
    return vector.tolist()


def compose_contextual_text(content: str, context: EmbeddingContext) -> str:
    parts = []
    if context.title:
        parts.append(f"Document: {context.title}")
    if context.summary:
        parts.append(f"Summary: {context.summary}")
    if context.heading_context:
        parts.append(f"Section: {' > '.join(context.heading_context)}")
    header = "\n".join(parts)
    return f"{header}\n\nContent:\n{content}" if header else content


# ============= Generator =============

class EmbeddingGenerator:
    """
    Produces chunk vectors through the configured embedding adapter.

    Texts are sent in batches of batch_size with at most max_concurrency
    batches in flight. Without an adapter, or when the adapter fails, the
    deterministic mock is used and used_mock is set.
    """

    def __init__(
        self,
        adapter: Optional[IEmbeddingAdapter],
        config: IndexingConfig,
        llm: Optional[ILLMAdapter] = None,
        batch_size: int = 32,
        max_concurrency: int = 4,
    ):
        self.adapter = adapter
        self.config = config
        self.llm = llm
        self.batch_size = max(1, batch_size)
        self.max_concurrency = max(1, max_concurrency)
        self.used_mock = False

    @property
    def supports_multi_vector(self) -> bool:
        return isinstance(self.adapter, IMultiVectorEmbeddingAdapter)

    async def embed(self, text: str) -> List[float]:
        vectors, _ = await self._embed_many([text])
        return vectors[0]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        vectors, _ = await self._embed_many(texts)
        return vectors

    async def embed_chunks(self, chunks: List[DocumentChunk], context: EmbeddingContext) -> List[DocumentChunk]:
        """Attach content vectors (and multi-vector bundles when enabled) to the chunks."""
        if not chunks:
            return chunks

        if self.config.generate_questions and self.supports_multi_vector:
            try:
                return await self._embed_native_multi_vector(chunks, context)
            except Exception as e:
                logger.warning(f"Multi-vector embedding failed, composing vectors instead: {e}")

        vectors, source = await self._embed_many([chunk.content for chunk in chunks])
        for chunk, vector in zip(chunks, vectors):
            chunk.embedding = vector
            chunk.metadata.embedding_source = source

        if self.config.generate_questions:
            await self._compose_multi_vector(chunks, context)
        return chunks

    # ============= Internals =============

    async def _embed_many(self, texts: List[str]) -> Tuple[List[List[float]], str]:
        if not texts:
            return [], SOURCE_ADAPTER if self.adapter else SOURCE_MOCK
        if self.adapter is None:
            self._mark_mock("No embedding adapter configured, using mock embeddings")
            return self._mock_many(texts), SOURCE_MOCK

        semaphore = asyncio.Semaphore(self.max_concurrency)
        batches = [texts[i:i + self.batch_size] for i in range(0, len(texts), self.batch_size)]

        async def run(batch: List[str]) -> List[List[float]]:
            async with semaphore:
                return await self.adapter.embed_batch(batch, self.config)

        try:
            results = await asyncio.gather(*(run(batch) for batch in batches))
        except Exception as e:
            self._mark_mock(f"Embedding adapter failed, using mock embeddings: {e}")
            return self._mock_many(texts), SOURCE_MOCK

        vectors = [vector for batch in results for vector in batch]
        if len(vectors) != len(texts):
            self._mark_mock(
                f"Embedding adapter returned {len(vectors)} vectors for {len(texts)} texts, using mock embeddings"
            )
            return self._mock_many(texts), SOURCE_MOCK
        return vectors, SOURCE_ADAPTER

    def _mock_many(self, texts: List[str]) -> List[List[float]]:
        return [mock_embed(text, self.config.embedding_dimensions) for text in texts]

    def _mark_mock(self, message: str) -> None:
        if not self.used_mock:
            logger.warning(message)
        self.used_mock = True

    async def _questions(self, text: str) -> List[str]:
        if self.llm is not None:
            try:
                return await self.llm.generate_questions(text, QUESTIONS_PER_CHUNK)
            except Exception as e:
                logger.warning(f"Question generation failed, using templates: {e}")
        return heuristic_questions(text, QUESTIONS_PER_CHUNK)

    async def _compose_multi_vector(self, chunks: List[DocumentChunk], context: EmbeddingContext) -> None:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def questions_for(chunk: DocumentChunk) -> List[str]:
            async with semaphore:
                return await self._questions(chunk.content)

        questions = await asyncio.gather(*(questions_for(chunk) for chunk in chunks))

        contextual_texts = [
            compose_contextual_text(chunk.content, replace(context, heading_context=chunk.metadata.heading_context))
            for chunk in chunks
        ]
        queryable_texts = ["\n".join(q) for q in questions if q]
        vectors, source = await self._embed_many(contextual_texts + queryable_texts)
        contextual = vectors[:len(chunks)]
        queryable = iter(vectors[len(chunks):])

        for chunk, chunk_questions, contextual_vector in zip(chunks, questions, contextual):
            chunk.embeddings = ChunkEmbeddings(
                content=chunk.embedding,
                contextual=contextual_vector,
                queryable=next(queryable) if chunk_questions else chunk.embedding,
            )
            if source == SOURCE_MOCK:
                chunk.metadata.embedding_source = SOURCE_MOCK

    async def _embed_native_multi_vector(self, chunks: List[DocumentChunk], context: EmbeddingContext) -> List[DocumentChunk]:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(chunk: DocumentChunk) -> ChunkEmbeddings:
            chunk_context = replace(context, heading_context=chunk.metadata.heading_context)
            async with semaphore:
                return await self.adapter.embed_multi_vector(chunk.content, chunk_context, self.config)

        bundles = await asyncio.gather(*(run(chunk) for chunk in chunks))
        for chunk, bundle in zip(chunks, bundles):
            chunk.embeddings = bundle
            chunk.embedding = bundle.content
            chunk.metadata.embedding_source = SOURCE_ADAPTER
        return chunks
