"""Tests for vector math and the embedding generator."""
from typing import List

import numpy as np
import pytest

from conftest import make_chunk
from core.domain import ChunkEmbeddings, EmbeddingContext, IndexingConfig
from core.interfaces import IEmbeddingAdapter, IMultiVectorEmbeddingAdapter
from infrastructure.embedding_services import fit_dimensions
from services.embedding import (
    SOURCE_ADAPTER, SOURCE_MOCK, EmbeddingGenerator, compose_contextual_text,
    cosine_similarity, find_similar_chunks, mock_embed
)


class FixedEmbedding(IEmbeddingAdapter):
    """Returns [len(text), 1, 0] for every text and records batch sizes."""

    def __init__(self):
        self.batches: List[int] = []

    async def embed(self, text, config):
        return (await self.embed_batch([text], config))[0]

    async def embed_batch(self, texts, config):
        self.batches.append(len(texts))
        return [[float(len(t)), 1.0, 0.0] for t in texts]


class BrokenEmbedding(IEmbeddingAdapter):

    async def embed(self, text, config):
        raise RuntimeError("backend down")

    async def embed_batch(self, texts, config):
        raise RuntimeError("backend down")


class ShortEmbedding(FixedEmbedding):
    """Drops the last vector of every batch."""

    async def embed_batch(self, texts, config):
        return (await super().embed_batch(texts, config))[:-1]


class NativeMultiVector(FixedEmbedding, IMultiVectorEmbeddingAdapter):

    def __init__(self):
        super().__init__()
        self.contexts: List[EmbeddingContext] = []

    async def embed_multi_vector(self, content, context, config):
        self.contexts.append(context)
        return ChunkEmbeddings(content=[1.0, 0.0, 0.0], contextual=[0.0, 1.0, 0.0], queryable=[0.0, 0.0, 1.0])


def chunks_for(*texts):
    return [make_chunk("doc", i, text, embedding=None) for i, text in enumerate(texts)]


# ---------------------------------------------------------------------------
# Vector math
# ---------------------------------------------------------------------------

class TestCosineSimilarity:

    def test_identical_and_orthogonal(self):
        assert cosine_similarity([1, 2, 3], [1, 2, 3]) == pytest.approx(1.0)
        assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
        assert cosine_similarity([1, 0], [-1, 0]) == pytest.approx(-1.0)

    def test_zero_magnitude_is_zero(self):
        assert cosine_similarity([0, 0, 0], [1, 2, 3]) == 0.0

    def test_length_mismatch_raises(self):
        with pytest.raises(ValueError):
            cosine_similarity([1, 2], [1, 2, 3])


class TestFindSimilarChunks:

    def test_filters_sorts_and_limits(self):
        chunks = [
            make_chunk("d", 0, "a", [1.0, 0.0]),
            make_chunk("d", 1, "b", [0.0, 1.0]),
            make_chunk("d", 2, "c", [1.0, 1.0]),
            make_chunk("d", 3, "e", None),
        ]
        results = find_similar_chunks([1.0, 0.0], chunks, limit=5, threshold=0.5)
        assert [c.content for c, _ in results] == ["a", "c"]
        assert results[0][1] >= results[1][1]

        assert len(find_similar_chunks([1.0, 0.0], chunks, limit=1, threshold=0.0)) == 1


class TestMockEmbedding:

    def test_deterministic_unit_vector(self):
        first = mock_embed("hello world", 64)
        assert first == mock_embed("hello world", 64)
        assert len(first) == 64
        assert np.linalg.norm(first) == pytest.approx(1.0)

    def test_empty_text_is_zero_vector(self):
        assert mock_embed("", 8) == [0.0] * 8


class TestFitDimensions:

    def test_pads_and_truncates(self):
        arr = np.ones((2, 3))
        assert fit_dimensions(arr, 5).shape == (2, 5)
        assert fit_dimensions(arr, 5)[0, 4] == 0
        assert fit_dimensions(arr, 2).shape == (2, 2)
        assert fit_dimensions(arr, 3) is arr


def test_contextual_text_includes_context():
    text = compose_contextual_text("body", EmbeddingContext(title="Guide", summary="Short", heading_context=["A", "B"]))
    assert text == "Document: Guide\nSummary: Short\nSection: A > B\n\nContent:\nbody"
    assert compose_contextual_text("body", EmbeddingContext()) == "body"


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------

class TestEmbeddingGenerator:

    async def test_without_adapter_uses_mock(self, config):
        generator = EmbeddingGenerator(None, config)
        chunks = await generator.embed_chunks(chunks_for("one", "two"), EmbeddingContext())
        assert generator.used_mock
        assert all(len(c.embedding) == config.embedding_dimensions for c in chunks)
        assert all(c.metadata.embedding_source == SOURCE_MOCK for c in chunks)

    async def test_adapter_batches(self):
        adapter = FixedEmbedding()
        config = IndexingConfig(generate_questions=False)
        generator = EmbeddingGenerator(adapter, config, batch_size=2)
        chunks = await generator.embed_chunks(chunks_for("a", "bb", "ccc"), EmbeddingContext())
        assert adapter.batches == [2, 1]
        assert [c.embedding[0] for c in chunks] == [1.0, 2.0, 3.0]
        assert all(c.metadata.embedding_source == SOURCE_ADAPTER for c in chunks)
        assert not generator.used_mock
        assert chunks[0].embeddings is None

    async def test_failing_adapter_falls_back_to_mock(self):
        config = IndexingConfig(embedding_dimensions=16, generate_questions=False)
        generator = EmbeddingGenerator(BrokenEmbedding(), config)
        chunks = await generator.embed_chunks(chunks_for("text"), EmbeddingContext())
        assert generator.used_mock
        assert chunks[0].embedding == mock_embed("text", 16)

    async def test_wrong_vector_count_falls_back_to_mock(self):
        config = IndexingConfig(embedding_dimensions=8, generate_questions=False)
        generator = EmbeddingGenerator(ShortEmbedding(), config)
        vectors = await generator.embed_batch(["a", "b"])
        assert generator.used_mock
        assert vectors == [mock_embed("a", 8), mock_embed("b", 8)]

    async def test_composed_multi_vector(self):
        generator = EmbeddingGenerator(FixedEmbedding(), IndexingConfig())
        chunks = await generator.embed_chunks(chunks_for("How does caching work?"), EmbeddingContext(title="Guide"))
        bundle = chunks[0].embeddings
        assert bundle.content == chunks[0].embedding
        assert bundle.contextual != bundle.content
        assert bundle.queryable is not None

    async def test_native_multi_vector(self):
        adapter = NativeMultiVector()
        generator = EmbeddingGenerator(adapter, IndexingConfig())
        chunks = chunks_for("x")
        chunks[0].metadata.heading_context = ["Intro"]
        await generator.embed_chunks(chunks, EmbeddingContext(title="Guide"))
        assert chunks[0].embedding == [1.0, 0.0, 0.0]
        assert chunks[0].embeddings.queryable == [0.0, 0.0, 1.0]
        assert adapter.contexts[0].heading_context == ["Intro"]
        assert adapter.contexts[0].title == "Guide"
        assert adapter.batches == []

    async def test_empty_chunk_list(self, config):
        generator = EmbeddingGenerator(FixedEmbedding(), config)
        assert await generator.embed_chunks([], EmbeddingContext()) == []
