# infrastructure/embedding_services.py
"""Sentence-transformers embedding backend with L2 normalization"""
import asyncio
import logging
from typing import Dict, List

import numpy as np
from sentence_transformers import SentenceTransformer

from config import settings
from core.domain import IndexingConfig
from core.interfaces import IEmbeddingAdapter

logger = logging.getLogger(settings.LOGGER_NAME)


def fit_dimensions(arr: np.ndarray, dimensions: int) -> np.ndarray:
    """Zero-pad or truncate (N, D) vectors to (N, dimensions)."""
    current = arr.shape[1]
    if current == dimensions:
        return arr
    if current > dimensions:
        return arr[:, :dimensions]
    return np.pad(arr, ((0, 0), (0, dimensions - current)))


class SentenceTransformerEmbedding(IEmbeddingAdapter):
    """
    Local sentence transformer producing unit vectors.

    With unit vectors cosine similarity equals the dot product, so stored
    and query vectors compare consistently. Vectors are fitted to
    config.embedding_dimensions; the model's native size is usually smaller
    (768 for mpnet), and zero padding leaves cosine similarity unchanged.
    """

    _models: Dict[str, SentenceTransformer] = {}  # Loaded once per model name

    def __init__(self, model_name: str = "paraphrase-multilingual-mpnet-base-v2"):
        """Initializes the service, loading the heavy model only once."""
        self.model_name = model_name
        if model_name not in SentenceTransformerEmbedding._models:
            try:
                logger.info(f"Attempting to load model {model_name} from local cache...")
                model = SentenceTransformer(model_name, local_files_only=True)
                logger.info(f"Successfully loaded {model_name} from local cache.")
            except Exception as e:
                logger.warning(
                    f"Model {model_name} not found in cache. Attempting online download. "
                    f"This may take a few minutes. Error: {e}"
                )
                model = SentenceTransformer(model_name)
                logger.info(f"Successfully downloaded and loaded {model_name}.")
            SentenceTransformerEmbedding._models[model_name] = model

        self.model = SentenceTransformerEmbedding._models[model_name]

    def _l2_normalize(self, arr: np.ndarray) -> np.ndarray:
        norms = np.linalg.norm(arr, axis=1, keepdims=True)
        norms[norms == 0] = 1e-12  # Avoid division by zero
        return arr / norms

    async def embed_batch(self, texts: List[str], config: IndexingConfig) -> List[List[float]]:
        if not texts:
            return []
        raw = await asyncio.to_thread(self.model.encode, texts, convert_to_tensor=False)
        normalized = self._l2_normalize(np.array(raw, dtype="float32").reshape(len(texts), -1))
        return fit_dimensions(normalized, config.embedding_dimensions).tolist()

    async def embed(self, text: str, config: IndexingConfig) -> List[float]:
        return (await self.embed_batch([text], config))[0]
