"""
Embedding Service

Turns chunk text into L2-normalized vectors of the configured dimension.
Batches are split into sub-batches that run concurrently within the
embedding slot pool and token budget, each request wrapped in the resilience
pipeline.
"""

import asyncio
import logging
import math
from typing import List, Optional

import numpy as np

from ..services.embedding_providers import EmbeddingProvider
from .concurrency import ConcurrencyLimiter
from .config import EmbeddingProcessingOptions
from .errors import EmbeddingUnexpectedError
from .resilience import ResiliencePipeline
from .tokenizer import estimate_request_tokens

logger = logging.getLogger(__name__)

NORM_EPSILON = 1e-12


def l2_normalize(vector: List[float]) -> List[float]:
    """Scale to unit length; vectors with norm below 1e-12 are returned unchanged."""
    array = np.asarray(vector, dtype=np.float64)
    norm = float(np.linalg.norm(array))
    if norm < NORM_EPSILON:
        return list(vector)
    return (array / norm).tolist()


def fit_dimension(vector: List[float], dimension: int) -> List[float]:
    """Zero-pad or truncate to dimension."""
    if len(vector) == dimension:
        return vector
    if len(vector) < dimension:
        return list(vector) + [0.0] * (dimension - len(vector))
    return list(vector[:dimension])


def is_valid_vector(vector) -> bool:
    """True for a non-empty sequence of finite numbers."""
    if not vector:
        return False
    return all(isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v) for v in vector)


class EmbeddingService:
    """
    Resilient, rate-limited embedding generation.

    Responsibilities:
    - Split batches into provider-sized sub-batches
    - Gate each sub-batch on the token budget and the embedding slot pool
    - Retry transient failures and trip the circuit breaker (ResiliencePipeline)
    - Correct dimension mismatches and L2-normalize results
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        limiter: ConcurrencyLimiter,
        options: Optional[EmbeddingProcessingOptions] = None,
        resilience: Optional[ResiliencePipeline] = None
    ):
        self.provider = provider
        self.limiter = limiter
        self.options = options or EmbeddingProcessingOptions()
        self.dimension = self.options.dimension
        self.resilience = resilience or ResiliencePipeline.from_options('embedding', self.options)

    @property
    def model_name(self) -> str:
        return self.provider.model_name

    async def embed(self, text: str) -> Optional[List[float]]:
        """Embed a single text."""
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: List[str]) -> List[Optional[List[float]]]:
        """
        Embed texts, preserving order.

        Returns:
            One vector per text; None where the service returned an invalid vector

        Raises:
            EmbeddingError: When a sub-batch fails after retries (remaining sub-batches are cancelled)
            CircuitOpenError: When the circuit is open
        """
        if not texts:
            return []

        size = self.options.batch_size
        sub_batches = [texts[i:i + size] for i in range(0, len(texts), size)]
        tasks = [asyncio.ensure_future(self._embed_sub_batch(batch)) for batch in sub_batches]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        vectors: List[Optional[List[float]]] = []
        for batch_vectors in results:
            vectors.extend(batch_vectors)
        return vectors

    async def _embed_sub_batch(self, texts: List[str]) -> List[Optional[List[float]]]:
        # Whitespace-only inputs get a zero vector without a service call
        indexes = [i for i, text in enumerate(texts) if text.strip()]
        results: List[Optional[List[float]]] = [[0.0] * self.dimension for _ in texts]
        if len(indexes) < len(texts):
            logger.warning(f"⚠️ {len(texts) - len(indexes)} empty texts embedded as zero vectors")
        if not indexes:
            return results

        request = [texts[i] for i in indexes]
        tokens = sum(estimate_request_tokens(text) for text in request)
        await self.limiter.wait_for_embedding_budget(tokens)

        async with self.limiter.embedding_slot():
            raw = await self.resilience.execute(lambda: self.provider.embed_batch(request))

        if len(raw) != len(request):
            raise EmbeddingUnexpectedError(
                f"Embedding service returned {len(raw)} vectors for {len(request)} texts"
            )

        for i, vector in zip(indexes, raw):
            results[i] = self._postprocess(vector)
        return results

    def _postprocess(self, vector) -> Optional[List[float]]:
        if not is_valid_vector(vector):
            logger.error("❌ Embedding contains None, NaN or infinite values, skipping")
            return None

        if len(vector) != self.dimension:
            logger.warning(
                f"⚠️ Embedding dimension mismatch: expected {self.dimension}, got {len(vector)}; "
                f"{'padding' if len(vector) < self.dimension else 'truncating'}"
            )
            vector = fit_dimension(vector, self.dimension)

        return l2_normalize(vector)
