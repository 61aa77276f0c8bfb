"""
Embedding Providers

Adapters for the inference services that turn text into vectors. Each adapter
performs one request per call and translates transport failures into the
typed embedding errors; retry, batching and normalization live in
core/embedding_service.py.
"""

import hashlib
import logging
import os
from typing import List, Optional, Protocol

import httpx
import numpy as np
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)

from ..core.config import EmbeddingProcessingOptions
from ..core.errors import (
    ConfigurationError,
    EmbeddingConnectionError,
    EmbeddingRateLimitedError,
    EmbeddingServerError,
    EmbeddingTimeoutError,
    EmbeddingUnexpectedError,
)

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"


class EmbeddingProvider(Protocol):
    """One-request embedding backend."""

    provider_name: str
    model_name: str
    dimension: int

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Return one raw vector per text, in order."""
        ...

    async def aclose(self) -> None:
        ...


def infer_dimension(model: str, default: int = 768) -> int:
    """Known output sizes for common embedding model families."""
    name = model.lower()
    if 'bge-large' in name or 'mxbai-embed-large' in name:
        return 1024
    if 'bge-small' in name or 'all-minilm' in name:
        return 384
    if 'text-embedding-3-large' in name:
        return 3072
    if 'text-embedding-3-small' in name or 'text-embedding-ada-002' in name:
        return 1536
    return default


class OllamaEmbeddingProvider:
    """
    Ollama /api/embed adapter.

    Request: {"model": ..., "input": [...]}; response: {"embeddings": [[...], ...]}.
    """

    provider_name = "ollama"

    def __init__(
        self,
        base_url: str,
        model: str,
        dimension: Optional[int] = None,
        timeout_seconds: float = 60.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.model_name = model
        self.dimension = dimension or infer_dimension(model)
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        logger.info(f"🔗 Ollama embedding provider: {self.base_url} ({model}, {self.dimension}D)")

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        url = f"{self.base_url}/api/embed"
        try:
            response = await self._client.post(url, json={'model': self.model_name, 'input': texts})
        except httpx.TimeoutException as e:
            raise EmbeddingTimeoutError(f"Embedding request to {url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise EmbeddingConnectionError(f"Cannot reach embedding service at {url}: {e}") from e

        _raise_for_status(response.status_code, response.text)

        try:
            embeddings = response.json()['embeddings']
        except (ValueError, KeyError, TypeError) as e:
            raise EmbeddingUnexpectedError(f"Malformed embedding response: {e}") from e

        if not isinstance(embeddings, list):
            raise EmbeddingUnexpectedError("Malformed embedding response: 'embeddings' is not a list")
        return embeddings

    async def aclose(self) -> None:
        await self._client.aclose()


def _raise_for_status(status_code: int, body: str) -> None:
    if status_code < 400:
        return
    snippet = body[:200]
    if status_code == 429:
        raise EmbeddingRateLimitedError(f"Embedding service rate limited the request: {snippet}")
    if status_code in (408, 504):
        raise EmbeddingTimeoutError(f"Embedding service timed out ({status_code}): {snippet}")
    if status_code >= 500:
        raise EmbeddingServerError(f"Embedding service error {status_code}: {snippet}")
    raise EmbeddingUnexpectedError(f"Embedding request rejected ({status_code}): {snippet}")


class OpenAIEmbeddingProvider:
    """OpenAI-compatible /embeddings adapter using the openai SDK."""

    provider_name = "openai"

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        dimension: Optional[int] = None,
        timeout_seconds: float = 60.0,
        client: Optional[AsyncOpenAI] = None
    ):
        self.model_name = model
        self.dimension = dimension or infer_dimension(model)
        if client is None:
            api_key = api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise ConfigurationError("OPENAI_API_KEY environment variable required for the openai provider")
            # max_retries=0: retries are handled by the resilience pipeline
            client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout_seconds, max_retries=0)
        self._client = client
        logger.info(f"🔗 OpenAI embedding provider: {model} ({self.dimension}D)")

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        try:
            response = await self._client.embeddings.create(
                input=texts,
                model=self.model_name,
                encoding_format="float"
            )
        except APITimeoutError as e:
            raise EmbeddingTimeoutError(f"Embedding request timed out: {e}") from e
        except APIConnectionError as e:
            raise EmbeddingConnectionError(f"Cannot reach embedding service: {e}") from e
        except RateLimitError as e:
            raise EmbeddingRateLimitedError(f"Embedding service rate limited the request: {e}") from e
        except InternalServerError as e:
            raise EmbeddingServerError(f"Embedding service error: {e}") from e
        except APIStatusError as e:
            raise EmbeddingUnexpectedError(f"Embedding request rejected ({e.status_code}): {e}") from e

        ordered = sorted(response.data, key=lambda item: item.index)
        return [item.embedding for item in ordered]

    async def aclose(self) -> None:
        await self._client.close()


class HashEmbeddingProvider:
    """
    Deterministic offline embeddings.

    Vectors are seeded from the SHA-256 of the text, so identical text always
    maps to the identical vector. Used for development runs and tests.
    """

    provider_name = "hash"

    def __init__(self, dimension: int = 384, model: str = "hash-embedding"):
        self.dimension = dimension
        self.model_name = model

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        vectors = []
        for text in texts:
            seed = int.from_bytes(hashlib.sha256(text.encode('utf-8')).digest()[:8], 'big')
            rng = np.random.default_rng(seed)
            vectors.append(rng.standard_normal(self.dimension).tolist())
        return vectors

    async def aclose(self) -> None:
        return None


def create_embedding_provider(options: EmbeddingProcessingOptions) -> EmbeddingProvider:
    """
    Factory for the configured embedding provider.

    Raises:
        ConfigurationError: For an unknown provider name
    """
    provider = options.provider.lower()
    if provider == 'ollama':
        return OllamaEmbeddingProvider(
            base_url=options.base_url or DEFAULT_OLLAMA_URL,
            model=options.model,
            dimension=options.dimension,
            timeout_seconds=options.timeout_seconds,
        )
    if provider == 'openai':
        return OpenAIEmbeddingProvider(
            model=options.model,
            api_key=options.api_key,
            base_url=options.base_url,
            dimension=options.dimension,
            timeout_seconds=options.timeout_seconds,
        )
    if provider == 'hash':
        return HashEmbeddingProvider(dimension=options.dimension)
    raise ConfigurationError(f"Unknown embedding provider: {options.provider}")
