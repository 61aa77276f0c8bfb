"""
Ingestion Services

Adapters for the external inference and vector index services.
"""

from .content_filter import ContentFilter
from .embedding_providers import (
    EmbeddingProvider,
    HashEmbeddingProvider,
    OllamaEmbeddingProvider,
    OpenAIEmbeddingProvider,
    create_embedding_provider,
)
from .llm_provider import (
    LLMRequest,
    LLMResponse,
    OllamaLLMProvider,
    OpenAILLMProvider,
    ReasoningService,
    create_llm_provider,
)
from .memory_vector_client import InMemoryVectorClient
from .vector_client import QdrantVectorClient

__all__ = [
    'ContentFilter',
    'EmbeddingProvider',
    'HashEmbeddingProvider',
    'OllamaEmbeddingProvider',
    'OpenAIEmbeddingProvider',
    'create_embedding_provider',
    'LLMRequest',
    'LLMResponse',
    'OllamaLLMProvider',
    'OpenAILLMProvider',
    'ReasoningService',
    'create_llm_provider',
    'InMemoryVectorClient',
    'QdrantVectorClient',
]
