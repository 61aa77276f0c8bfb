"""
Core Ingestion Components

Chunking, embedding, indexing, checkpointing and resource control for the
ingestion system.
"""

from .pipeline import IngestionPipeline
from .config import IngestionConfig, load_config
from .chunker import SemanticChunker
from .concurrency import ConcurrencyLimiter, TokenBudget
from .checkpoint_manager import CheckpointManager
from .embedding_service import EmbeddingService
from .file_processor import FileProcessor
from .memory_monitor import MemoryMonitor
from .models import Chunk, JobCheckpoint, JobPhase, CheckpointStatus, OrganizationQuota
from .quota_manager import QuotaManager
from .resilience import CircuitBreaker, ResiliencePipeline
from .vector_backend import (
    create_vector_backend,
    SearchResult,
    VectorBackend,
    VectorPoint
)

__all__ = [
    'IngestionPipeline',
    'IngestionConfig',
    'load_config',
    'SemanticChunker',
    'ConcurrencyLimiter',
    'TokenBudget',
    'CheckpointManager',
    'EmbeddingService',
    'FileProcessor',
    'MemoryMonitor',
    'Chunk',
    'JobCheckpoint',
    'JobPhase',
    'CheckpointStatus',
    'OrganizationQuota',
    'QuotaManager',
    'CircuitBreaker',
    'ResiliencePipeline',
    'create_vector_backend',
    'SearchResult',
    'VectorBackend',
    'VectorPoint',
]
