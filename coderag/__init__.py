"""
Code Ingestion for Retrieval

Resumable ingestion of source repositories into a vector index: semantic
chunking, rate-limited embedding, idempotent indexing and checkpointed
progress under memory, disk and quota limits.
"""

from .core import IngestionPipeline, IngestionConfig, load_config
from .core.logging_setup import configure_logging

__all__ = [
    'IngestionPipeline',
    'IngestionConfig',
    'load_config',
    'configure_logging',
]
