"""
Error Types for the Ingestion Core

Typed exceptions raised by the chunking, embedding, indexing and checkpoint
layers. Errors raised by external-service adapters carry a ``transient`` flag
(used by the resilience pipeline to decide whether to retry) and a
``classification`` string that ends up in a failed checkpoint's reason.
"""

from typing import Optional


class CodeRagError(Exception):
    """Base class for all ingestion errors."""

    classification = "unexpected"
    transient = False

    def __init__(self, message: str, *, transient: Optional[bool] = None):
        super().__init__(message)
        if transient is not None:
            self.transient = transient


class ConfigurationError(CodeRagError):
    classification = "configuration"


# ===== Embedding errors =====

class EmbeddingError(CodeRagError):
    classification = "embedding_unexpected"


class EmbeddingConnectionError(EmbeddingError):
    classification = "embedding_connection"
    transient = True


class EmbeddingTimeoutError(EmbeddingError):
    classification = "embedding_timeout"
    transient = True


class EmbeddingRateLimitedError(EmbeddingError):
    classification = "embedding_rate_limited"
    transient = True


class EmbeddingServerError(EmbeddingError):
    """Inference service answered with a 5xx status."""
    classification = "embedding_server_error"
    transient = True


class EmbeddingUnexpectedError(EmbeddingError):
    classification = "embedding_unexpected"


class CircuitOpenError(CodeRagError):
    """Raised without calling the dependency while its circuit is open."""
    classification = "circuit_open"

    def __init__(self, name: str, retry_after_seconds: float):
        super().__init__(
            f"Circuit '{name}' is open; retry in {retry_after_seconds:.1f}s"
        )
        self.name = name
        self.retry_after_seconds = retry_after_seconds


# ===== LLM errors =====

class LLMError(CodeRagError):
    classification = "llm_unexpected"


class LLMConnectionError(LLMError):
    classification = "llm_connection"
    transient = True


class LLMTimeoutError(LLMError):
    classification = "llm_timeout"
    transient = True


class LLMModelUnavailableError(LLMError):
    """The model cannot be loaded on the inference host (not retried)."""
    classification = "llm_model_unavailable"


# ===== Vector store errors =====

class VectorStoreError(CodeRagError):
    classification = "vector_store"
    transient = True


# ===== Capacity errors =====

class CapacityError(CodeRagError):
    classification = "capacity"


class QuotaExceededError(CapacityError):
    classification = "quota_exceeded"


class InsufficientDiskSpaceError(CapacityError):
    classification = "insufficient_disk"


class MemoryPressureError(CapacityError):
    classification = "memory_pressure"


# ===== Checkpoint errors =====

class CheckpointStateError(CodeRagError):
    """Invalid phase transition, duplicate active job or dead-lettered job."""
    classification = "checkpoint_state"


class CheckpointCorruptionError(CodeRagError):
    classification = "checkpoint_corruption"


def classify_exception(exc: BaseException) -> str:
    """Return the classification string recorded for a failed job."""
    if isinstance(exc, CodeRagError):
        return exc.classification
    return type(exc).__name__
