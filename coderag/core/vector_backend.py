"""
Vector Backend Abstraction

Common interface for the similarity-search index (Qdrant or in-memory).
The backend is chosen from VectorDbOptions.backend.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from .config import VectorDbOptions
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


# ============================================================================
# Point Structures (shared between backends)
# ============================================================================

@dataclass
class VectorPoint:
    """
    One point to index.

    id is the chunk hash; backends map it to a deterministic UUID with
    to_point_id() so re-indexing the same chunk overwrites the same point.
    """
    id: str
    vector: Optional[List[float]]
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SearchResult:
    id: str
    score: float
    payload: Dict[str, Any]

    @property
    def file_path(self) -> Optional[str]:
        return self.payload.get('file_path')

    @property
    def start_line(self) -> Optional[int]:
        return self.payload.get('start_line')

    @property
    def end_line(self) -> Optional[int]:
        return self.payload.get('end_line')


def to_point_id(point_id: str) -> str:
    """UUID strings pass through; anything else maps to uuid5(NAMESPACE_URL, id)."""
    try:
        return str(uuid.UUID(point_id))
    except ValueError:
        return str(uuid.uuid5(uuid.NAMESPACE_URL, point_id))


# ============================================================================
# Vector Backend Protocol
# ============================================================================

class VectorBackend(Protocol):
    """
    Async interface shared by the Qdrant and in-memory backends.

    All operations are scoped to one collection, created lazily by
    ensure_collection().
    """

    collection_name: str
    dimension: int

    async def ensure_collection(self, dimension: Optional[int] = None) -> None:
        """Create the collection and its project_id payload index if missing."""
        ...

    async def upsert(self, point_id: str, vector: List[float], metadata: Dict[str, Any]) -> bool:
        """
        Insert or overwrite one point.

        Returns:
            False if the vector was rejected (null, empty, wrong dimension)
        """
        ...

    async def upsert_batch(self, points: List[VectorPoint]) -> List[str]:
        """
        Insert or overwrite points in request batches.

        Returns:
            Ids of the points that were written; rejected vectors are logged and left out
        """
        ...

    async def query(
        self,
        vector: List[float],
        top_k: int = 10,
        project_filter: Optional[str] = None
    ) -> List[SearchResult]:
        """Nearest points by descending score, optionally restricted to one project."""
        ...

    async def delete_by_project(self, project_id: str) -> None:
        ...

    async def delete_by_file(self, project_id: str, file_path: str) -> None:
        ...

    async def delete(self, point_ids: List[str]) -> None:
        ...

    async def count(self, project_filter: Optional[str] = None) -> int:
        ...

    async def aclose(self) -> None:
        ...


# ============================================================================
# Backend Factory
# ============================================================================

def create_vector_backend(options: VectorDbOptions, dimension: int) -> VectorBackend:
    """
    Factory function to create the configured vector backend.

    Args:
        options: Vector database options (backend, url, collection prefix)
        dimension: Embedding dimension of the collection

    Returns:
        Configured vector backend instance

    Raises:
        ConfigurationError: If the backend type is unknown
    """
    backend_type = options.backend.lower()
    logger.info(f"🔧 Creating vector backend: {backend_type}")

    if backend_type == 'qdrant':
        from ..services.vector_client import QdrantVectorClient
        return QdrantVectorClient(options, dimension)

    if backend_type == 'memory':
        from ..services.memory_vector_client import InMemoryVectorClient
        return InMemoryVectorClient(options.collection_name, dimension)

    raise ConfigurationError(
        f"Unknown vector backend type: '{backend_type}'. "
        f"Must be 'qdrant' or 'memory'. "
        f"Set VECTOR_BACKEND environment variable."
    )
