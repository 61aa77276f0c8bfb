"""
In-Memory Vector Client

Process-local vector index with cosine scoring (numpy). Same interface and
skip rules as the Qdrant client; used for development runs and tests.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import numpy as np

from ..core.embedding_service import is_valid_vector
from ..core.vector_backend import SearchResult, VectorPoint, to_point_id

logger = logging.getLogger(__name__)


class InMemoryVectorClient:
    """Dict-backed vector index keyed by deterministic point id."""

    def __init__(self, collection_name: str = "coderag_vectors", dimension: int = 768):
        self.collection_name = collection_name
        self.dimension = dimension
        self._points: Dict[str, VectorPoint] = {}
        self._lock = asyncio.Lock()
        self._collection_ready = False

    async def ensure_collection(self, dimension: Optional[int] = None) -> None:
        if self._collection_ready:
            return
        if dimension is not None:
            self.dimension = dimension
        self._collection_ready = True
        logger.info(f"📦 In-memory collection '{self.collection_name}' ready ({self.dimension}D)")

    def _accept(self, point: VectorPoint) -> bool:
        vector = point.vector
        if not vector or len(vector) != self.dimension or not is_valid_vector(vector):
            logger.warning(f"⚠️ Skipping point {point.id}: invalid or mismatched vector")
            return False
        return True

    async def upsert(self, point_id: str, vector: List[float], metadata: Dict[str, Any]) -> bool:
        written = await self.upsert_batch([VectorPoint(id=point_id, vector=vector, payload=metadata)])
        return bool(written)

    async def upsert_batch(self, points: List[VectorPoint]) -> List[str]:
        await self.ensure_collection()
        written = []
        async with self._lock:
            for point in points:
                if not self._accept(point):
                    continue
                key = to_point_id(point.id)
                self._points[key] = VectorPoint(id=key, vector=list(point.vector), payload=dict(point.payload))
                written.append(point.id)
        return written

    def _matching(self, project_id: Optional[str], file_path: Optional[str] = None) -> List[VectorPoint]:
        return [
            p for p in self._points.values()
            if (project_id is None or p.payload.get('project_id') == project_id)
            and (file_path is None or p.payload.get('file_path') == file_path)
        ]

    async def query(
        self,
        vector: List[float],
        top_k: int = 10,
        project_filter: Optional[str] = None
    ) -> List[SearchResult]:
        await self.ensure_collection()
        async with self._lock:
            candidates = self._matching(project_filter)
        if not candidates:
            return []

        query = np.asarray(vector, dtype=np.float64)
        matrix = np.asarray([p.vector for p in candidates], dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        norms[norms == 0] = 1.0
        scores = matrix @ query / norms

        order = np.argsort(-scores, kind='stable')[:top_k]
        return [
            SearchResult(id=candidates[i].id, score=float(scores[i]), payload=dict(candidates[i].payload))
            for i in order
        ]

    async def delete_by_project(self, project_id: str) -> None:
        async with self._lock:
            for point in self._matching(project_id):
                del self._points[point.id]

    async def delete_by_file(self, project_id: str, file_path: str) -> None:
        async with self._lock:
            for point in self._matching(project_id, file_path):
                del self._points[point.id]

    async def delete(self, point_ids: List[str]) -> None:
        async with self._lock:
            for point_id in point_ids:
                self._points.pop(to_point_id(point_id), None)

    async def count(self, project_filter: Optional[str] = None) -> int:
        async with self._lock:
            return len(self._matching(project_filter))

    def get(self, point_id: str) -> Optional[VectorPoint]:
        return self._points.get(to_point_id(point_id))

    async def aclose(self) -> None:
        return None
