"""
Qdrant Vector Database Client

Manages the chunk collection in Qdrant: lazy collection creation with a
project_id keyword index, batched idempotent upserts, filtered search, and
deletion by project, file or id. Every call goes through the resilience
pipeline; failures surface as VectorStoreError.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from qdrant_client import AsyncQdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    FilterSelector,
    MatchValue,
    PayloadSchemaType,
    PointIdsList,
    PointStruct,
    VectorParams,
)

from ..core.config import VectorDbOptions
from ..core.embedding_service import is_valid_vector
from ..core.errors import VectorStoreError
from ..core.resilience import ResiliencePipeline
from ..core.vector_backend import SearchResult, VectorPoint, to_point_id

logger = logging.getLogger(__name__)

T = TypeVar('T')


def build_project_filter(project_id: str, file_path: Optional[str] = None) -> Filter:
    must = [FieldCondition(key="project_id", match=MatchValue(value=project_id))]
    if file_path is not None:
        must.append(FieldCondition(key="file_path", match=MatchValue(value=file_path)))
    return Filter(must=must)


class QdrantVectorClient:
    """
    Async Qdrant client for one chunk collection.

    Responsibilities:
    - Create the collection (cosine distance) and project_id index on first use
    - Upsert points in batches of at most upsert_batch_size, skipping bad vectors
    - Search, count and delete scoped to a project
    """

    def __init__(
        self,
        options: VectorDbOptions,
        dimension: int,
        client: Optional[AsyncQdrantClient] = None,
        resilience: Optional[ResiliencePipeline] = None
    ):
        self.options = options
        self.collection_name = options.collection_name
        self.dimension = dimension
        self.batch_size = min(options.upsert_batch_size, 100)
        self.resilience = resilience or ResiliencePipeline('vector_index')

        if client is None:
            logger.info(f"🔗 Connecting to Qdrant at {options.url[:50]}...")
            client = AsyncQdrantClient(
                url=options.url,
                api_key=options.api_key,
                timeout=int(options.timeout_seconds)
            )
        self.client = client
        self._collection_lock = asyncio.Lock()
        self._collection_ready = False

    async def _call(self, description: str, operation: Callable[[], Awaitable[T]]) -> T:
        async def attempt() -> T:
            try:
                return await operation()
            except VectorStoreError:
                raise
            except Exception as e:
                raise VectorStoreError(f"Qdrant {description} failed: {e}") from e

        return await self.resilience.execute(attempt)

    async def ensure_collection(self, dimension: Optional[int] = None) -> None:
        """
        Create the collection if it does not exist. Safe to call repeatedly.

        Raises:
            VectorStoreError: If Qdrant cannot be reached or rejects the request
        """
        if self._collection_ready:
            return

        async with self._collection_lock:
            if self._collection_ready:
                return
            if dimension is not None:
                self.dimension = dimension

            response = await self._call("get_collections", self.client.get_collections)
            exists = any(c.name == self.collection_name for c in response.collections)

            if not exists:
                logger.info(f"📦 Creating collection: {self.collection_name}")
                await self._call("create_collection", lambda: self.client.create_collection(
                    collection_name=self.collection_name,
                    vectors_config=VectorParams(size=self.dimension, distance=Distance.COSINE)
                ))
                await self._call("create_payload_index", lambda: self.client.create_payload_index(
                    collection_name=self.collection_name,
                    field_name="project_id",
                    field_schema=PayloadSchemaType.KEYWORD
                ))
                logger.info(f"✅ Collection '{self.collection_name}' created with {self.dimension}D vectors")
            else:
                logger.debug(f"Collection '{self.collection_name}' already exists")

            self._collection_ready = True

    def _accept(self, point_id: str, vector) -> bool:
        if not vector:
            logger.warning(f"⚠️ Skipping point {point_id}: empty vector")
            return False
        if len(vector) != self.dimension:
            logger.warning(
                f"⚠️ Skipping point {point_id}: dimension mismatch "
                f"(expected {self.dimension}, got {len(vector)})"
            )
            return False
        if not is_valid_vector(vector):
            logger.warning(f"⚠️ Skipping point {point_id}: vector contains non-finite values")
            return False
        return True

    async def upsert(self, point_id: str, vector: List[float], metadata: Dict[str, Any]) -> bool:
        written = await self.upsert_batch([VectorPoint(id=point_id, vector=vector, payload=metadata)])
        return bool(written)

    async def upsert_batch(self, points: List[VectorPoint]) -> List[str]:
        """
        Upsert points in request batches of at most 100.

        Args:
            points: Points keyed by chunk hash

        Returns:
            Ids of the points written, in input order

        Raises:
            VectorStoreError: If a request batch fails after retries
        """
        await self.ensure_collection()

        accepted = [p for p in points if self._accept(p.id, p.vector)]
        if len(accepted) < len(points):
            logger.warning(f"⚠️ Skipped {len(points) - len(accepted)} invalid vectors")

        for start in range(0, len(accepted), self.batch_size):
            batch = accepted[start:start + self.batch_size]
            structs = [
                PointStruct(id=to_point_id(p.id), vector=list(p.vector), payload=p.payload)
                for p in batch
            ]
            await self._call("upsert", lambda: self.client.upsert(
                collection_name=self.collection_name,
                points=structs,
                wait=True
            ))
            logger.debug(f"Upserted {len(structs)} points to '{self.collection_name}'")

        return [p.id for p in accepted]

    async def query(
        self,
        vector: List[float],
        top_k: int = 10,
        project_filter: Optional[str] = None
    ) -> List[SearchResult]:
        await self.ensure_collection()
        query_filter = build_project_filter(project_filter) if project_filter else None
        response = await self._call("query_points", lambda: self.client.query_points(
            collection_name=self.collection_name,
            query=vector,
            limit=top_k,
            query_filter=query_filter,
            with_payload=True
        ))
        results = [
            SearchResult(id=str(point.id), score=point.score, payload=dict(point.payload or {}))
            for point in response.points
        ]
        results.sort(key=lambda r: r.score, reverse=True)
        return results

    async def delete_by_project(self, project_id: str) -> None:
        await self.ensure_collection()
        await self._call("delete", lambda: self.client.delete(
            collection_name=self.collection_name,
            points_selector=FilterSelector(filter=build_project_filter(project_id)),
            wait=True
        ))
        logger.info(f"🗑️ Deleted vectors for project {project_id}")

    async def delete_by_file(self, project_id: str, file_path: str) -> None:
        await self.ensure_collection()
        await self._call("delete", lambda: self.client.delete(
            collection_name=self.collection_name,
            points_selector=FilterSelector(filter=build_project_filter(project_id, file_path)),
            wait=True
        ))

    async def delete(self, point_ids: List[str]) -> None:
        if not point_ids:
            return
        await self.ensure_collection()
        ids = [to_point_id(point_id) for point_id in point_ids]
        await self._call("delete", lambda: self.client.delete(
            collection_name=self.collection_name,
            points_selector=PointIdsList(points=ids),
            wait=True
        ))

    async def count(self, project_filter: Optional[str] = None) -> int:
        await self.ensure_collection()
        count_filter = build_project_filter(project_filter) if project_filter else None
        response = await self._call("count", lambda: self.client.count(
            collection_name=self.collection_name,
            count_filter=count_filter,
            exact=True
        ))
        return response.count

    async def aclose(self) -> None:
        await self.client.close()
