"""
Persistence Repositories

Storage interfaces for chunks, job checkpoints and organization quotas, with
in-memory implementations and a JSON-file checkpoint store. Repositories
hand out copies; a change is visible to other readers only after it is
written back with add() or update().
"""

import asyncio
import copy
import json
import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Set

from .errors import CheckpointStateError
from .models import (
    ACTIVE_STATUSES,
    CheckpointStatus,
    Chunk,
    JobCheckpoint,
    OrganizationQuota,
    utcnow,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Chunk Repository
# ============================================================================

class ChunkRepository(Protocol):
    async def add_range(self, chunks: List[Chunk]) -> int:
        """Store chunks, skipping hashes already stored for the project. Returns the number added."""
        ...

    async def get_by_project(self, project_id: str) -> List[Chunk]:
        ...

    async def get_by_file(self, project_id: str, file_path: str) -> List[Chunk]:
        ...

    async def get_existing_hashes(self, project_id: str, hashes: Iterable[str]) -> Set[str]:
        ...

    async def update_embeddings(self, chunks: List[Chunk]) -> None:
        ...

    async def delete_by_project(self, project_id: str) -> int:
        ...

    async def delete_by_file(self, project_id: str, file_path: str) -> int:
        ...


class InMemoryChunkRepository:
    """Chunks keyed by (project_id, chunk_hash), kept in insertion order."""

    def __init__(self):
        self._chunks: Dict[str, Dict[str, Chunk]] = {}
        self._lock = asyncio.Lock()

    async def add_range(self, chunks: List[Chunk]) -> int:
        added = 0
        async with self._lock:
            for chunk in chunks:
                project = self._chunks.setdefault(chunk.project_id, {})
                if chunk.chunk_hash in project:
                    continue
                project[chunk.chunk_hash] = copy.copy(chunk)
                added += 1
        return added

    async def get_by_project(self, project_id: str) -> List[Chunk]:
        async with self._lock:
            return [copy.copy(c) for c in self._chunks.get(project_id, {}).values()]

    async def get_by_file(self, project_id: str, file_path: str) -> List[Chunk]:
        async with self._lock:
            chunks = [c for c in self._chunks.get(project_id, {}).values() if c.file_path == file_path]
        return sorted((copy.copy(c) for c in chunks), key=lambda c: (c.start_line, c.end_line))

    async def get_existing_hashes(self, project_id: str, hashes: Iterable[str]) -> Set[str]:
        async with self._lock:
            stored = self._chunks.get(project_id, {})
            return {h for h in hashes if h in stored}

    async def update_embeddings(self, chunks: List[Chunk]) -> None:
        async with self._lock:
            for chunk in chunks:
                stored = self._chunks.get(chunk.project_id, {}).get(chunk.chunk_hash)
                if stored is not None:
                    stored.embedding = chunk.embedding
                    stored.embedding_model = chunk.embedding_model
                    stored.embedding_generated_at = chunk.embedding_generated_at

    async def delete_by_project(self, project_id: str) -> int:
        async with self._lock:
            return len(self._chunks.pop(project_id, {}))

    async def delete_by_file(self, project_id: str, file_path: str) -> int:
        async with self._lock:
            project = self._chunks.get(project_id, {})
            doomed = [h for h, c in project.items() if c.file_path == file_path]
            for chunk_hash in doomed:
                del project[chunk_hash]
            return len(doomed)

    async def count(self, project_id: str) -> int:
        async with self._lock:
            return len(self._chunks.get(project_id, {}))


# ============================================================================
# Checkpoint Repository
# ============================================================================

class CheckpointRepository(Protocol):
    async def get(self, checkpoint_id: str) -> Optional[JobCheckpoint]:
        ...

    async def get_latest_by_project(self, project_id: str) -> Optional[JobCheckpoint]:
        ...

    async def get_active_by_project(self, project_id: str) -> Optional[JobCheckpoint]:
        """Most recent pending or in-progress checkpoint for the project."""
        ...

    async def get_by_status(self, status: CheckpointStatus) -> List[JobCheckpoint]:
        ...

    async def get_pending_retry(self, max_retries: int) -> List[JobCheckpoint]:
        """Failed checkpoints that are still below the dead-letter threshold."""
        ...

    async def add(self, checkpoint: JobCheckpoint) -> None:
        ...

    async def update(self, checkpoint: JobCheckpoint) -> None:
        ...

    async def delete_by_project(self, project_id: str) -> int:
        ...

    async def prune_terminal(self, older_than: timedelta) -> int:
        ...


def _snapshot(checkpoint: JobCheckpoint) -> JobCheckpoint:
    return JobCheckpoint.from_dict(checkpoint.to_dict())


class InMemoryCheckpointRepository:
    """
    Checkpoints keyed by id.

    Enforces at most one active (pending or in-progress) checkpoint per project.
    """

    def __init__(self):
        self._checkpoints: Dict[str, JobCheckpoint] = {}
        self._lock = asyncio.Lock()

    async def _load(self) -> None:
        return None

    async def _persist(self) -> None:
        return None

    def _by_project(self, project_id: str) -> List[JobCheckpoint]:
        matches = [c for c in self._checkpoints.values() if c.project_id == project_id]
        return sorted(matches, key=lambda c: c.created_at)

    async def get(self, checkpoint_id: str) -> Optional[JobCheckpoint]:
        async with self._lock:
            await self._load()
            stored = self._checkpoints.get(checkpoint_id)
            return _snapshot(stored) if stored else None

    async def get_latest_by_project(self, project_id: str) -> Optional[JobCheckpoint]:
        async with self._lock:
            await self._load()
            matches = self._by_project(project_id)
            return _snapshot(matches[-1]) if matches else None

    async def get_active_by_project(self, project_id: str) -> Optional[JobCheckpoint]:
        async with self._lock:
            await self._load()
            active = [c for c in self._by_project(project_id) if c.status in ACTIVE_STATUSES]
            return _snapshot(active[-1]) if active else None

    async def get_by_status(self, status: CheckpointStatus) -> List[JobCheckpoint]:
        async with self._lock:
            await self._load()
            matches = [c for c in self._checkpoints.values() if c.status == status]
            return [_snapshot(c) for c in sorted(matches, key=lambda c: c.created_at)]

    async def get_pending_retry(self, max_retries: int) -> List[JobCheckpoint]:
        failed = await self.get_by_status(CheckpointStatus.FAILED)
        return [c for c in failed if c.can_retry(max_retries)]

    async def add(self, checkpoint: JobCheckpoint) -> None:
        """
        Store a new checkpoint.

        Raises:
            CheckpointStateError: If the project already has an active checkpoint
        """
        async with self._lock:
            await self._load()
            if checkpoint.id in self._checkpoints:
                raise CheckpointStateError(f"Checkpoint {checkpoint.id} already exists")
            if checkpoint.status in ACTIVE_STATUSES:
                for other in self._by_project(checkpoint.project_id):
                    if other.status in ACTIVE_STATUSES:
                        raise CheckpointStateError(
                            f"Project {checkpoint.project_id} already has active job {other.id}"
                        )
            self._checkpoints[checkpoint.id] = _snapshot(checkpoint)
            await self._persist()

    async def update(self, checkpoint: JobCheckpoint) -> None:
        async with self._lock:
            await self._load()
            if checkpoint.id not in self._checkpoints:
                raise CheckpointStateError(f"Checkpoint {checkpoint.id} not found")
            checkpoint.last_checkpoint_at = utcnow()
            self._checkpoints[checkpoint.id] = _snapshot(checkpoint)
            await self._persist()

    async def delete_by_project(self, project_id: str) -> int:
        async with self._lock:
            await self._load()
            doomed = [c.id for c in self._by_project(project_id)]
            for checkpoint_id in doomed:
                del self._checkpoints[checkpoint_id]
            if doomed:
                await self._persist()
            return len(doomed)

    async def prune_terminal(self, older_than: timedelta) -> int:
        """Delete completed, failed and dead-lettered checkpoints not updated within older_than."""
        cutoff = utcnow() - older_than
        async with self._lock:
            await self._load()
            doomed = [
                c.id for c in self._checkpoints.values()
                if c.is_terminal and (c.updated_at or c.created_at) < cutoff
            ]
            for checkpoint_id in doomed:
                del self._checkpoints[checkpoint_id]
            if doomed:
                await self._persist()
                logger.info(f"🧹 Pruned {len(doomed)} terminal checkpoints")
            return len(doomed)


class JsonFileCheckpointRepository(InMemoryCheckpointRepository):
    """
    Checkpoints persisted to one JSON file.

    The file is loaded on first access and rewritten atomically (temp file +
    os.replace) after every change, off the event loop.
    """

    def __init__(self, checkpoint_file: Path = Path("./ingestion_checkpoint.json")):
        super().__init__()
        self.checkpoint_file = Path(checkpoint_file)
        self._loaded = False
        logger.info(f"📋 Checkpoint store initialized: {self.checkpoint_file}")

    async def _load(self) -> None:
        if self._loaded:
            return
        data = await asyncio.to_thread(self._read_file)
        for item in data.get('checkpoints', []):
            checkpoint = JobCheckpoint.from_dict(item)
            self._checkpoints[checkpoint.id] = checkpoint
        self._loaded = True
        if self._checkpoints:
            logger.info(f"📂 Loaded {len(self._checkpoints)} checkpoints from {self.checkpoint_file}")

    def _read_file(self) -> dict:
        if not self.checkpoint_file.exists():
            return {}
        try:
            with open(self.checkpoint_file, 'r') as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("expected a JSON object")
            return data
        except (OSError, ValueError, KeyError) as e:
            corrupt = self.checkpoint_file.with_suffix(self.checkpoint_file.suffix + '.corrupt')
            logger.warning(f"⚠️ Unreadable checkpoint file ({e}), moving it to {corrupt}")
            os.replace(self.checkpoint_file, corrupt)
            return {}

    async def _persist(self) -> None:
        payload = {
            'timestamp': utcnow().isoformat(),
            'checkpoints': [c.to_dict() for c in self._checkpoints.values()],
        }
        await asyncio.to_thread(self._write_file, payload)

    def _write_file(self, payload: dict) -> None:
        self.checkpoint_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.checkpoint_file.with_suffix(self.checkpoint_file.suffix + '.tmp')
        with open(tmp, 'w') as f:
            json.dump(payload, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.checkpoint_file)
        logger.debug(f"💾 Checkpoint file written: {self.checkpoint_file}")


# ============================================================================
# Quota Repository
# ============================================================================

class QuotaRepository(Protocol):
    async def get(self, organization_id: str) -> Optional[OrganizationQuota]:
        ...

    async def add(self, quota: OrganizationQuota) -> None:
        ...

    async def update(self, quota: OrganizationQuota) -> None:
        ...


class InMemoryQuotaRepository:
    def __init__(self):
        self._quotas: Dict[str, OrganizationQuota] = {}

    async def get(self, organization_id: str) -> Optional[OrganizationQuota]:
        stored = self._quotas.get(organization_id)
        return copy.copy(stored) if stored else None

    async def add(self, quota: OrganizationQuota) -> None:
        self._quotas[quota.organization_id] = copy.copy(quota)

    async def update(self, quota: OrganizationQuota) -> None:
        self._quotas[quota.organization_id] = copy.copy(quota)
