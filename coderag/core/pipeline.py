"""
Ingestion Pipeline Orchestrator

Runs resumable ingestion jobs: discover files, chunk, embed, index and
checkpoint, under quota, disk and memory limits. Also exposes semantic
search and project/file deletion over the same index.
"""

import asyncio
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Set

from ..services.embedding_providers import EmbeddingProvider, create_embedding_provider
from .checkpoint_manager import CheckpointManager
from .chunker import SemanticChunker
from .concurrency import ConcurrencyLimiter
from .config import IngestionConfig
from .embedding_service import EmbeddingService
from .errors import CheckpointStateError
from .file_processor import FileProcessor, SourceFile
from .memory_monitor import MemoryMonitor
from .models import Chunk, JobCheckpoint, JobPhase
from .quota_manager import QuotaManager
from .repositories import (
    CheckpointRepository,
    ChunkRepository,
    InMemoryCheckpointRepository,
    InMemoryChunkRepository,
    InMemoryQuotaRepository,
    JsonFileCheckpointRepository,
    QuotaRepository,
)
from .temp_storage import ChunkBuffer, TempChunkStore
from .vector_backend import SearchResult, VectorBackend, VectorPoint, create_vector_backend

logger = logging.getLogger(__name__)


def content_bytes(chunks: List[Chunk]) -> int:
    return sum(len(c.content.encode('utf-8')) for c in chunks)


@dataclass
class JobUsage:
    """Tenant and storage charged by one run of a job, updated per batch."""
    organization_id: Optional[str] = None
    stored_bytes: int = 0


class IngestionPipeline:
    """
    Main orchestrator for code ingestion.

    Coordinates:
    - Admission (quota, disk) before any work
    - Checkpointed, resumable file processing
    - Embedding and indexing in bounded batches
    - Memory backpressure between batches
    - Search and deletion over the index

    Collaborators default from the config and can be injected for tests or
    alternative persistence.
    """

    def __init__(
        self,
        config: Optional[IngestionConfig] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
        vector_backend: Optional[VectorBackend] = None,
        chunk_repository: Optional[ChunkRepository] = None,
        checkpoint_repository: Optional[CheckpointRepository] = None,
        quota_repository: Optional[QuotaRepository] = None,
        memory_monitor: Optional[MemoryMonitor] = None,
        limiter: Optional[ConcurrencyLimiter] = None
    ):
        self.config = config or IngestionConfig()
        cfg = self.config

        logger.info("🚀 Initializing ingestion pipeline...")

        self.limiter = limiter or ConcurrencyLimiter(cfg.concurrency, cfg.embedding)
        self.embedding_provider = embedding_provider or create_embedding_provider(cfg.embedding)
        self.embedding_service = EmbeddingService(self.embedding_provider, self.limiter, cfg.embedding)
        self.vector_backend = vector_backend or create_vector_backend(cfg.vector_db, cfg.embedding.dimension)

        self.chunker = SemanticChunker(cfg.chunker)
        self.file_processor = FileProcessor(cfg.discovery)
        self.chunk_repository = chunk_repository or InMemoryChunkRepository()

        if checkpoint_repository is None:
            if cfg.checkpoint_file:
                checkpoint_repository = JsonFileCheckpointRepository(cfg.checkpoint_file)
            else:
                checkpoint_repository = InMemoryCheckpointRepository()
        self.checkpoint_manager = CheckpointManager(checkpoint_repository, cfg.worker)
        self.quota_manager = QuotaManager(quota_repository or InMemoryQuotaRepository(), cfg.quota)
        self.memory_monitor = memory_monitor or MemoryMonitor(cfg.memory, cfg.worker)

        self._active_projects: Set[str] = set()
        logger.info("✅ Ingestion pipeline initialized")

    @property
    def temp_root(self) -> str:
        return self.config.worker.temp_dir or str(Path(tempfile.gettempdir()) / 'coderag')

    # ===== ingestion =====

    async def ingest_project(
        self,
        project_id: str,
        repo_path: Path,
        organization_id: Optional[str] = None
    ) -> JobCheckpoint:
        """
        Ingest (or resume ingesting) a repository.

        Args:
            project_id: Owning project; scopes chunk hashes, vectors and checkpoints
            repo_path: Repository root on local disk
            organization_id: Tenant to charge; quota checks are skipped when None

        Returns:
            The completed checkpoint

        Raises:
            CapacityError: Quota or disk limits reject the job before any work
            CheckpointStateError: The project is already being ingested or is dead-lettered
            EmbeddingError, VectorStoreError: Job-level failures (checkpoint marked failed first)
        """
        if project_id in self._active_projects:
            raise CheckpointStateError(f"Project {project_id} is already being ingested")
        self._active_projects.add(project_id)
        try:
            return await self._run_job(project_id, Path(repo_path), organization_id)
        finally:
            self._active_projects.discard(project_id)

    async def _run_job(self, project_id: str, repo_path: Path, organization_id: Optional[str]) -> JobCheckpoint:
        files = await asyncio.to_thread(self.file_processor.discover_files, repo_path)
        total_bytes = sum(f.size_bytes for f in files)
        estimated_tokens = self.quota_manager.estimate_tokens(total_bytes)

        # Admission: nothing is consumed if any of these raise
        self.memory_monitor.check_disk_admission(self.temp_root, total_bytes)
        if organization_id:
            await self.quota_manager.admit_job(organization_id, estimated_tokens, total_bytes)

        tokens_before = 0
        usage = JobUsage(organization_id)
        checkpoint: Optional[JobCheckpoint] = None
        try:
            checkpoint = await self.checkpoint_manager.begin_job(
                project_id,
                total_files=len(files),
                organization_id=organization_id,
                estimated_total_tokens=estimated_tokens,
            )
            tokens_before = checkpoint.tokens_processed
            await self._process_job(checkpoint, files, usage)
            return await self.checkpoint_manager.complete(checkpoint)
        except asyncio.CancelledError:
            if checkpoint is not None:
                logger.warning(f"⚠️ Job {checkpoint.id} cancelled, keeping last committed progress")
                await asyncio.shield(self.checkpoint_manager.save(checkpoint))
            raise
        except Exception as e:
            if checkpoint is not None and checkpoint.is_active:
                await self.checkpoint_manager.fail(checkpoint, e)
            raise
        finally:
            # Charges whatever was stored, including by a failed or cancelled run
            if organization_id:
                tokens_used = (checkpoint.tokens_processed - tokens_before) if checkpoint else 0
                await self.quota_manager.release_job(organization_id, tokens_used, usage.stored_bytes)

    async def _process_job(self, checkpoint: JobCheckpoint, files: List[SourceFile], usage: JobUsage) -> None:
        await self.vector_backend.ensure_collection(self.embedding_service.dimension)

        store = TempChunkStore(checkpoint.id, self.temp_root)
        buffer = ChunkBuffer(store, self.config.worker.max_in_memory_buffer_bytes)
        self.memory_monitor.register_cleanup(buffer.spill)

        start = checkpoint.next_file_index
        if start > 0:
            logger.info(f"⏭️  Skipping {start} files already processed")

        prefetch: Optional[asyncio.Task] = None
        try:
            if start < len(files):
                prefetch = asyncio.ensure_future(self._read(files[start]))
            for index in range(start, len(files)):
                await self.memory_monitor.check()
                content = await prefetch
                prefetch = asyncio.ensure_future(self._read(files[index + 1])) if index + 1 < len(files) else None

                offset = checkpoint.last_processed_chunk_offset if index == checkpoint.next_file_index else 0
                await self._process_file(checkpoint, index, files[index], content, offset, buffer, usage)
        finally:
            if prefetch is not None and not prefetch.done():
                prefetch.cancel()
                await asyncio.gather(prefetch, return_exceptions=True)
            self.memory_monitor.unregister_cleanup(buffer.spill)
            buffer.clear()
            await store.cleanup()

    async def _read(self, source: SourceFile) -> Optional[str]:
        async with self.limiter.file_read_slot():
            return await self.file_processor.read_file(source)

    async def _process_file(
        self,
        checkpoint: JobCheckpoint,
        index: int,
        source: SourceFile,
        content: Optional[str],
        offset: int,
        buffer: ChunkBuffer,
        usage: JobUsage
    ) -> None:
        """Chunk, embed and index one file from chunk offset onwards."""
        project_id = checkpoint.project_id
        checkpoint.transition_to(JobPhase.CHUNKING)

        chunks = self.chunker.chunk(source.relative_path, content, project_id) if content else []
        if not chunks:
            await self.checkpoint_manager.record_progress(checkpoint, file_index=index, files=1)
            return

        if offset == 0:
            await self._drop_stale_chunks(project_id, source.relative_path, chunks, usage)
        elif offset >= len(chunks):
            logger.warning(
                f"⚠️ Chunk offset {offset} is past the {len(chunks)} chunks of {source.relative_path}, "
                f"treating the file as done"
            )
            await self.checkpoint_manager.record_progress(checkpoint, file_index=index, files=1)
            return
        else:
            logger.info(f"📂 Resuming {source.relative_path} at chunk {offset}/{len(chunks)}")

        existing = await self.chunk_repository.get_existing_hashes(project_id, [c.chunk_hash for c in chunks])
        await buffer.add(chunks[offset:])

        handled = offset
        while len(buffer):
            await self.memory_monitor.check()
            batch = await buffer.take(self.config.worker.index_batch_size)
            stored, embedded, skipped, tokens = await self._index_batch(checkpoint, batch, existing)
            usage.stored_bytes += content_bytes(stored)

            handled += len(batch)
            file_done = not len(buffer)
            await self.checkpoint_manager.record_progress(
                checkpoint,
                file_index=index if file_done else None,
                chunk_offset=None if file_done else handled,
                files=1 if file_done else 0,
                chunks_indexed=len(stored),
                embeddings=embedded,
                chunks_skipped=skipped,
                tokens=tokens,
            )

    async def _drop_stale_chunks(
        self,
        project_id: str,
        file_path: str,
        chunks: List[Chunk],
        usage: JobUsage
    ) -> None:
        """Remove a changed file's old chunks and vectors (and their storage charge) before re-indexing."""
        previous = await self.chunk_repository.get_by_file(project_id, file_path)
        if not previous:
            return
        current = {c.chunk_hash for c in chunks}
        if all(c.chunk_hash in current for c in previous):
            return
        logger.info(f"🔄 {file_path} changed, replacing {len(previous)} stored chunks")
        await self.vector_backend.delete_by_file(project_id, file_path)
        await self.chunk_repository.delete_by_file(project_id, file_path)
        if usage.organization_id:
            await self.quota_manager.release_storage(usage.organization_id, content_bytes(previous))

    async def _index_batch(
        self,
        checkpoint: JobCheckpoint,
        batch: List[Chunk],
        existing: Set[str]
    ):
        """
        Embed and index one batch in line order.

        Returns:
            (stored chunks, embeddings created, chunks skipped, tokens embedded)
        """
        fresh = [c for c in batch if c.chunk_hash not in existing]
        skipped = len(batch) - len(fresh)
        if not fresh:
            return [], 0, skipped, 0

        checkpoint.transition_to(JobPhase.EMBEDDING)
        vectors = await self.embedding_service.embed_batch([c.content for c in fresh])

        ready = []
        for chunk, vector in zip(fresh, vectors):
            if vector is None:
                skipped += 1
                continue
            chunk.set_embedding(vector, self.embedding_service.model_name)
            ready.append(chunk)

        checkpoint.transition_to(JobPhase.INDEXING)
        points = [VectorPoint(id=c.chunk_hash, vector=c.embedding, payload=c.to_payload()) for c in ready]
        written = set(await self.vector_backend.upsert_batch(points))
        stored = [c for c in ready if c.chunk_hash in written]
        skipped += len(ready) - len(stored)

        await self.chunk_repository.add_range(stored)
        existing.update(c.chunk_hash for c in stored)

        tokens = sum(c.token_count for c in fresh)
        return stored, len(ready), skipped, tokens

    # ===== search and maintenance =====

    async def search(self, query: str, project_id: Optional[str] = None, top_k: int = 10) -> List[SearchResult]:
        """Embed query and return the top_k closest chunks, best first."""
        vector = await self.embedding_service.embed(query)
        if vector is None:
            logger.warning("⚠️ Query embedding was invalid, returning no results")
            return []
        results = await self.vector_backend.query(vector, top_k=top_k, project_filter=project_id)
        logger.info(f"🔍 Found {len(results)} results for project {project_id}")
        return results

    async def delete_project(self, project_id: str, organization_id: Optional[str] = None) -> None:
        """
        Remove a project's vectors, chunk rows and checkpoints.

        Raises:
            CheckpointStateError: If the project is being ingested
        """
        if project_id in self._active_projects:
            raise CheckpointStateError(f"Project {project_id} is being ingested; cancel the job first")

        freed = 0
        if organization_id:
            freed = content_bytes(await self.chunk_repository.get_by_project(project_id))

        await self.vector_backend.delete_by_project(project_id)
        removed = await self.chunk_repository.delete_by_project(project_id)
        await self.checkpoint_manager.delete_project(project_id)

        if organization_id and freed:
            await self.quota_manager.release_storage(organization_id, freed)
        logger.info(f"🗑️ Deleted project {project_id} ({removed} chunks)")

    async def delete_file(self, project_id: str, file_path: str, organization_id: Optional[str] = None) -> int:
        """Remove one file's vectors and chunk rows, returning storage to the tenant. Returns chunks removed."""
        freed = 0
        if organization_id:
            freed = content_bytes(await self.chunk_repository.get_by_file(project_id, file_path))

        await self.vector_backend.delete_by_file(project_id, file_path)
        removed = await self.chunk_repository.delete_by_file(project_id, file_path)

        if organization_id and freed:
            await self.quota_manager.release_storage(organization_id, freed)
        return removed

    async def reindex_project(
        self,
        project_id: str,
        repo_path: Path,
        organization_id: Optional[str] = None
    ) -> JobCheckpoint:
        """Delete everything stored for the project, then ingest it from scratch."""
        await self.delete_project(project_id, organization_id)
        return await self.ingest_project(project_id, repo_path, organization_id)

    async def aclose(self) -> None:
        await self.embedding_provider.aclose()
        await self.vector_backend.aclose()
