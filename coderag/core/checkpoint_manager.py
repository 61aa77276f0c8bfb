"""
Checkpoint Manager for Ingestion Jobs

Creates, resumes and persists JobCheckpoints so a crashed or restarted job
continues from its last committed cursor. Progress is persisted every
checkpoint_interval_files files or checkpoint_interval_seconds seconds,
whichever comes first.
"""

import logging
import time
from typing import Callable, Dict, List, Optional

from .config import WorkerProcessingOptions
from .errors import CheckpointCorruptionError, CheckpointStateError, classify_exception
from .models import CheckpointStatus, JobCheckpoint
from .repositories import CheckpointRepository

logger = logging.getLogger(__name__)


class CheckpointManager:
    """
    Manages checkpoint operations for ingestion job recovery.

    Responsibilities:
    - Start a new job or resume the project's latest unfinished one
    - Validate the resume cursor against the current file list
    - Persist progress on the file/time interval
    - Record completion, failure, retry and dead-lettering
    """

    def __init__(
        self,
        repository: CheckpointRepository,
        options: Optional[WorkerProcessingOptions] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.repository = repository
        self.options = options or WorkerProcessingOptions()
        self._clock = clock
        self._files_since_save: Dict[str, int] = {}
        self._last_save: Dict[str, float] = {}

    @property
    def dead_letter_threshold(self) -> int:
        return self.options.dead_letter_threshold

    async def begin_job(
        self,
        project_id: str,
        total_files: int,
        organization_id: Optional[str] = None,
        estimated_total_tokens: int = 0
    ) -> JobCheckpoint:
        """
        Start or resume the ingestion job for a project.

        An active checkpoint is resumed from its cursor. A failed one is moved
        back to pending if it is below the dead-letter threshold, otherwise it
        is dead-lettered. Anything else starts a fresh job.

        Returns:
            The in-progress checkpoint, already persisted

        Raises:
            CheckpointStateError: If the project's last job is dead-lettered
        """
        checkpoint = await self.repository.get_active_by_project(project_id)
        is_new = False

        if checkpoint is None:
            latest = await self.repository.get_latest_by_project(project_id)
            if latest is not None and latest.status == CheckpointStatus.DEAD_LETTERED:
                raise CheckpointStateError(
                    f"Job {latest.id} for project {project_id} is dead-lettered after "
                    f"{latest.retry_count} failures; reindex the project to start over"
                )
            if latest is not None and latest.status == CheckpointStatus.FAILED:
                if latest.can_retry(self.dead_letter_threshold):
                    latest.mark_for_retry(self.dead_letter_threshold)
                    checkpoint = latest
                    logger.info(
                        f"🔄 Retrying job {latest.id} for {project_id} "
                        f"(attempt {latest.retry_count + 1}/{self.dead_letter_threshold})"
                    )
                else:
                    latest.mark_dead_lettered()
                    await self.repository.update(latest)
                    raise CheckpointStateError(
                        f"Job {latest.id} for project {project_id} exceeded {self.dead_letter_threshold} "
                        f"attempts and was dead-lettered"
                    )

        if checkpoint is None:
            checkpoint = JobCheckpoint(project_id=project_id, organization_id=organization_id)
            is_new = True

        if checkpoint.status == CheckpointStatus.IN_PROGRESS:
            checkpoint.restart_phase_cycle()
            logger.info(
                f"📂 Resuming job {checkpoint.id} for {project_id} at file "
                f"{checkpoint.next_file_index} (chunk offset {checkpoint.last_processed_chunk_offset})"
            )
        else:
            checkpoint.start_processing()

        checkpoint.total_files = total_files
        if estimated_total_tokens:
            checkpoint.estimated_total_tokens = estimated_total_tokens

        try:
            self.validate_cursor(checkpoint, total_files)
        except CheckpointCorruptionError as e:
            logger.warning(f"⚠️ {e}; restarting the job from the first file")
            checkpoint.reset_progress()

        if is_new:
            await self.repository.add(checkpoint)
            logger.info(f"📋 Started job {checkpoint.id} for {project_id} ({total_files} files)")
        else:
            await self.repository.update(checkpoint)

        self._mark_saved(checkpoint)
        return checkpoint

    def validate_cursor(self, checkpoint: JobCheckpoint, total_files: int) -> None:
        """
        Raises:
            CheckpointCorruptionError: If the cursor points past the available files
        """
        if checkpoint.last_processed_file_index >= total_files:
            raise CheckpointCorruptionError(
                f"Checkpoint {checkpoint.id} cursor at file {checkpoint.last_processed_file_index} "
                f"but only {total_files} files are available"
            )
        if checkpoint.files_processed > total_files:
            raise CheckpointCorruptionError(
                f"Checkpoint {checkpoint.id} counts {checkpoint.files_processed} processed files "
                f"but only {total_files} are available"
            )

    def _mark_saved(self, checkpoint: JobCheckpoint) -> None:
        self._files_since_save[checkpoint.id] = 0
        self._last_save[checkpoint.id] = self._clock()

    def is_save_due(self, checkpoint: JobCheckpoint) -> bool:
        files = self._files_since_save.get(checkpoint.id, 0)
        elapsed = self._clock() - self._last_save.get(checkpoint.id, self._clock())
        return (
            files >= self.options.checkpoint_interval_files
            or elapsed >= self.options.checkpoint_interval_seconds
        )

    async def record_progress(
        self,
        checkpoint: JobCheckpoint,
        file_index: Optional[int] = None,
        chunk_offset: Optional[int] = None,
        files: int = 0,
        chunks_indexed: int = 0,
        embeddings: int = 0,
        chunks_skipped: int = 0,
        tokens: int = 0
    ) -> bool:
        """
        Apply a committed batch to the checkpoint and persist it when the interval is due.

        Returns:
            True if the checkpoint was written
        """
        checkpoint.record_progress(
            file_index=file_index,
            chunk_offset=chunk_offset,
            files=files,
            chunks_indexed=chunks_indexed,
            embeddings=embeddings,
            chunks_skipped=chunks_skipped,
            tokens=tokens,
        )
        self._files_since_save[checkpoint.id] = self._files_since_save.get(checkpoint.id, 0) + files

        if not self.is_save_due(checkpoint):
            return False
        await self.save(checkpoint)
        return True

    async def save(self, checkpoint: JobCheckpoint) -> None:
        await self.repository.update(checkpoint)
        self._mark_saved(checkpoint)
        logger.info(
            f"💾 Checkpoint saved: {checkpoint.files_processed}/{checkpoint.total_files} files, "
            f"{checkpoint.chunks_indexed} chunks indexed ({checkpoint.progress_percent}%)"
        )

    async def complete(self, checkpoint: JobCheckpoint) -> JobCheckpoint:
        checkpoint.mark_completed()
        await self.repository.update(checkpoint)
        self._forget(checkpoint)
        logger.info(
            f"✅ Job {checkpoint.id} completed: {checkpoint.files_processed} files, "
            f"{checkpoint.chunks_indexed} chunks indexed, {checkpoint.chunks_skipped} skipped"
        )
        return checkpoint

    async def fail(self, checkpoint: JobCheckpoint, error: BaseException) -> JobCheckpoint:
        """
        Mark the job failed with the error's message and classification.

        The job is dead-lettered once retry_count reaches the threshold;
        vectors it already indexed are left in place.
        """
        checkpoint.mark_failed(str(error) or type(error).__name__, classify_exception(error))
        if not checkpoint.can_retry(self.dead_letter_threshold):
            checkpoint.mark_dead_lettered()
            logger.error(
                f"❌ Job {checkpoint.id} dead-lettered after {checkpoint.retry_count} failures: {error}"
            )
        else:
            logger.error(
                f"❌ Job {checkpoint.id} failed (attempt {checkpoint.retry_count}/"
                f"{self.dead_letter_threshold}): {error}"
            )
        await self.repository.update(checkpoint)
        self._forget(checkpoint)
        return checkpoint

    async def get_retryable_jobs(self) -> List[JobCheckpoint]:
        return await self.repository.get_pending_retry(self.dead_letter_threshold)

    async def get_latest(self, project_id: str) -> Optional[JobCheckpoint]:
        return await self.repository.get_latest_by_project(project_id)

    async def delete_project(self, project_id: str) -> int:
        return await self.repository.delete_by_project(project_id)

    def _forget(self, checkpoint: JobCheckpoint) -> None:
        self._files_since_save.pop(checkpoint.id, None)
        self._last_save.pop(checkpoint.id, None)
