"""
Unit tests for CheckpointManager and the checkpoint repositories.

Run: python -m pytest tests/unit/test_checkpoint_manager.py -v
"""
import json
import sys
import tempfile
from datetime import timedelta
from pathlib import Path
from unittest import IsolatedAsyncioTestCase

REPO_ROOT = Path(__file__).resolve().parent.parent.parent
sys.path.insert(0, str(REPO_ROOT))

from coderag.core.checkpoint_manager import CheckpointManager
from coderag.core.config import WorkerProcessingOptions
from coderag.core.errors import CheckpointStateError, EmbeddingConnectionError
from coderag.core.models import CheckpointStatus, JobCheckpoint, JobPhase
from coderag.core.repositories import InMemoryCheckpointRepository, JsonFileCheckpointRepository


class FakeClock:

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestCheckpointManager(IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.repository = InMemoryCheckpointRepository()
        self.options = WorkerProcessingOptions(
            checkpoint_interval_files=2, checkpoint_interval_seconds=30.0, dead_letter_threshold=3
        )
        self.manager = CheckpointManager(self.repository, self.options, clock=self.clock)

    async def test_begin_creates_in_progress_job(self):
        checkpoint = await self.manager.begin_job("proj", total_files=5, organization_id="org")

        self.assertEqual(checkpoint.status, CheckpointStatus.IN_PROGRESS)
        self.assertEqual(checkpoint.phase, JobPhase.EXTRACTING)
        self.assertEqual(checkpoint.total_files, 5)
        self.assertEqual(checkpoint.next_file_index, 0)

        stored = await self.repository.get(checkpoint.id)
        self.assertEqual(stored.status, CheckpointStatus.IN_PROGRESS)
        self.assertEqual(stored.organization_id, "org")

    async def test_begin_resumes_active_job_at_cursor(self):
        first = await self.manager.begin_job("proj", total_files=5)
        first.transition_to(JobPhase.CHUNKING)
        await self.manager.record_progress(first, file_index=1, files=2, chunks_indexed=7)

        # New manager, as after a process restart
        resumed = await CheckpointManager(self.repository, self.options).begin_job("proj", total_files=5)

        self.assertEqual(resumed.id, first.id)
        self.assertEqual(resumed.phase, JobPhase.EXTRACTING)
        self.assertEqual(resumed.next_file_index, 2)
        self.assertEqual(resumed.chunks_indexed, 7)

    async def test_corrupt_cursor_restarts_from_first_file(self):
        first = await self.manager.begin_job("proj", total_files=5)
        await self.manager.record_progress(first, file_index=4, files=5)
        await self.manager.save(first)

        with self.assertLogs('coderag.core.checkpoint_manager', level='WARNING'):
            resumed = await self.manager.begin_job("proj", total_files=3)

        self.assertEqual(resumed.id, first.id)
        self.assertEqual(resumed.next_file_index, 0)
        self.assertEqual(resumed.files_processed, 0)

    async def test_save_on_file_interval(self):
        checkpoint = await self.manager.begin_job("proj", total_files=10)

        self.assertFalse(await self.manager.record_progress(checkpoint, file_index=0, files=1))
        stored = await self.repository.get(checkpoint.id)
        self.assertEqual(stored.files_processed, 0)

        self.assertTrue(await self.manager.record_progress(checkpoint, file_index=1, files=1))
        stored = await self.repository.get(checkpoint.id)
        self.assertEqual(stored.files_processed, 2)
        self.assertIsNotNone(stored.last_checkpoint_at)

    async def test_save_on_time_interval(self):
        checkpoint = await self.manager.begin_job("proj", total_files=10)

        self.assertFalse(await self.manager.record_progress(checkpoint, chunk_offset=5, chunks_indexed=5))
        self.clock.now = 31.0
        self.assertTrue(await self.manager.record_progress(checkpoint, chunk_offset=9, chunks_indexed=4))

        stored = await self.repository.get(checkpoint.id)
        self.assertEqual(stored.last_processed_chunk_offset, 9)

    async def test_complete(self):
        checkpoint = await self.manager.begin_job("proj", total_files=1)
        await self.manager.record_progress(checkpoint, file_index=0, files=1)
        await self.manager.complete(checkpoint)

        stored = await self.manager.get_latest("proj")
        self.assertEqual(stored.status, CheckpointStatus.COMPLETED)
        self.assertEqual(stored.progress_percent, 100.0)

        # A completed job means the next run starts fresh
        fresh = await self.manager.begin_job("proj", total_files=1)
        self.assertNotEqual(fresh.id, checkpoint.id)

    async def test_failure_records_classification_then_retries(self):
        checkpoint = await self.manager.begin_job("proj", total_files=4)
        await self.manager.record_progress(checkpoint, file_index=1, files=2)
        await self.manager.fail(checkpoint, EmbeddingConnectionError("connection refused"))

        stored = await self.repository.get(checkpoint.id)
        self.assertEqual(stored.status, CheckpointStatus.FAILED)
        self.assertEqual(stored.error_classification, "embedding_connection")
        self.assertEqual(stored.error_message, "connection refused")
        self.assertEqual([c.id for c in await self.manager.get_retryable_jobs()], [checkpoint.id])

        retried = await self.manager.begin_job("proj", total_files=4)
        self.assertEqual(retried.id, checkpoint.id)
        self.assertEqual(retried.status, CheckpointStatus.IN_PROGRESS)
        self.assertEqual(retried.next_file_index, 2)
        self.assertIsNone(retried.error_message)

    async def test_dead_letter_after_threshold(self):
        for _ in range(3):
            checkpoint = await self.manager.begin_job("proj", total_files=4)
            await self.manager.fail(checkpoint, RuntimeError("boom"))

        stored = await self.manager.get_latest("proj")
        self.assertEqual(stored.status, CheckpointStatus.DEAD_LETTERED)
        self.assertEqual(stored.retry_count, 3)
        self.assertEqual(stored.error_classification, "RuntimeError")

        with self.assertRaises(CheckpointStateError):
            await self.manager.begin_job("proj", total_files=4)

    async def test_failed_job_over_lowered_threshold_is_dead_lettered(self):
        checkpoint = await self.manager.begin_job("proj", total_files=4)
        await self.manager.fail(checkpoint, RuntimeError("boom"))

        strict = CheckpointManager(self.repository, WorkerProcessingOptions(dead_letter_threshold=1))
        with self.assertRaises(CheckpointStateError):
            await strict.begin_job("proj", total_files=4)

        stored = await self.repository.get(checkpoint.id)
        self.assertEqual(stored.status, CheckpointStatus.DEAD_LETTERED)

    async def test_delete_project(self):
        await self.manager.begin_job("proj", total_files=1)
        self.assertEqual(await self.manager.delete_project("proj"), 1)
        self.assertIsNone(await self.manager.get_latest("proj"))


class TestInMemoryCheckpointRepository(IsolatedAsyncioTestCase):

    def setUp(self):
        self.repository = InMemoryCheckpointRepository()

    async def test_one_active_checkpoint_per_project(self):
        await self.repository.add(JobCheckpoint(project_id="proj"))
        with self.assertRaises(CheckpointStateError):
            await self.repository.add(JobCheckpoint(project_id="proj"))
        await self.repository.add(JobCheckpoint(project_id="other"))

    async def test_duplicate_id_rejected(self):
        checkpoint = JobCheckpoint(project_id="proj", status=CheckpointStatus.COMPLETED, phase=JobPhase.COMPLETED)
        await self.repository.add(checkpoint)
        with self.assertRaises(CheckpointStateError):
            await self.repository.add(checkpoint)

    async def test_update_requires_existing(self):
        with self.assertRaises(CheckpointStateError):
            await self.repository.update(JobCheckpoint(project_id="proj"))

    async def test_reads_are_copies(self):
        checkpoint = JobCheckpoint(project_id="proj")
        await self.repository.add(checkpoint)

        copy = await self.repository.get(checkpoint.id)
        copy.files_processed = 99

        self.assertEqual((await self.repository.get(checkpoint.id)).files_processed, 0)

    async def test_prune_terminal(self):
        old = JobCheckpoint(project_id="a", status=CheckpointStatus.COMPLETED, phase=JobPhase.COMPLETED)
        old.updated_at = old.created_at - timedelta(days=10)
        active = JobCheckpoint(project_id="b")
        await self.repository.add(old)
        await self.repository.add(active)

        self.assertEqual(await self.repository.prune_terminal(timedelta(days=7)), 1)
        self.assertIsNone(await self.repository.get(old.id))
        self.assertIsNotNone(await self.repository.get(active.id))


class TestJsonFileCheckpointRepository(IsolatedAsyncioTestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "state" / "checkpoints.json"

    def tearDown(self):
        self.tmp.cleanup()

    async def test_round_trip_through_file(self):
        repository = JsonFileCheckpointRepository(self.path)
        checkpoint = JobCheckpoint(project_id="proj", organization_id="org")
        checkpoint.start_processing()
        checkpoint.record_progress(file_index=2, files=3, chunks_indexed=12, tokens=800)
        await repository.add(checkpoint)

        data = json.loads(self.path.read_text())
        self.assertIn('timestamp', data)
        self.assertEqual(data['checkpoints'][0]['project_id'], "proj")

        reloaded = await JsonFileCheckpointRepository(self.path).get_active_by_project("proj")
        self.assertEqual(reloaded.id, checkpoint.id)
        self.assertEqual(reloaded.next_file_index, 3)
        self.assertEqual(reloaded.chunks_indexed, 12)
        self.assertEqual(reloaded.phase, JobPhase.EXTRACTING)

    async def test_corrupt_file_is_moved_aside(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{not json")

        with self.assertLogs('coderag.core.repositories', level='WARNING'):
            latest = await JsonFileCheckpointRepository(self.path).get_latest_by_project("proj")

        self.assertIsNone(latest)
        self.assertTrue(self.path.with_suffix(".json.corrupt").exists())
        self.assertFalse(self.path.exists())
