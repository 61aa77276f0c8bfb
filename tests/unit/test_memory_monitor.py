"""
Unit tests for MemoryMonitor thresholds, cleanup, pausing and disk admission.

Run: python -m pytest tests/unit/test_memory_monitor.py -v
"""
import sys
from pathlib import Path
from types import SimpleNamespace
from unittest import IsolatedAsyncioTestCase, TestCase
from unittest.mock import MagicMock, patch

REPO_ROOT = Path(__file__).resolve().parent.parent.parent
sys.path.insert(0, str(REPO_ROOT))

from coderag.core.config import MemoryManagementOptions, WorkerProcessingOptions
from coderag.core.errors import InsufficientDiskSpaceError, MemoryPressureError
from coderag.core.memory_monitor import MemoryMonitor, MemoryState

MB = 1024 * 1024


class FakeProcess:
    """psutil.Process stand-in with a settable RSS (in MB)."""

    def __init__(self, rss_mb: float):
        self.rss_mb = rss_mb

    def memory_info(self):
        return SimpleNamespace(rss=int(self.rss_mb * MB))


class FakeTime:

    def __init__(self, process=None, drop_to_mb=None, after_sleeps=None):
        self.now = 0.0
        self.sleeps = 0
        self.process = process
        self.drop_to_mb = drop_to_mb
        self.after_sleeps = after_sleeps

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps += 1
        self.now += seconds
        if self.after_sleeps is not None and self.sleeps >= self.after_sleeps:
            self.process.rss_mb = self.drop_to_mb


def build_monitor(rss_mb, fake_time=None, worker_options=None):
    options = MemoryManagementOptions(
        max_worker_memory_mb=1000,
        warning_threshold_percent=70.0,
        pause_threshold_percent=85.0,
        check_interval_seconds=5.0,
        max_pause_seconds=60.0,
    )
    process = fake_time.process if fake_time and fake_time.process else FakeProcess(rss_mb)
    fake_time = fake_time or FakeTime()
    return MemoryMonitor(
        options,
        worker_options,
        process=process,
        sleep=fake_time.sleep,
        clock=fake_time.clock,
    )


class TestMemoryState(TestCase):

    def test_thresholds(self):
        self.assertEqual(build_monitor(500).state(), MemoryState.NORMAL)
        self.assertEqual(build_monitor(700).state(), MemoryState.WARNING)
        self.assertEqual(build_monitor(850).state(), MemoryState.PAUSE)

    def test_usage_reporting(self):
        monitor = build_monitor(250)
        self.assertAlmostEqual(monitor.memory_usage_percent, 25.0)
        self.assertAlmostEqual(monitor.current_memory_mb, 250.0)
        self.assertFalse(monitor.is_memory_warning)
        self.assertFalse(monitor.should_pause)


class TestMemoryMonitor(IsolatedAsyncioTestCase):

    async def test_normal_check_does_nothing(self):
        monitor = build_monitor(100)
        callback = MagicMock()
        monitor.register_cleanup(callback)

        self.assertEqual(await monitor.check(), MemoryState.NORMAL)
        callback.assert_not_called()

    async def test_warning_runs_sync_and_async_cleanup(self):
        monitor = build_monitor(750)
        calls = []

        async def spill():
            calls.append("spill")

        monitor.register_cleanup(lambda: calls.append("sync"))
        monitor.register_cleanup(spill)

        with self.assertLogs('coderag.core.memory_monitor', level='WARNING'):
            state = await monitor.check()

        self.assertEqual(state, MemoryState.WARNING)
        self.assertEqual(calls, ["sync", "spill"])

    async def test_unregistered_callback_not_called(self):
        monitor = build_monitor(750)
        callback = MagicMock()
        monitor.register_cleanup(callback)
        monitor.unregister_cleanup(callback)
        monitor.unregister_cleanup(callback)

        await monitor.check()
        callback.assert_not_called()

    async def test_pause_waits_until_memory_recovers(self):
        process = FakeProcess(900)
        fake_time = FakeTime(process, drop_to_mb=400, after_sleeps=3)
        monitor = build_monitor(None, fake_time)

        state = await monitor.check()

        self.assertEqual(state, MemoryState.PAUSE)
        self.assertEqual(fake_time.sleeps, 3)
        self.assertEqual(monitor.pause_count, 1)
        self.assertEqual(monitor.state(), MemoryState.NORMAL)

    async def test_pause_gives_up_after_max_pause(self):
        process = FakeProcess(950)
        fake_time = FakeTime(process)
        monitor = build_monitor(None, fake_time)

        with self.assertRaises(MemoryPressureError):
            await monitor.wait_until_below_pause()

        # 60s at a 5s interval
        self.assertEqual(fake_time.sleeps, 12)


class TestDiskAdmission(TestCase):

    def setUp(self):
        self.worker_options = WorkerProcessingOptions(
            min_free_disk_space_bytes=1_000, per_job_disk_quota_bytes=5_000
        )
        self.monitor = build_monitor(100, worker_options=self.worker_options)

    def test_admits_when_space_remains(self):
        with patch('coderag.core.memory_monitor.psutil.disk_usage', return_value=SimpleNamespace(free=10_000)):
            self.monitor.check_disk_admission("/tmp", 4_000)

    def test_rejects_below_minimum_free(self):
        with patch('coderag.core.memory_monitor.psutil.disk_usage', return_value=SimpleNamespace(free=4_500)):
            with self.assertRaises(InsufficientDiskSpaceError):
                self.monitor.check_disk_admission("/tmp", 4_000)

    def test_rejects_above_per_job_quota(self):
        with patch('coderag.core.memory_monitor.psutil.disk_usage', return_value=SimpleNamespace(free=10**12)):
            with self.assertRaises(InsufficientDiskSpaceError):
                self.monitor.check_disk_admission("/tmp", 5_001)

    def test_free_space_of_missing_path_uses_parent(self):
        missing = Path("/tmp") / "coderag-missing" / "job"
        self.assertGreater(self.monitor.free_disk_bytes(missing), 0)
