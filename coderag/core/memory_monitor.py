"""
Memory and Disk Monitor

Polled by the ingestion loop between batches. Memory usage is the worker
process's resident set size as a percentage of max_worker_memory_mb.
Above the warning threshold the monitor runs cleanup (registered callbacks
such as chunk-buffer spills, then a forced GC); above the pause threshold it
holds the caller until usage drops back below it.
"""

import asyncio
import gc
import inspect
import logging
import time
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Union

import psutil

from .config import MemoryManagementOptions, WorkerProcessingOptions
from .errors import InsufficientDiskSpaceError, MemoryPressureError

logger = logging.getLogger(__name__)

CleanupCallback = Callable[[], Union[None, Awaitable[object]]]


class MemoryState(Enum):
    NORMAL = "normal"
    WARNING = "warning"
    PAUSE = "pause"


class MemoryMonitor:
    """
    Resource pressure observer.

    Responsibilities:
    - Report memory usage percent and free disk space
    - Run cleanup at the warning threshold
    - Suspend callers at the pause threshold until usage recovers
    - Gate job admission on free disk space and the per-job disk quota
    """

    def __init__(
        self,
        options: Optional[MemoryManagementOptions] = None,
        worker_options: Optional[WorkerProcessingOptions] = None,
        process: Optional[psutil.Process] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic
    ):
        self.options = options or MemoryManagementOptions()
        self.worker_options = worker_options or WorkerProcessingOptions()
        self._process = process or psutil.Process()
        self._sleep = sleep
        self._clock = clock
        self._max_memory_bytes = self.options.max_worker_memory_mb * 1024 * 1024
        self._cleanup_callbacks: List[CleanupCallback] = []
        self.pause_count = 0

    # ----- memory -----

    @property
    def current_memory_mb(self) -> float:
        return self._process.memory_info().rss / (1024 * 1024)

    @property
    def memory_usage_percent(self) -> float:
        return self._process.memory_info().rss * 100.0 / self._max_memory_bytes

    def state(self) -> MemoryState:
        percent = self.memory_usage_percent
        if percent >= self.options.pause_threshold_percent:
            return MemoryState.PAUSE
        if percent >= self.options.warning_threshold_percent:
            return MemoryState.WARNING
        return MemoryState.NORMAL

    @property
    def is_memory_warning(self) -> bool:
        return self.state() != MemoryState.NORMAL

    @property
    def should_pause(self) -> bool:
        return self.state() == MemoryState.PAUSE

    def register_cleanup(self, callback: CleanupCallback) -> None:
        self._cleanup_callbacks.append(callback)

    def unregister_cleanup(self, callback: CleanupCallback) -> None:
        if callback in self._cleanup_callbacks:
            self._cleanup_callbacks.remove(callback)

    async def cleanup(self) -> None:
        """Run registered callbacks (buffer spills first), then a full GC."""
        before = self.current_memory_mb
        for callback in list(self._cleanup_callbacks):
            result = callback()
            if inspect.isawaitable(result):
                await result
        gc.collect()
        after = self.current_memory_mb
        logger.info(f"🧹 Cleanup completed: {before:.0f} MB -> {after:.0f} MB")

    async def check(self) -> MemoryState:
        """
        Poll between batches.

        Returns:
            The state observed before any cleanup or pause

        Raises:
            MemoryPressureError: If usage stays above the pause threshold for max_pause_seconds
        """
        state = self.state()
        if state == MemoryState.WARNING:
            logger.warning(
                f"⚠️ Memory warning: {self.memory_usage_percent:.0f}% ({self.current_memory_mb:.0f} MB)"
            )
            await self.cleanup()
        elif state == MemoryState.PAUSE:
            await self.wait_until_below_pause()
        return state

    async def wait_until_below_pause(self) -> None:
        """Hold the caller while usage is at or above the pause threshold. Cancellable."""
        if not self.should_pause:
            return

        self.pause_count += 1
        started = self._clock()
        logger.error(
            f"❌ Memory critical: {self.memory_usage_percent:.0f}% ({self.current_memory_mb:.0f} MB), "
            f"pausing ingestion"
        )
        await self.cleanup()

        while self.should_pause:
            if self._clock() - started >= self.options.max_pause_seconds:
                raise MemoryPressureError(
                    f"Memory stayed above {self.options.pause_threshold_percent}% "
                    f"for {self.options.max_pause_seconds}s"
                )
            await self._sleep(self.options.check_interval_seconds)

        logger.info(f"✅ Memory back to {self.memory_usage_percent:.0f}%, resuming ingestion")

    # ----- disk -----

    def free_disk_bytes(self, path: Union[str, Path]) -> int:
        target = Path(path)
        while not target.exists() and target != target.parent:
            target = target.parent
        return psutil.disk_usage(str(target)).free

    def check_disk_admission(self, path: Union[str, Path], required_bytes: int) -> None:
        """
        Admit a job that needs required_bytes of scratch space under path.

        Raises:
            InsufficientDiskSpaceError: If free space would drop below the minimum,
                or the job needs more than the per-job quota
        """
        if required_bytes > self.worker_options.per_job_disk_quota_bytes:
            raise InsufficientDiskSpaceError(
                f"Job needs {required_bytes} bytes, above the per-job quota of "
                f"{self.worker_options.per_job_disk_quota_bytes}"
            )
        free = self.free_disk_bytes(path)
        if free - required_bytes < self.worker_options.min_free_disk_space_bytes:
            raise InsufficientDiskSpaceError(
                f"Only {free} bytes free at {path}; need {required_bytes} plus "
                f"{self.worker_options.min_free_disk_space_bytes} reserved"
            )
