"""
Concurrency Limiter

Bounded slot pools for embedding calls, reasoning calls and file reads, plus
a rolling tokens-per-minute budget for the embedding pool. One limiter
instance is created per pipeline and passed to the services that use it.
"""

import asyncio
import logging
import threading
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional

from .config import ConcurrencyOptions, EmbeddingProcessingOptions

logger = logging.getLogger(__name__)


class SlotLease:
    """A held pool slot. release() is idempotent."""

    def __init__(self, pool: "SlotPool"):
        self._pool = pool
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._pool._release()


class SlotPool:
    """
    Fixed-size pool of slots for one resource class.

    Held and peak counts are tracked under one mutex so they can be read from
    any thread.
    """

    def __init__(self, name: str, max_concurrency: int):
        if max_concurrency < 1:
            raise ValueError(f"Pool '{name}' needs at least one slot")
        self.name = name
        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._lock = threading.Lock()
        self._held = 0
        self._waiting = 0
        self._peak = 0

    @property
    def held(self) -> int:
        with self._lock:
            return self._held

    @property
    def peak(self) -> int:
        with self._lock:
            return self._peak

    @property
    def queue_depth(self) -> int:
        """Callers currently waiting for a slot."""
        with self._lock:
            return self._waiting

    @property
    def available(self) -> int:
        with self._lock:
            return self.max_concurrency - self._held

    async def acquire(self) -> SlotLease:
        """Wait for a slot. Cancellation while waiting leaves nothing held."""
        with self._lock:
            self._waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            with self._lock:
                self._waiting -= 1

        with self._lock:
            self._held += 1
            self._peak = max(self._peak, self._held)
        return SlotLease(self)

    def _release(self) -> None:
        with self._lock:
            self._held -= 1
        self._semaphore.release()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[SlotLease]:
        lease = await self.acquire()
        try:
            yield lease
        finally:
            lease.release()


class TokenBudget:
    """
    Rolling tokens-per-period budget.

    A request is admitted when used + estimated <= limit; otherwise the caller
    sleeps wait_seconds and re-checks. The period resets once period_seconds
    have elapsed since it started.
    """

    def __init__(
        self,
        tokens_per_period: int,
        wait_seconds: float = 5.0,
        period_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.tokens_per_period = tokens_per_period
        self.wait_seconds = wait_seconds
        self.period_seconds = period_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._period_start = clock()
        self._used = 0

    @property
    def used(self) -> int:
        with self._lock:
            self._reset_if_elapsed()
            return self._used

    @property
    def remaining(self) -> int:
        with self._lock:
            self._reset_if_elapsed()
            return max(0, self.tokens_per_period - self._used)

    def _reset_if_elapsed(self) -> None:
        now = self._clock()
        if now - self._period_start >= self.period_seconds:
            self._period_start = now
            self._used = 0

    def try_reserve(self, tokens: int) -> bool:
        """Reserve tokens if they fit in the current period."""
        with self._lock:
            self._reset_if_elapsed()
            if self._used + tokens <= self.tokens_per_period:
                self._used += tokens
                return True
            if self._used == 0:
                # A single request larger than the whole budget gets a fresh period to itself
                logger.warning(
                    f"⚠️ Request of {tokens} tokens exceeds budget of {self.tokens_per_period} per period"
                )
                self._used = tokens
                return True
            return False

    async def wait_for_capacity(self, tokens: int) -> None:
        """Suspend until tokens are reserved. Cancellable."""
        while not self.try_reserve(tokens):
            logger.debug(
                f"Token budget exhausted ({self._used}/{self.tokens_per_period}), "
                f"waiting {self.wait_seconds}s"
            )
            await self._sleep(self.wait_seconds)


class ConcurrencyLimiter:
    """
    Resource-class limiter shared by one pipeline.

    Responsibilities:
    - Bound concurrent embedding, reasoning and file-read operations
    - Enforce the embedding tokens-per-minute budget
    """

    def __init__(
        self,
        options: Optional[ConcurrencyOptions] = None,
        embedding_options: Optional[EmbeddingProcessingOptions] = None,
        token_budget: Optional[TokenBudget] = None
    ):
        options = options or ConcurrencyOptions()
        embedding_options = embedding_options or EmbeddingProcessingOptions()

        self.embedding_pool = SlotPool('embedding', options.max_concurrent_embeddings)
        self.reasoning_pool = SlotPool('reasoning', options.max_concurrent_reasoning)
        self.file_read_pool = SlotPool('file_read', options.max_concurrent_file_reads)
        self.token_budget = token_budget or TokenBudget(
            embedding_options.tokens_per_minute,
            wait_seconds=embedding_options.rate_limit_wait_seconds,
        )

    def embedding_slot(self):
        return self.embedding_pool.slot()

    def reasoning_slot(self):
        return self.reasoning_pool.slot()

    def file_read_slot(self):
        return self.file_read_pool.slot()

    async def wait_for_embedding_budget(self, tokens: int) -> None:
        await self.token_budget.wait_for_capacity(tokens)

    @property
    def embedding_queue_depth(self) -> int:
        return self.embedding_pool.queue_depth

    @property
    def reasoning_queue_depth(self) -> int:
        return self.reasoning_pool.queue_depth

    @property
    def file_read_queue_depth(self) -> int:
        return self.file_read_pool.queue_depth
