"""
Resilience Pipeline

Retry with exponential backoff and jitter, guarded by a circuit breaker, for
calls to external inference and index services. Errors are retried only when
they carry transient=True (see errors.py).
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from .config import EmbeddingProcessingOptions
from .errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar('T')


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    Opens after failure_threshold consecutive transient failures, rejects calls
    for break_duration_seconds, then lets a single trial call through (half-open).
    A successful trial call closes the circuit; a failed one re-opens it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        break_duration_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.break_duration_seconds = break_duration_seconds
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._break_elapsed():
            return CircuitState.HALF_OPEN
        return self._state

    def _break_elapsed(self) -> bool:
        return self._clock() - self._opened_at >= self.break_duration_seconds

    def before_call(self) -> None:
        """
        Admit or reject a call.

        Raises:
            CircuitOpenError: While the circuit is open or a trial call is running
        """
        if self._state == CircuitState.OPEN:
            if not self._break_elapsed():
                retry_after = self.break_duration_seconds - (self._clock() - self._opened_at)
                raise CircuitOpenError(self.name, retry_after)
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info(f"🔄 Circuit '{self.name}' half-open, probing")

        if self._state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, 0.0)
            self._trial_in_flight = True

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info(f"✅ Circuit '{self.name}' closed")
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        if self._state == CircuitState.HALF_OPEN or self._consecutive_failures >= self.failure_threshold:
            self._open()

    def release_trial(self) -> None:
        """Forget a half-open trial call that ended without a verdict (non-transient error)."""
        self._trial_in_flight = False

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        logger.error(
            f"❌ Circuit '{self.name}' opened after {self._consecutive_failures} consecutive failures, "
            f"breaking for {self.break_duration_seconds}s"
        )


@dataclass
class RetryPolicy:
    """Exponential backoff: base * 2^(attempt-1), capped, plus up to 25% jitter."""
    max_retry_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    jitter: bool = True

    def delay_for(self, attempt: int) -> float:
        delay = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** (attempt - 1)))
        if self.jitter:
            delay += random.uniform(0, delay * 0.25)
        return delay


def is_transient(exc: BaseException) -> bool:
    return bool(getattr(exc, 'transient', False))


class ResiliencePipeline:
    """
    Runs an async operation under retry and circuit breaking.

    Responsibilities:
    - Reject calls while the circuit is open (CircuitOpenError, not retried)
    - Retry transient errors with backoff up to max_retry_attempts
    - Surface the last error once retries are exhausted
    """

    def __init__(
        self,
        name: str,
        retry_policy: Optional[RetryPolicy] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.name = name
        self.retry_policy = retry_policy or RetryPolicy()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(name)
        self._sleep = sleep

    @classmethod
    def from_options(cls, name: str, options: EmbeddingProcessingOptions, **kwargs) -> "ResiliencePipeline":
        return cls(
            name,
            retry_policy=RetryPolicy(
                max_retry_attempts=options.max_retry_attempts,
                base_delay_seconds=options.retry_base_delay_ms / 1000.0,
            ),
            circuit_breaker=CircuitBreaker(
                name,
                failure_threshold=options.circuit_breaker_failure_threshold,
                break_duration_seconds=options.circuit_breaker_break_duration_seconds,
            ),
            **kwargs
        )

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Call operation until it succeeds, fails permanently, or retries run out.

        Args:
            operation: Zero-argument callable returning a fresh awaitable per attempt

        Returns:
            The operation's result

        Raises:
            CircuitOpenError: If the circuit rejects the call
            Exception: The operation's last error
        """
        attempt = 0
        while True:
            attempt += 1
            self.circuit_breaker.before_call()
            try:
                result = await operation()
            except asyncio.CancelledError:
                self.circuit_breaker.release_trial()
                raise
            except Exception as e:
                if not is_transient(e):
                    self.circuit_breaker.release_trial()
                    raise
                self.circuit_breaker.record_failure()
                if attempt > self.retry_policy.max_retry_attempts:
                    logger.error(f"❌ {self.name}: giving up after {attempt} attempts: {e}")
                    raise
                delay = self.retry_policy.delay_for(attempt)
                logger.warning(
                    f"⚠️ {self.name}: attempt {attempt} failed ({e}), retrying in {delay:.1f}s"
                )
                await self._sleep(delay)
                continue

            self.circuit_breaker.record_success()
            return result
