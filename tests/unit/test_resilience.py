"""
Unit tests for retry with backoff and the circuit breaker.

Run: python -m pytest tests/unit/test_resilience.py -v
"""
import sys
from pathlib import Path
from unittest import IsolatedAsyncioTestCase, TestCase

REPO_ROOT = Path(__file__).resolve().parent.parent.parent
sys.path.insert(0, str(REPO_ROOT))

from coderag.core.config import EmbeddingProcessingOptions
from coderag.core.errors import (
    CircuitOpenError,
    EmbeddingConnectionError,
    EmbeddingUnexpectedError,
)
from coderag.core.resilience import CircuitBreaker, CircuitState, ResiliencePipeline, RetryPolicy


class FakeClock:

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)


class FlakyOperation:
    """Fails with the given errors in order, then returns 'ok'."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestRetryPolicy(TestCase):

    def test_exponential_delays_without_jitter(self):
        policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=5.0, jitter=False)
        self.assertEqual([policy.delay_for(a) for a in range(1, 5)], [1.0, 2.0, 4.0, 5.0])

    def test_jitter_adds_at_most_a_quarter(self):
        policy = RetryPolicy(base_delay_seconds=2.0)
        for _ in range(20):
            delay = policy.delay_for(1)
            self.assertGreaterEqual(delay, 2.0)
            self.assertLessEqual(delay, 2.5)


class TestResiliencePipeline(IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.pipeline = ResiliencePipeline(
            'embedding',
            retry_policy=RetryPolicy(max_retry_attempts=3, jitter=False),
            circuit_breaker=CircuitBreaker('embedding', failure_threshold=10, clock=self.clock),
            sleep=self.clock.sleep,
        )

    async def test_transient_errors_are_retried(self):
        operation = FlakyOperation(EmbeddingConnectionError("refused"), EmbeddingConnectionError("refused"))

        result = await self.pipeline.execute(operation)

        self.assertEqual(result, "ok")
        self.assertEqual(operation.calls, 3)
        self.assertEqual(self.clock.sleeps, [1.0, 2.0])

    async def test_non_transient_errors_are_not_retried(self):
        operation = FlakyOperation(EmbeddingUnexpectedError("bad request"))

        with self.assertRaises(EmbeddingUnexpectedError):
            await self.pipeline.execute(operation)
        self.assertEqual(operation.calls, 1)
        self.assertEqual(self.clock.sleeps, [])

    async def test_last_error_surfaces_after_retries(self):
        operation = FlakyOperation(*[EmbeddingConnectionError(f"attempt {i}") for i in range(1, 6)])

        with self.assertRaises(EmbeddingConnectionError) as ctx:
            await self.pipeline.execute(operation)

        self.assertEqual(operation.calls, 4)
        self.assertEqual(str(ctx.exception), "attempt 4")

    async def test_per_error_transient_override(self):
        operation = FlakyOperation(EmbeddingUnexpectedError("overloaded", transient=True))
        self.assertEqual(await self.pipeline.execute(operation), "ok")
        self.assertEqual(operation.calls, 2)

    def test_from_options(self):
        options = EmbeddingProcessingOptions(
            max_retry_attempts=5,
            retry_base_delay_ms=250,
            circuit_breaker_failure_threshold=7,
            circuit_breaker_break_duration_seconds=12.0,
        )
        pipeline = ResiliencePipeline.from_options('embedding', options)

        self.assertEqual(pipeline.retry_policy.max_retry_attempts, 5)
        self.assertEqual(pipeline.retry_policy.base_delay_seconds, 0.25)
        self.assertEqual(pipeline.circuit_breaker.failure_threshold, 7)
        self.assertEqual(pipeline.circuit_breaker.break_duration_seconds, 12.0)


class TestCircuitBreaker(IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.breaker = CircuitBreaker('index', failure_threshold=3, break_duration_seconds=30.0, clock=self.clock)
        self.pipeline = ResiliencePipeline(
            'index',
            retry_policy=RetryPolicy(max_retry_attempts=0),
            circuit_breaker=self.breaker,
            sleep=self.clock.sleep,
        )

    async def _fail_once(self):
        with self.assertRaises(EmbeddingConnectionError):
            await self.pipeline.execute(FlakyOperation(EmbeddingConnectionError("down")))

    async def test_opens_after_threshold_and_rejects_without_calling(self):
        for _ in range(3):
            await self._fail_once()
        self.assertEqual(self.breaker.state, CircuitState.OPEN)

        operation = FlakyOperation()
        with self.assertRaises(CircuitOpenError) as ctx:
            await self.pipeline.execute(operation)

        self.assertEqual(operation.calls, 0)
        self.assertAlmostEqual(ctx.exception.retry_after_seconds, 30.0)

    async def test_half_open_trial_closes_on_success(self):
        for _ in range(3):
            await self._fail_once()

        self.clock.now = 30.0
        self.assertEqual(self.breaker.state, CircuitState.HALF_OPEN)

        self.assertEqual(await self.pipeline.execute(FlakyOperation()), "ok")
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)

    async def test_failed_trial_reopens(self):
        for _ in range(3):
            await self._fail_once()

        self.clock.now = 31.0
        await self._fail_once()

        self.assertEqual(self.breaker.state, CircuitState.OPEN)
        with self.assertRaises(CircuitOpenError):
            await self.pipeline.execute(FlakyOperation())

    def test_only_one_trial_at_a_time(self):
        for _ in range(3):
            self.breaker.record_failure()
        self.clock.now = 30.0

        self.breaker.before_call()
        with self.assertRaises(CircuitOpenError):
            self.breaker.before_call()

        self.breaker.release_trial()
        self.breaker.before_call()

    async def test_success_resets_failure_count(self):
        await self._fail_once()
        await self._fail_once()
        await self.pipeline.execute(FlakyOperation())
        await self._fail_once()
        await self._fail_once()

        self.assertEqual(self.breaker.state, CircuitState.CLOSED)
