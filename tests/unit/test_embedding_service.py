"""
Unit tests for EmbeddingService: sub-batching, dimension correction and normalization.

Run: python -m pytest tests/unit/test_embedding_service.py -v
"""
import math
import sys
from pathlib import Path
from unittest import IsolatedAsyncioTestCase, TestCase

REPO_ROOT = Path(__file__).resolve().parent.parent.parent
sys.path.insert(0, str(REPO_ROOT))

from coderag.core.concurrency import ConcurrencyLimiter
from coderag.core.config import EmbeddingProcessingOptions
from coderag.core.embedding_service import EmbeddingService, fit_dimension, is_valid_vector, l2_normalize
from coderag.core.errors import EmbeddingConnectionError, EmbeddingUnexpectedError
from coderag.core.resilience import CircuitBreaker, ResiliencePipeline, RetryPolicy


class RecordingProvider:
    """Returns vectors from a callback and records each request."""

    provider_name = "fake"
    model_name = "fake-embed"

    def __init__(self, make_vector, dimension=4):
        self.make_vector = make_vector
        self.dimension = dimension
        self.requests = []

    async def embed_batch(self, texts):
        self.requests.append(list(texts))
        return [self.make_vector(text) for text in texts]

    async def aclose(self):
        return None


def build_service(provider, dimension=4, batch_size=16, max_retry_attempts=0):
    options = EmbeddingProcessingOptions(
        provider="hash", dimension=dimension, batch_size=batch_size, max_retry_attempts=max_retry_attempts
    )

    async def no_sleep(_):
        return None

    resilience = ResiliencePipeline(
        'embedding',
        retry_policy=RetryPolicy(max_retry_attempts=max_retry_attempts, jitter=False),
        circuit_breaker=CircuitBreaker('embedding', failure_threshold=100),
        sleep=no_sleep,
    )
    return EmbeddingService(provider, ConcurrencyLimiter(embedding_options=options), options, resilience)


def norm(vector):
    return math.sqrt(sum(v * v for v in vector))


class TestVectorHelpers(TestCase):

    def test_l2_normalize(self):
        self.assertEqual(l2_normalize([3.0, 4.0]), [0.6, 0.8])

    def test_zero_vector_left_unchanged(self):
        self.assertEqual(l2_normalize([0.0, 0.0]), [0.0, 0.0])

    def test_fit_dimension(self):
        self.assertEqual(fit_dimension([1.0, 2.0], 4), [1.0, 2.0, 0.0, 0.0])
        self.assertEqual(fit_dimension([1.0, 2.0, 3.0], 2), [1.0, 2.0])

    def test_is_valid_vector(self):
        self.assertTrue(is_valid_vector([0.1, 2]))
        self.assertFalse(is_valid_vector([]))
        self.assertFalse(is_valid_vector(None))
        self.assertFalse(is_valid_vector([0.1, float('nan')]))
        self.assertFalse(is_valid_vector([float('inf')]))
        self.assertFalse(is_valid_vector([0.1, None]))


class TestEmbeddingService(IsolatedAsyncioTestCase):

    async def test_vectors_are_unit_length(self):
        provider = RecordingProvider(lambda text: [1.0, 2.0, 3.0, 4.0])
        service = build_service(provider)

        vectors = await service.embed_batch(["a", "b"])

        self.assertEqual(len(vectors), 2)
        for vector in vectors:
            self.assertEqual(len(vector), 4)
            self.assertAlmostEqual(norm(vector), 1.0)

    async def test_short_vector_is_zero_padded_with_warning(self):
        provider = RecordingProvider(lambda text: [3.0, 4.0])
        service = build_service(provider, dimension=4)

        with self.assertLogs('coderag.core.embedding_service', level='WARNING') as logs:
            vector = await service.embed("class A {}")

        self.assertEqual(len(vector), 4)
        self.assertAlmostEqual(vector[0], 0.6)
        self.assertAlmostEqual(vector[1], 0.8)
        self.assertEqual(vector[2:], [0.0, 0.0])
        self.assertIn("dimension mismatch", "\n".join(logs.output))

    async def test_long_vector_is_truncated(self):
        provider = RecordingProvider(lambda text: [1.0] * 8)
        service = build_service(provider, dimension=4)

        vector = await service.embed("x")

        self.assertEqual(len(vector), 4)
        self.assertAlmostEqual(norm(vector), 1.0)

    async def test_invalid_vector_becomes_none(self):
        provider = RecordingProvider(lambda text: [float('nan')] * 4 if text == "bad" else [1.0, 0.0, 0.0, 0.0])
        service = build_service(provider)

        vectors = await service.embed_batch(["good", "bad", "good again"])

        self.assertIsNotNone(vectors[0])
        self.assertIsNone(vectors[1])
        self.assertIsNotNone(vectors[2])

    async def test_batches_are_split_and_order_preserved(self):
        provider = RecordingProvider(lambda text: [float(int(text)) + 1.0, 1.0, 0.0, 0.0])
        service = build_service(provider, batch_size=3)
        texts = [str(i) for i in range(8)]

        vectors = await service.embed_batch(texts)

        self.assertEqual(sorted(len(r) for r in provider.requests), [2, 3, 3])
        ratios = [v[0] / v[1] for v in vectors]
        for i, ratio in enumerate(ratios):
            self.assertAlmostEqual(ratio, i + 1.0)

    async def test_whitespace_text_gets_zero_vector_without_call(self):
        provider = RecordingProvider(lambda text: [1.0, 0.0, 0.0, 0.0])
        service = build_service(provider)

        vectors = await service.embed_batch(["   ", "real"])

        self.assertEqual(vectors[0], [0.0, 0.0, 0.0, 0.0])
        self.assertEqual(provider.requests, [["real"]])

    async def test_empty_batch(self):
        provider = RecordingProvider(lambda text: [1.0, 0.0, 0.0, 0.0])
        service = build_service(provider)

        self.assertEqual(await service.embed_batch([]), [])
        self.assertEqual(provider.requests, [])

    async def test_count_mismatch_is_unexpected(self):
        class ShortProvider(RecordingProvider):
            async def embed_batch(self, texts):
                return [[1.0, 0.0, 0.0, 0.0]]

        service = build_service(ShortProvider(None))
        with self.assertRaises(EmbeddingUnexpectedError):
            await service.embed_batch(["a", "b"])

    async def test_transient_failure_is_retried(self):
        calls = []

        class FlakyProvider(RecordingProvider):
            async def embed_batch(self, texts):
                calls.append(texts)
                if len(calls) == 1:
                    raise EmbeddingConnectionError("refused")
                return [[1.0, 0.0, 0.0, 0.0] for _ in texts]

        service = build_service(FlakyProvider(None), max_retry_attempts=2)

        vectors = await service.embed_batch(["a"])

        self.assertEqual(len(calls), 2)
        self.assertEqual(vectors, [[1.0, 0.0, 0.0, 0.0]])

    async def test_exhausted_retries_raise(self):
        class DownProvider(RecordingProvider):
            async def embed_batch(self, texts):
                raise EmbeddingConnectionError("refused")

        service = build_service(DownProvider(None), max_retry_attempts=1)
        with self.assertRaises(EmbeddingConnectionError):
            await service.embed_batch(["a", "b"])

    async def test_slots_are_released(self):
        provider = RecordingProvider(lambda text: [1.0, 0.0, 0.0, 0.0])
        service = build_service(provider, batch_size=1)

        await service.embed_batch(["a", "b", "c"])

        self.assertEqual(service.limiter.embedding_pool.held, 0)
        self.assertLessEqual(service.limiter.embedding_pool.peak, 4)
