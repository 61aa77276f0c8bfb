"""
Unit tests for TempChunkStore and ChunkBuffer spilling.

Run: python -m pytest tests/unit/test_temp_storage.py -v
"""
import sys
import tempfile
from pathlib import Path
from unittest import IsolatedAsyncioTestCase

REPO_ROOT = Path(__file__).resolve().parent.parent.parent
sys.path.insert(0, str(REPO_ROOT))

from coderag.core.models import Chunk, compute_hash
from coderag.core.temp_storage import ChunkBuffer, TempChunkStore


def make_chunk(i: int, text: str) -> Chunk:
    return Chunk(
        project_id="proj",
        file_path="a.py",
        start_line=i + 1,
        end_line=i + 1,
        content=text,
        token_count=len(text) // 4 + 1,
        language="python",
        text_hash=compute_hash(text),
        chunk_hash=f"hash{i}",
    )


class TestTempChunkStore(IsolatedAsyncioTestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = TempChunkStore("job-1", root_dir=self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    async def test_write_read_and_cleanup(self):
        await self.store.write_chunk("h1", "def ünïcode(): pass")

        self.assertEqual(self.store.job_dir, Path(self.tmp.name) / "job-1")
        self.assertGreater(self.store.job_usage_bytes(), 0)
        self.assertEqual(await self.store.read_chunk("h1"), "def ünïcode(): pass")
        self.assertEqual(await self.store.read_chunk("h1", delete=True), "def ünïcode(): pass")
        self.assertEqual(self.store.job_usage_bytes(), 0)

        await self.store.write_chunk("h2", "x")
        await self.store.cleanup()
        self.assertFalse(self.store.job_dir.exists())
        self.assertEqual(self.store.job_usage_bytes(), 0)

    def test_free_space(self):
        self.assertGreater(self.store.free_space_bytes(), 0)
        self.assertTrue(self.store.has_free_space(1))


class TestChunkBuffer(IsolatedAsyncioTestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = TempChunkStore("job-2", root_dir=self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    async def test_stays_in_memory_under_limit(self):
        buffer = ChunkBuffer(self.store, max_in_memory_bytes=1_000)
        await buffer.add([make_chunk(0, "a" * 100), make_chunk(1, "b" * 100)])

        self.assertEqual(len(buffer), 2)
        self.assertEqual(buffer.in_memory_bytes, 200)
        self.assertEqual(buffer.spilled_count, 0)

        taken = await buffer.take(1)
        self.assertEqual(taken[0].content, "a" * 100)
        self.assertEqual(buffer.in_memory_bytes, 100)

    async def test_spills_over_limit_and_restores_in_order(self):
        buffer = ChunkBuffer(self.store, max_in_memory_bytes=150)
        chunks = [make_chunk(i, str(i) * 100) for i in range(3)]

        await buffer.add(chunks)

        self.assertEqual(buffer.spilled_count, 3)
        self.assertEqual(buffer.in_memory_bytes, 0)
        self.assertTrue(all(c.content == '' for c in chunks))
        self.assertGreater(self.store.job_usage_bytes(), 0)

        first = await buffer.take(2)
        rest = await buffer.take(10)

        self.assertEqual([c.content for c in first + rest], ["0" * 100, "1" * 100, "2" * 100])
        self.assertEqual(buffer.spilled_count, 0)
        self.assertEqual(len(buffer), 0)
        self.assertEqual(self.store.job_usage_bytes(), 0)

    async def test_explicit_spill_is_idempotent(self):
        buffer = ChunkBuffer(self.store, max_in_memory_bytes=10_000)
        await buffer.add([make_chunk(0, "text")])

        self.assertEqual(await buffer.spill(), 1)
        self.assertEqual(await buffer.spill(), 0)

        await buffer.add([make_chunk(1, "more")])
        taken = await buffer.take(2)
        self.assertEqual([c.content for c in taken], ["text", "more"])

    async def test_clear(self):
        buffer = ChunkBuffer(self.store, max_in_memory_bytes=10)
        await buffer.add([make_chunk(0, "x" * 50)])
        buffer.clear()

        self.assertEqual(len(buffer), 0)
        self.assertEqual(buffer.spilled_count, 0)
        self.assertEqual(buffer.in_memory_bytes, 0)
