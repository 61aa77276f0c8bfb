"""
Temp-File Chunk Storage

Per-job scratch directory used to move chunk text out of memory under
pressure. ChunkBuffer holds the chunks waiting to be embedded and spills
their text to a TempChunkStore once it grows past its byte limit (or when
the memory monitor asks it to).
"""

import asyncio
import logging
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional, Set

import psutil

from .models import Chunk

logger = logging.getLogger(__name__)


class TempChunkStore:
    """
    Chunk text on local disk, one file per chunk hash under <root>/<job_id>/.

    Responsibilities:
    - Write and read chunk text off the event loop
    - Report the job's disk usage and the volume's free space
    - Remove the job directory when the job ends
    """

    def __init__(self, job_id: str, root_dir: Optional[str] = None):
        base = Path(root_dir) if root_dir else Path(tempfile.gettempdir()) / 'coderag'
        self.job_dir = base / job_id
        self._bytes_written = 0

    def _path_for(self, chunk_hash: str) -> Path:
        return self.job_dir / f"{chunk_hash}.txt"

    def _write(self, chunk_hash: str, text: str) -> int:
        self.job_dir.mkdir(parents=True, exist_ok=True)
        data = text.encode('utf-8')
        self._path_for(chunk_hash).write_bytes(data)
        return len(data)

    async def write_chunk(self, chunk_hash: str, text: str) -> None:
        self._bytes_written += await asyncio.to_thread(self._write, chunk_hash, text)

    async def read_chunk(self, chunk_hash: str, delete: bool = False) -> str:
        path = self._path_for(chunk_hash)
        data = await asyncio.to_thread(path.read_bytes)
        if delete:
            await asyncio.to_thread(path.unlink, True)
            self._bytes_written = max(0, self._bytes_written - len(data))
        return data.decode('utf-8')

    def job_usage_bytes(self) -> int:
        if not self.job_dir.exists():
            return 0
        return sum(p.stat().st_size for p in self.job_dir.iterdir() if p.is_file())

    def free_space_bytes(self) -> int:
        target = self.job_dir if self.job_dir.exists() else self.job_dir.parent
        while not target.exists() and target != target.parent:
            target = target.parent
        return psutil.disk_usage(str(target)).free

    def has_free_space(self, required_bytes: int) -> bool:
        return self.free_space_bytes() >= required_bytes

    async def cleanup(self) -> None:
        if self.job_dir.exists():
            await asyncio.to_thread(shutil.rmtree, self.job_dir, True)
            logger.debug(f"🧹 Removed temp directory {self.job_dir}")
        self._bytes_written = 0


class ChunkBuffer:
    """
    FIFO of chunks awaiting embedding with a cap on in-memory text.

    Spilled chunks keep their metadata in memory; their text is restored
    from the temp store when they are taken.
    """

    def __init__(self, store: TempChunkStore, max_in_memory_bytes: int):
        self.store = store
        self.max_in_memory_bytes = max_in_memory_bytes
        self._items: List[Chunk] = []
        self._spilled: Set[str] = set()
        self._in_memory_bytes = 0

    def __len__(self) -> int:
        return len(self._items)

    @property
    def in_memory_bytes(self) -> int:
        return self._in_memory_bytes

    @property
    def spilled_count(self) -> int:
        return len(self._spilled)

    async def add(self, chunks: List[Chunk]) -> None:
        for chunk in chunks:
            self._items.append(chunk)
            self._in_memory_bytes += len(chunk.content.encode('utf-8'))
        if self._in_memory_bytes > self.max_in_memory_bytes:
            await self.spill()

    async def spill(self) -> int:
        """Move all in-memory chunk text to disk. Returns the number of chunks spilled."""
        spilled = 0
        for chunk in self._items:
            if chunk.chunk_hash in self._spilled:
                continue
            await self.store.write_chunk(chunk.chunk_hash, chunk.content)
            chunk.content = ''
            self._spilled.add(chunk.chunk_hash)
            spilled += 1
        if spilled:
            logger.info(f"💾 Spilled {spilled} chunks ({self._in_memory_bytes} bytes) to {self.store.job_dir}")
        self._in_memory_bytes = 0
        return spilled

    async def take(self, count: int) -> List[Chunk]:
        """Remove and return up to count chunks in order, with their text restored."""
        taken, self._items = self._items[:count], self._items[count:]
        for chunk in taken:
            if chunk.chunk_hash in self._spilled:
                chunk.content = await self.store.read_chunk(chunk.chunk_hash, delete=True)
                self._spilled.discard(chunk.chunk_hash)
            else:
                self._in_memory_bytes -= len(chunk.content.encode('utf-8'))
        self._in_memory_bytes = max(0, self._in_memory_bytes)
        return taken

    def clear(self) -> None:
        self._items.clear()
        self._spilled.clear()
        self._in_memory_bytes = 0
