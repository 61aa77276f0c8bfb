"""
File Discovery and Reading

Walks a repository in a deterministic order and reads source files for
chunking. Discovery skips configured directories, excluded files (lock
files, generated code), oversized files and binaries.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..services.content_filter import ContentFilter, content_filter
from .config import EXTENSION_MAPPING, FileDiscoveryOptions, detect_language

logger = logging.getLogger(__name__)

BINARY_SNIFF_BYTES = 8192


@dataclass
class SourceFile:
    """A discovered file; relative_path uses forward slashes and is the chunk's file_path."""
    path: Path
    relative_path: str
    size_bytes: int
    language: str


def is_binary(data: bytes) -> bool:
    return b'\x00' in data[:BINARY_SNIFF_BYTES]


class FileProcessor:
    """
    Repository file discovery and reading.

    Responsibilities:
    - List ingestible files sorted by relative path (stable resume cursor)
    - Skip configured directories, excluded and oversized files
    - Read file text off the event loop, skipping binaries
    """

    def __init__(
        self,
        options: Optional[FileDiscoveryOptions] = None,
        file_filter: Optional[ContentFilter] = None
    ):
        self.options = options or FileDiscoveryOptions()
        self.file_filter = file_filter or content_filter

    def discover_files(self, repo_path: Path) -> List[SourceFile]:
        """
        Discover ingestible files under repo_path.

        Args:
            repo_path: Path to repository root

        Returns:
            Files sorted by relative path; the same tree always yields the same list
        """
        repo_path = Path(repo_path)
        if not repo_path.is_dir():
            raise FileNotFoundError(f"Repository path not found: {repo_path}")

        files = []
        for path in repo_path.rglob('*'):
            if not path.is_file():
                continue

            relative = path.relative_to(repo_path)
            if any(part in self.options.skip_dirs for part in relative.parts[:-1]):
                continue

            relative_path = relative.as_posix()
            if not self.file_filter.should_include_file(relative_path):
                logger.debug(f"⏭️  Skipping excluded file: {relative_path}")
                continue

            if not self.options.include_unknown_extensions and path.suffix.lower() not in EXTENSION_MAPPING:
                continue

            try:
                size = path.stat().st_size
            except OSError as e:
                logger.warning(f"⚠️ Cannot stat {relative_path}: {e}")
                continue

            if size > self.options.max_file_size:
                logger.debug(f"⏭️  Skipping large file: {relative_path} ({size} bytes)")
                continue

            files.append(SourceFile(
                path=path,
                relative_path=relative_path,
                size_bytes=size,
                language=detect_language(relative_path),
            ))

        files.sort(key=lambda f: f.relative_path)
        logger.info(f"📁 Discovered {len(files)} files in {repo_path}")
        return files

    async def read_file(self, source: SourceFile) -> Optional[str]:
        """
        Read a file as UTF-8 text in a worker thread.

        Returns:
            File content, or None for binary or unreadable files
        """
        try:
            data = await asyncio.to_thread(source.path.read_bytes)
        except OSError as e:
            logger.warning(f"⚠️ Cannot read {source.relative_path}: {e}")
            return None

        if is_binary(data):
            logger.debug(f"⏭️  Skipping binary file: {source.relative_path}")
            return None

        return data.decode('utf-8', errors='replace')
