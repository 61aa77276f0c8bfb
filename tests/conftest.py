"""
Pytest fixtures for ingestion core tests.

Use these to test chunking, embedding and indexing flow without Docker or live APIs.
"""
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Ensure the package is importable from repo root
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from coderag.core.config import IngestionConfig


def offline_config(tmp_path: Path, dimension: int = 32) -> IngestionConfig:
    """Config wired to the hash provider and the in-memory index."""
    config = IngestionConfig()
    config.embedding.provider = "hash"
    config.embedding.dimension = dimension
    config.embedding.max_retry_attempts = 0
    config.vector_db.backend = "memory"
    config.worker.temp_dir = str(tmp_path / "scratch")
    config.worker.min_free_disk_space_bytes = 0
    config.worker.checkpoint_interval_files = 1
    return config


@pytest.fixture
def ingestion_config(tmp_path):
    """Offline IngestionConfig rooted in the test's tmp_path."""
    return offline_config(tmp_path)


@pytest.fixture
def quiet_memory_monitor():
    """MemoryMonitor stand-in that never reports pressure."""
    monitor = MagicMock()
    monitor.check_disk_admission.return_value = None
    monitor.check = AsyncMock(return_value=None)
    return monitor
