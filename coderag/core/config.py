"""
Ingestion Configuration

Option groups and loader for the ingestion core.
Settings are read from config/coderag.yaml (or CODERAG_CONFIG env var), then
overridden by environment variables (loaded from .env with python-dotenv).
"""

import dataclasses
import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Set

import yaml
from dotenv import load_dotenv

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

GIB = 1024 * 1024 * 1024
MIB = 1024 * 1024


# ===== LANGUAGE DETECTION =====

EXTENSION_MAPPING = {
    '.cs': 'csharp',
    '.ts': 'typescript',
    '.tsx': 'typescript',
    '.js': 'javascript',
    '.jsx': 'javascript',
    '.py': 'python',
    '.java': 'java',
    '.go': 'go',
    '.rs': 'rust',
    '.cpp': 'cpp',
    '.cc': 'cpp',
    '.cxx': 'cpp',
    '.c': 'c',
    '.h': 'c-header',
    '.hpp': 'c-header',
    '.md': 'markdown',
    '.json': 'json',
    '.xml': 'xml',
    '.yaml': 'yaml',
    '.yml': 'yaml',
}


def detect_language(file_path: str) -> str:
    """Map a file path to a language name by extension ('text' when unknown)."""
    return EXTENSION_MAPPING.get(Path(file_path).suffix.lower(), 'text')


# ===== OPTION GROUPS =====

@dataclass
class ChunkerOptions:
    """Chunk sizing, all values in estimated tokens."""
    max_chunk_tokens: int = 512
    min_chunk_tokens: int = 20
    overlap_tokens: int = 64
    use_semantic_splitting: bool = True


@dataclass
class ConcurrencyOptions:
    max_concurrent_embeddings: int = 4
    max_concurrent_reasoning: int = 2
    max_concurrent_file_reads: int = 8


@dataclass
class EmbeddingProcessingOptions:
    """Embedding provider selection plus rate limit and resilience settings."""
    provider: str = "ollama"  # ollama | openai | hash
    model: str = "nomic-embed-text"
    dimension: int = 768
    base_url: Optional[str] = None  # Provider default when unset
    api_key: Optional[str] = None

    batch_size: int = 16  # Texts per request to the inference service
    tokens_per_minute: int = 150_000
    rate_limit_wait_seconds: float = 5.0

    max_retry_attempts: int = 3
    retry_base_delay_ms: int = 1000
    circuit_breaker_failure_threshold: int = 5
    circuit_breaker_break_duration_seconds: float = 30.0
    timeout_seconds: float = 60.0


@dataclass
class LLMOptions:
    provider: str = "ollama"
    model: str = "qwen2.5-coder:7b"
    base_url: str = "http://localhost:11434"
    temperature: float = 0.2
    max_tokens: int = 2048
    timeout_seconds: float = 120.0


@dataclass
class VectorDbOptions:
    backend: str = "qdrant"  # qdrant | memory
    url: str = "http://localhost:6333"
    api_key: Optional[str] = None
    collection_prefix: str = "coderag"
    upsert_batch_size: int = 100
    timeout_seconds: float = 30.0

    @property
    def collection_name(self) -> str:
        return f"{self.collection_prefix}_vectors"


@dataclass
class WorkerProcessingOptions:
    """Checkpoint cadence, disk gates and batch sizes for ingestion jobs."""
    index_batch_size: int = 64  # Chunks embedded and upserted per batch
    checkpoint_interval_files: int = 50
    checkpoint_interval_seconds: float = 30.0
    min_free_disk_space_bytes: int = 1 * GIB
    per_job_disk_quota_bytes: int = 2 * GIB
    dead_letter_threshold: int = 3
    max_in_memory_buffer_bytes: int = 50 * MIB
    temp_dir: Optional[str] = None


@dataclass
class MemoryManagementOptions:
    max_worker_memory_mb: int = 2048
    warning_threshold_percent: float = 70.0
    pause_threshold_percent: float = 85.0
    check_interval_seconds: float = 5.0
    max_pause_seconds: float = 600.0


@dataclass
class FileDiscoveryOptions:
    skip_dirs: Set[str] = field(default_factory=lambda: {
        '.git', 'node_modules', '__pycache__', '.pytest_cache', '.venv',
        'venv', 'target', 'dist', 'build', 'bin', 'obj',
    })
    max_file_size: int = 500_000  # 500KB max file size
    include_unknown_extensions: bool = False


@dataclass
class QuotaDefaults:
    """Defaults for a newly created organization quota."""
    credits: float = 100.0
    max_concurrent_jobs: int = 5
    max_storage_bytes: int = 10 * GIB
    max_tokens_per_period: int = 10_000_000
    period_days: int = 30
    embedding_cost_per_1k_tokens: float = 0.0001
    tokens_per_byte: float = 0.25


@dataclass
class IngestionConfig:
    """Complete configuration for the ingestion pipeline."""
    chunker: ChunkerOptions = field(default_factory=ChunkerOptions)
    concurrency: ConcurrencyOptions = field(default_factory=ConcurrencyOptions)
    embedding: EmbeddingProcessingOptions = field(default_factory=EmbeddingProcessingOptions)
    llm: LLMOptions = field(default_factory=LLMOptions)
    vector_db: VectorDbOptions = field(default_factory=VectorDbOptions)
    worker: WorkerProcessingOptions = field(default_factory=WorkerProcessingOptions)
    memory: MemoryManagementOptions = field(default_factory=MemoryManagementOptions)
    discovery: FileDiscoveryOptions = field(default_factory=FileDiscoveryOptions)
    quota: QuotaDefaults = field(default_factory=QuotaDefaults)
    checkpoint_file: Optional[Path] = None  # JSON checkpoint store; in-memory when unset

    def validate(self) -> None:
        """
        Check cross-field constraints.

        Raises:
            ConfigurationError: Naming the first offending key
        """
        c = self.chunker
        if c.min_chunk_tokens < 1:
            raise ConfigurationError("chunker.min_chunk_tokens must be >= 1")
        if c.max_chunk_tokens < c.min_chunk_tokens:
            raise ConfigurationError("chunker.max_chunk_tokens must be >= chunker.min_chunk_tokens")
        if c.overlap_tokens < 0 or c.overlap_tokens >= c.max_chunk_tokens:
            raise ConfigurationError("chunker.overlap_tokens must be in [0, max_chunk_tokens)")

        for name in ('max_concurrent_embeddings', 'max_concurrent_reasoning', 'max_concurrent_file_reads'):
            if getattr(self.concurrency, name) < 1:
                raise ConfigurationError(f"concurrency.{name} must be >= 1")

        e = self.embedding
        if e.provider not in ('ollama', 'openai', 'hash'):
            raise ConfigurationError(f"embedding.provider '{e.provider}' is not one of ollama, openai, hash")
        if e.dimension < 1:
            raise ConfigurationError("embedding.dimension must be >= 1")
        if e.batch_size < 1:
            raise ConfigurationError("embedding.batch_size must be >= 1")
        if e.tokens_per_minute < 1:
            raise ConfigurationError("embedding.tokens_per_minute must be >= 1")
        if e.max_retry_attempts < 0:
            raise ConfigurationError("embedding.max_retry_attempts must be >= 0")
        if e.circuit_breaker_failure_threshold < 1:
            raise ConfigurationError("embedding.circuit_breaker_failure_threshold must be >= 1")

        if self.vector_db.backend not in ('qdrant', 'memory'):
            raise ConfigurationError(f"vector_db.backend '{self.vector_db.backend}' is not one of qdrant, memory")
        if not 1 <= self.vector_db.upsert_batch_size <= 100:
            raise ConfigurationError("vector_db.upsert_batch_size must be in [1, 100]")

        w = self.worker
        if w.index_batch_size < 1:
            raise ConfigurationError("worker.index_batch_size must be >= 1")
        if w.checkpoint_interval_files < 1:
            raise ConfigurationError("worker.checkpoint_interval_files must be >= 1")
        if w.dead_letter_threshold < 1:
            raise ConfigurationError("worker.dead_letter_threshold must be >= 1")

        m = self.memory
        if not 0 < m.warning_threshold_percent <= m.pause_threshold_percent <= 100:
            raise ConfigurationError(
                "memory thresholds must satisfy 0 < warning_threshold_percent <= pause_threshold_percent <= 100"
            )


# ===== LOADING =====

# Environment variable -> (section, key)
ENV_OVERRIDES = {
    'EMBEDDING_PROVIDER': ('embedding', 'provider'),
    'EMBEDDING_MODEL': ('embedding', 'model'),
    'EMBEDDING_DIMENSION': ('embedding', 'dimension'),
    'EMBEDDING_BASE_URL': ('embedding', 'base_url'),
    'OPENAI_API_KEY': ('embedding', 'api_key'),
    'LLM_MODEL': ('llm', 'model'),
    'OLLAMA_URL': ('llm', 'base_url'),
    'VECTOR_BACKEND': ('vector_db', 'backend'),
    'QDRANT_URL': ('vector_db', 'url'),
    'QDRANT_API_KEY': ('vector_db', 'api_key'),
    'CODERAG_TEMP_DIR': ('worker', 'temp_dir'),
}


def _resolve_config_path(config_path: Optional[Path] = None) -> Path:
    """
    Resolve the configuration file path.

    Priority:
    1. Explicit config_path parameter
    2. CODERAG_CONFIG environment variable
    3. Default: config/coderag.yaml (relative to project root)
    """
    if config_path:
        return Path(config_path)

    env_path = os.getenv('CODERAG_CONFIG')
    if env_path:
        return Path(env_path)

    project_root = Path(__file__).parent.parent.parent
    return project_root / 'config' / 'coderag.yaml'


def _coerce(value: Any, current: Any, key: str) -> Any:
    """Convert a raw YAML/env value to the type of the current default."""
    if value is None:
        return None
    try:
        if isinstance(current, bool):
            if isinstance(value, str):
                return value.strip().lower() in ('1', 'true', 'yes', 'on')
            return bool(value)
        if isinstance(current, int):
            return int(value)
        if isinstance(current, float):
            return float(value)
        if isinstance(current, set):
            if isinstance(value, str):
                value = [v.strip() for v in value.split(',') if v.strip()]
            return set(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for '{key}': {value!r} ({e})")
    return value


def _apply_section(options: Any, data: Dict[str, Any], section: str) -> None:
    if not isinstance(data, dict):
        raise ConfigurationError(f"Section '{section}' must be a mapping")

    known = {f.name for f in dataclasses.fields(options)}
    for key, value in data.items():
        if key not in known:
            raise ConfigurationError(f"Unknown configuration key '{section}.{key}'")
        current = getattr(options, key)
        setattr(options, key, _coerce(value, current, f"{section}.{key}"))


def load_config(config_path: Optional[Path] = None, use_env: bool = True) -> IngestionConfig:
    """
    Load ingestion configuration.

    Args:
        config_path: Optional explicit path to a YAML file
        use_env: Apply environment variable overrides (after load_dotenv)

    Returns:
        Validated IngestionConfig

    Raises:
        ConfigurationError: If the YAML is malformed or a value is invalid
    """
    config = IngestionConfig()
    config_file = _resolve_config_path(config_path)

    if config_file.exists():
        logger.info(f"📖 Loading configuration from {config_file}")
        try:
            with open(config_file, 'r') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML file {config_file}: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"Invalid YAML structure in {config_file}: expected a dictionary")

        for section, values in data.items():
            if section == 'checkpoint_file':
                config.checkpoint_file = Path(values) if values else None
                continue
            if not hasattr(config, section):
                raise ConfigurationError(f"Unknown configuration section '{section}'")
            _apply_section(getattr(config, section), values or {}, section)
    elif config_path:
        raise ConfigurationError(f"Configuration file not found: {config_file}")
    else:
        logger.debug(f"No configuration file at {config_file}, using defaults")

    if use_env:
        load_dotenv()
        for env_name, (section, key) in ENV_OVERRIDES.items():
            raw = os.getenv(env_name)
            if raw:
                options = getattr(config, section)
                setattr(options, key, _coerce(raw, getattr(options, key), f"{section}.{key}"))
        checkpoint_env = os.getenv('CODERAG_CHECKPOINT_FILE')
        if checkpoint_env:
            config.checkpoint_file = Path(checkpoint_env)

    config.validate()
    return config
