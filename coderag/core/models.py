"""
Domain Models for Code Ingestion

Chunk, JobCheckpoint and OrganizationQuota records plus the content hashing
helpers that make chunk identity deterministic.
"""

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import CheckpointStateError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ===== HASHING =====

def compute_hash(text: str) -> str:
    """SHA-256 hex digest of text (UTF-8)."""
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


def compute_chunk_hash(
    project_id: str,
    file_path: str,
    start_line: int,
    end_line: int,
    text_hash: str
) -> str:
    """
    Content address of a chunk.

    Stable for the same project, path, line range and content, so re-ingesting
    an unchanged file yields the same hashes.
    """
    return compute_hash(f"{project_id}:{file_path}:{start_line}:{end_line}:{text_hash}")


# ===== CHUNK =====

@dataclass
class Chunk:
    """Contiguous, content-addressed unit of source text (1-based inclusive lines)."""
    project_id: str
    file_path: str
    start_line: int
    end_line: int
    content: str
    token_count: int
    language: str
    text_hash: str
    chunk_hash: str
    semantic_type: Optional[str] = None
    semantic_name: Optional[str] = None
    namespace: Optional[str] = None
    chunk_index: int = 0
    total_chunks: int = 1
    embedding: Optional[List[float]] = None
    embedding_model: Optional[str] = None
    embedding_generated_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if self.start_line < 1:
            raise ValueError(f"start_line must be >= 1 (got {self.start_line})")
        if self.start_line > self.end_line:
            raise ValueError(
                f"start_line {self.start_line} is after end_line {self.end_line} in {self.file_path}"
            )

    @property
    def line_count(self) -> int:
        return self.end_line - self.start_line + 1

    def set_embedding(self, vector: List[float], model: str) -> None:
        self.embedding = vector
        self.embedding_model = model
        self.embedding_generated_at = utcnow()

    def to_payload(self) -> Dict[str, Any]:
        """Metadata stored alongside the vector in the index."""
        return {
            'project_id': self.project_id,
            'file_path': self.file_path,
            'start_line': self.start_line,
            'end_line': self.end_line,
            'language': self.language,
            'semantic_type': self.semantic_type,
            'semantic_name': self.semantic_name,
            'namespace': self.namespace,
            'chunk_index': self.chunk_index,
            'total_chunks': self.total_chunks,
            'chunk_hash': self.chunk_hash,
            'token_count': self.token_count,
            'embedding_model': self.embedding_model,
            'content_preview': self.content[:200],
        }


# ===== JOB CHECKPOINT =====

class JobPhase(Enum):
    PENDING = "pending"
    EXTRACTING = "extracting"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    INDEXING = "indexing"
    COMPLETED = "completed"
    FAILED = "failed"


class CheckpointStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"


# Forward moves of the work loop. FAILED is reachable from every non-terminal
# phase and is handled separately.
PHASE_TRANSITIONS = {
    JobPhase.PENDING: {JobPhase.EXTRACTING},
    JobPhase.EXTRACTING: {JobPhase.CHUNKING, JobPhase.COMPLETED},
    JobPhase.CHUNKING: {JobPhase.EMBEDDING, JobPhase.COMPLETED},
    JobPhase.EMBEDDING: {JobPhase.INDEXING},
    JobPhase.INDEXING: {JobPhase.EMBEDDING, JobPhase.CHUNKING, JobPhase.COMPLETED},
    JobPhase.COMPLETED: set(),
    JobPhase.FAILED: {JobPhase.PENDING},
}

ACTIVE_STATUSES = (CheckpointStatus.PENDING, CheckpointStatus.IN_PROGRESS)


@dataclass
class JobCheckpoint:
    """
    Resumable progress record for one ingestion job.

    Responsibilities:
    - Enforce the phase state machine
    - Keep counters monotonic within a job
    - Track the resume cursor (last committed file index and chunk offset)
    - Track retries and dead-lettering
    """
    project_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    organization_id: Optional[str] = None
    phase: JobPhase = JobPhase.PENDING
    status: CheckpointStatus = CheckpointStatus.PENDING

    last_processed_file_index: int = -1
    last_processed_chunk_offset: int = 0

    total_files: int = 0
    files_processed: int = 0
    chunks_indexed: int = 0
    embeddings_created: int = 0
    chunks_skipped: int = 0
    tokens_processed: int = 0
    estimated_total_tokens: int = 0

    error_message: Optional[str] = None
    error_classification: Optional[str] = None
    retry_count: int = 0
    serialized_state: Optional[str] = None

    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_checkpoint_at: Optional[datetime] = None

    # ----- state machine -----

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return not self.is_active

    def transition_to(self, phase: JobPhase) -> None:
        """
        Move to another phase.

        Raises:
            CheckpointStateError: If the move is not allowed from the current phase
        """
        if phase == self.phase:
            return
        if phase == JobPhase.FAILED:
            if self.phase in (JobPhase.COMPLETED, JobPhase.FAILED):
                raise CheckpointStateError(f"Cannot fail a job in phase {self.phase.value}")
        elif phase not in PHASE_TRANSITIONS[self.phase]:
            raise CheckpointStateError(
                f"Invalid phase transition {self.phase.value} -> {phase.value} for job {self.id}"
            )
        self.phase = phase
        self._touch()

    def start_processing(self) -> None:
        if self.status != CheckpointStatus.PENDING:
            raise CheckpointStateError(f"Job {self.id} is {self.status.value}, expected pending")
        self.transition_to(JobPhase.EXTRACTING)
        self.status = CheckpointStatus.IN_PROGRESS
        self.started_at = self.started_at or utcnow()

    def restart_phase_cycle(self) -> None:
        """Re-enter EXTRACTING for a job found in progress after a restart."""
        if self.status != CheckpointStatus.IN_PROGRESS:
            raise CheckpointStateError(f"Job {self.id} is {self.status.value}, expected in_progress")
        self.phase = JobPhase.EXTRACTING
        self._touch()

    def mark_completed(self) -> None:
        self.transition_to(JobPhase.COMPLETED)
        self.status = CheckpointStatus.COMPLETED
        self.completed_at = utcnow()
        self.error_message = None
        self.error_classification = None

    def mark_failed(self, message: str, classification: Optional[str] = None) -> None:
        self.transition_to(JobPhase.FAILED)
        self.status = CheckpointStatus.FAILED
        self.error_message = message
        self.error_classification = classification
        self.retry_count += 1

    def can_retry(self, max_retries: int) -> bool:
        return self.status == CheckpointStatus.FAILED and self.retry_count < max_retries

    def mark_for_retry(self, max_retries: int) -> None:
        """Failed -> Pending, keeping the resume cursor and counters."""
        if not self.can_retry(max_retries):
            raise CheckpointStateError(
                f"Job {self.id} cannot be retried (status={self.status.value}, "
                f"retries={self.retry_count}/{max_retries})"
            )
        self.transition_to(JobPhase.PENDING)
        self.status = CheckpointStatus.PENDING
        self.error_message = None
        self.error_classification = None

    def mark_dead_lettered(self) -> None:
        if self.status != CheckpointStatus.FAILED:
            raise CheckpointStateError(f"Only failed jobs can be dead-lettered (job {self.id})")
        self.status = CheckpointStatus.DEAD_LETTERED
        self._touch()

    # ----- progress -----

    def record_progress(
        self,
        file_index: Optional[int] = None,
        chunk_offset: Optional[int] = None,
        files: int = 0,
        chunks_indexed: int = 0,
        embeddings: int = 0,
        chunks_skipped: int = 0,
        tokens: int = 0
    ) -> None:
        """
        Advance counters and the resume cursor.

        Raises:
            CheckpointStateError: If a delta is negative or the cursor moves backwards
        """
        if min(files, chunks_indexed, embeddings, chunks_skipped, tokens) < 0:
            raise CheckpointStateError("Progress counters cannot decrease")

        if file_index is not None:
            if file_index < self.last_processed_file_index:
                raise CheckpointStateError(
                    f"Resume cursor cannot move backwards ({self.last_processed_file_index} -> {file_index})"
                )
            if file_index > self.last_processed_file_index:
                self.last_processed_file_index = file_index
                self.last_processed_chunk_offset = 0

        if chunk_offset is not None:
            if chunk_offset < self.last_processed_chunk_offset:
                raise CheckpointStateError(
                    f"Chunk offset cannot move backwards ({self.last_processed_chunk_offset} -> {chunk_offset})"
                )
            self.last_processed_chunk_offset = chunk_offset

        self.files_processed += files
        self.chunks_indexed += chunks_indexed
        self.embeddings_created += embeddings
        self.chunks_skipped += chunks_skipped
        self.tokens_processed += tokens
        self._touch()

    def reset_progress(self) -> None:
        """Restart from the first file (used when the cursor is past the available data)."""
        self.last_processed_file_index = -1
        self.last_processed_chunk_offset = 0
        self.files_processed = 0
        self.chunks_indexed = 0
        self.embeddings_created = 0
        self.chunks_skipped = 0
        self.tokens_processed = 0
        self._touch()

    @property
    def next_file_index(self) -> int:
        return self.last_processed_file_index + 1

    @property
    def progress_percent(self) -> float:
        if self.total_files <= 0:
            return 100.0 if self.phase == JobPhase.COMPLETED else 0.0
        return round(self.files_processed * 100.0 / self.total_files, 2)

    def estimated_remaining_seconds(self, now: Optional[datetime] = None) -> Optional[float]:
        """Linear estimate from the elapsed time per processed file."""
        if not self.started_at or self.files_processed <= 0 or self.total_files <= 0:
            return None
        elapsed = ((now or utcnow()) - self.started_at).total_seconds()
        remaining_files = max(0, self.total_files - self.files_processed)
        return elapsed / self.files_processed * remaining_files

    def _touch(self) -> None:
        self.updated_at = utcnow()

    # ----- serialization -----

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'project_id': self.project_id,
            'organization_id': self.organization_id,
            'phase': self.phase.value,
            'status': self.status.value,
            'last_processed_file_index': self.last_processed_file_index,
            'last_processed_chunk_offset': self.last_processed_chunk_offset,
            'total_files': self.total_files,
            'files_processed': self.files_processed,
            'chunks_indexed': self.chunks_indexed,
            'embeddings_created': self.embeddings_created,
            'chunks_skipped': self.chunks_skipped,
            'tokens_processed': self.tokens_processed,
            'estimated_total_tokens': self.estimated_total_tokens,
            'error_message': self.error_message,
            'error_classification': self.error_classification,
            'retry_count': self.retry_count,
            'serialized_state': self.serialized_state,
            'created_at': _format_dt(self.created_at),
            'started_at': _format_dt(self.started_at),
            'updated_at': _format_dt(self.updated_at),
            'completed_at': _format_dt(self.completed_at),
            'last_checkpoint_at': _format_dt(self.last_checkpoint_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobCheckpoint":
        return cls(
            id=data['id'],
            project_id=data['project_id'],
            organization_id=data.get('organization_id'),
            phase=JobPhase(data['phase']),
            status=CheckpointStatus(data['status']),
            last_processed_file_index=data.get('last_processed_file_index', -1),
            last_processed_chunk_offset=data.get('last_processed_chunk_offset', 0),
            total_files=data.get('total_files', 0),
            files_processed=data.get('files_processed', 0),
            chunks_indexed=data.get('chunks_indexed', 0),
            embeddings_created=data.get('embeddings_created', 0),
            chunks_skipped=data.get('chunks_skipped', 0),
            tokens_processed=data.get('tokens_processed', 0),
            estimated_total_tokens=data.get('estimated_total_tokens', 0),
            error_message=data.get('error_message'),
            error_classification=data.get('error_classification'),
            retry_count=data.get('retry_count', 0),
            serialized_state=data.get('serialized_state'),
            created_at=_parse_dt(data.get('created_at')) or utcnow(),
            started_at=_parse_dt(data.get('started_at')),
            updated_at=_parse_dt(data.get('updated_at')),
            completed_at=_parse_dt(data.get('completed_at')),
            last_checkpoint_at=_parse_dt(data.get('last_checkpoint_at')),
        )


# ===== ORGANIZATION QUOTA =====

@dataclass
class OrganizationQuota:
    """Per-tenant ledger of credits, tokens, storage and concurrent jobs."""
    organization_id: str
    total_credits: float = 100.0
    credits_used: float = 0.0
    max_concurrent_jobs: int = 5
    active_job_count: int = 0
    max_storage_bytes: int = 10 * 1024 * 1024 * 1024
    storage_used_bytes: int = 0
    tokens_consumed: int = 0
    max_tokens_per_period: int = 10_000_000
    period_days: int = 30
    period_start: datetime = field(default_factory=utcnow)
    period_end: Optional[datetime] = None
    is_suspended: bool = False
    suspension_reason: Optional[str] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.period_end is None:
            self.period_end = self.period_start + timedelta(days=self.period_days)

    def can_start_job(self) -> bool:
        return (
            not self.is_suspended
            and self.active_job_count < self.max_concurrent_jobs
            and self.credits_used < self.total_credits
        )

    def has_sufficient_credits(self, estimated_cost: float) -> bool:
        return not self.is_suspended and self.credits_used + estimated_cost <= self.total_credits

    def has_sufficient_tokens(self, estimated_tokens: int) -> bool:
        return not self.is_suspended and self.tokens_consumed + estimated_tokens <= self.max_tokens_per_period

    def has_sufficient_storage(self, required_bytes: int) -> bool:
        return not self.is_suspended and self.storage_used_bytes + required_bytes <= self.max_storage_bytes

    def increment_active_jobs(self) -> None:
        self.active_job_count += 1
        self._touch()

    def decrement_active_jobs(self) -> None:
        if self.active_job_count > 0:
            self.active_job_count -= 1
        self._touch()

    def consume_credits(self, credits: float) -> None:
        self.credits_used += credits
        self._touch()

    def consume_tokens(self, tokens: int) -> None:
        self.tokens_consumed += tokens
        self._touch()

    def consume_storage(self, num_bytes: int) -> None:
        self.storage_used_bytes += num_bytes
        self._touch()

    def release_storage(self, num_bytes: int) -> None:
        self.storage_used_bytes = max(0, self.storage_used_bytes - num_bytes)
        self._touch()

    def suspend(self, reason: str) -> None:
        self.is_suspended = True
        self.suspension_reason = reason
        self._touch()

    def unsuspend(self) -> None:
        self.is_suspended = False
        self.suspension_reason = None
        self._touch()

    def needs_period_reset(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.period_end

    def reset_period(self, now: Optional[datetime] = None) -> None:
        """Start a new rolling period at now."""
        self.period_start = now or utcnow()
        self.period_end = self.period_start + timedelta(days=self.period_days)
        self.credits_used = 0.0
        self.tokens_consumed = 0
        self._touch()

    @property
    def remaining_credits(self) -> float:
        return max(0.0, self.total_credits - self.credits_used)

    @property
    def remaining_tokens(self) -> int:
        return max(0, self.max_tokens_per_period - self.tokens_consumed)

    @property
    def remaining_storage(self) -> int:
        return max(0, self.max_storage_bytes - self.storage_used_bytes)

    def _touch(self) -> None:
        self.updated_at = utcnow()
