"""Domain models for the chunked sync job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobType(str, Enum):
    """Kind of synchronization request."""

    INITIAL = "initial"
    INCREMENTAL = "incremental"
    MANUAL = "manual"


class JobStatus(str, Enum):
    """Parent job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL_FAILURE = "partial_failure"

    @property
    def is_terminal(self) -> bool:
        return self in {JobStatus.COMPLETED, JobStatus.PARTIAL_FAILURE}


class ChunkStatus(str, Enum):
    """Durable chunk lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {ChunkStatus.COMPLETED, ChunkStatus.FAILED}


class ErrorCategory(str, Enum):
    """Normalized error categories used by the backoff policy."""

    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    TRANSIENT_SERVER = "transient_server"
    AUTH = "auth"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    PROCESSING_ERROR = "processing_error"
    UNKNOWN = "unknown"


class HealthStatus(str, Enum):
    """Outcome recorded for one processing attempt."""

    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    RECOVERY = "recovery"


@dataclass(slots=True, frozen=True)
class SyncScope:
    """Identifies whose collection is synchronized."""

    account_id: str
    connection_id: str


@dataclass(slots=True, frozen=True)
class DateWindow:
    """Optional bounds applied as a filter before any offset is taken."""

    start: datetime | None = None
    end: datetime | None = None

    def contains(self, value: datetime) -> bool:
        if self.start is not None and value < self.start:
            return False
        return not (self.end is not None and value > self.end)


@dataclass(slots=True, frozen=True)
class ChunkRange:
    """Planned contiguous slice of a parent job; ``end_offset`` is inclusive."""

    chunk_index: int
    start_offset: int
    end_offset: int

    @property
    def size(self) -> int:
        return self.end_offset - self.start_offset + 1


@dataclass(slots=True)
class SyncJobCreate:
    """Input payload for creating a parent job with its chunks."""

    scope: SyncScope
    job_type: JobType
    estimated_item_count: int
    chunk_size: int
    max_attempts: int = 3
    window: DateWindow = field(default_factory=DateWindow)
    metadata: dict[str, Any] = field(default_factory=dict)
    job_id: str | None = None


@dataclass(slots=True)
class SyncJobView:
    """Readable parent job view for CLI and worker logic."""

    job_id: str
    scope: SyncScope
    job_type: JobType
    status: JobStatus
    window: DateWindow
    total_chunks: int
    chunk_size: int
    estimated_item_count: int
    metadata: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class ChunkView:
    """Readable chunk view."""

    chunk_id: str
    job_id: str
    chunk_index: int
    total_chunks: int
    start_offset: int
    end_offset: int
    estimated_items: int
    status: ChunkStatus
    attempts: int
    max_attempts: int
    next_attempt_at: datetime | None
    error_category: ErrorCategory | None
    error_message: str | None
    worker_id: str | None
    started_at: datetime | None
    completed_at: datetime | None
    processing_time_ms: int | None
    items_processed: int
    created_at: datetime
    updated_at: datetime

    @property
    def limit(self) -> int:
        return self.end_offset - self.start_offset + 1


@dataclass(slots=True)
class ChunkOutcome:
    """Result of processing one claimed chunk."""

    success: bool
    items_processed: int = 0
    raw_error: str | None = None
    error_category: ErrorCategory | None = None
    processing_time_ms: int | None = None

    @classmethod
    def succeeded(
        cls,
        *,
        items_processed: int,
        processing_time_ms: int | None = None,
    ) -> ChunkOutcome:
        return cls(
            success=True,
            items_processed=items_processed,
            processing_time_ms=processing_time_ms,
        )

    @classmethod
    def failed(
        cls,
        *,
        raw_error: str,
        error_category: ErrorCategory | None = None,
        items_processed: int = 0,
        processing_time_ms: int | None = None,
    ) -> ChunkOutcome:
        return cls(
            success=False,
            items_processed=items_processed,
            raw_error=raw_error,
            error_category=error_category,
            processing_time_ms=processing_time_ms,
        )


@dataclass(slots=True)
class CompletionResult:
    """What the completion transaction did to the chunk and its parent."""

    applied: bool
    chunk_id: str
    job_id: str
    chunk_status: ChunkStatus
    parent_status: JobStatus
    remaining_chunks: int
    pending_chunks: int
    finalized: bool
    error_category: ErrorCategory | None = None
    retry_delay_ms: int | None = None
    next_attempt_at: datetime | None = None


@dataclass(slots=True)
class FinalizationResult:
    """Outcome of one guarded parent status evaluation."""

    job_id: str
    status: JobStatus
    finalized: bool
    remaining_chunks: int
    pending_chunks: int


@dataclass(slots=True)
class RecoveryReport:
    """Stuck-chunk reaper counters."""

    reset_count: int = 0
    failed_count: int = 0
    chunk_ids: list[str] = field(default_factory=list)
    finalized_job_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class HealthRecordView:
    """Append-only per-attempt diagnostic record."""

    chunk_id: str
    job_id: str
    worker_id: str | None
    attempt_number: int
    processing_time_ms: int | None
    item_count: int
    status: HealthStatus
    error_category: ErrorCategory | None
    error_message: str | None
    retry_delay_ms: int | None
    chunk_size: int | None
    recorded_at: datetime


@dataclass(slots=True)
class SyncEventView:
    """Job or chunk event entry for audit trail."""

    job_id: str
    chunk_id: str | None
    event_type: str
    status_from: str | None
    status_to: str | None
    details: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class JobProgress:
    """Per-status chunk counts and chunk details for one parent job."""

    job: SyncJobView
    total_chunks: int
    completed_chunks: int
    processing_chunks: int
    pending_chunks: int
    failed_chunks: int
    items_processed: int
    chunks: list[ChunkView]

    @property
    def overall_progress(self) -> float:
        if self.total_chunks == 0:
            return 100.0
        return round(self.completed_chunks * 100.0 / self.total_chunks, 2)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    invocations: int = 0
    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    stale: int = 0
    recovered: int = 0
    idle_polls: int = 0
    finalized_job_ids: list[str] = field(default_factory=list)

    def merge(self, other: WorkerRunSummary) -> None:
        self.invocations += other.invocations
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.retried += other.retried
        self.failed += other.failed
        self.stale += other.stale
        self.recovered += other.recovered
        self.idle_polls += other.idle_polls
        self.finalized_job_ids.extend(other.finalized_job_ids)
