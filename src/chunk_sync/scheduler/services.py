"""Use-case services for sync job intake."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from chunk_sync.scheduler.backoff import DEFAULT_MAX_ATTEMPTS
from chunk_sync.scheduler.models import (
    DateWindow,
    JobType,
    SyncJobCreate,
    SyncJobView,
    SyncScope,
)
from chunk_sync.scheduler.partition import ChunkSizePolicy, default_estimate_for
from chunk_sync.scheduler.repository import ChunkQueueRepository
from chunk_sync.scheduler.triggers import WorkerTrigger


@dataclass(slots=True)
class CreateSyncJob:
    """High-level command to request a chunked synchronization."""

    account_id: str
    connection_id: str
    job_type: JobType = JobType.MANUAL
    estimated_item_count: int | None = None
    window_start: datetime | None = None
    window_end: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    chunk_size: int | None = None
    max_attempts: int | None = None


class SyncJobService:
    """Validates intake, persists the partitioned job and wakes the first worker."""

    def __init__(
        self,
        *,
        repository: ChunkQueueRepository,
        trigger: WorkerTrigger,
        chunk_policy: ChunkSizePolicy | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.repository = repository
        self.trigger = trigger
        self.chunk_policy = chunk_policy or ChunkSizePolicy()
        self.max_attempts = max_attempts

    def create_sync_job(self, command: CreateSyncJob) -> SyncJobView:
        """Create the parent job with all chunks, then trigger exactly one worker."""

        if not command.account_id or not command.connection_id:
            raise ValueError("account_id and connection_id are required.")
        estimate = (
            command.estimated_item_count
            if command.estimated_item_count is not None
            else default_estimate_for(command.job_type)
        )
        if estimate < 0:
            raise ValueError(f"estimated_item_count must be >= 0, got {estimate}.")
        if (
            command.window_start is not None
            and command.window_end is not None
            and command.window_start > command.window_end
        ):
            raise ValueError("window_start must not be after window_end.")

        job = self.repository.create_job(
            SyncJobCreate(
                scope=SyncScope(
                    account_id=command.account_id,
                    connection_id=command.connection_id,
                ),
                job_type=command.job_type,
                estimated_item_count=estimate,
                chunk_size=self.chunk_policy.resolve(command.chunk_size),
                max_attempts=command.max_attempts or self.max_attempts,
                window=DateWindow(start=command.window_start, end=command.window_end),
                metadata=dict(command.metadata),
            ),
        )
        if job.total_chunks > 0:
            self.trigger.trigger_next_worker(job.job_id)
        return job
