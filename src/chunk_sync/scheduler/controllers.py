"""Controllers for scheduler CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from itertools import count
from pathlib import Path

from chunk_sync.config import Settings
from chunk_sync.scheduler.metrics import (
    build_health_summary,
    render_health_lines,
    render_progress_lines,
)
from chunk_sync.scheduler.models import JobStatus, JobType, SyncJobView, WorkerRunSummary
from chunk_sync.scheduler.partition import ChunkSizePolicy
from chunk_sync.scheduler.repository import ChunkQueueRepository
from chunk_sync.scheduler.services import CreateSyncJob, SyncJobService
from chunk_sync.scheduler.sources import SyntheticItemSource, UpsertItemSink
from chunk_sync.scheduler.triggers import (
    NullTrigger,
    ThreadPoolTrigger,
    WakeupQueueTrigger,
    WorkerTrigger,
)
from chunk_sync.scheduler.worker import ChunkWorker


@dataclass(slots=True)
class JobCreateCommand:
    """CLI input for sync job intake."""

    db_path: Path | None
    account_id: str
    connection_id: str
    job_type: str
    estimated_item_count: int | None
    window_start: datetime | None
    window_end: datetime | None
    chunk_size: int | None
    max_attempts: int | None
    drain: bool = False
    source_items: int = 1000


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobInspectCommand:
    """CLI input for progress and event inspection."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    mode: str
    job_id: str | None = None
    max_chunks: int | None = None
    max_idle_polls: int = 1
    source_items: int = 1000


@dataclass(slots=True)
class ReaperCommand:
    """CLI input for stuck-chunk recovery."""

    db_path: Path | None
    timeout_minutes: float | None


@dataclass(slots=True)
class HealthSummaryCommand:
    """CLI input for windowed health summary."""

    db_path: Path | None
    hours: int
    job_id: str | None


@dataclass(slots=True)
class HealthPruneCommand:
    """CLI input for health record retention."""

    db_path: Path | None
    days: int


class SchedulerCliController:
    """Coordinates intake, worker, reaper and inspection CLI operations."""

    def create_job(self, command: JobCreateCommand) -> list[str]:
        settings = _settings(command.db_path)
        trigger = WakeupQueueTrigger() if command.drain else NullTrigger()
        with _repository(settings) as repository:
            service = SyncJobService(
                repository=repository,
                trigger=trigger,
                chunk_policy=ChunkSizePolicy(
                    default_size=settings.intake.chunk_size,
                    min_size=settings.intake.min_chunk_size,
                    max_size=settings.intake.max_chunk_size,
                ),
                max_attempts=settings.intake.max_attempts,
            )
            job = service.create_sync_job(
                CreateSyncJob(
                    account_id=command.account_id,
                    connection_id=command.connection_id,
                    job_type=JobType(command.job_type),
                    estimated_item_count=command.estimated_item_count,
                    window_start=_as_utc(command.window_start),
                    window_end=_as_utc(command.window_end),
                    chunk_size=command.chunk_size,
                    max_attempts=command.max_attempts,
                ),
            )
            lines = [
                "Sync job created: "
                f"job_id={job.job_id} status={job.status.value} "
                f"chunks={job.total_chunks} chunk_size={job.chunk_size} "
                f"estimate={job.estimated_item_count}",
            ]
            if isinstance(trigger, WakeupQueueTrigger):
                worker = _worker(
                    settings=settings,
                    repository=repository,
                    trigger=trigger,
                    source_items=command.source_items,
                )
                lines.append(_summary_line(trigger.drain(worker)))
                job_after = repository.get_job(job_id=job.job_id)
                if job_after is not None:
                    lines.append(f"Job status: {job_after.status.value}")
        return lines

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = JobStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            jobs = repository.list_jobs(status=status, limit=command.limit)
        if not jobs:
            return ["No sync jobs found."]
        return [_job_line(job) for job in jobs]

    def progress(self, command: JobInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            progress = repository.get_job_progress(job_id=command.job_id)
        if progress is None:
            raise RuntimeError(f"Sync job not found: {command.job_id}")
        return render_progress_lines(progress=progress)

    def events(self, command: JobInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            if repository.get_job(job_id=command.job_id) is None:
                raise RuntimeError(f"Sync job not found: {command.job_id}")
            events = repository.list_job_events(job_id=command.job_id)
        return [
            f"{event.created_at.isoformat()} {event.event_type} "
            f"{event.status_from or '-'}->{event.status_to or '-'}"
            + (f" chunk={event.chunk_id}" if event.chunk_id else "")
            for event in events
        ]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            if command.mode == "invoke":
                worker = _worker(
                    settings=settings,
                    repository=repository,
                    trigger=NullTrigger(),
                    source_items=command.source_items,
                )
                summary = worker.invoke(hint=command.job_id)
            elif command.mode == "drain":
                trigger = WakeupQueueTrigger()
                worker = _worker(
                    settings=settings,
                    repository=repository,
                    trigger=trigger,
                    source_items=command.source_items,
                )
                trigger.trigger_next_worker(command.job_id)
                summary = trigger.drain(worker, max_invocations=command.max_chunks)
            elif command.mode == "pool":
                summary = _run_pool(settings=settings, repository=repository, command=command)
            elif command.mode == "loop":
                worker = _worker(
                    settings=settings,
                    repository=repository,
                    trigger=NullTrigger(),
                    source_items=command.source_items,
                )
                summary = worker.run_loop(
                    max_chunks=command.max_chunks,
                    max_idle_polls=command.max_idle_polls,
                )
            else:
                raise ValueError(f"Unsupported worker mode: {command.mode}")
        return [_summary_line(summary)]

    def run_reaper(self, command: ReaperCommand) -> list[str]:
        settings = _settings(command.db_path)
        timeout_minutes = command.timeout_minutes or settings.worker.stuck_timeout_minutes
        with _repository(settings) as repository:
            report = repository.recover_stuck_chunks(timeout_minutes=timeout_minutes)
        return [
            "Reaper summary: "
            f"reset={report.reset_count} failed={report.failed_count} "
            f"finalized_jobs={len(report.finalized_job_ids)}",
        ]

    def health_summary(self, command: HealthSummaryCommand) -> list[str]:
        settings = _settings(command.db_path)
        since = datetime.now(tz=UTC) - timedelta(hours=max(1, command.hours))
        with _repository(settings) as repository:
            records = repository.list_health_records(job_id=command.job_id, since=since)
        summary = build_health_summary(records=records, window_hours=command.hours)
        return render_health_lines(summary=summary)

    def prune_health(self, command: HealthPruneCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            deleted = repository.prune_health_records(older_than=timedelta(days=command.days))
        return [f"Health records pruned: deleted={deleted} older_than_days={command.days}"]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _worker(  # noqa: PLR0913
    *,
    settings: Settings,
    repository: ChunkQueueRepository,
    trigger: WorkerTrigger,
    source_items: int,
    sink: UpsertItemSink | None = None,
    worker_id: str | None = None,
) -> ChunkWorker:
    return ChunkWorker(
        repository=repository,
        source=SyntheticItemSource(total_items=source_items),
        sink=sink or UpsertItemSink(),
        trigger=trigger,
        worker_id=worker_id or settings.worker.worker_id,
        soft_budget_seconds=settings.worker.soft_budget_seconds,
        page_size=settings.worker.page_size,
        stuck_timeout_minutes=settings.worker.stuck_timeout_minutes,
        recover_before_claim=settings.worker.recover_before_claim,
        max_parallel_per_scope=settings.claim.max_parallel_per_scope or None,
        poll_interval_seconds=settings.worker.poll_interval_seconds,
    )


def _run_pool(
    *,
    settings: Settings,
    repository: ChunkQueueRepository,
    command: WorkerCommand,
) -> WorkerRunSummary:
    """Seed ``pool_size`` wake-ups on a thread pool and wait for the cascade to finish."""

    pool = ThreadPoolTrigger(max_workers=settings.worker.pool_size)
    sink = UpsertItemSink()
    sequence = count(1)
    pool.attach(
        lambda: _worker(
            settings=settings,
            repository=repository,
            trigger=pool,
            source_items=command.source_items,
            sink=sink,
            worker_id=f"{settings.worker.worker_id}/{next(sequence)}",
        ),
    )
    try:
        for _ in range(settings.worker.pool_size):
            pool.trigger_next_worker(command.job_id)
        pool.join()
    finally:
        pool.shutdown()
    if pool.errors:
        raise RuntimeError(
            f"{len(pool.errors)} worker invocations failed, first error: {pool.errors[0]}",
        )
    return pool.summary


def _summary_line(summary: WorkerRunSummary) -> str:
    return (
        "Worker summary: "
        f"invocations={summary.invocations} processed={summary.processed} "
        f"succeeded={summary.succeeded} retried={summary.retried} "
        f"failed={summary.failed} stale={summary.stale} "
        f"recovered={summary.recovered} idle_polls={summary.idle_polls} "
        f"finalized_jobs={len(summary.finalized_job_ids)}"
    )


def _job_line(job: SyncJobView) -> str:
    return (
        f"{job.job_id} status={job.status.value} type={job.job_type.value} "
        f"account={job.scope.account_id} chunks={job.total_chunks} "
        f"estimate={job.estimated_item_count} created_at={job.created_at.isoformat()}"
    )


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@contextmanager
def _repository(settings: Settings) -> Iterator[ChunkQueueRepository]:
    repository = ChunkQueueRepository(
        settings.resolved_database_url,
        busy_timeout_ms=settings.busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
