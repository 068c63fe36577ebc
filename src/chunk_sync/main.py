"""CLI entrypoint for chunk-sync."""

from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import TypeVar

import rich_click as click

from chunk_sync import __version__
from chunk_sync.config import Settings
from chunk_sync.logging_setup import configure_logging
from chunk_sync.scheduler.controllers import (
    HealthPruneCommand,
    HealthSummaryCommand,
    JobCreateCommand,
    JobInspectCommand,
    JobListCommand,
    ReaperCommand,
    SchedulerCliController,
    WorkerCommand,
)
from chunk_sync.scheduler.models import JobStatus, JobType

click.rich_click.USE_MARKDOWN = True
CONTROLLER = SchedulerCliController()

CommandT = TypeVar("CommandT")

_DATE_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S"]


@click.group()
@click.version_option(version=__version__, prog_name="chunk-sync")
def chunk_sync() -> None:
    """Chunked synchronization job scheduler CLI."""

    configure_logging(Settings.from_env().log_level)


@chunk_sync.group()
def job() -> None:
    """Sync job intake and inspection."""


@job.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--account-id", required=True, help="Account that owns the collection.")
@click.option("--connection-id", required=True, help="Connection to synchronize.")
@click.option(
    "--job-type",
    type=click.Choice([item.value for item in JobType]),
    default=JobType.MANUAL.value,
    show_default=True,
)
@click.option(
    "--estimate",
    type=click.IntRange(min=0),
    default=None,
    help="Expected item count; defaults depend on job type.",
)
@click.option("--window-start", type=click.DateTime(formats=_DATE_FORMATS), default=None)
@click.option("--window-end", type=click.DateTime(formats=_DATE_FORMATS), default=None)
@click.option("--chunk-size", type=click.IntRange(min=1), default=None)
@click.option("--max-attempts", type=click.IntRange(min=1), default=None)
@click.option(
    "--drain/--no-drain",
    default=False,
    show_default=True,
    help="Process the job in-process right after creation.",
)
@click.option(
    "--source-items",
    type=click.IntRange(min=0),
    default=1000,
    show_default=True,
    help="Size of the synthetic demo collection used when draining.",
)
def job_create(  # noqa: PLR0913
    db_path: Path | None,
    account_id: str,
    connection_id: str,
    job_type: str,
    estimate: int | None,
    window_start: datetime | None,
    window_end: datetime | None,
    chunk_size: int | None,
    max_attempts: int | None,
    drain: bool,
    source_items: int,
) -> None:
    """Create a sync job and partition it into chunks."""

    _emit_lines(
        _run(
            CONTROLLER.create_job,
            JobCreateCommand(
                db_path=db_path,
                account_id=account_id,
                connection_id=connection_id,
                job_type=job_type,
                estimated_item_count=estimate,
                window_start=window_start,
                window_end=window_end,
                chunk_size=chunk_size,
                max_attempts=max_attempts,
                drain=drain,
                source_items=source_items,
            ),
        ),
    )


@job.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--status", type=click.Choice([item.value for item in JobStatus]), default=None)
@click.option("--limit", type=click.IntRange(min=1, max=500), default=20, show_default=True)
def job_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent sync jobs."""

    _emit_lines(
        _run(CONTROLLER.list_jobs, JobListCommand(db_path=db_path, status=status, limit=limit)),
    )


@job.command("progress")
@click.argument("job_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def job_progress(job_id: str, db_path: Path | None) -> None:
    """Show chunk counts and failed chunks for one job."""

    _emit_lines(_run(CONTROLLER.progress, JobInspectCommand(db_path=db_path, job_id=job_id)))


@job.command("events")
@click.argument("job_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def job_events(job_id: str, db_path: Path | None) -> None:
    """Show the audit trail of one job."""

    _emit_lines(_run(CONTROLLER.events, JobInspectCommand(db_path=db_path, job_id=job_id)))


@chunk_sync.group()
def worker() -> None:
    """Chunk worker commands."""


@worker.command("invoke")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", default=None, help="Prefer chunks of this job.")
@click.option("--source-items", type=click.IntRange(min=0), default=1000, show_default=True)
def worker_invoke(db_path: Path | None, job_id: str | None, source_items: int) -> None:
    """Process at most one chunk."""

    _emit_lines(
        _run(
            CONTROLLER.run_worker,
            WorkerCommand(
                db_path=db_path,
                mode="invoke",
                job_id=job_id,
                source_items=source_items,
            ),
        ),
    )


@worker.command("drain")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", default=None, help="Prefer chunks of this job.")
@click.option("--max-chunks", type=click.IntRange(min=1), default=None)
@click.option("--source-items", type=click.IntRange(min=0), default=1000, show_default=True)
def worker_drain(
    db_path: Path | None,
    job_id: str | None,
    max_chunks: int | None,
    source_items: int,
) -> None:
    """Follow the wake-up cascade in-process until it goes quiet."""

    _emit_lines(
        _run(
            CONTROLLER.run_worker,
            WorkerCommand(
                db_path=db_path,
                mode="drain",
                job_id=job_id,
                max_chunks=max_chunks,
                source_items=source_items,
            ),
        ),
    )


@worker.command("pool")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", default=None, help="Prefer chunks of this job.")
@click.option("--source-items", type=click.IntRange(min=0), default=1000, show_default=True)
def worker_pool(db_path: Path | None, job_id: str | None, source_items: int) -> None:
    """Cascade wake-ups across a thread pool of CHUNK_SYNC_WORKER_POOL_SIZE workers."""

    _emit_lines(
        _run(
            CONTROLLER.run_worker,
            WorkerCommand(
                db_path=db_path,
                mode="pool",
                job_id=job_id,
                source_items=source_items,
            ),
        ),
    )


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--max-chunks", type=click.IntRange(min=1), default=None)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Stop after this many empty polls in a row; 0 runs until interrupted.",
)
@click.option("--source-items", type=click.IntRange(min=0), default=1000, show_default=True)
def worker_run(
    db_path: Path | None,
    max_chunks: int | None,
    max_idle_polls: int,
    source_items: int,
) -> None:
    """Run a polling worker loop."""

    _emit_lines(
        _run(
            CONTROLLER.run_worker,
            WorkerCommand(
                db_path=db_path,
                mode="loop",
                max_chunks=max_chunks,
                max_idle_polls=max_idle_polls,
                source_items=source_items,
            ),
        ),
    )


@chunk_sync.group()
def reaper() -> None:
    """Stuck-chunk recovery."""


@reaper.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--timeout-minutes",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Processing age after which a chunk counts as stuck.",
)
def reaper_run(db_path: Path | None, timeout_minutes: float | None) -> None:
    """Reset chunks whose worker disappeared."""

    _emit_lines(
        _run(
            CONTROLLER.run_reaper,
            ReaperCommand(db_path=db_path, timeout_minutes=timeout_minutes),
        ),
    )


@chunk_sync.group()
def health() -> None:
    """Chunk health reporting."""


@health.command("summary")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--hours", type=click.IntRange(min=1), default=24, show_default=True)
@click.option("--job-id", default=None, help="Restrict to one job.")
def health_summary(db_path: Path | None, hours: int, job_id: str | None) -> None:
    """Show windowed processing health."""

    _emit_lines(
        _run(
            CONTROLLER.health_summary,
            HealthSummaryCommand(db_path=db_path, hours=hours, job_id=job_id),
        ),
    )


@health.command("prune")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--days", type=click.IntRange(min=1), default=7, show_default=True)
def health_prune(db_path: Path | None, days: int) -> None:
    """Delete old health records."""

    _emit_lines(
        _run(CONTROLLER.prune_health, HealthPruneCommand(db_path=db_path, days=days)),
    )


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except (RuntimeError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    chunk_sync()
