from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from typing import TYPE_CHECKING

import allure
import pytest
from sqlalchemy.exc import OperationalError

from chunk_sync.scheduler.models import (
    ChunkOutcome,
    ChunkStatus,
    DateWindow,
    ErrorCategory,
    HealthStatus,
    JobStatus,
    JobType,
    SyncJobCreate,
    SyncJobView,
    SyncScope,
)
from chunk_sync.scheduler.repository import ChunkQueueRepository
from chunk_sync.scheduler.services import CreateSyncJob, SyncJobService
from chunk_sync.scheduler.sources import Item, SourceError, SyntheticItemSource, UpsertItemSink
from chunk_sync.scheduler.triggers import WakeupQueueTrigger, WorkerTrigger
from chunk_sync.scheduler.worker import ChunkWorker

if TYPE_CHECKING:
    from conftest import FakeClock, FakeMonotonic, RecordingTrigger

pytestmark = [
    allure.epic("Chunk Queue"),
    allure.feature("Chunk Worker"),
]


class FailingRangeSource:
    """Synthetic source that fails for offsets inside ``[fail_from, fail_to)``."""

    def __init__(self, inner: SyntheticItemSource, *, fail_from: int, fail_to: int) -> None:
        self.inner = inner
        self.fail_from = fail_from
        self.fail_to = fail_to
        self.calls: list[tuple[int, int]] = []

    def fetch_range(
        self,
        *,
        scope: SyncScope,
        window: DateWindow,
        offset: int,
        limit: int,
    ) -> list[Item]:
        self.calls.append((offset, limit))
        if self.fail_from <= offset < self.fail_to:
            raise SourceError("401 invalid token", category=ErrorCategory.AUTH)
        return self.inner.fetch_range(scope=scope, window=window, offset=offset, limit=limit)


class SlowSource:
    """Source whose every page costs ``seconds_per_page`` on the fake monotonic clock."""

    def __init__(self, monotonic: FakeMonotonic, *, seconds_per_page: float) -> None:
        self.inner = SyntheticItemSource(total_items=1000)
        self.monotonic = monotonic
        self.seconds_per_page = seconds_per_page

    def fetch_range(
        self,
        *,
        scope: SyncScope,
        window: DateWindow,
        offset: int,
        limit: int,
    ) -> list[Item]:
        self.monotonic.advance(self.seconds_per_page)
        return self.inner.fetch_range(scope=scope, window=window, offset=offset, limit=limit)


def _service(repository: ChunkQueueRepository, trigger: WorkerTrigger) -> SyncJobService:
    return SyncJobService(repository=repository, trigger=trigger)


def test_cascade_processes_every_chunk_and_completes_job(
    repository: ChunkQueueRepository,
) -> None:
    trigger = WakeupQueueTrigger()
    sink = UpsertItemSink()
    finalized: list[SyncJobView] = []
    worker = ChunkWorker(
        repository=repository,
        source=SyntheticItemSource(total_items=376),
        sink=sink,
        trigger=trigger,
        worker_id="worker-a",
        on_job_finalized=finalized.append,
    )
    job = _service(repository, trigger).create_sync_job(
        CreateSyncJob(account_id="acct-1", connection_id="conn-1", estimated_item_count=376),
    )
    assert trigger.pending() == 1

    summary = trigger.drain(worker)

    assert summary.invocations == 4
    assert summary.succeeded == 4
    assert summary.finalized_job_ids == [job.job_id]
    assert trigger.total_triggers == 4
    assert sink.count() == 376
    assert sink.item_ids() == {f"conn-1:{position:06d}" for position in range(376)}
    stored = repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status is JobStatus.COMPLETED
    assert [job_view.job_id for job_view in finalized] == [job.job_id]
    records = repository.list_health_records(job_id=job.job_id)
    assert len(records) == 4
    assert all(record.status is HealthStatus.SUCCESS for record in records)


def test_single_trigger_drains_job_through_retry_delay(
    repository: ChunkQueueRepository,
    clock: FakeClock,
) -> None:
    sleeps: list[float] = []

    def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
        clock.advance(seconds=seconds)

    trigger = WakeupQueueTrigger(clock=clock, sleep=_sleep)
    sink = UpsertItemSink()
    source = FailingRangeSource(SyntheticItemSource(total_items=500), fail_from=300, fail_to=400)
    worker = ChunkWorker(
        repository=repository,
        source=source,
        sink=sink,
        trigger=trigger,
        worker_id="worker-a",
    )
    job = _service(repository, trigger).create_sync_job(
        CreateSyncJob(account_id="acct-1", connection_id="conn-1", estimated_item_count=500),
    )
    started_at = clock()

    summary = trigger.drain(worker)

    assert summary.invocations == 7
    assert summary.succeeded == 4
    assert summary.retried == 1
    assert summary.failed == 1
    assert summary.idle_polls == 1
    assert summary.finalized_job_ids == [job.job_id]
    assert sleeps == [2.0]
    assert clock() == started_at + timedelta(seconds=2)
    assert trigger.pending() == 0
    stored = repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status is JobStatus.PARTIAL_FAILURE
    assert stored.metadata["_completion"]["chunks_failed"] == 1
    assert sink.count() == 400

    progress = repository.get_job_progress(job_id=job.job_id)
    assert progress is not None
    (failed_chunk,) = [chunk for chunk in progress.chunks if chunk.status is ChunkStatus.FAILED]
    assert failed_chunk.chunk_index == 3
    assert failed_chunk.attempts == 2
    assert failed_chunk.error_category is ErrorCategory.AUTH
    records = repository.list_health_records(chunk_id=failed_chunk.chunk_id)
    assert [(record.attempt_number, record.status) for record in records] == [
        (1, HealthStatus.ERROR),
        (2, HealthStatus.ERROR),
    ]
    assert len(repository.list_health_records(job_id=job.job_id)) == 6


def test_idle_hinted_invocation_rearms_for_delayed_retry(
    repository: ChunkQueueRepository,
    job_payload: Callable[..., SyncJobCreate],
    trigger: RecordingTrigger,
    clock: FakeClock,
) -> None:
    job = repository.create_job(job_payload(estimate=50))
    chunk = repository.claim_next_chunk(worker_id="worker-a")
    assert chunk is not None
    result = repository.complete_chunk(
        chunk_id=chunk.chunk_id,
        worker_id="worker-a",
        outcome=ChunkOutcome.failed(raw_error="503 Service Unavailable"),
    )
    assert result.next_attempt_at == clock() + timedelta(seconds=2)
    worker = ChunkWorker(
        repository=repository,
        source=SyntheticItemSource(total_items=50),
        sink=UpsertItemSink(),
        trigger=trigger,
        worker_id="worker-b",
    )

    idle = worker.invoke(hint=job.job_id)

    assert idle.idle_polls == 1
    assert trigger.calls == []
    assert trigger.delayed == [(job.job_id, result.next_attempt_at)]

    clock.advance(seconds=2)
    retried = worker.invoke(hint=job.job_id)

    assert retried.succeeded == 1
    assert retried.finalized_job_ids == [job.job_id]
    assert trigger.delayed == [(job.job_id, result.next_attempt_at)]
    assert repository.next_retry_at(job_id=job.job_id) is None


def test_window_filter_is_applied_before_offsets(
    repository: ChunkQueueRepository,
) -> None:
    source = SyntheticItemSource(total_items=1000)
    scope = SyncScope(account_id="acct-1", connection_id="conn-1")
    window = DateWindow(
        start=source.item_at(scope, 399)["received_at"],
        end=source.item_at(scope, 100)["received_at"],
    )
    trigger = WakeupQueueTrigger()
    sink = UpsertItemSink()
    worker = ChunkWorker(
        repository=repository,
        source=source,
        sink=sink,
        trigger=trigger,
        worker_id="worker-a",
        page_size=30,
    )
    job = _service(repository, trigger).create_sync_job(
        CreateSyncJob(
            account_id="acct-1",
            connection_id="conn-1",
            job_type=JobType.INCREMENTAL,
            estimated_item_count=300,
            window_start=window.start,
            window_end=window.end,
        ),
    )

    trigger.drain(worker)

    stored = repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status is JobStatus.COMPLETED
    assert stored.window == window
    assert sink.item_ids() == {f"conn-1:{position:06d}" for position in range(100, 400)}


def test_short_collection_completes_with_fewer_items(
    repository: ChunkQueueRepository,
    trigger: RecordingTrigger,
) -> None:
    sink = UpsertItemSink()
    job = repository.create_job(
        SyncJobCreate(
            scope=SyncScope(account_id="acct-1", connection_id="conn-1"),
            job_type=JobType.MANUAL,
            estimated_item_count=200,
            chunk_size=100,
        ),
    )
    worker = ChunkWorker(
        repository=repository,
        source=SyntheticItemSource(total_items=150),
        sink=sink,
        trigger=trigger,
        worker_id="worker-a",
    )

    summaries = [worker.invoke(), worker.invoke()]

    assert [summary.succeeded for summary in summaries] == [1, 1]
    assert sink.count() == 150
    assert trigger.calls == [job.job_id]
    assert summaries[1].finalized_job_ids == [job.job_id]


def test_soft_budget_overrun_is_classified_as_timeout(
    repository: ChunkQueueRepository,
    job_payload: Callable[..., SyncJobCreate],
    monotonic: FakeMonotonic,
) -> None:
    job = repository.create_job(job_payload(estimate=100, chunk_size=100))
    sink = UpsertItemSink()
    worker = ChunkWorker(
        repository=repository,
        source=SlowSource(monotonic, seconds_per_page=100.0),
        sink=sink,
        worker_id="worker-a",
        soft_budget_seconds=150.0,
        page_size=50,
        monotonic=monotonic,
    )
    chunk = repository.claim_next_chunk(worker_id="worker-a")
    assert chunk is not None

    outcome = worker.process_chunk(chunk)

    assert outcome.success is False
    assert outcome.error_category is ErrorCategory.TIMEOUT
    assert outcome.raw_error is not None
    assert outcome.raw_error.startswith("Chunk processing timed out")
    assert "after 100 items" in outcome.raw_error
    assert outcome.processing_time_ms == 200_000
    assert sink.write_calls == 0

    result = repository.complete_chunk(
        chunk_id=chunk.chunk_id,
        worker_id="worker-a",
        outcome=outcome,
    )
    assert result.chunk_status is ChunkStatus.PENDING
    assert result.retry_delay_ms == 3000
    (record,) = repository.list_health_records(job_id=job.job_id)
    assert record.status is HealthStatus.TIMEOUT


def test_invoke_without_work_is_idle(
    repository: ChunkQueueRepository,
    trigger: RecordingTrigger,
) -> None:
    worker = ChunkWorker(
        repository=repository,
        source=SyntheticItemSource(),
        sink=UpsertItemSink(),
        trigger=trigger,
        worker_id="worker-a",
    )

    summary = worker.invoke(hint="unknown-job")

    assert summary.invocations == 1
    assert summary.processed == 0
    assert summary.idle_polls == 1
    assert trigger.calls == []


def test_hint_job_is_preferred_over_older_work(
    repository: ChunkQueueRepository,
    job_payload: Callable[..., SyncJobCreate],
    clock: FakeClock,
) -> None:
    repository.create_job(job_payload(estimate=10, account_id="acct-old"))
    clock.advance(seconds=1)
    hinted = repository.create_job(job_payload(estimate=10, account_id="acct-new"))
    worker = ChunkWorker(
        repository=repository,
        source=SyntheticItemSource(),
        sink=UpsertItemSink(),
        worker_id="worker-a",
    )

    summary = worker.invoke(hint=hinted.job_id)

    assert summary.finalized_job_ids == [hinted.job_id]


def test_invoke_recovers_stuck_chunks_before_claiming(
    repository: ChunkQueueRepository,
    job_payload: Callable[..., SyncJobCreate],
    clock: FakeClock,
) -> None:
    job = repository.create_job(job_payload(estimate=10))
    assert repository.claim_next_chunk(worker_id="worker-dead") is not None
    clock.advance(minutes=15)
    worker = ChunkWorker(
        repository=repository,
        source=SyntheticItemSource(),
        sink=UpsertItemSink(),
        worker_id="worker-a",
        stuck_timeout_minutes=10,
    )

    summary = worker.invoke()

    assert summary.recovered == 1
    assert summary.succeeded == 1
    assert summary.finalized_job_ids == [job.job_id]
    (chunk,) = repository.list_chunks(job_id=job.job_id)
    assert chunk.attempts == 2
    assert chunk.worker_id == "worker-a"


def test_run_loop_drains_queue_and_stops_when_idle(
    repository: ChunkQueueRepository,
    job_payload: Callable[..., SyncJobCreate],
) -> None:
    job = repository.create_job(job_payload(estimate=376, chunk_size=100))
    sink = UpsertItemSink()
    worker = ChunkWorker(
        repository=repository,
        source=SyntheticItemSource(total_items=376),
        sink=sink,
        worker_id="worker-a",
        poll_interval_seconds=0,
    )

    summary = worker.run_loop(max_idle_polls=1)

    assert summary.processed == 4
    assert summary.idle_polls == 1
    assert summary.finalized_job_ids == [job.job_id]
    assert sink.count() == 376


def test_run_loop_respects_max_chunks(
    repository: ChunkQueueRepository,
    job_payload: Callable[..., SyncJobCreate],
) -> None:
    repository.create_job(job_payload(estimate=376, chunk_size=100))
    worker = ChunkWorker(
        repository=repository,
        source=SyntheticItemSource(total_items=376),
        sink=UpsertItemSink(),
        worker_id="worker-a",
    )

    summary = worker.run_loop(max_chunks=2)

    assert summary.processed == 2
    assert summary.idle_polls == 0


def test_worker_rejects_invalid_page_size(repository: ChunkQueueRepository) -> None:
    with pytest.raises(ValueError, match="page_size"):
        ChunkWorker(
            repository=repository,
            source=SyntheticItemSource(),
            sink=UpsertItemSink(),
            page_size=0,
        )


def test_database_error_loading_job_propagates_out_of_invoke(
    repository: ChunkQueueRepository,
    job_payload: Callable[..., SyncJobCreate],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    job = repository.create_job(job_payload(estimate=50))

    def _broken_get_job(*, job_id: str) -> SyncJobView | None:
        raise OperationalError(
            f"SELECT sync_jobs WHERE job_id = {job_id!r}",
            {},
            Exception("disk I/O error"),
        )

    monkeypatch.setattr(repository, "get_job", _broken_get_job)
    worker = ChunkWorker(
        repository=repository,
        source=SyntheticItemSource(total_items=50),
        sink=UpsertItemSink(),
        worker_id="worker-a",
    )

    with pytest.raises(OperationalError, match="disk I/O error"):
        worker.invoke(hint=job.job_id)

    monkeypatch.undo()
    (chunk,) = repository.list_chunks(job_id=job.job_id)
    assert chunk.status is ChunkStatus.PROCESSING
    assert chunk.error_category is None
    assert repository.list_health_records(job_id=job.job_id) == []
