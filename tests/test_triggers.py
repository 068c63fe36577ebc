from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING

import allure
import pytest

from chunk_sync.scheduler.models import (
    DateWindow,
    ErrorCategory,
    HealthStatus,
    JobStatus,
    SyncJobCreate,
    SyncScope,
)
from chunk_sync.scheduler.repository import ChunkQueueRepository
from chunk_sync.scheduler.services import CreateSyncJob, SyncJobService
from chunk_sync.scheduler.sources import Item, SourceError, SyntheticItemSource, UpsertItemSink
from chunk_sync.scheduler.triggers import NullTrigger, ThreadPoolTrigger, WakeupQueueTrigger
from chunk_sync.scheduler.worker import ChunkWorker
from chunk_sync.storage.common import utc_now

if TYPE_CHECKING:
    from conftest import FakeClock

pytestmark = [
    allure.epic("Chunk Queue"),
    allure.feature("Worker Triggers"),
]


def test_thread_pool_cascade_completes_job_with_parallel_wakeups(
    db_path: Path,
    clock: FakeClock,
) -> None:
    repository = ChunkQueueRepository.for_sqlite(db_path, clock=clock)
    repository.init_schema()
    sink = UpsertItemSink()
    trigger = ThreadPoolTrigger(max_workers=4)
    counter = iter(range(1_000))
    trigger.attach(
        lambda: ChunkWorker(
            repository=repository,
            source=SyntheticItemSource(total_items=1000),
            sink=sink,
            trigger=trigger,
            worker_id=f"pool-worker-{next(counter)}",
        ),
    )
    try:
        job = SyncJobService(repository=repository, trigger=trigger).create_sync_job(
            CreateSyncJob(
                account_id="acct-1",
                connection_id="conn-1",
                estimated_item_count=1000,
            ),
        )
        for _ in range(3):
            trigger.trigger_next_worker(job.job_id)

        assert trigger.join(timeout=60) is True

        assert trigger.errors == []
        assert trigger.summary.succeeded == 10
        assert trigger.summary.finalized_job_ids == [job.job_id]
        stored = repository.get_job(job_id=job.job_id)
        assert stored is not None
        assert stored.status is JobStatus.COMPLETED
        assert sink.count() == 1000
        records = repository.list_health_records(job_id=job.job_id)
        assert len(records) == 10
        assert {record.status for record in records} == {HealthStatus.SUCCESS}
        events = repository.list_job_events(job_id=job.job_id)
        assert [event.event_type for event in events].count("job_finalized") == 1
    finally:
        trigger.shutdown()
        repository.close()


class FailOnceSource:
    """Synthetic source whose first fetch at ``fail_offset`` raises a transient error."""

    def __init__(self, inner: SyntheticItemSource, *, fail_offset: int) -> None:
        self.inner = inner
        self.fail_offset = fail_offset
        self.failures = 0
        self._lock = threading.Lock()

    def fetch_range(
        self,
        *,
        scope: SyncScope,
        window: DateWindow,
        offset: int,
        limit: int,
    ) -> list[Item]:
        if offset == self.fail_offset:
            with self._lock:
                if self.failures == 0:
                    self.failures += 1
                    raise SourceError("upstream 503", category=ErrorCategory.TRANSIENT_SERVER)
        return self.inner.fetch_range(scope=scope, window=window, offset=offset, limit=limit)


def test_thread_pool_single_trigger_completes_job_after_retry_delay(db_path: Path) -> None:
    repository = ChunkQueueRepository.for_sqlite(db_path)
    repository.init_schema()
    sink = UpsertItemSink()
    source = FailOnceSource(SyntheticItemSource(total_items=300), fail_offset=200)
    trigger = ThreadPoolTrigger(max_workers=3)
    counter = iter(range(1_000))
    trigger.attach(
        lambda: ChunkWorker(
            repository=repository,
            source=source,
            sink=sink,
            trigger=trigger,
            worker_id=f"pool-worker-{next(counter)}",
        ),
    )
    try:
        job = SyncJobService(repository=repository, trigger=trigger).create_sync_job(
            CreateSyncJob(
                account_id="acct-1",
                connection_id="conn-1",
                estimated_item_count=300,
            ),
        )

        assert trigger.join(timeout=30) is True

        assert trigger.errors == []
        assert source.failures == 1
        assert trigger.summary.succeeded == 3
        assert trigger.summary.retried == 1
        assert trigger.summary.finalized_job_ids == [job.job_id]
        stored = repository.get_job(job_id=job.job_id)
        assert stored is not None
        assert stored.status is JobStatus.COMPLETED
        assert sink.count() == 300
    finally:
        trigger.shutdown()
        repository.close()


def test_thread_pool_shutdown_cancels_delayed_wakeups() -> None:
    invoked: list[str] = []

    def _factory() -> ChunkWorker:
        invoked.append("factory")
        raise AssertionError("delayed wake-up must not run")

    trigger = ThreadPoolTrigger(max_workers=1)
    trigger.attach(_factory)
    trigger.trigger_next_worker("job-1", not_before=utc_now() + timedelta(minutes=5))

    assert trigger.join(timeout=0.05) is False

    trigger.shutdown()

    assert trigger.join(timeout=1) is True
    assert trigger.total_triggers == 1
    assert invoked == []
    trigger.trigger_next_worker("job-1")
    assert trigger.total_triggers == 1


def test_thread_pool_trigger_requires_factory() -> None:
    trigger = ThreadPoolTrigger(max_workers=1)
    try:
        with pytest.raises(RuntimeError, match="no worker factory"):
            trigger.trigger_next_worker("job-1")
        assert trigger.join(timeout=1) is True
    finally:
        trigger.shutdown()


def test_thread_pool_trigger_collects_invocation_errors() -> None:
    trigger = ThreadPoolTrigger(max_workers=1)

    def _broken_factory() -> ChunkWorker:
        raise RuntimeError("database is gone")

    trigger.attach(_broken_factory)
    try:
        trigger.trigger_next_worker("job-1")
        assert trigger.join(timeout=10) is True
        assert [str(error) for error in trigger.errors] == ["database is gone"]
    finally:
        trigger.shutdown()


def test_wakeup_queue_drain_honours_invocation_cap(
    repository: ChunkQueueRepository,
    job_payload: Callable[..., SyncJobCreate],
) -> None:
    job = repository.create_job(job_payload(estimate=376, chunk_size=100))
    trigger = WakeupQueueTrigger()
    worker = ChunkWorker(
        repository=repository,
        source=SyntheticItemSource(total_items=376),
        sink=UpsertItemSink(),
        trigger=trigger,
        worker_id="worker-a",
    )
    trigger.trigger_next_worker(job.job_id)

    summary = trigger.drain(worker, max_invocations=2)

    assert summary.invocations == 2
    assert summary.succeeded == 2
    assert trigger.pending() == 1

    rest = trigger.drain(worker)
    assert rest.succeeded == 2
    assert trigger.pending() == 0


def test_null_trigger_ignores_wakeups() -> None:
    NullTrigger().trigger_next_worker("job-1")


def test_service_triggers_exactly_once_per_job(
    repository: ChunkQueueRepository,
) -> None:
    trigger = WakeupQueueTrigger()
    service = SyncJobService(repository=repository, trigger=trigger)

    job = service.create_sync_job(
        CreateSyncJob(account_id="acct-1", connection_id="conn-1", estimated_item_count=376),
    )
    empty = service.create_sync_job(
        CreateSyncJob(account_id="acct-1", connection_id="conn-1", estimated_item_count=0),
    )

    assert trigger.total_triggers == 1
    assert job.total_chunks == 4
    assert empty.status is JobStatus.COMPLETED
