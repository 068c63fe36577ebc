from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

import allure
import pytest

from chunk_sync.scheduler.models import (
    ChunkStatus,
    ErrorCategory,
    HealthStatus,
    JobStatus,
    SyncJobCreate,
)
from chunk_sync.scheduler.repository import ChunkQueueRepository

if TYPE_CHECKING:
    from conftest import FakeClock

pytestmark = [
    allure.epic("Chunk Queue"),
    allure.feature("Stuck Chunk Recovery"),
]


def test_reaper_resets_only_chunks_older_than_timeout(
    repository: ChunkQueueRepository,
    job_payload: Callable[..., SyncJobCreate],
    clock: FakeClock,
) -> None:
    job = repository.create_job(job_payload(estimate=200, chunk_size=100))
    old = repository.claim_next_chunk(worker_id="worker-old")
    clock.advance(minutes=5)
    fresh = repository.claim_next_chunk(worker_id="worker-fresh")
    assert old is not None and fresh is not None
    clock.advance(minutes=6)

    report = repository.recover_stuck_chunks(timeout_minutes=10)

    assert report.reset_count == 1
    assert report.failed_count == 0
    assert report.chunk_ids == [old.chunk_id]
    assert report.finalized_job_ids == []

    reset = repository.get_chunk(chunk_id=old.chunk_id)
    assert reset is not None
    assert reset.status is ChunkStatus.PENDING
    assert reset.worker_id is None
    assert reset.started_at is None
    assert reset.attempts == 1
    assert reset.error_category is ErrorCategory.TIMEOUT
    assert reset.error_message is not None
    assert "worker=worker-old" in reset.error_message

    untouched = repository.get_chunk(chunk_id=fresh.chunk_id)
    assert untouched is not None
    assert untouched.status is ChunkStatus.PROCESSING
    assert untouched.worker_id == "worker-fresh"

    (record,) = repository.list_health_records(job_id=job.job_id)
    assert record.status is HealthStatus.RECOVERY
    assert record.worker_id == "worker-old"
    assert record.attempt_number == 1
    events = repository.list_job_events(job_id=job.job_id)
    assert events[-1].event_type == "chunk_recovered"
    assert events[-1].details == {"exhausted": False, "previous_worker_id": "worker-old"}


def test_reset_chunk_is_claimable_without_extra_attempt_charge(
    repository: ChunkQueueRepository,
    job_payload: Callable[..., SyncJobCreate],
    clock: FakeClock,
) -> None:
    repository.create_job(job_payload(estimate=10))
    assert repository.claim_next_chunk(worker_id="worker-a") is not None
    clock.advance(minutes=11)
    repository.recover_stuck_chunks(timeout_minutes=10)

    reclaimed = repository.claim_next_chunk(worker_id="worker-b")

    assert reclaimed is not None
    assert reclaimed.attempts == 2


def test_reaper_fails_exhausted_chunk_and_finalizes_parent(
    repository: ChunkQueueRepository,
    job_payload: Callable[..., SyncJobCreate],
    clock: FakeClock,
) -> None:
    job = repository.create_job(job_payload(estimate=10, max_attempts=1))
    chunk = repository.claim_next_chunk(worker_id="worker-a")
    assert chunk is not None
    clock.advance(minutes=30)

    report = repository.recover_stuck_chunks(timeout_minutes=10)

    assert report.reset_count == 0
    assert report.failed_count == 1
    assert report.finalized_job_ids == [job.job_id]
    failed = repository.get_chunk(chunk_id=chunk.chunk_id)
    assert failed is not None
    assert failed.status is ChunkStatus.FAILED
    assert failed.completed_at is not None
    stored = repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status is JobStatus.PARTIAL_FAILURE
    assert repository.recover_stuck_chunks(timeout_minutes=10).chunk_ids == []


def test_reaper_with_nothing_stuck_is_a_no_op(
    repository: ChunkQueueRepository,
    job_payload: Callable[..., SyncJobCreate],
) -> None:
    repository.create_job(job_payload(estimate=10))
    assert repository.claim_next_chunk(worker_id="worker-a") is not None

    report = repository.recover_stuck_chunks(timeout_minutes=10)

    assert report.chunk_ids == []
    assert report.reset_count == 0


def test_reaper_rejects_non_positive_timeout(repository: ChunkQueueRepository) -> None:
    with pytest.raises(ValueError, match="timeout_minutes"):
        repository.recover_stuck_chunks(timeout_minutes=0)
