"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from chunk_sync.scheduler.models import DateWindow, JobType, SyncJobCreate, SyncScope
from chunk_sync.scheduler.repository import ChunkQueueRepository


class FakeClock:
    """Thread-safe controllable UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 10, 18, 12, 0, tzinfo=UTC)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, **kwargs: float) -> None:
        with self._lock:
            self._now += timedelta(**kwargs)


class FakeMonotonic:
    """Monotonic clock that moves only when told to."""

    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class RecordingTrigger:
    def __init__(self) -> None:
        self.calls: list[str | None] = []
        self.delayed: list[tuple[str | None, datetime]] = []
        self._lock = threading.Lock()

    def trigger_next_worker(
        self,
        job_id: str | None = None,
        *,
        not_before: datetime | None = None,
    ) -> None:
        with self._lock:
            if not_before is None:
                self.calls.append(job_id)
            else:
                self.delayed.append((job_id, not_before))


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "chunks.db"


@pytest.fixture()
def repository(db_path: Path, clock: FakeClock) -> Iterator[ChunkQueueRepository]:
    repo = ChunkQueueRepository.for_sqlite(db_path, clock=clock)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def trigger() -> RecordingTrigger:
    return RecordingTrigger()


def build_job_payload(  # noqa: PLR0913
    *,
    estimate: int = 376,
    chunk_size: int = 100,
    max_attempts: int = 3,
    account_id: str = "acct-1",
    connection_id: str = "conn-1",
    window: DateWindow | None = None,
) -> SyncJobCreate:
    return SyncJobCreate(
        scope=SyncScope(account_id=account_id, connection_id=connection_id),
        job_type=JobType.MANUAL,
        estimated_item_count=estimate,
        chunk_size=chunk_size,
        max_attempts=max_attempts,
        window=window or DateWindow(),
    )


@pytest.fixture()
def job_payload() -> Callable[..., SyncJobCreate]:
    return build_job_payload


@pytest.fixture()
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()
