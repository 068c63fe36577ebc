"""Stateless chunk worker: claim one chunk, process it, hand the outcome to completion."""

from __future__ import annotations

import logging
import os
import signal
import socket
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from chunk_sync.scheduler.failure_classifier import classify_exception
from chunk_sync.scheduler.models import (
    ChunkOutcome,
    ChunkStatus,
    ChunkView,
    SyncJobView,
    WorkerRunSummary,
)
from chunk_sync.scheduler.repository import ChunkQueueRepository
from chunk_sync.scheduler.sources import Item, ItemSink, ItemSource
from chunk_sync.scheduler.triggers import NullTrigger, WorkerTrigger

logger = logging.getLogger(__name__)

JobFinalizedCallback = Callable[[SyncJobView], None]


class ChunkBudgetExceededError(TimeoutError):
    """Processing ran past the soft wall-clock budget of one invocation."""


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class ChunkWorker:
    """Processes at most one chunk per ``invoke`` call."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: ChunkQueueRepository,
        source: ItemSource,
        sink: ItemSink,
        trigger: WorkerTrigger | None = None,
        worker_id: str | None = None,
        soft_budget_seconds: float = 270.0,
        page_size: int = 50,
        stuck_timeout_minutes: float = 10.0,
        recover_before_claim: bool = True,
        max_parallel_per_scope: int | None = None,
        poll_interval_seconds: float = 2.0,
        on_job_finalized: JobFinalizedCallback | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}.")
        self.repository = repository
        self.source = source
        self.sink = sink
        self.trigger = trigger or NullTrigger()
        self.worker_id = worker_id or default_worker_id()
        self.soft_budget_seconds = soft_budget_seconds
        self.page_size = page_size
        self.stuck_timeout_minutes = stuck_timeout_minutes
        self.recover_before_claim = recover_before_claim
        self.max_parallel_per_scope = max_parallel_per_scope
        self.poll_interval_seconds = poll_interval_seconds
        self.on_job_finalized = on_job_finalized
        self.monotonic = monotonic
        self._stop_requested = False

    def invoke(self, hint: str | None = None) -> WorkerRunSummary:
        """Handle one wake-up: recover, claim at most one chunk, process, complete."""

        summary = WorkerRunSummary(invocations=1)
        if self.recover_before_claim and self.stuck_timeout_minutes > 0:
            report = self.repository.recover_stuck_chunks(
                timeout_minutes=self.stuck_timeout_minutes,
            )
            summary.recovered = len(report.chunk_ids)
            for job_id in report.finalized_job_ids:
                self._notify_finalized(job_id)
                summary.finalized_job_ids.append(job_id)

        chunk = self._claim(hint)
        if chunk is None:
            summary.idle_polls = 1
            if hint is not None:
                self._rearm_for_retry(hint)
            return summary

        outcome = self.process_chunk(chunk)
        result = self.repository.complete_chunk(
            chunk_id=chunk.chunk_id,
            worker_id=self.worker_id,
            outcome=outcome,
        )
        summary.processed = 1
        if not result.applied:
            summary.stale = 1
            return summary

        if result.chunk_status is ChunkStatus.COMPLETED:
            summary.succeeded = 1
        elif result.chunk_status is ChunkStatus.PENDING:
            summary.retried = 1
        else:
            summary.failed = 1

        if result.finalized:
            summary.finalized_job_ids.append(result.job_id)
            self._notify_finalized(result.job_id)
        elif not result.parent_status.is_terminal and result.pending_chunks > 0:
            self.trigger.trigger_next_worker(result.job_id)
        return summary

    def process_chunk(self, chunk: ChunkView) -> ChunkOutcome:
        """Fetch the chunk's slice of the filtered collection and persist it.

        Source and sink exceptions become a failed outcome; database errors while
        loading the parent job propagate. The soft budget is checked between pages
        and before persisting; a single blocked fetch call is not interrupted.
        """

        job = self.repository.get_job(job_id=chunk.job_id)
        if job is None:
            raise RuntimeError(f"Sync job not found: {chunk.job_id}")
        started = self.monotonic()
        deadline = started + self.soft_budget_seconds
        items: list[Item] = []
        try:
            items = self._fetch_chunk_items(job=job, chunk=chunk, deadline=deadline)
            self._check_budget(deadline=deadline, fetched=len(items))
            self.sink.persist(items, scope=job.scope)
        except Exception as error:  # noqa: BLE001
            classification = classify_exception(error)
            return ChunkOutcome.failed(
                raw_error=str(error) or type(error).__name__,
                error_category=classification.category,
                processing_time_ms=self._elapsed_ms(started),
            )

        return ChunkOutcome.succeeded(
            items_processed=len(items),
            processing_time_ms=self._elapsed_ms(started),
        )

    def run_loop(
        self,
        *,
        max_chunks: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Persistent-service consumer loop with the same claim semantics as ``invoke``."""

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_chunks is not None and aggregate.processed >= max_chunks:
                    return aggregate

                try:
                    summary = self.invoke()
                except Exception:
                    logger.exception("Worker %s invocation failed", self.worker_id)
                    summary = WorkerRunSummary(invocations=1, idle_polls=1)
                aggregate.merge(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls > 0 and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def _rearm_for_retry(self, job_id: str) -> None:
        # Keeps the cascade alive while the job only has chunks waiting out a retry delay.
        retry_at = self.repository.next_retry_at(job_id=job_id)
        if retry_at is None:
            return
        logger.debug(
            "Job %s has chunks waiting for retry; next wake-up at %s",
            job_id,
            retry_at.isoformat(),
            extra={"job_id": job_id, "worker_id": self.worker_id},
        )
        self.trigger.trigger_next_worker(job_id, not_before=retry_at)

    def _claim(self, hint: str | None) -> ChunkView | None:
        if hint is not None:
            chunk = self.repository.claim_next_chunk(
                worker_id=self.worker_id,
                job_id=hint,
                max_parallel_per_scope=self.max_parallel_per_scope,
            )
            if chunk is not None:
                return chunk
        return self.repository.claim_next_chunk(
            worker_id=self.worker_id,
            max_parallel_per_scope=self.max_parallel_per_scope,
        )

    def _fetch_chunk_items(
        self,
        *,
        job: SyncJobView,
        chunk: ChunkView,
        deadline: float,
    ) -> list[Item]:
        items: list[Item] = []
        offset = chunk.start_offset
        remaining = chunk.limit
        while remaining > 0:
            self._check_budget(deadline=deadline, fetched=len(items))
            limit = min(self.page_size, remaining)
            page = self.source.fetch_range(
                scope=job.scope,
                window=job.window,
                offset=offset,
                limit=limit,
            )[:limit]
            items.extend(page)
            offset += len(page)
            remaining -= len(page)
            if len(page) < limit:
                # Collection is shorter than the intake estimate.
                break
        return items

    def _check_budget(self, *, deadline: float, fetched: int) -> None:
        if self.monotonic() >= deadline:
            raise ChunkBudgetExceededError(
                f"Chunk processing timed out: soft budget of {self.soft_budget_seconds:g}s "
                f"exceeded after {fetched} items",
            )

    def _elapsed_ms(self, started: float) -> int:
        return max(0, int((self.monotonic() - started) * 1000))

    def _notify_finalized(self, job_id: str) -> None:
        if self.on_job_finalized is None:
            return
        job = self.repository.get_job(job_id=job_id)
        if job is not None:
            self.on_job_finalized(job)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        try:
            original_sigint = signal.getsignal(signal.SIGINT)
            original_sigterm = signal.getsignal(signal.SIGTERM)
            signal.signal(signal.SIGINT, self._handle_signal)
            signal.signal(signal.SIGTERM, self._handle_signal)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return

        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def _handle_signal(self, signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        self._stop_requested = True
        logger.info("Worker %s stopping after %s", self.worker_id, name)
