"""Worker wake-up strategies for cascading chunk processing."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from chunk_sync.scheduler.models import WorkerRunSummary
from chunk_sync.storage.common import utc_now

if TYPE_CHECKING:
    from chunk_sync.scheduler.worker import ChunkWorker

logger = logging.getLogger(__name__)


class WorkerTrigger(Protocol):
    """Fire-and-forget request for one more worker invocation.

    ``not_before`` delays the wake-up until a retry-delayed chunk becomes eligible.
    """

    def trigger_next_worker(
        self,
        job_id: str | None = None,
        *,
        not_before: datetime | None = None,
    ) -> None: ...


class NullTrigger:
    """Trigger that does nothing; a scheduler or ``run_loop`` picks work up instead."""

    def trigger_next_worker(
        self,
        job_id: str | None = None,
        *,
        not_before: datetime | None = None,
    ) -> None:
        del job_id, not_before


@dataclass(slots=True, frozen=True)
class _Wakeup:
    job_id: str | None
    not_before: datetime | None


class WakeupQueueTrigger:
    """Collects wake-ups and replays them in-process until the cascade goes quiet.

    Delayed wake-ups are replayed once due; ``drain`` sleeps when nothing else is
    queued.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.clock = clock
        self.sleep = sleep
        self._pending: deque[_Wakeup] = deque()
        self._lock = threading.Lock()
        self.total_triggers = 0

    def trigger_next_worker(
        self,
        job_id: str | None = None,
        *,
        not_before: datetime | None = None,
    ) -> None:
        with self._lock:
            self._pending.append(_Wakeup(job_id=job_id, not_before=not_before))
            self.total_triggers += 1

    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def drain(
        self,
        worker: ChunkWorker,
        *,
        max_invocations: int | None = None,
    ) -> WorkerRunSummary:
        """Invoke ``worker`` once per queued wake-up, including wake-ups it queues itself."""

        aggregate = WorkerRunSummary()
        while max_invocations is None or aggregate.invocations < max_invocations:
            with self._lock:
                if not self._pending:
                    break
                now = self.clock()
                wakeup = self._pop_due(now)
                if wakeup is None:
                    earliest = min(
                        item.not_before for item in self._pending if item.not_before is not None
                    )
                    wait_seconds = (earliest - now).total_seconds()
            if wakeup is None:
                logger.debug("Waiting %.3fs for the next delayed wake-up", wait_seconds)
                self.sleep(max(0.0, wait_seconds))
                continue
            aggregate.merge(worker.invoke(hint=wakeup.job_id))
        return aggregate

    def _pop_due(self, now: datetime) -> _Wakeup | None:
        for index, item in enumerate(self._pending):
            if item.not_before is None or item.not_before <= now:
                del self._pending[index]
                return item
        return None


class ThreadPoolTrigger:
    """Runs every wake-up as a fresh worker invocation on a thread pool.

    ``worker_factory`` builds a new worker per invocation, so invocations share
    nothing but the database. Delayed wake-ups wait on a timer and count as in
    flight until they have run.
    """

    def __init__(
        self,
        *,
        max_workers: int = 4,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="chunk-worker",
        )
        self.clock = clock
        self._worker_factory: Callable[[], ChunkWorker] | None = None
        self._in_flight = 0
        self._idle = threading.Condition()
        self._timers: set[threading.Thread] = set()
        self._closed = False
        self.total_triggers = 0
        self.summary = WorkerRunSummary()
        self.errors: list[BaseException] = []

    def attach(self, worker_factory: Callable[[], ChunkWorker]) -> None:
        self._worker_factory = worker_factory

    def trigger_next_worker(
        self,
        job_id: str | None = None,
        *,
        not_before: datetime | None = None,
    ) -> None:
        worker_factory = self._worker_factory
        if worker_factory is None:
            raise RuntimeError("ThreadPoolTrigger has no worker factory attached.")
        delay = 0.0 if not_before is None else (not_before - self.clock()).total_seconds()
        with self._idle:
            if self._closed:
                logger.debug("Dropping wake-up for job %s after shutdown", job_id)
                return
            self._in_flight += 1
            self.total_triggers += 1
            if delay > 0:
                timer = threading.Timer(delay, self._fire, args=(worker_factory, job_id))
                timer.daemon = True
                self._timers.add(timer)
                timer.start()
                return
        self._submit(worker_factory, job_id)

    def join(self, timeout: float | None = None) -> bool:
        """Wait until no invocation is queued, delayed or running; False on timeout."""

        with self._idle:
            return self._idle.wait_for(lambda: self._in_flight == 0, timeout=timeout)

    def shutdown(self) -> None:
        with self._idle:
            self._closed = True
            timers = list(self._timers)
            self._timers.clear()
            self._in_flight -= len(timers)
            self._idle.notify_all()
        for timer in timers:
            timer.cancel()
        self._executor.shutdown(wait=True)

    def _fire(self, worker_factory: Callable[[], ChunkWorker], job_id: str | None) -> None:
        timer = threading.current_thread()
        with self._idle:
            if timer not in self._timers:
                return
            self._timers.discard(timer)
        self._submit(worker_factory, job_id)

    def _submit(self, worker_factory: Callable[[], ChunkWorker], job_id: str | None) -> None:
        try:
            self._executor.submit(self._invoke, worker_factory, job_id)
        except RuntimeError:
            logger.warning("Executor is shut down; wake-up for job %s dropped", job_id)
            with self._idle:
                self._in_flight -= 1
                self._idle.notify_all()

    def _invoke(self, worker_factory: Callable[[], ChunkWorker], job_id: str | None) -> None:
        try:
            summary = worker_factory().invoke(hint=job_id)
        except Exception as error:
            logger.exception("Worker invocation failed (job_id=%s)", job_id)
            with self._idle:
                self.errors.append(error)
        else:
            with self._idle:
                self.summary.merge(summary)
        finally:
            with self._idle:
                self._in_flight -= 1
                self._idle.notify_all()
