"""Runtime configuration for the chunk scheduler."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from chunk_sync.scheduler.worker import default_worker_id
from chunk_sync.storage.common import sqlite_url

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(slots=True)
class IntakeSettings:
    """Partitioning and retry budget applied to new jobs."""

    chunk_size: int = 100
    min_chunk_size: int = 25
    max_chunk_size: int = 500
    max_attempts: int = 3


@dataclass(slots=True)
class ClaimSettings:
    """Claim coordinator settings."""

    max_parallel_per_scope: int = 3


@dataclass(slots=True)
class WorkerSettings:
    """Chunk worker settings."""

    worker_id: str = field(default_factory=default_worker_id)
    soft_budget_seconds: float = 270.0
    page_size: int = 50
    stuck_timeout_minutes: float = 10.0
    recover_before_claim: bool = True
    poll_interval_seconds: float = 2.0
    pool_size: int = 4


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".chunk_sync.db")
    database_url: str | None = None
    busy_timeout_ms: int = 5000
    log_level: str = "INFO"
    intake: IntakeSettings = field(default_factory=IntakeSettings)
    claim: ClaimSettings = field(default_factory=ClaimSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @property
    def resolved_database_url(self) -> str:
        return self.database_url or sqlite_url(self.db_path)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("CHUNK_SYNC_DB_PATH", ".chunk_sync.db")),
            # An explicit --db-path wins over a configured URL.
            database_url=None if db_path is not None else os.getenv("CHUNK_SYNC_DATABASE_URL"),
            busy_timeout_ms=_env_int("CHUNK_SYNC_BUSY_TIMEOUT_MS", 5000),
            log_level=os.getenv("CHUNK_SYNC_LOG_LEVEL", "INFO").strip().upper(),
            intake=IntakeSettings(
                chunk_size=_env_int("CHUNK_SYNC_CHUNK_SIZE", 100),
                min_chunk_size=_env_int("CHUNK_SYNC_MIN_CHUNK_SIZE", 25),
                max_chunk_size=_env_int("CHUNK_SYNC_MAX_CHUNK_SIZE", 500),
                max_attempts=_env_int("CHUNK_SYNC_MAX_ATTEMPTS", 3),
            ),
            claim=ClaimSettings(
                max_parallel_per_scope=_env_int("CHUNK_SYNC_MAX_PARALLEL_PER_SCOPE", 3),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("CHUNK_SYNC_WORKER_ID") or default_worker_id(),
                soft_budget_seconds=_env_float("CHUNK_SYNC_SOFT_BUDGET_SECONDS", 270.0),
                page_size=_env_int("CHUNK_SYNC_PAGE_SIZE", 50),
                stuck_timeout_minutes=_env_float("CHUNK_SYNC_STUCK_TIMEOUT_MINUTES", 10.0),
                recover_before_claim=_env_bool("CHUNK_SYNC_RECOVER_BEFORE_CLAIM", True),
                poll_interval_seconds=_env_float("CHUNK_SYNC_POLL_INTERVAL_SECONDS", 2.0),
                pool_size=_env_int("CHUNK_SYNC_WORKER_POOL_SIZE", 4),
            ),
        )

    def validate(self) -> None:
        """Reject settings the scheduler cannot run with."""

        if self.busy_timeout_ms < 1:
            raise ValueError("CHUNK_SYNC_BUSY_TIMEOUT_MS must be >= 1.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"CHUNK_SYNC_LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}, "
                f"got {self.log_level!r}.",
            )
        if self.intake.min_chunk_size < 1:
            raise ValueError("CHUNK_SYNC_MIN_CHUNK_SIZE must be >= 1.")
        if self.intake.max_chunk_size < self.intake.min_chunk_size:
            raise ValueError("CHUNK_SYNC_MAX_CHUNK_SIZE must be >= CHUNK_SYNC_MIN_CHUNK_SIZE.")
        if self.intake.chunk_size < 1:
            raise ValueError("CHUNK_SYNC_CHUNK_SIZE must be >= 1.")
        if self.intake.max_attempts < 1:
            raise ValueError("CHUNK_SYNC_MAX_ATTEMPTS must be >= 1.")
        if self.claim.max_parallel_per_scope < 0:
            raise ValueError("CHUNK_SYNC_MAX_PARALLEL_PER_SCOPE must be >= 0.")
        if self.worker.soft_budget_seconds <= 0:
            raise ValueError("CHUNK_SYNC_SOFT_BUDGET_SECONDS must be > 0.")
        if self.worker.page_size < 1:
            raise ValueError("CHUNK_SYNC_PAGE_SIZE must be >= 1.")
        if self.worker.stuck_timeout_minutes <= 0:
            raise ValueError("CHUNK_SYNC_STUCK_TIMEOUT_MINUTES must be > 0.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("CHUNK_SYNC_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.pool_size < 1:
            raise ValueError("CHUNK_SYNC_WORKER_POOL_SIZE must be >= 1.")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
