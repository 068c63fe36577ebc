"""Chunk-size policy and range planning for new sync jobs."""

from __future__ import annotations

import math
from dataclasses import dataclass

from chunk_sync.scheduler.models import ChunkRange, JobType

DEFAULT_CHUNK_SIZE = 100
MIN_CHUNK_SIZE = 25
MAX_CHUNK_SIZE = 500

_DEFAULT_ESTIMATES: dict[JobType, int] = {
    JobType.INITIAL: 1000,
    JobType.INCREMENTAL: 50,
    JobType.MANUAL: 100,
}


@dataclass(slots=True, frozen=True)
class ChunkSizePolicy:
    """Chooses the chunk size for a job."""

    default_size: int = DEFAULT_CHUNK_SIZE
    min_size: int = MIN_CHUNK_SIZE
    max_size: int = MAX_CHUNK_SIZE

    def __post_init__(self) -> None:
        if self.min_size < 1:
            raise ValueError("min_size must be >= 1.")
        if self.max_size < self.min_size:
            raise ValueError("max_size must be >= min_size.")

    def resolve(self, override: int | None = None) -> int:
        """Resolve chunk size; an explicit per-job override is used as given."""

        if override is not None:
            if override < 1:
                raise ValueError(f"chunk_size must be >= 1, got {override}.")
            return override
        return max(self.min_size, min(self.default_size, self.max_size))


def default_estimate_for(job_type: JobType) -> int:
    """Item-count estimate used when intake does not supply one."""

    return _DEFAULT_ESTIMATES[job_type]


def count_chunks(estimated_item_count: int, chunk_size: int) -> int:
    if estimated_item_count <= 0:
        return 0
    return math.ceil(estimated_item_count / chunk_size)


def plan_chunks(estimated_item_count: int, chunk_size: int) -> list[ChunkRange]:
    """Split ``[0, estimated_item_count)`` into contiguous inclusive ranges.

    Every position is covered exactly once; only the last range may be short.
    """

    if estimated_item_count < 0:
        raise ValueError(f"estimated_item_count must be >= 0, got {estimated_item_count}.")
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be >= 1, got {chunk_size}.")

    return [
        ChunkRange(
            chunk_index=index,
            start_offset=index * chunk_size,
            end_offset=min((index + 1) * chunk_size, estimated_item_count) - 1,
        )
        for index in range(count_chunks(estimated_item_count, chunk_size))
    ]
