from __future__ import annotations

import bisect
from datetime import datetime

from job_coordinator.errors import JobNotFound, QueueFull
from job_coordinator.models import JobRecord


class JobQueue:
    """Bounded queue of waiting jobs ordered by (priority tier, submission order).

    Not thread-safe; the coordinator serializes access behind its lock.
    """

    def __init__(self, max_depth: int = 50) -> None:
        self.max_depth = max_depth
        self._keys: list[tuple[int, int]] = []
        self._jobs: list[JobRecord] = []

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return any(job.id == job_id for job in self._jobs)

    @property
    def depth(self) -> int:
        return len(self._jobs)

    def enqueue(self, job: JobRecord, *, force: bool = False) -> None:
        """Insert `job` in rank order; raises QueueFull when at capacity.

        `force` admits a retry of an already admitted job past the bound.
        """
        if job.id in self:
            raise ValueError(f"job {job.id} is already queued")
        if not force and len(self._jobs) >= self.max_depth:
            raise QueueFull(len(self._jobs))
        key = job.sort_key
        index = bisect.bisect_right(self._keys, key)
        self._keys.insert(index, key)
        self._jobs.insert(index, job)

    def peek_next(self, now: datetime) -> JobRecord | None:
        """Highest-ranked job whose backoff has elapsed, without removing it."""
        for job in self._jobs:
            if job.run_after is None or job.run_after <= now:
                return job
        return None

    def remove(self, job_id: str) -> JobRecord:
        for index, job in enumerate(self._jobs):
            if job.id == job_id:
                del self._keys[index]
                del self._jobs[index]
                return job
        raise JobNotFound(job_id)

    def position(self, job_id: str) -> int | None:
        """1-based rank of a queued job."""
        for index, job in enumerate(self._jobs):
            if job.id == job_id:
                return index + 1
        return None

    def next_eligible_at(self) -> datetime | None:
        """Earliest time a waiting job becomes runnable, if all are backing off."""
        pending = [job.run_after for job in self._jobs if job.run_after is not None]
        return min(pending) if pending else None

    def snapshot(self) -> list[JobRecord]:
        return list(self._jobs)
