from __future__ import annotations

import asyncio
from datetime import datetime

from job_coordinator.errors import JobNotFound
from job_coordinator.models import JobRecord


class JobRegistry:
    """In-memory job records, live and recently finished."""

    def __init__(self) -> None:
        self._jobs: dict[str, JobRecord] = {}
        self._lock = asyncio.Lock()

    async def put(self, record: JobRecord) -> JobRecord:
        async with self._lock:
            self._jobs[record.id] = record
        return record

    async def get(self, job_id: str) -> JobRecord:
        async with self._lock:
            record = self._jobs.get(job_id)
        if record is None:
            raise JobNotFound(job_id)
        return record

    async def update(self, job_id: str, **kwargs) -> JobRecord:
        async with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                raise JobNotFound(job_id)
            record = record.model_copy(update=kwargs)
            self._jobs[job_id] = record
            return record

    async def pop_finished_before(self, cutoff: datetime) -> list[JobRecord]:
        """Remove and return terminal records that finished before `cutoff`."""
        async with self._lock:
            expired = [
                record
                for record in self._jobs.values()
                if record.state.terminal
                and record.finished_at is not None
                and record.finished_at < cutoff
            ]
            for record in expired:
                del self._jobs[record.id]
        return expired

    def __len__(self) -> int:
        return len(self._jobs)
