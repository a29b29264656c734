from __future__ import annotations

import redis.asyncio as redis

from job_coordinator.errors import JobNotFound
from job_coordinator.models import JobRecord
from job_coordinator.redis_client import get_redis


class JobArchive:
    """Redis-backed archive of finished job records, expiring after a TTL."""

    def __init__(
        self, client: redis.Redis | None = None, *, ttl_seconds: int = 604800
    ) -> None:
        self.redis = client or get_redis()
        self.ttl_seconds = ttl_seconds
        self.key_prefix = "job:"

    def _key(self, job_id: str) -> str:
        return f"{self.key_prefix}{job_id}"

    async def save(self, record: JobRecord) -> None:
        ttl = self.ttl_seconds if self.ttl_seconds > 0 else None
        await self.redis.set(self._key(record.id), record.model_dump_json(), ex=ttl)

    async def get(self, job_id: str) -> JobRecord:
        raw = await self.redis.get(self._key(job_id))
        if raw is None:
            raise JobNotFound(job_id)
        return JobRecord.model_validate_json(raw)
