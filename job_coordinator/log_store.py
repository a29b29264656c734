from __future__ import annotations

from typing import AsyncGenerator

import redis.asyncio as redis

from job_coordinator.redis_client import get_redis

_COMPLETE = "__complete__"


class LogStore:
    """Redis-backed runner output per job: a list for replay, pubsub for live tailing."""

    def __init__(
        self, client: redis.Redis | None = None, *, ttl_seconds: int = 604800
    ) -> None:
        self.redis = client or get_redis()
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _lines(job_id: str) -> str:
        return f"joblog:lines:{job_id}"

    @staticmethod
    def _done(job_id: str) -> str:
        return f"joblog:done:{job_id}"

    @staticmethod
    def _channel(job_id: str) -> str:
        return f"joblog:channel:{job_id}"

    async def register(self, job_id: str) -> None:
        await self.redis.delete(self._lines(job_id), self._done(job_id))

    async def append(self, job_id: str, line: str) -> None:
        await self.redis.rpush(self._lines(job_id), line)  # type: ignore[misc]
        await self.redis.publish(self._channel(job_id), line)  # type: ignore[misc]

    async def mark_attempt(self, job_id: str, attempt: int) -> None:
        await self.append(job_id, f"===== attempt {attempt} =====")

    async def mark_complete(self, job_id: str) -> None:
        ttl = self.ttl_seconds if self.ttl_seconds > 0 else None
        await self.redis.set(self._done(job_id), "1", ex=ttl)
        if ttl is not None:
            await self.redis.expire(self._lines(job_id), ttl)
        await self.redis.publish(self._channel(job_id), _COMPLETE)

    async def is_complete(self, job_id: str) -> bool:
        return bool(await self.redis.exists(self._done(job_id)))

    async def tail(self, job_id: str, start_at: int = 0) -> list[str]:
        raw = await self.redis.lrange(self._lines(job_id), start_at, -1)  # type: ignore[misc]
        return [self._decode(item) for item in raw]

    async def stream(self, job_id: str, start_at: int = 0) -> AsyncGenerator[str, None]:
        """Replay stored lines, then follow new ones until the job finishes."""
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self._channel(job_id))
        try:
            backlog = await self.tail(job_id, start_at)
            for line in backlog:
                yield line
            if await self.is_complete(job_id):
                return
            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                data = self._decode(message["data"])
                if data == _COMPLETE:
                    return
                yield data
        finally:
            await pubsub.unsubscribe(self._channel(job_id))
            await pubsub.aclose()

    @staticmethod
    def _decode(value: str | bytes) -> str:
        if isinstance(value, bytes):
            return value.decode()
        return str(value)
