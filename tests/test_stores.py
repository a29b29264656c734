import dataclasses
from datetime import datetime, timezone

import fakeredis.aioredis
import pytest

from job_coordinator.coordinator import Coordinator
from job_coordinator.errors import JobNotFound
from job_coordinator.job_store import JobArchive
from job_coordinator.log_store import LogStore
from job_coordinator.models import JobSpec, JobState


@pytest.fixture
def redis_client():
    return fakeredis.aioredis.FakeRedis(decode_responses=True)


@pytest.mark.asyncio
async def test_archive_round_trip_with_ttl(redis_client, make_job):
    archive = JobArchive(redis_client, ttl_seconds=60)
    job = make_job("tests/").model_copy(
        update={"state": JobState.completed, "finished_at": datetime.now(timezone.utc)}
    )

    await archive.save(job)
    loaded = await archive.get(job.id)

    assert loaded == job
    assert 0 < await redis_client.ttl(f"job:{job.id}") <= 60
    with pytest.raises(JobNotFound):
        await archive.get("missing")


@pytest.mark.asyncio
async def test_log_store_tail_and_stream(redis_client):
    logs = LogStore(redis_client, ttl_seconds=60)
    await logs.register("j1")
    await logs.mark_attempt("j1", 1)
    await logs.append("j1", "collected 2 items")
    await logs.append("j1", "2 passed")
    await logs.mark_complete("j1")

    assert await logs.tail("j1") == ["===== attempt 1 =====", "collected 2 items", "2 passed"]
    assert await logs.is_complete("j1")
    streamed = [line async for line in logs.stream("j1", start_at=1)]
    assert streamed == ["collected 2 items", "2 passed"]


@pytest.mark.asyncio
async def test_coordinator_uses_redis_for_logs_and_archive(settings, script, redis_client):
    expiring = dataclasses.replace(settings, job_retention_seconds=0)
    coordinator = Coordinator(
        expiring,
        archive=JobArchive(redis_client),
        log_store=LogStore(redis_client),
    )
    submitted = await coordinator.submit(
        JobSpec(target=script("print('from the runner')\n"), framework="command")
    )

    assert await coordinator.run_once()
    assert await coordinator.logs(submitted.job_id) == ["===== attempt 1 =====", "from the runner"]

    assert not await coordinator.run_once()
    assert len(coordinator.registry) == 0
    status = await coordinator.status(submitted.job_id)
    assert status.state == JobState.completed
    result = await coordinator.result(submitted.job_id)
    assert result.attempts == 1
