import asyncio
import dataclasses
from datetime import datetime, timezone

import pytest

from job_coordinator.coordinator import Coordinator
from job_coordinator.errors import JobAlreadyFinished, JobNotFound, NotReady, QueueFull
from job_coordinator.events import JOB_FINISHED
from job_coordinator.models import (
    AttemptOutcome,
    FailureClassification,
    JobSpec,
    JobState,
    Priority,
    StopReason,
)

PASSING_SUITE = """\
import json
for name in ["a", "b", "c", "d", "e"]:
    print(json.dumps({"name": name, "status": "passed"}))
"""

FLAKY_SUITE = """\
import json, os, sys
attempt = int(os.environ["JOB_ATTEMPT"])
print(json.dumps({"name": "test_ok", "status": "passed"}))
for name in ["test_jump", "test_fall"]:
    status = "failed" if attempt == 1 else "passed"
    print(json.dumps({"name": name, "status": status, "expected": 10, "actual": 0}))
sys.exit(1 if attempt == 1 else 0)
"""

HANGING = "import time\ntime.sleep(60)\n"


async def wait_for_terminal(coordinator, job_id, timeout=20.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        status = await coordinator.status(job_id)
        if status.state.terminal:
            return status
        if loop.time() > deadline:
            raise AssertionError(f"job {job_id} still {status.state.value}")
        await asyncio.sleep(0.05)


async def wait_for_state(coordinator, job_id, state, timeout=10.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while (await coordinator.status(job_id)).state != state:
        if loop.time() > deadline:
            raise AssertionError(f"job {job_id} never reached {state.value}")
        await asyncio.sleep(0.02)


@pytest.mark.asyncio
async def test_passing_suite_completes(settings, script):
    coordinator = Coordinator(settings)
    await coordinator.start()
    try:
        submitted = await coordinator.submit(JobSpec(target=script(PASSING_SUITE), framework="jsonl"))
        assert submitted.queue_position == 1

        status = await wait_for_terminal(coordinator, submitted.job_id)
        result = await coordinator.result(submitted.job_id)
    finally:
        await coordinator.stop()

    assert status.state == JobState.completed
    assert result.attempts == 1
    assert result.stop_reason == StopReason.succeeded
    assert result.result.summary.total == 5
    assert result.result.summary.passed == 5
    assert result.result.summary.failed == 0


@pytest.mark.asyncio
async def test_failed_tests_retry_with_context(settings, script):
    coordinator = Coordinator(settings)
    await coordinator.start()
    try:
        submitted = await coordinator.submit(
            JobSpec(target=script(FLAKY_SUITE), framework="jsonl", description="Make jumping work.")
        )
        await wait_for_terminal(coordinator, submitted.job_id)
        record = await coordinator.registry.get(submitted.job_id)
    finally:
        await coordinator.stop()

    assert record.state == JobState.completed
    assert len(record.attempts) == 2
    assert record.attempts[0].classification == FailureClassification.test_failure
    assert record.attempts[1].classification is None
    assert "--- Attempt 1 failed: test_failure ---" in record.description
    assert "test_jump" in record.description
    description_file = record.attempts[1].output_path.replace("artifacts/attempt-2.log", "description-2.md")
    with open(description_file) as handle:
        assert "Attempt 1 failed" in handle.read()


@pytest.mark.asyncio
async def test_hanging_runner_times_out_twice(settings, script):
    coordinator = Coordinator(settings)
    await coordinator.start()
    try:
        submitted = await coordinator.submit(
            JobSpec(target=script(HANGING), framework="command", timeout_seconds=1)
        )
        await wait_for_terminal(coordinator, submitted.job_id, timeout=30)
        record = await coordinator.registry.get(submitted.job_id)
    finally:
        await coordinator.stop()

    assert record.state == JobState.timed_out
    assert record.stop_reason == StopReason.retry_limit_reached
    assert [a.timeout_seconds for a in record.attempts] == [1, 2]
    assert all(a.classification == FailureClassification.timeout for a in record.attempts)


@pytest.mark.asyncio
async def test_missing_dependency_is_not_retried(settings):
    coordinator = Coordinator(settings)
    await coordinator.start()
    try:
        submitted = await coordinator.submit(
            JobSpec(target="no-such-test-runner-xyz", framework="command", max_retries=5)
        )
        await wait_for_terminal(coordinator, submitted.job_id)
        result = await coordinator.result(submitted.job_id)
    finally:
        await coordinator.stop()

    assert result.state == JobState.failed
    assert result.attempts == 1
    assert result.failure == FailureClassification.missing_dependency
    assert result.stop_reason == StopReason.non_retryable


@pytest.mark.asyncio
async def test_queue_full_rejects_51st_job(settings):
    coordinator = Coordinator(settings)
    for i in range(50):
        await coordinator.submit(JobSpec(target=f"tests/test_{i}.py"))

    with pytest.raises(QueueFull):
        await coordinator.submit(JobSpec(target="tests/test_overflow.py"))

    assert (await coordinator.health()).queue_depth == 50


@pytest.mark.asyncio
async def test_priority_order_and_wait_estimate(settings):
    coordinator = Coordinator(settings)
    normal = await coordinator.submit(JobSpec(target="b"))
    low = await coordinator.submit(JobSpec(target="a", priority=Priority.low))
    high = await coordinator.submit(JobSpec(target="c", priority=Priority.high))

    listing = await coordinator.list_queue()

    assert [entry.job_id for entry in listing.queued] == [high.job_id, normal.job_id, low.job_id]
    assert high.queue_position == 1
    assert normal.estimated_wait_seconds == 0
    assert (await coordinator.status(low.job_id)).queue_position == 3
    assert low.estimated_wait_seconds == settings.default_estimate_seconds


@pytest.mark.asyncio
async def test_polling_does_not_change_state(settings):
    coordinator = Coordinator(settings)
    submitted = await coordinator.submit(JobSpec(target="a"))

    for _ in range(3):
        status = await coordinator.status(submitted.job_id)
        assert status.state == JobState.queued
        with pytest.raises(NotReady):
            await coordinator.result(submitted.job_id)

    with pytest.raises(JobNotFound):
        await coordinator.status("nope")


@pytest.mark.asyncio
async def test_cancel_queued_job(settings):
    coordinator = Coordinator(settings)
    submitted = await coordinator.submit(JobSpec(target="a"))

    response = await coordinator.cancel(submitted.job_id)

    assert response.state == JobState.cancelled
    assert not response.was_running
    assert (await coordinator.health()).queue_depth == 0
    assert (await coordinator.result(submitted.job_id)).stop_reason == StopReason.cancelled
    with pytest.raises(JobAlreadyFinished):
        await coordinator.cancel(submitted.job_id)


@pytest.mark.asyncio
async def test_cancel_running_job(settings, script):
    coordinator = Coordinator(settings)
    finished = []
    coordinator.events.subscribe(lambda event: finished.append(event))
    await coordinator.start()
    try:
        submitted = await coordinator.submit(JobSpec(target=script(HANGING), framework="command"))
        await wait_for_state(coordinator, submitted.job_id, JobState.running)
        assert (await coordinator.health()).active_job_id == submitted.job_id

        response = await coordinator.cancel(submitted.job_id)
        status = await wait_for_terminal(coordinator, submitted.job_id, timeout=5)
        health = await coordinator.health()
    finally:
        await coordinator.stop()

    assert response.was_running
    assert status.state == JobState.cancelled
    assert health.active_job_id is None
    assert health.total_processed == 1
    assert [(e.kind, e.state) for e in finished] == [(JOB_FINISHED, JobState.cancelled)]


@pytest.mark.asyncio
async def test_jobs_run_one_at_a_time_in_submission_order(settings, script):
    coordinator = Coordinator(settings)
    order = []
    coordinator.events.subscribe(lambda event: order.append(event.job_id))
    target = script("import time\ntime.sleep(0.2)\n")
    running_counts = []

    async def sample_active():
        while True:
            listing = await coordinator.list_queue()
            running_counts.append(1 if listing.active else 0)
            await asyncio.sleep(0.02)

    await coordinator.start()
    sampler = asyncio.create_task(sample_active())
    try:
        ids = [(await coordinator.submit(JobSpec(target=target, framework="command"))).job_id for _ in range(3)]
        for job_id in ids:
            await wait_for_terminal(coordinator, job_id)
    finally:
        sampler.cancel()
        await coordinator.stop()

    assert order == ids
    assert max(running_counts) == 1
    health = await coordinator.health()
    assert health.total_processed == 3
    assert health.average_duration_seconds > 0


@pytest.mark.asyncio
async def test_budget_stops_retries(settings, script):
    tight = dataclasses.replace(settings, budget_per_task_usd=0.5)
    coordinator = Coordinator(tight)
    await coordinator.start()
    try:
        submitted = await coordinator.submit(
            JobSpec(
                target=script('import sys\nprint(\'{"total_cost_usd": 1.0}\')\nsys.exit(2)\n'),
                framework="command",
            )
        )
        await wait_for_terminal(coordinator, submitted.job_id)
        result = await coordinator.result(submitted.job_id)
    finally:
        await coordinator.stop()

    assert result.state == JobState.failed
    assert result.stop_reason == StopReason.budget_exceeded
    assert result.attempts == 1
    assert result.cost_usd == 1.0
    assert coordinator.budget_snapshot().daily_total_usd == 1.0


class FlakySupervisor:
    """Raises on its first instance, succeeds afterwards."""

    instances = 0

    def __init__(self, settings) -> None:
        FlakySupervisor.instances += 1
        self.number = FlakySupervisor.instances

    async def run(self, job, timeout, *, cancel_event=None, on_output=None):
        if self.number == 1:
            raise RuntimeError("supervisor exploded")
        now = datetime.now(timezone.utc)
        return AttemptOutcome(exit_code=0, output="ok", started_at=now, finished_at=now)


@pytest.mark.asyncio
async def test_supervisor_crash_is_recovered(settings):
    FlakySupervisor.instances = 0
    coordinator = Coordinator(settings, supervisor_factory=FlakySupervisor)
    await coordinator.start()
    try:
        submitted = await coordinator.submit(JobSpec(target="anything", framework="command"))
        await wait_for_terminal(coordinator, submitted.job_id)
        record = await coordinator.registry.get(submitted.job_id)
    finally:
        await coordinator.stop()

    assert FlakySupervisor.instances == 2
    assert record.state == JobState.completed
    assert record.attempts[0].classification == FailureClassification.runtime_crash
    assert len(record.attempts) == 2


@pytest.mark.asyncio
async def test_logs_fall_back_to_attempt_log(settings, script):
    coordinator = Coordinator(settings)
    await coordinator.start()
    try:
        submitted = await coordinator.submit(
            JobSpec(target=script("print('first line')\nprint('second line')\n"), framework="command")
        )
        await wait_for_terminal(coordinator, submitted.job_id)
        lines = await coordinator.logs(submitted.job_id)
    finally:
        await coordinator.stop()

    assert lines == ["first line", "second line"]
    assert coordinator.artifact_path(submitted.job_id, "../attempt-1.log").is_file()


@pytest.mark.asyncio
async def test_suite_printing_a_very_long_line_completes(settings, script):
    suite = (
        "import json\n"
        "for name in ['a', 'b', 'c', 'd']:\n"
        "    print(json.dumps({'name': name, 'status': 'passed'}))\n"
        "print(json.dumps({'name': 'e', 'status': 'passed', 'message': 'x' * 100000}))\n"
    )
    coordinator = Coordinator(settings)
    await coordinator.start()
    try:
        submitted = await coordinator.submit(JobSpec(target=script(suite), framework="jsonl"))
        await wait_for_terminal(coordinator, submitted.job_id)
        result = await coordinator.result(submitted.job_id)
    finally:
        await coordinator.stop()

    assert result.state == JobState.completed
    assert result.attempts == 1
    assert result.result.summary.passed == 5


@pytest.mark.asyncio
async def test_cancel_job_waiting_out_retry_backoff(settings, script):
    slow_backoff = dataclasses.replace(settings, retry_base_seconds=30, retry_max_seconds=60)
    failing = (
        "import json, sys\n"
        "print(json.dumps({'name': 'test_jump', 'status': 'failed'}))\n"
        "sys.exit(1)\n"
    )
    coordinator = Coordinator(slow_backoff)
    await coordinator.start()
    try:
        submitted = await coordinator.submit(JobSpec(target=script(failing), framework="jsonl"))
        loop = asyncio.get_running_loop()
        deadline = loop.time() + 10
        while (await coordinator.status(submitted.job_id)).attempt != 2:
            assert loop.time() < deadline, "job was never requeued for a retry"
            await asyncio.sleep(0.02)
        waiting = await coordinator.status(submitted.job_id)

        response = await coordinator.cancel(submitted.job_id)
        result = await coordinator.result(submitted.job_id)
        health = await coordinator.health()
    finally:
        await coordinator.stop()

    assert waiting.state == JobState.queued
    assert not response.was_running
    assert result.state == JobState.cancelled
    assert result.stop_reason == StopReason.cancelled
    assert result.attempts == 1
    assert health.queue_depth == 0
    assert health.total_processed == 1


class UnreachableLogStore:
    async def _fail(self, *args, **kwargs):
        raise ConnectionError("redis down")

    register = mark_attempt = mark_complete = append = tail = _fail


@pytest.mark.asyncio
async def test_log_store_outage_does_not_strand_the_job(settings, script):
    coordinator = Coordinator(settings, log_store=UnreachableLogStore())
    submitted = await coordinator.submit(
        JobSpec(target=script(PASSING_SUITE), framework="jsonl")
    )

    assert await coordinator.run_once()

    status = await coordinator.status(submitted.job_id)
    health = await coordinator.health()
    assert status.state == JobState.completed
    assert health.active_job_id is None
    assert health.queue_depth == 0


class ExplodingRetryPolicy:
    def decide(self, job, failure, result, now):
        raise RuntimeError("policy exploded")


@pytest.mark.asyncio
async def test_unexpected_error_finalizes_job_as_crashed(settings, script):
    coordinator = Coordinator(settings, retry_policy=ExplodingRetryPolicy())
    finished = []
    coordinator.events.subscribe(lambda event: finished.append(event))
    submitted = await coordinator.submit(
        JobSpec(target=script("import sys\nsys.exit(2)\n"), framework="command")
    )

    assert await coordinator.run_once()

    result = await coordinator.result(submitted.job_id)
    health = await coordinator.health()
    await coordinator.events.drain()
    assert result.state == JobState.crashed
    assert result.failure == FailureClassification.runtime_crash
    assert "policy exploded" in result.error
    assert health.active_job_id is None
    assert [(e.kind, e.state) for e in finished] == [(JOB_FINISHED, JobState.crashed)]
