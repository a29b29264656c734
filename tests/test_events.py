import json
from datetime import datetime, timezone

import httpx
import pytest

from job_coordinator.events import BUDGET_ALERT, JOB_FINISHED, EventBus, WebhookNotifier
from job_coordinator.models import JobEvent, JobState


def _event(kind: str = JOB_FINISHED, **payload) -> JobEvent:
    return JobEvent(
        kind=kind,
        job_id="job-1",
        state=JobState.completed,
        payload=payload,
        created_at=datetime.now(timezone.utc),
    )


@pytest.mark.asyncio
async def test_bus_delivers_to_sync_and_async_listeners():
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("listener bug")

    async def async_listener(event):
        seen.append(("async", event.kind))

    bus.subscribe(broken)
    bus.subscribe(lambda event: seen.append(("sync", event.kind)))
    unsubscribe = bus.subscribe(async_listener)

    bus.publish(_event())
    await bus.drain()
    unsubscribe()
    bus.publish(_event(BUDGET_ALERT))
    await bus.drain()

    assert seen == [("sync", JOB_FINISHED), ("async", JOB_FINISHED), ("sync", BUDGET_ALERT)]


@pytest.mark.asyncio
async def test_webhook_posts_final_record():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200)

    notifier = WebhookNotifier("http://hooks.test/default", transport=httpx.MockTransport(handler))

    await notifier(_event(notify_url="http://hooks.test/job", record={"id": "job-1"}))
    await notifier(_event(record={"id": "job-1"}))
    await notifier(_event(BUDGET_ALERT))

    assert [str(r.url) for r in requests] == ["http://hooks.test/job", "http://hooks.test/default"]
    body = json.loads(requests[0].content)
    assert body["job_id"] == "job-1"
    assert body["state"] == "completed"
    assert body["payload"]["record"] == {"id": "job-1"}


@pytest.mark.asyncio
async def test_webhook_failure_is_logged_not_raised(caplog):
    notifier = WebhookNotifier(
        "http://hooks.test/down", transport=httpx.MockTransport(lambda request: httpx.Response(503))
    )

    await notifier(_event())

    assert "Webhook for job job-1" in caplog.text


@pytest.mark.asyncio
async def test_webhook_without_url_is_noop():
    def handler(request):
        raise AssertionError("no request expected")

    await WebhookNotifier(None, transport=httpx.MockTransport(handler))(_event())
