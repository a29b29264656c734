from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable

import httpx

from job_coordinator.models import JobEvent

logger = logging.getLogger(__name__)

Listener = Callable[[JobEvent], "Awaitable[None] | None"]

JOB_FINISHED = "job.finished"
BUDGET_ALERT = "budget.alert"


class EventBus:
    """Fan-out of coordinator events to subscribed listeners.

    Listeners may be plain functions or coroutines. Coroutine listeners are
    scheduled and not awaited, so a slow listener never stalls the loop.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: JobEvent) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(event)
            except Exception:
                logger.exception("Listener %r failed on %s event", listener, event.kind)
                continue
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Async listener failed: %s", exc)

    async def drain(self) -> None:
        """Wait for in-flight async listeners."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class WebhookNotifier:
    """POSTs finished job records to the job's `notify_url` or a global URL."""

    def __init__(
        self,
        default_url: str | None = None,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.default_url = default_url
        self.timeout = timeout
        self._transport = transport

    async def __call__(self, event: JobEvent) -> None:
        if event.kind != JOB_FINISHED:
            return
        url = event.payload.get("notify_url") or self.default_url
        if not url:
            return
        body = event.model_dump(mode="json")
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(url, json=body)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Webhook for job %s to %s failed: %s", event.job_id, url, exc)
            return
        logger.info("Webhook for job %s delivered to %s", event.job_id, url)
