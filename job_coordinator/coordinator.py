from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import uuid4

from job_coordinator import config
from job_coordinator.budget import BudgetTracker, estimate_attempt_cost
from job_coordinator.classifier import AttemptClassification, classify_attempt
from job_coordinator.errors import JobAlreadyFinished, JobNotFound, NotReady
from job_coordinator.events import BUDGET_ALERT, JOB_FINISHED, EventBus, WebhookNotifier
from job_coordinator.job_queue import JobQueue
from job_coordinator.job_store import JobArchive
from job_coordinator.log_store import LogStore
from job_coordinator.models import (
    AttemptOutcome,
    AttemptRecord,
    BudgetSnapshot,
    CancelResponse,
    FailureClassification,
    HealthResponse,
    JobEvent,
    JobRecord,
    JobResultResponse,
    JobSpec,
    JobState,
    NormalizedResult,
    QueueEntry,
    QueueListing,
    StatusResponse,
    StopReason,
    SubmitResponse,
)
from job_coordinator.parser import parse
from job_coordinator.retry import Retry, RetryPolicy
from job_coordinator.runner import Supervisor
from job_coordinator.settings import Settings, get_settings
from job_coordinator.storage import JobRegistry

logger = logging.getLogger(__name__)

# Upper bound on how long the idle loop sleeps before purging expired records.
_IDLE_POLL_SECONDS = 30.0


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Coordinator:
    """Accepts jobs, runs them one at a time and drives retries to a terminal state.

    A single lock guards the queue, the registry and the active slot; the
    loop task started by `start()` is the only place a job is executed.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        supervisor_factory: Callable[[Settings], Supervisor] = Supervisor,
        events: EventBus | None = None,
        archive: JobArchive | None = None,
        log_store: LogStore | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.queue = JobQueue(self.settings.queue_max_depth)
        self.registry = JobRegistry()
        self.events = events or EventBus()
        self.archive = archive
        self.log_store = log_store
        self.budget = BudgetTracker(
            daily_limit_usd=self.settings.budget_daily_usd,
            per_task_limit_usd=self.settings.budget_per_task_usd,
            alert_ratio=self.settings.budget_alert_ratio,
            reset_hour_utc=self.settings.budget_reset_hour_utc,
            on_alert=self._publish_budget_alert,
        )
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings, self.budget)
        self._supervisor_factory = supervisor_factory
        self.supervisor = supervisor_factory(self.settings)
        self.events.subscribe(WebhookNotifier(self.settings.webhook_url))

        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._seq = itertools.count(1)
        self._active: JobRecord | None = None
        self._cancel_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None
        self._stopping = False
        self._total_processed = 0
        self._total_duration = 0.0

    # -- caller operations -------------------------------------------------

    async def submit(self, spec: JobSpec) -> SubmitResponse:
        async with self._lock:
            record = JobRecord(
                id=uuid4().hex,
                spec=spec,
                timeout_seconds=spec.timeout_seconds,
                description=spec.description,
                submitted_seq=next(self._seq),
                created_at=_now(),
            )
            self.queue.enqueue(record)
            await self.registry.put(record)
            position = self.queue.position(record.id) or 1
            wait = self._estimate_wait(position)
        self._wakeup.set()
        logger.info(
            "Queued job %s (%s %s, priority=%s, caller=%s) at position %d",
            record.id,
            spec.framework,
            spec.target,
            spec.priority.value,
            spec.caller_id,
            position,
        )
        return SubmitResponse(
            job_id=record.id, queue_position=position, estimated_wait_seconds=wait
        )

    async def status(self, job_id: str) -> StatusResponse:
        record = await self._lookup(job_id)
        position = None
        if record.state == JobState.queued:
            async with self._lock:
                position = self.queue.position(job_id)
        elapsed = None
        if record.started_at is not None:
            end = record.finished_at or _now()
            elapsed = (end - record.started_at).total_seconds()
        return StatusResponse(
            job_id=record.id,
            state=record.state,
            attempt=record.attempt,
            queue_position=position,
            started_at=record.started_at,
            elapsed_seconds=elapsed,
            failure=record.failure,
            stop_reason=record.stop_reason,
        )

    async def result(self, job_id: str) -> JobResultResponse:
        record = await self._lookup(job_id)
        if not record.state.terminal:
            raise NotReady(job_id, record.state.value)
        return JobResultResponse(
            job_id=record.id,
            state=record.state,
            attempts=len(record.attempts),
            failure=record.failure,
            stop_reason=record.stop_reason,
            error=record.error,
            cost_usd=record.cost_usd,
            result=record.result or NormalizedResult(),
        )

    async def cancel(self, job_id: str) -> CancelResponse:
        async with self._lock:
            record = await self._lookup(job_id)
            if record.state.terminal:
                raise JobAlreadyFinished(job_id, record.state.value)
            if self._active is not None and self._active.id == job_id:
                await self.registry.update(job_id, cancel_requested=True)
                if self._cancel_event is not None:
                    self._cancel_event.set()
                logger.info("Cancellation requested for running job %s", job_id)
                return CancelResponse(job_id=job_id, state=JobState.cancelled, was_running=True)
            self.queue.remove(job_id)
            # A job backing off between retries has already run.
            await self._finalize(
                record,
                JobState.cancelled,
                stop_reason=StopReason.cancelled,
                counted=bool(record.attempts),
            )
        self._wakeup.set()
        return CancelResponse(job_id=job_id, state=JobState.cancelled, was_running=False)

    async def list_queue(self) -> QueueListing:
        async with self._lock:
            active = self._active
            waiting = self.queue.snapshot()
        return QueueListing(
            active=_queue_entry(active) if active is not None else None,
            queued=[_queue_entry(job) for job in waiting],
        )

    async def health(self) -> HealthResponse:
        async with self._lock:
            return HealthResponse(
                queue_depth=self.queue.depth,
                active_job_id=self._active.id if self._active else None,
                total_processed=self._total_processed,
                average_duration_seconds=self._average_duration(),
            )

    def budget_snapshot(self) -> BudgetSnapshot:
        return self.budget.snapshot()

    async def logs(self, job_id: str) -> list[str]:
        record = await self._lookup(job_id)
        if self.log_store is not None:
            return await self.log_store.tail(job_id)
        for path in self._log_candidates(record):
            if path.is_file():
                return path.read_text(encoding="utf-8", errors="replace").splitlines()
        return []

    def artifact_path(self, job_id: str, filename: str) -> Path:
        return config.data_dir(self.settings) / job_id / "artifacts" / Path(filename).name

    # -- loop ----------------------------------------------------------------

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stopping = False
        self._task = asyncio.create_task(self.run_forever(), name="job-coordinator-loop")
        logger.info("Coordinator loop started")

    async def stop(self) -> None:
        self._stopping = True
        self._wakeup.set()
        if self._cancel_event is not None:
            self._cancel_event.set()
        if self._task is not None:
            try:
                await self._task
            finally:
                self._task = None
        await self.events.drain()
        logger.info("Coordinator loop stopped")

    async def run_forever(self) -> None:
        while not self._stopping:
            self._wakeup.clear()
            try:
                if await self.run_once():
                    continue
            except Exception:
                logger.exception("Coordinator loop iteration failed")
            await self._wait_for_work()

    async def run_once(self) -> bool:
        """Run the next eligible job through one attempt; False if none was ready."""
        async with self._lock:
            await self._purge_expired()
            job = self.queue.peek_next(_now())
            if job is None:
                return False
            self.queue.remove(job.id)
            job = await self.registry.update(
                job.id,
                state=JobState.running,
                started_at=job.started_at or _now(),
                run_after=None,
            )
            cancel_event = asyncio.Event()
            self._active = job
            self._cancel_event = cancel_event
        logger.info("Job %s running attempt %d", job.id, job.attempt)
        try:
            await self._execute(job, cancel_event)
        except Exception as exc:
            logger.exception("Job %s attempt %d aborted", job.id, job.attempt)
            await self._abort(job.id, exc)
        finally:
            async with self._lock:
                self._active = None
                self._cancel_event = None
        return True

    async def _wait_for_work(self) -> None:
        async with self._lock:
            next_at = self.queue.next_eligible_at()
        timeout = _IDLE_POLL_SECONDS
        if next_at is not None:
            timeout = min(max((next_at - _now()).total_seconds(), 0.01), timeout)
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def _execute(self, job: JobRecord, cancel_event: asyncio.Event) -> None:
        if job.attempt == 1:
            await self._log_store_call("register", job.id)
        await self._log_store_call("mark_attempt", job.id, job.attempt)

        try:
            outcome = await self.supervisor.run(
                job,
                job.timeout_seconds,
                cancel_event=cancel_event,
                on_output=self._output_sink(job.id),
            )
            result = parse(outcome.output, job.spec.framework)
            failure = classify_attempt(outcome, result)
        except Exception as exc:
            logger.exception("Supervisor failed on job %s; recreating it", job.id)
            self.supervisor = self._supervisor_factory(self.settings)
            now = _now()
            outcome = AttemptOutcome(output=str(exc), started_at=now, finished_at=now)
            result = NormalizedResult()
            failure = AttemptClassification(
                classification=FailureClassification.runtime_crash,
                matched_rule="supervisor_error",
                matched_pattern=None,
                message=f"supervisor error: {exc}",
            )

        cost = estimate_attempt_cost(
            output=outcome.output,
            wall_seconds=outcome.usage.wall_seconds,
            cost_per_second=self.settings.cost_per_runtime_second_usd,
        )
        self.budget.record_attempt(job.id, cost)
        attempt = AttemptRecord(
            attempt=job.attempt,
            started_at=outcome.started_at,
            finished_at=outcome.finished_at,
            duration_seconds=(outcome.finished_at - outcome.started_at).total_seconds(),
            timeout_seconds=job.timeout_seconds,
            exit_code=outcome.exit_code,
            classification=failure.classification if failure else None,
            message=failure.message if failure else None,
            output_path=outcome.output_path,
            result=result,
            usage=outcome.usage,
            cost_usd=cost,
        )
        job = job.model_copy(
            update={
                "attempts": [*job.attempts, attempt],
                "cost_usd": job.cost_usd + cost,
                "result": result,
            }
        )

        async with self._lock:
            current = await self.registry.get(job.id)
            if outcome.cancelled or current.cancel_requested:
                await self._finalize(job, JobState.cancelled, stop_reason=StopReason.cancelled)
                return
            if failure is None:
                await self._finalize(job, JobState.completed, stop_reason=StopReason.succeeded)
                return

            logger.info(
                "Job %s attempt %d failed: %s (%s)",
                job.id,
                job.attempt,
                failure.classification.value,
                failure.matched_rule,
            )
            decision = self.retry_policy.decide(job, failure, result, _now())
            if isinstance(decision, Retry):
                retried = decision.job.model_copy(update={"state": JobState.queued})
                self.queue.enqueue(retried, force=True)
                await self.registry.put(retried)
                logger.info(
                    "Job %s requeued for attempt %d in %.2fs (timeout %ss)",
                    job.id,
                    retried.attempt,
                    decision.delay_seconds,
                    retried.timeout_seconds,
                )
            else:
                await self._finalize(
                    job,
                    decision.state,
                    failure=decision.classification,
                    stop_reason=decision.reason,
                    error=decision.message,
                )
        self._wakeup.set()

    async def _finalize(
        self,
        job: JobRecord,
        state: JobState,
        *,
        stop_reason: StopReason,
        failure: FailureClassification | None = None,
        error: str | None = None,
        counted: bool = True,
    ) -> JobRecord:
        """Move a job to its terminal state; caller holds the lock."""
        finished_at = _now()
        record = job.model_copy(
            update={
                "state": state,
                "finished_at": finished_at,
                "run_after": None,
                "failure": failure if failure is not None else job.failure,
                "stop_reason": stop_reason,
                "error": error,
                "cancel_requested": False,
            }
        )
        if state == JobState.completed:
            record = record.model_copy(update={"failure": None})
        await self.registry.put(record)
        if counted:
            self._total_processed += 1
            started = record.started_at or record.created_at
            self._total_duration += (finished_at - started).total_seconds()
        await self._log_store_call("mark_complete", record.id)
        logger.info(
            "Job %s finished as %s after %d attempt(s) (%s)",
            record.id,
            state.value,
            len(record.attempts),
            stop_reason.value,
        )
        self.events.publish(
            JobEvent(
                kind=JOB_FINISHED,
                job_id=record.id,
                state=state,
                payload={
                    "notify_url": record.spec.notify_url,
                    "record": record.model_dump(mode="json"),
                },
                created_at=finished_at,
            )
        )
        return record

    async def _abort(self, job_id: str, exc: Exception) -> None:
        """Finalize a job left running by an unexpected error."""
        async with self._lock:
            record = await self.registry.get(job_id)
            if record.state.terminal or record.state == JobState.queued:
                return
            await self._finalize(
                record,
                JobState.crashed,
                failure=FailureClassification.runtime_crash,
                stop_reason=StopReason.non_retryable,
                error=f"coordinator error: {exc}",
            )
        self._wakeup.set()

    # -- helpers -------------------------------------------------------------

    async def _log_store_call(self, operation: str, job_id: str, *args) -> None:
        if self.log_store is None:
            return
        try:
            await getattr(self.log_store, operation)(job_id, *args)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Log store %s failed for job %s: %s", operation, job_id, exc)

    async def _lookup(self, job_id: str) -> JobRecord:
        try:
            return await self.registry.get(job_id)
        except JobNotFound:
            if self.archive is None:
                raise
        return await self.archive.get(job_id)

    async def _purge_expired(self) -> None:
        cutoff = _now() - timedelta(seconds=self.settings.job_retention_seconds)
        expired = await self.registry.pop_finished_before(cutoff)
        for record in expired:
            if self.archive is not None:
                await self.archive.save(record)
            self.budget.forget(record.id)
        if expired:
            logger.info("Purged %d finished job record(s) from memory", len(expired))

    def _estimate_wait(self, position: int) -> float:
        ahead = position - 1 + (1 if self._active is not None else 0)
        average = self._average_duration() or self.settings.default_estimate_seconds
        return ahead * average

    def _average_duration(self) -> float:
        if self._total_processed == 0:
            return 0.0
        return self._total_duration / self._total_processed

    def _output_sink(self, job_id: str):
        if self.log_store is None:
            return None
        log_store = self.log_store

        async def sink(line: str) -> None:
            await log_store.append(job_id, line.rstrip("\n"))

        return sink

    def _log_candidates(self, record: JobRecord) -> list[Path]:
        artifacts = config.data_dir(self.settings) / record.id / "artifacts"
        candidates = [artifacts / f"attempt-{record.attempt}.log"]
        for attempt in reversed(record.attempts):
            if attempt.output_path:
                candidates.append(Path(attempt.output_path))
        return candidates

    def _publish_budget_alert(self, total: float, limit: float) -> None:
        self.events.publish(
            JobEvent(
                kind=BUDGET_ALERT,
                payload={"daily_total_usd": total, "daily_limit_usd": limit},
                created_at=_now(),
            )
        )


def _queue_entry(job: JobRecord) -> QueueEntry:
    return QueueEntry(
        job_id=job.id,
        state=job.state,
        priority=job.spec.priority,
        caller_id=job.spec.caller_id,
        attempt=job.attempt,
        target=job.spec.target,
        framework=job.spec.framework,
        run_after=job.run_after,
    )
