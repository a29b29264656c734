from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from job_coordinator.budget import BudgetTracker
from job_coordinator.classifier import AttemptClassification, failure_hint
from job_coordinator.models import (
    FailureClassification,
    JobRecord,
    JobState,
    NormalizedResult,
    StopReason,
)
from job_coordinator.settings import Settings

logger = logging.getLogger(__name__)

# Max additional attempts beyond the first.
DEFAULT_RETRY_CEILINGS: dict[FailureClassification, int] = {
    FailureClassification.test_failure: 3,
    FailureClassification.compilation_error: 3,
    FailureClassification.runtime_crash: 2,
    FailureClassification.timeout: 1,
    FailureClassification.git_conflict: 1,
    FailureClassification.rate_limited: 5,
    FailureClassification.permission_error: 0,
    FailureClassification.missing_dependency: 0,
    FailureClassification.resource_exhausted: 0,
    FailureClassification.unknown: 1,
}

_FINAL_STATES: dict[FailureClassification, JobState] = {
    FailureClassification.timeout: JobState.timed_out,
    FailureClassification.runtime_crash: JobState.crashed,
}

MAX_CONTEXT_TESTS = 20


@dataclass(slots=True)
class Retry:
    delay_seconds: float
    job: JobRecord


@dataclass(slots=True)
class Stop:
    state: JobState
    classification: FailureClassification
    reason: StopReason
    message: str


def final_state_for(classification: FailureClassification) -> JobState:
    return _FINAL_STATES.get(classification, JobState.failed)


class RetryPolicy:
    """Decides whether a failed attempt gets another try."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        budget: BudgetTracker,
        base_seconds: float = 60.0,
        max_seconds: float = 300.0,
        jitter_ratio: float = 0.1,
        timeout_multiplier: float = 2.0,
        timeout_cap_seconds: int = 3600,
        per_task_limit_usd: float = 5.0,
        daily_limit_usd: float = 50.0,
        rng: random.Random | None = None,
    ) -> None:
        self.budget = budget
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self.jitter_ratio = jitter_ratio
        self.timeout_multiplier = timeout_multiplier
        self.timeout_cap_seconds = timeout_cap_seconds
        self.per_task_limit_usd = per_task_limit_usd
        self.daily_limit_usd = daily_limit_usd
        self._random = rng or random.Random()  # noqa: S311

    @classmethod
    def from_settings(cls, settings: Settings, budget: BudgetTracker) -> RetryPolicy:
        return cls(
            budget=budget,
            base_seconds=settings.retry_base_seconds,
            max_seconds=settings.retry_max_seconds,
            jitter_ratio=settings.retry_jitter_ratio,
            timeout_multiplier=settings.timeout_retry_multiplier,
            timeout_cap_seconds=settings.timeout_retry_cap_seconds,
            per_task_limit_usd=settings.budget_per_task_usd,
            daily_limit_usd=settings.budget_daily_usd,
        )

    def ceiling(self, job: JobRecord, classification: FailureClassification) -> int:
        """Effective max additional attempts; caller overrides only narrow it."""
        limit = DEFAULT_RETRY_CEILINGS[classification]
        if job.spec.max_retries is not None:
            limit = min(limit, job.spec.max_retries)
        if job.spec.allow_retry_on is not None and classification not in job.spec.allow_retry_on:
            limit = 0
        return limit

    def backoff_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Delay before the attempt following `attempt` (1-based)."""
        if retry_after is not None:
            base = max(retry_after, 0.0)
        else:
            base = min(self.base_seconds * (2 ** max(attempt - 1, 0)), self.max_seconds)
        return base + self._random.uniform(0, base * self.jitter_ratio)

    def decide(
        self,
        job: JobRecord,
        failure: AttemptClassification,
        result: NormalizedResult,
        now: datetime,
    ) -> Retry | Stop:
        classification = failure.classification
        final_state = final_state_for(classification)
        ceiling = self.ceiling(job, classification)
        retries_used = job.attempt - 1

        if ceiling == 0:
            return Stop(final_state, classification, StopReason.non_retryable, failure.message)
        if retries_used >= ceiling:
            return Stop(
                final_state, classification, StopReason.retry_limit_reached, failure.message
            )
        if not self.budget.can_retry(job.id, self.per_task_limit_usd, self.daily_limit_usd):
            logger.info("Job %s retry vetoed by budget", job.id)
            return Stop(final_state, classification, StopReason.budget_exceeded, failure.message)

        retry_after = (
            failure.retry_after_seconds
            if classification == FailureClassification.rate_limited
            else None
        )
        delay = self.backoff_delay(job.attempt, retry_after)
        timeout = job.timeout_seconds
        if classification == FailureClassification.timeout:
            timeout = max(
                timeout, min(int(timeout * self.timeout_multiplier), self.timeout_cap_seconds)
            )
        description = _append_context(job.description, failure_context(job, failure, result))
        updated = job.model_copy(
            update={
                "attempt": job.attempt + 1,
                "timeout_seconds": timeout,
                "description": description,
                "run_after": now + timedelta(seconds=delay),
                "failure": classification,
            }
        )
        return Retry(delay_seconds=delay, job=updated)


def failure_context(
    job: JobRecord, failure: AttemptClassification, result: NormalizedResult
) -> str:
    """Structured summary of a failed attempt, fed to the next one."""

    lines = [
        f"--- Attempt {job.attempt} failed: {failure.classification.value} ---",
        f"Message: {failure.message}",
    ]
    failing = result.failed_tests
    if failing:
        lines.append("Failing tests:")
        for test in failing[:MAX_CONTEXT_TESTS]:
            entry = f"- {test.name}"
            if test.location:
                entry += f" ({test.location})"
            if test.expected is not None or test.actual is not None:
                entry += f": expected {test.expected}, actual {test.actual}"
            lines.append(entry)
            if test.message:
                lines.append(f"  {test.message}")
        if len(failing) > MAX_CONTEXT_TESTS:
            lines.append(f"- ... and {len(failing) - MAX_CONTEXT_TESTS} more")
    hint_source = " ".join(
        [failure.message, *(t.message or "" for t in failing[:MAX_CONTEXT_TESTS])]
    )
    lines.append(f"Hint: {failure_hint(hint_source)}")
    return "\n".join(lines)


def _append_context(description: str, context: str) -> str:
    if not description:
        return context
    return f"{description.rstrip()}\n\n{context}"
