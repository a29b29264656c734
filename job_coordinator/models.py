from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

FRAMEWORKS = ("pytest", "gdunit4", "junit", "jsonl", "command")


class Priority(str, Enum):
    high = "high"
    normal = "normal"
    low = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.high: 0, Priority.normal: 1, Priority.low: 2}


class JobState(str, Enum):
    queued = "queued"
    running = "running"
    completed = "completed"
    failed = "failed"
    timed_out = "timed_out"
    crashed = "crashed"
    cancelled = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (JobState.queued, JobState.running)


class FailureClassification(str, Enum):
    """Why an attempt did not succeed."""

    test_failure = "test_failure"
    compilation_error = "compilation_error"
    runtime_crash = "runtime_crash"
    timeout = "timeout"
    git_conflict = "git_conflict"
    permission_error = "permission_error"
    missing_dependency = "missing_dependency"
    rate_limited = "rate_limited"
    resource_exhausted = "resource_exhausted"
    unknown = "unknown"


class StopReason(str, Enum):
    succeeded = "succeeded"
    cancelled = "cancelled"
    non_retryable = "non_retryable"
    retry_limit_reached = "retry_limit_reached"
    budget_exceeded = "budget_exceeded"


class CaseStatus(str, Enum):
    passed = "passed"
    failed = "failed"
    skipped = "skipped"
    error = "error"
    unknown = "unknown"


class CaseResult(BaseModel):
    name: str
    status: CaseStatus
    expected: str | None = None
    actual: str | None = None
    location: str | None = None
    message: str | None = None


class ResultSummary(BaseModel):
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    unknown: int = 0


class NormalizedResult(BaseModel):
    summary: ResultSummary = Field(default_factory=ResultSummary)
    tests: list[CaseResult] = Field(default_factory=list)
    artifacts: list[str] = Field(default_factory=list)
    truncated: bool = False
    parse_error: str | None = None

    @property
    def failed_tests(self) -> list[CaseResult]:
        return [
            t for t in self.tests if t.status in (CaseStatus.failed, CaseStatus.error)
        ]


class ResourceUsage(BaseModel):
    wall_seconds: float = 0.0
    cpu_seconds: float = 0.0
    peak_rss_bytes: int = 0


class AttemptOutcome(BaseModel):
    """Raw result of one supervised runner process."""

    exit_code: int | None = None
    output: str = ""
    output_path: str | None = None
    timed_out: bool = False
    stalled: bool = False
    cancelled: bool = False
    spawn_error: str | None = None
    spawn_classification: FailureClassification | None = None
    started_at: datetime
    finished_at: datetime
    usage: ResourceUsage = Field(default_factory=ResourceUsage)


class AttemptRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    attempt: int
    started_at: datetime
    finished_at: datetime
    duration_seconds: float
    timeout_seconds: int
    exit_code: int | None = None
    classification: FailureClassification | None = None
    message: str | None = None
    output_path: str | None = None
    result: NormalizedResult
    usage: ResourceUsage
    cost_usd: float = 0.0


class JobSpec(BaseModel):
    target: str = Field(min_length=1)
    framework: str = Field(default="pytest")
    timeout_seconds: int = Field(default=300, gt=0, le=86400)
    priority: Priority = Priority.normal
    caller_id: str = Field(default="anonymous", min_length=1)
    max_retries: int | None = Field(default=None, ge=0)
    allow_retry_on: set[FailureClassification] | None = None
    description: str = ""
    working_dir: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    notify_url: str | None = None

    @field_validator("framework")
    @classmethod
    def _known_framework(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in FRAMEWORKS:
            raise ValueError(
                f"unsupported framework {value!r}; expected one of {', '.join(FRAMEWORKS)}"
            )
        return normalized


class JobRecord(BaseModel):
    id: str
    spec: JobSpec
    state: JobState = JobState.queued
    attempt: int = 1
    timeout_seconds: int
    description: str = ""
    submitted_seq: int
    created_at: datetime
    run_after: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    cost_usd: float = 0.0
    failure: FailureClassification | None = None
    stop_reason: StopReason | None = None
    error: str | None = None
    attempts: list[AttemptRecord] = Field(default_factory=list)
    result: NormalizedResult | None = None
    cancel_requested: bool = False

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.spec.priority.rank, self.submitted_seq)


class SubmitResponse(BaseModel):
    job_id: str
    queue_position: int
    estimated_wait_seconds: float


class StatusResponse(BaseModel):
    job_id: str
    state: JobState
    attempt: int
    queue_position: int | None = None
    started_at: datetime | None = None
    elapsed_seconds: float | None = None
    failure: FailureClassification | None = None
    stop_reason: StopReason | None = None


class JobResultResponse(BaseModel):
    job_id: str
    state: JobState
    attempts: int
    failure: FailureClassification | None = None
    stop_reason: StopReason | None = None
    error: str | None = None
    cost_usd: float = 0.0
    result: NormalizedResult


class CancelResponse(BaseModel):
    job_id: str
    state: JobState
    was_running: bool


class HealthResponse(BaseModel):
    status: str = "ok"
    queue_depth: int
    active_job_id: str | None = None
    total_processed: int
    average_duration_seconds: float


class QueueEntry(BaseModel):
    job_id: str
    state: JobState
    priority: Priority
    caller_id: str
    attempt: int
    target: str
    framework: str
    run_after: datetime | None = None


class QueueListing(BaseModel):
    active: QueueEntry | None = None
    queued: list[QueueEntry] = Field(default_factory=list)


class BudgetSnapshot(BaseModel):
    window_start: datetime
    daily_total_usd: float
    daily_limit_usd: float
    per_task_limit_usd: float
    alert_ratio: float
    alert_emitted: bool


class JobEvent(BaseModel):
    """Published on terminal-state transitions and budget alerts."""

    kind: str
    job_id: str | None = None
    state: JobState | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
