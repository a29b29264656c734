from __future__ import annotations

from job_coordinator.models import FailureClassification


class CoordinatorError(RuntimeError):
    """Base error for coordinator operations surfaced to callers."""


class QueueFull(CoordinatorError):
    def __init__(self, depth: int) -> None:
        super().__init__(f"queue is full ({depth} jobs waiting)")
        self.depth = depth


class JobNotFound(CoordinatorError, KeyError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"job not found: {job_id}")
        self.job_id = job_id

    def __str__(self) -> str:
        return self.args[0]


class NotReady(CoordinatorError):
    def __init__(self, job_id: str, state: str) -> None:
        super().__init__(f"job {job_id} is {state}; result is not ready")
        self.job_id = job_id
        self.state = state


class JobAlreadyFinished(CoordinatorError):
    def __init__(self, job_id: str, state: str) -> None:
        super().__init__(f"job {job_id} already finished as {state}")
        self.job_id = job_id
        self.state = state


class SpawnError(CoordinatorError):
    """Runner process could not be started."""

    def __init__(self, message: str, *, classification: FailureClassification) -> None:
        super().__init__(message)
        self.classification = classification
