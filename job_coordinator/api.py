from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import FileResponse

from job_coordinator.coordinator import Coordinator
from job_coordinator.errors import JobAlreadyFinished, JobNotFound, NotReady, QueueFull
from job_coordinator.job_store import JobArchive
from job_coordinator.log_store import LogStore
from job_coordinator.models import (
    BudgetSnapshot,
    CancelResponse,
    HealthResponse,
    JobResultResponse,
    JobSpec,
    QueueListing,
    StatusResponse,
    SubmitResponse,
)
from job_coordinator.redis_client import get_redis
from job_coordinator.settings import Settings, get_settings


API_DESCRIPTION = """
Test Coordination Server - queue test runs, execute them one at a time, retry failures.

## Submitting a Job

`POST /jobs` with a JSON body:

```json
{"target": "tests/test_player.py", "framework": "pytest", "timeout_seconds": 300,
 "priority": "high", "caller_id": "agent-7"}
```

Supported frameworks: `pytest`, `gdunit4`, `junit`, `jsonl`, `command`.
Poll `GET /jobs/{job_id}` until the state is terminal, then fetch
`GET /jobs/{job_id}/result`. Pass `notify_url` to receive the final record
by webhook instead.

## Environment Variables Available to the Runner

- `JOB_ID` - Unique job identifier
- `JOB_ATTEMPT` - Attempt number, starting at 1
- `JOB_OUTPUT_DIR` - Directory for output artifacts (files here can be downloaded)
- `JOB_DESCRIPTION_FILE` - Task description including context from failed attempts
"""

router = APIRouter()


def get_coordinator(request: Request) -> Coordinator:
    return request.app.state.coordinator


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings.validate()
        archive = log_store = None
        if settings.redis_in_use:
            client = get_redis(settings)
            archive = JobArchive(client, ttl_seconds=settings.archive_ttl_seconds)
            log_store = LogStore(client, ttl_seconds=settings.archive_ttl_seconds)
        coordinator = Coordinator(settings, archive=archive, log_store=log_store)
        app.state.coordinator = coordinator
        await coordinator.start()
        try:
            yield
        finally:
            await coordinator.stop()

    app = FastAPI(
        title="Test Coordination Server",
        version="0.1.0",
        description=API_DESCRIPTION,
        lifespan=lifespan,
    )
    app.include_router(router)
    return app


@router.get("/health", response_model=HealthResponse)
async def health(coordinator: Coordinator = Depends(get_coordinator)) -> HealthResponse:
    return await coordinator.health()


@router.post("/jobs", response_model=SubmitResponse, status_code=201)
async def submit_job(
    spec: JobSpec, coordinator: Coordinator = Depends(get_coordinator)
) -> SubmitResponse:
    try:
        return await coordinator.submit(spec)
    except QueueFull as exc:
        raise HTTPException(status_code=429, detail=str(exc)) from exc


@router.get("/jobs/{job_id}", response_model=StatusResponse)
async def job_status(
    job_id: str, coordinator: Coordinator = Depends(get_coordinator)
) -> StatusResponse:
    try:
        return await coordinator.status(job_id)
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/jobs/{job_id}/result", response_model=JobResultResponse)
async def job_result(
    job_id: str, coordinator: Coordinator = Depends(get_coordinator)
) -> JobResultResponse:
    try:
        return await coordinator.result(job_id)
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except NotReady as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@router.post("/jobs/{job_id}/cancel", response_model=CancelResponse)
@router.delete("/jobs/{job_id}", response_model=CancelResponse)
async def cancel_job(
    job_id: str, coordinator: Coordinator = Depends(get_coordinator)
) -> CancelResponse:
    try:
        return await coordinator.cancel(job_id)
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except JobAlreadyFinished as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@router.get("/queue", response_model=QueueListing)
async def queue(coordinator: Coordinator = Depends(get_coordinator)) -> QueueListing:
    return await coordinator.list_queue()


@router.get("/budget", response_model=BudgetSnapshot)
async def budget(coordinator: Coordinator = Depends(get_coordinator)) -> BudgetSnapshot:
    return coordinator.budget_snapshot()


@router.get("/jobs/{job_id}/logs")
async def job_logs(job_id: str, coordinator: Coordinator = Depends(get_coordinator)):
    try:
        lines = await coordinator.logs(job_id)
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"job_id": job_id, "lines": lines}


@router.get("/jobs/{job_id}/artifacts/{filename}")
async def download_artifact(
    job_id: str, filename: str, coordinator: Coordinator = Depends(get_coordinator)
):
    path = coordinator.artifact_path(job_id, filename)
    if not path.is_file():
        raise HTTPException(status_code=404, detail="artifact not found")
    return FileResponse(path)


app = create_app()
