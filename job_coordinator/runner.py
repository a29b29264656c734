from __future__ import annotations

import asyncio
import logging
import os
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime, timezone
from pathlib import Path

import psutil

from job_coordinator import config
from job_coordinator.errors import SpawnError
from job_coordinator.frameworks import build_command
from job_coordinator.models import (
    AttemptOutcome,
    FailureClassification,
    JobRecord,
    ResourceUsage,
)
from job_coordinator.settings import Settings

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str], Awaitable[None]]

# CPU seconds below this between two samples count as no progress.
_CPU_PROGRESS_EPSILON = 0.01

_READ_CHUNK_BYTES = 65536


class _OutputBuffer:
    """Combined runner output, keeping head and tail once over `limit` bytes."""

    def __init__(self, limit: int) -> None:
        self.limit = max(limit, 2)
        self._head: list[str] = []
        self._head_size = 0
        self._tail: deque[str] = deque()
        self._tail_size = 0
        self.total_bytes = 0
        self.dropped = False

    def append(self, text: str) -> None:
        size = len(text)
        self.total_bytes += size
        if self._head_size + size <= self.limit // 2 and not self._tail:
            self._head.append(text)
            self._head_size += size
            return
        self._tail.append(text)
        self._tail_size += size
        while self._tail_size > self.limit // 2 and len(self._tail) > 1:
            self._tail_size -= len(self._tail.popleft())
            self.dropped = True

    def text(self) -> str:
        marker = "\n... (truncated) ...\n" if self.dropped else ""
        return "".join(self._head) + marker + "".join(self._tail)


class Supervisor:
    """Launches, watches and, when needed, kills one runner process.

    A fresh process is spawned for every attempt; nothing is reused.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    async def run(
        self,
        job: JobRecord,
        timeout: float,
        *,
        cancel_event: asyncio.Event | None = None,
        on_output: OutputCallback | None = None,
    ) -> AttemptOutcome:
        """Execute the current attempt of `job` and report what happened."""
        started_at = _now()
        job_root = config.job_dir(job.id, self.settings)
        artifacts_dir = job_root / "artifacts"
        log_path = artifacts_dir / f"attempt-{job.attempt}.log"

        try:
            argv, workdir = self._prepare(job)
        except SpawnError as exc:
            return self._spawn_failure(exc, started_at, log_path)

        description_path = job_root / f"description-{job.attempt}.md"
        description_path.write_text(job.description, encoding="utf-8")

        env = os.environ.copy()
        env.update(job.spec.env)
        env.setdefault("JOB_ID", job.id)
        env["JOB_ATTEMPT"] = str(job.attempt)
        env.setdefault("JOB_OUTPUT_DIR", str(artifacts_dir))
        env["JOB_DESCRIPTION_FILE"] = str(description_path)

        logger.info(
            "Starting job %s attempt %d: %s (timeout %ss)",
            job.id,
            job.attempt,
            " ".join(argv),
            timeout,
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(workdir),
                env=env,
            )
        except FileNotFoundError as exc:
            return self._spawn_failure(
                SpawnError(
                    f"runner executable not found: {argv[0]} ({exc})",
                    classification=FailureClassification.missing_dependency,
                ),
                started_at,
                log_path,
            )
        except PermissionError as exc:
            return self._spawn_failure(
                SpawnError(
                    f"runner executable not permitted: {argv[0]} ({exc})",
                    classification=FailureClassification.permission_error,
                ),
                started_at,
                log_path,
            )
        except OSError as exc:
            return self._spawn_failure(
                SpawnError(
                    f"failed to spawn runner: {exc}",
                    classification=FailureClassification.missing_dependency,
                ),
                started_at,
                log_path,
            )

        buffer = _OutputBuffer(self.settings.max_output_bytes)
        with log_path.open("w", encoding="utf-8") as log_file:

            async def consume_output() -> None:
                assert process.stdout is not None
                async for line in _read_lines(process.stdout, self.settings.max_output_bytes):
                    text = line.decode(errors="replace")
                    buffer.append(text)
                    log_file.write(text)
                    if on_output is not None:
                        try:
                            await on_output(text)
                        except Exception as exc:  # noqa: BLE001
                            logger.warning("Output callback failed for %s: %s", job.id, exc)

            reader = asyncio.create_task(consume_output())
            reason, usage = await self._watch(process, timeout, buffer, cancel_event)
            if reason is not None:
                await _terminate(process, self.settings.terminate_grace_seconds)
            try:
                await asyncio.wait_for(reader, timeout=max(self.settings.terminate_grace_seconds, 1.0))
            except asyncio.TimeoutError:
                logger.warning("Output of job %s still open after exit; dropping reader", job.id)

            if reason == "timeout":
                log_file.write("[supervisor] timeout exceeded, process terminated\n")
                buffer.append("[supervisor] timeout exceeded, process terminated\n")
            elif reason == "stalled":
                log_file.write("[supervisor] runner unresponsive, process killed\n")
                buffer.append("[supervisor] runner unresponsive, process killed\n")

        finished_at = _now()
        usage.wall_seconds = (finished_at - started_at).total_seconds()
        logger.info(
            "Job %s attempt %d finished: exit=%s reason=%s in %.2fs",
            job.id,
            job.attempt,
            process.returncode,
            reason or "exited",
            usage.wall_seconds,
        )
        return AttemptOutcome(
            exit_code=process.returncode,
            output=buffer.text(),
            output_path=str(log_path),
            timed_out=reason == "timeout",
            stalled=reason == "stalled",
            cancelled=reason == "cancelled",
            started_at=started_at,
            finished_at=finished_at,
            usage=usage,
        )

    def _prepare(self, job: JobRecord) -> tuple[list[str], Path]:
        workdir = Path(job.spec.working_dir or self.settings.workspace_dir).resolve()
        if not workdir.is_dir():
            raise SpawnError(
                f"working directory does not exist: {workdir}",
                classification=FailureClassification.missing_dependency,
            )
        argv = build_command(
            framework=job.spec.framework,
            target=job.spec.target,
            workdir=workdir,
            job_id=job.id,
            overrides=self.settings.runner_commands,
        )
        return argv, workdir

    def _spawn_failure(
        self, error: SpawnError, started_at: datetime, log_path: Path
    ) -> AttemptOutcome:
        message = str(error)
        logger.error("Runner spawn failed: %s", message)
        log_path.write_text(f"[supervisor] {message}\n", encoding="utf-8")
        return AttemptOutcome(
            output=message,
            output_path=str(log_path),
            spawn_error=message,
            spawn_classification=error.classification,
            started_at=started_at,
            finished_at=_now(),
        )

    async def _watch(
        self,
        process: asyncio.subprocess.Process,
        timeout: float,
        buffer: _OutputBuffer,
        cancel_event: asyncio.Event | None,
    ) -> tuple[str | None, ResourceUsage]:
        """Wait for exit, deadline, stall or cancellation; whichever comes first."""
        usage = ResourceUsage()
        interval = self.settings.health_check_interval_seconds
        stall_threshold = self.settings.stall_threshold_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        last_progress = loop.time()
        last_cpu = -1.0
        last_bytes = 0

        wait_task = asyncio.ensure_future(process.wait())
        cancel_task = asyncio.ensure_future(cancel_event.wait()) if cancel_event else None
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return "timeout", usage
                pending = {wait_task} if cancel_task is None else {wait_task, cancel_task}
                await asyncio.wait(
                    pending, timeout=min(interval, remaining), return_when=asyncio.FIRST_COMPLETED
                )
                if wait_task.done():
                    return None, usage
                if cancel_task is not None and cancel_task.done():
                    return "cancelled", usage

                sample = _sample(process.pid)
                now = loop.time()
                if sample is not None:
                    cpu, rss = sample
                    usage.cpu_seconds = max(usage.cpu_seconds, cpu)
                    usage.peak_rss_bytes = max(usage.peak_rss_bytes, rss)
                    if cpu - last_cpu > _CPU_PROGRESS_EPSILON:
                        last_cpu = cpu
                        last_progress = now
                if buffer.total_bytes != last_bytes:
                    last_bytes = buffer.total_bytes
                    last_progress = now
                if stall_threshold > 0 and now - last_progress >= stall_threshold:
                    return "stalled", usage
        finally:
            if cancel_task is not None and not cancel_task.done():
                cancel_task.cancel()


async def _read_lines(stream: asyncio.StreamReader, max_line_bytes: int) -> AsyncIterator[bytes]:
    """Yield newline-terminated pieces of `stream` whatever the line length.

    `StreamReader.readline` gives up on lines over the reader limit, so the
    stream is read in fixed chunks and split here. A line that grows past
    `max_line_bytes` without a newline is flushed as it stands.
    """
    pending = b""
    while True:
        chunk = await stream.read(_READ_CHUNK_BYTES)
        if not chunk:
            break
        pending += chunk
        *lines, pending = pending.split(b"\n")
        for line in lines:
            yield line + b"\n"
        if len(pending) >= max(max_line_bytes, _READ_CHUNK_BYTES):
            yield pending
            pending = b""
    if pending:
        yield pending


def _sample(pid: int) -> tuple[float, int] | None:
    """CPU seconds and RSS of the process tree, or None once it is gone."""
    try:
        root = psutil.Process(pid)
        procs = [root, *root.children(recursive=True)]
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None
    cpu = 0.0
    rss = 0
    for proc in procs:
        try:
            with proc.oneshot():
                times = proc.cpu_times()
                cpu += times.user + times.system
                rss += proc.memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return cpu, rss


def _children(pid: int) -> list[psutil.Process]:
    try:
        return psutil.Process(pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return []


async def _terminate(process: asyncio.subprocess.Process, grace_seconds: float) -> None:
    """SIGTERM the runner and its children, SIGKILL whatever outlives the grace period."""
    if process.returncode is not None:
        return
    children = _children(process.pid)
    for child in children:
        try:
            child.terminate()
        except psutil.NoSuchProcess:
            continue
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except asyncio.TimeoutError:
        logger.warning("Runner pid %s ignored SIGTERM; killing", process.pid)
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
    _, alive = psutil.wait_procs(children, timeout=0)
    for child in alive:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            continue


def _now() -> datetime:
    return datetime.now(timezone.utc)


