import shlex
import sys
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from job_coordinator.models import JobRecord, JobSpec  # noqa: E402
from job_coordinator.settings import Settings  # noqa: E402


@pytest.fixture
def tmp_job_dir(tmp_path, monkeypatch):
    """Set up temporary job data directory."""
    monkeypatch.setenv("JOB_DATA_DIR", str(tmp_path / "jobs"))
    return tmp_path / "jobs"


@pytest.fixture
def settings(tmp_job_dir, tmp_path):
    """Fast settings: tiny backoff, quick health checks, no stall detection."""
    return Settings(
        job_data_dir=str(tmp_job_dir),
        workspace_dir=str(tmp_path),
        retry_base_seconds=0.01,
        retry_max_seconds=0.05,
        retry_jitter_ratio=0.0,
        health_check_interval_seconds=0.05,
        stall_threshold_seconds=0,
        terminate_grace_seconds=1.0,
        runner_commands={},
        webhook_url=None,
        redis_enabled=False,
        use_fake_redis=False,
    )


@pytest.fixture
def script(tmp_path):
    """Write a Python script and return a command line that runs it."""
    counter = {"n": 0}

    def _write(source: str) -> str:
        counter["n"] += 1
        path = tmp_path / f"runner_{counter['n']}.py"
        path.write_text(source)
        return f"{shlex.quote(sys.executable)} {shlex.quote(str(path))}"

    return _write


@pytest.fixture
def make_job():
    def _make(target: str, framework: str = "command", **spec_fields) -> JobRecord:
        spec = JobSpec(target=target, framework=framework, **spec_fields)
        return JobRecord(
            id=uuid4().hex,
            spec=spec,
            timeout_seconds=spec.timeout_seconds,
            description=spec.description,
            submitted_seq=1,
            created_at=datetime.now(timezone.utc),
        )

    return _make
