from __future__ import annotations

import os
from pathlib import Path

from job_coordinator.settings import Settings


def data_dir(settings: Settings | None = None) -> Path:
    """Root directory for job data (per-job subdirs)."""
    raw = settings.job_data_dir if settings else os.getenv("JOB_DATA_DIR", "data/jobs")
    root = Path(raw).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def job_dir(job_id: str, settings: Settings | None = None) -> Path:
    """Per-job directory; the runner writes artifacts under `artifacts/`."""
    root = data_dir(settings) / job_id
    (root / "artifacts").mkdir(parents=True, exist_ok=True)
    return root
