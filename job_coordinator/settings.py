from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _env_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


def _runner_commands() -> dict[str, str]:
    """Collect `RUNNER_COMMAND_<FRAMEWORK>` overrides."""
    prefix = "RUNNER_COMMAND_"
    return {
        key[len(prefix) :].lower(): value
        for key, value in os.environ.items()
        if key.startswith(prefix) and value.strip()
    }


@dataclass(frozen=True)
class Settings:
    job_data_dir: str = field(
        default_factory=lambda: os.getenv("JOB_DATA_DIR", "data/jobs")
    )
    workspace_dir: str = field(default_factory=lambda: os.getenv("WORKSPACE_DIR", "."))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    # queue
    queue_max_depth: int = field(default_factory=lambda: _env_int("QUEUE_MAX_DEPTH", "50"))
    default_estimate_seconds: float = field(
        default_factory=lambda: _env_float("DEFAULT_ESTIMATE_SECONDS", "60")
    )

    # retry policy
    retry_base_seconds: float = field(
        default_factory=lambda: _env_float("RETRY_BASE_SECONDS", "60")
    )
    retry_max_seconds: float = field(
        default_factory=lambda: _env_float("RETRY_MAX_SECONDS", "300")
    )
    retry_jitter_ratio: float = field(
        default_factory=lambda: _env_float("RETRY_JITTER_RATIO", "0.1")
    )
    timeout_retry_multiplier: float = field(
        default_factory=lambda: _env_float("TIMEOUT_RETRY_MULTIPLIER", "2.0")
    )
    timeout_retry_cap_seconds: int = field(
        default_factory=lambda: _env_int("TIMEOUT_RETRY_CAP_SECONDS", "3600")
    )

    # supervisor
    health_check_interval_seconds: float = field(
        default_factory=lambda: _env_float("HEALTH_CHECK_INTERVAL_SECONDS", "1.0")
    )
    stall_threshold_seconds: float = field(
        default_factory=lambda: _env_float("STALL_THRESHOLD_SECONDS", "120")
    )
    terminate_grace_seconds: float = field(
        default_factory=lambda: _env_float("TERMINATE_GRACE_SECONDS", "5")
    )
    max_output_bytes: int = field(
        default_factory=lambda: _env_int("MAX_OUTPUT_BYTES", "1000000")
    )
    runner_commands: dict[str, str] = field(default_factory=_runner_commands)

    # budget
    budget_per_task_usd: float = field(
        default_factory=lambda: _env_float("BUDGET_PER_TASK_USD", "5.0")
    )
    budget_daily_usd: float = field(
        default_factory=lambda: _env_float("BUDGET_DAILY_USD", "50.0")
    )
    budget_alert_ratio: float = field(
        default_factory=lambda: _env_float("BUDGET_ALERT_RATIO", "0.8")
    )
    budget_reset_hour_utc: int = field(
        default_factory=lambda: _env_int("BUDGET_RESET_HOUR_UTC", "0")
    )
    cost_per_runtime_second_usd: float = field(
        default_factory=lambda: _env_float("COST_PER_RUNTIME_SECOND_USD", "0")
    )

    # retention / notification
    job_retention_seconds: float = field(
        default_factory=lambda: _env_float("JOB_RETENTION_SECONDS", "86400")
    )
    archive_ttl_seconds: int = field(
        default_factory=lambda: _env_int("ARCHIVE_TTL_SECONDS", "604800")
    )
    webhook_url: str | None = field(
        default_factory=lambda: os.getenv("WEBHOOK_URL") or None
    )

    # redis
    redis_enabled: bool = field(
        default_factory=lambda: _env_bool("REDIS_ENABLED", default=False)
    )
    redis_url: str = field(
        default_factory=lambda: os.getenv("REDIS_URL", "redis://localhost:6379/0")
    )
    use_fake_redis: bool = field(
        default_factory=lambda: _env_bool("FAKE_REDIS", default=False)
    )

    def validate(self) -> None:
        """Raise ValueError on settings the coordinator cannot run with."""
        if self.queue_max_depth <= 0:
            raise ValueError("QUEUE_MAX_DEPTH must be > 0.")
        if self.retry_base_seconds < 0 or self.retry_max_seconds < 0:
            raise ValueError("RETRY_BASE_SECONDS and RETRY_MAX_SECONDS must be >= 0.")
        if not 0 <= self.retry_jitter_ratio <= 1:
            raise ValueError("RETRY_JITTER_RATIO must be within [0, 1].")
        if self.health_check_interval_seconds <= 0:
            raise ValueError("HEALTH_CHECK_INTERVAL_SECONDS must be > 0.")
        if not 0 <= self.budget_reset_hour_utc <= 23:
            raise ValueError("BUDGET_RESET_HOUR_UTC must be within [0, 23].")
        if not 0 < self.budget_alert_ratio <= 1:
            raise ValueError("BUDGET_ALERT_RATIO must be within (0, 1].")

    @property
    def redis_in_use(self) -> bool:
        return self.redis_enabled or self.use_fake_redis


def get_settings() -> Settings:
    return Settings()
