from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from job_coordinator.models import BudgetSnapshot

logger = logging.getLogger(__name__)

_REPORTED_COST_PATTERNS = (
    re.compile(r'"total_cost_usd"\s*:\s*(\d+(?:\.\d+)?)', re.IGNORECASE),
    re.compile(r'"cost_usd"\s*:\s*(\d+(?:\.\d+)?)', re.IGNORECASE),
    re.compile(r"\bcost\s*[:=]\s*\$\s*(\d+(?:\.\d+)?)", re.IGNORECASE),
)


def estimate_attempt_cost(
    *, output: str, wall_seconds: float, cost_per_second: float
) -> float:
    """Cost reported by the runner wins; otherwise bill runtime."""

    for pattern in _REPORTED_COST_PATTERNS:
        matches = pattern.findall(output)
        if matches:
            return float(matches[-1])
    return max(wall_seconds, 0.0) * cost_per_second


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BudgetTracker:
    """Budget ledger: cumulative cost per job and per day.

    The daily window starts at `reset_hour_utc` and rolls over lazily on the
    next read or write after the boundary.
    """

    def __init__(
        self,
        *,
        daily_limit_usd: float = 50.0,
        per_task_limit_usd: float = 5.0,
        alert_ratio: float = 0.8,
        reset_hour_utc: int = 0,
        clock: Callable[[], datetime] = _utc_now,
        on_alert: Callable[[float, float], None] | None = None,
    ) -> None:
        self.daily_limit_usd = daily_limit_usd
        self.per_task_limit_usd = per_task_limit_usd
        self.alert_ratio = alert_ratio
        self.reset_hour_utc = reset_hour_utc
        self._clock = clock
        self._on_alert = on_alert
        self._job_costs: dict[str, float] = {}
        self._daily_total = 0.0
        self._alert_emitted = False
        self._window_start = self._current_window_start()

    def _current_window_start(self) -> datetime:
        now = self._clock()
        start = now.replace(hour=self.reset_hour_utc, minute=0, second=0, microsecond=0)
        if start > now:
            start -= timedelta(days=1)
        return start

    def _roll_window(self) -> None:
        start = self._current_window_start()
        if start > self._window_start:
            logger.info(
                "Budget window reset (previous daily total %.4f USD)", self._daily_total
            )
            self._window_start = start
            self._daily_total = 0.0
            self._alert_emitted = False

    def record_attempt(self, job_id: str, cost: float) -> None:
        if cost < 0:
            raise ValueError("attempt cost must be >= 0")
        self._roll_window()
        self._job_costs[job_id] = self._job_costs.get(job_id, 0.0) + cost
        self._daily_total += cost
        self._check_alert()

    def _check_alert(self) -> None:
        if self._alert_emitted or self.daily_limit_usd <= 0:
            return
        threshold = self.daily_limit_usd * self.alert_ratio
        if self._daily_total >= threshold:
            self._alert_emitted = True
            logger.warning(
                "Daily test cost %.4f USD crossed %.0f%% of the %.2f USD limit",
                self._daily_total,
                self.alert_ratio * 100,
                self.daily_limit_usd,
            )
            if self._on_alert is not None:
                self._on_alert(self._daily_total, self.daily_limit_usd)

    def can_retry(
        self,
        job_id: str,
        per_task_limit: float | None = None,
        daily_limit: float | None = None,
    ) -> bool:
        self._roll_window()
        per_task = self.per_task_limit_usd if per_task_limit is None else per_task_limit
        daily = self.daily_limit_usd if daily_limit is None else daily_limit
        if self.job_cost(job_id) >= per_task:
            return False
        return self._daily_total < daily

    def job_cost(self, job_id: str) -> float:
        return self._job_costs.get(job_id, 0.0)

    def forget(self, job_id: str) -> None:
        self._job_costs.pop(job_id, None)

    def daily_total(self) -> float:
        self._roll_window()
        return self._daily_total

    def snapshot(self) -> BudgetSnapshot:
        self._roll_window()
        return BudgetSnapshot(
            window_start=self._window_start,
            daily_total_usd=self._daily_total,
            daily_limit_usd=self.daily_limit_usd,
            per_task_limit_usd=self.per_task_limit_usd,
            alert_ratio=self.alert_ratio,
            alert_emitted=self._alert_emitted,
        )
