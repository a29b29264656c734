from datetime import datetime, timedelta, timezone

import pytest

from job_coordinator.budget import BudgetTracker, estimate_attempt_cost


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now


def test_reported_cost_wins_over_runtime():
    output = 'step\n{"total_cost_usd": 0.25}\n{"total_cost_usd": 0.40}\n'

    assert estimate_attempt_cost(output=output, wall_seconds=100, cost_per_second=1.0) == 0.40
    assert estimate_attempt_cost(output="cost: $1.5", wall_seconds=0, cost_per_second=0) == 1.5
    assert estimate_attempt_cost(output="", wall_seconds=10, cost_per_second=0.01) == pytest.approx(0.1)


def test_per_task_gate():
    tracker = BudgetTracker(per_task_limit_usd=2.0, daily_limit_usd=100.0)

    tracker.record_attempt("a", 1.5)
    assert tracker.can_retry("a")
    tracker.record_attempt("a", 0.5)
    assert not tracker.can_retry("a")
    assert tracker.can_retry("b")
    assert tracker.job_cost("a") == 2.0


def test_daily_gate():
    tracker = BudgetTracker(per_task_limit_usd=100.0, daily_limit_usd=3.0)

    tracker.record_attempt("a", 2.0)
    tracker.record_attempt("b", 1.0)

    assert not tracker.can_retry("c")
    assert tracker.daily_total() == 3.0


def test_alert_fires_once_per_window():
    alerts = []
    clock = FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
    tracker = BudgetTracker(
        daily_limit_usd=10.0, alert_ratio=0.8, clock=clock, on_alert=lambda total, limit: alerts.append(total)
    )

    tracker.record_attempt("a", 5.0)
    assert alerts == []
    tracker.record_attempt("a", 3.5)
    tracker.record_attempt("b", 1.0)
    assert alerts == [8.5]

    clock.now += timedelta(days=1)
    assert tracker.daily_total() == 0.0
    assert not tracker.snapshot().alert_emitted
    tracker.record_attempt("c", 9.0)
    assert alerts == [8.5, 9.0]


def test_window_respects_reset_hour():
    clock = FakeClock(datetime(2026, 3, 1, 5, 0, tzinfo=timezone.utc))
    tracker = BudgetTracker(reset_hour_utc=6, clock=clock)

    assert tracker.snapshot().window_start == datetime(2026, 2, 28, 6, 0, tzinfo=timezone.utc)
    tracker.record_attempt("a", 1.0)
    clock.now = datetime(2026, 3, 1, 6, 30, tzinfo=timezone.utc)
    assert tracker.daily_total() == 0.0


def test_negative_cost_rejected():
    with pytest.raises(ValueError):
        BudgetTracker().record_attempt("a", -1.0)


def test_forget_drops_job_cost():
    tracker = BudgetTracker()
    tracker.record_attempt("a", 1.0)

    tracker.forget("a")

    assert tracker.job_cost("a") == 0.0
    assert tracker.daily_total() == 1.0
