"""Ordered triage rules that flag items needing attention."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, NamedTuple

from boardmetrics import config
from boardmetrics.metrics import DerivedMetrics


@dataclass(frozen=True)
class TriageThresholds:
    commitment_late_days: int = 1
    forecast_late_days: int = 1
    max_planning_lag_days: int = 2

    @classmethod
    def from_config(cls) -> "TriageThresholds":
        return cls(
            commitment_late_days=config.COMMITMENT_LATE_DAYS,
            forecast_late_days=config.FORECAST_LATE_DAYS,
            max_planning_lag_days=config.MAX_PLANNING_LAG_DAYS,
        )


@dataclass(frozen=True)
class TriageResult:
    flagged: bool
    reason: str | None = None
    rule: str | None = None


class TriageRule(NamedTuple):
    name: str
    matches: Callable[[DerivedMetrics, TriageThresholds], bool]
    reason: Callable[[DerivedMetrics], str]


def _commitment_late(m: DerivedMetrics, t: TriageThresholds) -> bool:
    return (
        m.done_date is not None
        and m.commitment_variance_days is not None
        and m.commitment_variance_days >= t.commitment_late_days
    )


def _forecast_late(m: DerivedMetrics, t: TriageThresholds) -> bool:
    return (
        m.done_date is not None
        and m.forecast_variance_days is not None
        and m.forecast_variance_days >= t.forecast_late_days
    )


def _due_date_set_late(m: DerivedMetrics, t: TriageThresholds) -> bool:
    return m.planning_lag_days is not None and m.planning_lag_days > t.max_planning_lag_days


def _due_date_slipped(m: DerivedMetrics, t: TriageThresholds) -> bool:
    return m.due_date_changed_count >= 1 and m.total_slip_days >= 1


# First match wins.
RULES: tuple[TriageRule, ...] = (
    TriageRule(
        "commitment_late",
        _commitment_late,
        lambda m: f"Commitment late (+{m.commitment_variance_days}d)",
    ),
    TriageRule(
        "forecast_late",
        _forecast_late,
        lambda m: f"Forecast late (+{m.forecast_variance_days}d)",
    ),
    TriageRule(
        "due_date_set_late",
        _due_date_set_late,
        lambda m: f"Due date set late (+{m.planning_lag_days}d after start)",
    ),
    TriageRule(
        "due_date_slipped",
        _due_date_slipped,
        lambda m: f"Due date slipped (+{m.total_slip_days}d over {m.due_date_changed_count} changes)",
    ),
)


def evaluate_triage(
    metrics: DerivedMetrics,
    thresholds: TriageThresholds,
    rules: tuple[TriageRule, ...] = RULES,
) -> TriageResult:
    for rule in rules:
        if rule.matches(metrics, thresholds):
            return TriageResult(flagged=True, reason=rule.reason(metrics), rule=rule.name)
    return TriageResult(flagged=False)
