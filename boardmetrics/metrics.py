"""Scheduling metrics derived from an item's revision history.

Everything here is pure: the only time source is the revision history,
so re-running on unchanged input reproduces the same output exactly.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Sequence

from boardmetrics import config
from boardmetrics.date_utils import add_business_days, days_between, utc_midnight
from boardmetrics.sources.base import RevisionRecord

DEFAULT_EFFORT_PER_DAY = 4.0
ROUNDING_MODES = ("ceiling", "floor", "round")
# Longest span a calendar date can move; larger estimates cannot be forecast.
MAX_EXPECTED_DAYS = (date.max - date.min).days


@dataclass(frozen=True)
class MetricsOptions:
    start_states: tuple[str, ...] = ("Active", "In Progress")
    in_progress_states: tuple[str, ...] = ("In Progress",)
    done_states: tuple[str, ...] = ("Done", "Closed", "Resolved")
    effort_per_day: float = DEFAULT_EFFORT_PER_DAY
    rounding: str = "ceiling"
    use_business_days: bool = True

    @classmethod
    def from_config(cls) -> "MetricsOptions":
        return cls(
            start_states=tuple(config.START_STATES),
            in_progress_states=tuple(config.IN_PROGRESS_STATES),
            done_states=tuple(config.DONE_STATES),
            effort_per_day=config.EFFORT_PER_DAY,
            rounding=config.EXPECTED_DAYS_ROUNDING,
            use_business_days=config.USE_BUSINESS_DAYS,
        )


@dataclass(frozen=True)
class DerivedMetrics:
    start_date: datetime | None = None
    in_progress_date: datetime | None = None
    done_date: datetime | None = None
    due_date_set_date: datetime | None = None
    effective_due_date: datetime | None = None
    effective_due_date_source: str | None = None  # "due" | "forecast" | None
    expected_days: int | None = None
    forecast_due_date: datetime | None = None
    commitment_variance_days: int | None = None  # done - effective due
    forecast_variance_days: int | None = None  # done - forecast due
    slack_days: int | None = None  # effective due - forecast due
    planning_lag_days: int | None = None  # due set - start
    due_date_changed_count: int = 0
    total_slip_days: int = 0


def _ordered(revisions: Iterable[RevisionRecord]) -> list[RevisionRecord]:
    return sorted(revisions, key=lambda r: r.rev)


def _state_set(states: Iterable[str]) -> set[str]:
    return {s.strip().lower() for s in states if s and s.strip()}


def first_state_entry(revisions: Sequence[RevisionRecord], states: Iterable[str]) -> datetime | None:
    """Timestamp of the first revision that enters one of ``states``.

    A revision enters the set when it is the first revision carrying a state
    and that state is already in the set, or when the previous state was
    outside the set. Revisions without a state are skipped.
    """
    targets = _state_set(states)
    previous: str | None = None
    for revision in revisions:
        if revision.state is None:
            continue
        current = revision.state.strip().lower()
        if current in targets and (previous is None or previous not in targets):
            return revision.changed_date
        previous = current
    return None


def due_date_set_date(revisions: Sequence[RevisionRecord]) -> datetime | None:
    previous: datetime | None = None
    for revision in revisions:
        if previous is None and revision.due_date is not None:
            return revision.changed_date
        previous = revision.due_date
    return None


def due_date_churn(revisions: Sequence[RevisionRecord]) -> tuple[int, int]:
    """Return ``(changed_count, total_slip_days)``.

    Only forward moves add to slip; pulling a date in still counts as a change.
    """
    previous: datetime | None = None
    changed = 0
    slip = 0
    for revision in revisions:
        current = revision.due_date
        if current is None or previous is None:
            previous = current
            continue
        if current.date() != previous.date():
            changed += 1
            delta = days_between(previous, current)
            if delta > 0:
                slip += delta
        previous = current
    return changed, slip


def normalize_rounding(mode: str | None) -> str:
    token = (mode or "").strip().lower()
    if token in ROUNDING_MODES:
        return token
    # "ceil" and anything unrecognized
    return "ceiling"


def expected_days(effort: float | None, effort_per_day: float, rounding: str = "ceiling") -> int | None:
    if effort is None:
        return None
    if effort_per_day <= 0:
        effort_per_day = DEFAULT_EFFORT_PER_DAY
    raw = effort / effort_per_day
    if not math.isfinite(raw) or abs(raw) > MAX_EXPECTED_DAYS:
        return None
    mode = normalize_rounding(rounding)
    if mode == "floor":
        return math.floor(raw)
    if mode == "round":
        # Half away from zero, unlike the builtin round().
        return int(Decimal(str(raw)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return math.ceil(raw)


def forecast_due_date(base: datetime | None, days: int | None, use_business_days: bool) -> datetime | None:
    if base is None or days is None:
        return None
    start = base.date()
    try:
        if use_business_days:
            return utc_midnight(add_business_days(start, days))
        return utc_midnight(start + timedelta(days=days))
    except OverflowError:
        # Past date.max (or before date.min): no forecast.
        return None


def derive_metrics(
    effort: float | None,
    due_date: datetime | None,
    revisions: Iterable[RevisionRecord],
    options: MetricsOptions,
) -> DerivedMetrics:
    ordered = _ordered(revisions)

    start = first_state_entry(ordered, options.start_states)
    in_progress = first_state_entry(ordered, options.in_progress_states)
    done = first_state_entry(ordered, options.done_states)
    due_set = due_date_set_date(ordered)
    changed_count, slip_days = due_date_churn(ordered)

    days = expected_days(effort, options.effort_per_day, options.rounding)
    # Bugs often skip the start states, so fall back to the in-progress entry.
    forecast = forecast_due_date(start or in_progress, days, options.use_business_days)

    if due_date is not None:
        effective, source = due_date, "due"
    elif forecast is not None:
        effective, source = forecast, "forecast"
    else:
        effective, source = None, None

    commitment_variance = forecast_variance = slack = None
    if done is not None:
        if effective is not None:
            commitment_variance = days_between(effective, done)
        if forecast is not None:
            forecast_variance = days_between(forecast, done)
        if effective is not None and forecast is not None:
            slack = days_between(forecast, effective)

    planning_lag = None
    if start is not None and due_set is not None:
        planning_lag = days_between(start, due_set)

    return DerivedMetrics(
        start_date=start,
        in_progress_date=in_progress,
        done_date=done,
        due_date_set_date=due_set,
        effective_due_date=effective,
        effective_due_date_source=source,
        expected_days=days,
        forecast_due_date=forecast,
        commitment_variance_days=commitment_variance,
        forecast_variance_days=forecast_variance,
        slack_days=slack,
        planning_lag_days=planning_lag,
        due_date_changed_count=changed_count,
        total_slip_days=slip_days,
    )
