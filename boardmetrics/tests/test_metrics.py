import unittest
from datetime import datetime, timezone

from boardmetrics.metrics import (
    DerivedMetrics,
    MetricsOptions,
    derive_metrics,
    due_date_churn,
    due_date_set_date,
    expected_days,
    first_state_entry,
    forecast_due_date,
    normalize_rounding,
)
from boardmetrics.sources.base import RevisionRecord


def _dt(day: int, month: int = 1, hour: int = 9) -> datetime:
    return datetime(2024, month, day, hour, 0, tzinfo=timezone.utc)


def _rev(rev: int, day: int, state=None, due=None, month: int = 1) -> RevisionRecord:
    return RevisionRecord(item_id=7, rev=rev, changed_date=_dt(day, month), state=state, due_date=due)


class StateEntryTests(unittest.TestCase):
    def test_entry_after_non_matching_state(self) -> None:
        revs = [_rev(1, 1, "New"), _rev(2, 3, "Active"), _rev(3, 5, "Active")]
        self.assertEqual(first_state_entry(revs, ["Active"]), _dt(3))

    def test_first_revision_already_in_set(self) -> None:
        revs = [_rev(1, 2, "Active"), _rev(2, 4, "Done")]
        self.assertEqual(first_state_entry(revs, ["Active"]), _dt(2))

    def test_state_match_is_case_insensitive(self) -> None:
        revs = [_rev(1, 1, "New"), _rev(2, 3, "in progress")]
        self.assertEqual(first_state_entry(revs, ["In Progress"]), _dt(3))

    def test_revisions_without_state_are_skipped(self) -> None:
        revs = [_rev(1, 1, None), _rev(2, 2, "Active"), _rev(3, 3, None), _rev(4, 4, "Active")]
        self.assertEqual(first_state_entry(revs, ["Active"]), _dt(2))

    def test_no_entry_returns_none(self) -> None:
        revs = [_rev(1, 1, "New"), _rev(2, 2, "Committed")]
        self.assertIsNone(first_state_entry(revs, ["Done"]))
        self.assertIsNone(first_state_entry([], ["Done"]))


class DueDateTests(unittest.TestCase):
    def test_due_date_set_date_is_first_transition_from_unset(self) -> None:
        revs = [_rev(1, 1), _rev(2, 3, due=_dt(20)), _rev(3, 5, due=_dt(25))]
        self.assertEqual(due_date_set_date(revs), _dt(3))

    def test_due_date_set_on_first_revision(self) -> None:
        revs = [_rev(1, 1, due=_dt(20))]
        self.assertEqual(due_date_set_date(revs), _dt(1))

    def test_slip_counts_only_forward_moves(self) -> None:
        revs = [
            _rev(1, 1, due=datetime(2020, 1, 10, tzinfo=timezone.utc)),
            _rev(2, 2, due=datetime(2020, 1, 15, tzinfo=timezone.utc)),
            _rev(3, 3, due=datetime(2020, 1, 12, tzinfo=timezone.utc)),
        ]
        self.assertEqual(due_date_churn(revs), (2, 5))

    def test_same_calendar_day_is_not_a_change(self) -> None:
        revs = [
            _rev(1, 1, due=datetime(2020, 1, 10, 8, tzinfo=timezone.utc)),
            _rev(2, 2, due=datetime(2020, 1, 10, 17, tzinfo=timezone.utc)),
        ]
        self.assertEqual(due_date_churn(revs), (0, 0))

    def test_cleared_due_date_resets_tracking(self) -> None:
        revs = [
            _rev(1, 1, due=datetime(2020, 1, 10, tzinfo=timezone.utc)),
            _rev(2, 2, due=None),
            _rev(3, 3, due=datetime(2020, 1, 20, tzinfo=timezone.utc)),
        ]
        self.assertEqual(due_date_churn(revs), (0, 0))


class ExpectedDaysTests(unittest.TestCase):
    def test_rounding_modes(self) -> None:
        self.assertEqual(expected_days(10, 4, "ceiling"), 3)
        self.assertEqual(expected_days(10, 4, "floor"), 2)
        self.assertEqual(expected_days(10, 4, "round"), 3)

    def test_round_half_away_from_zero(self) -> None:
        self.assertEqual(expected_days(6, 4, "round"), 2)
        self.assertEqual(expected_days(2, 4, "round"), 1)

    def test_ceil_alias_and_unknown_mean_ceiling(self) -> None:
        self.assertEqual(normalize_rounding("ceil"), "ceiling")
        self.assertEqual(normalize_rounding("banker"), "ceiling")
        self.assertEqual(normalize_rounding(None), "ceiling")
        self.assertEqual(normalize_rounding(" Floor "), "floor")

    def test_non_positive_rate_falls_back_to_default(self) -> None:
        self.assertEqual(expected_days(8, 0), 2)
        self.assertEqual(expected_days(8, -3), 2)

    def test_missing_effort(self) -> None:
        self.assertIsNone(expected_days(None, 4))

    def test_non_finite_or_unforecastable_effort_has_no_estimate(self) -> None:
        self.assertIsNone(expected_days(float("inf"), 4))
        self.assertIsNone(expected_days(float("nan"), 4))
        self.assertIsNone(expected_days(1e9, 4))
        self.assertEqual(expected_days(1e7, 4), 2_500_000)


class ForecastTests(unittest.TestCase):
    def test_friday_plus_one_business_day_is_monday(self) -> None:
        friday = datetime(2024, 1, 5, 15, 30, tzinfo=timezone.utc)
        self.assertEqual(
            forecast_due_date(friday, 1, True),
            datetime(2024, 1, 8, tzinfo=timezone.utc),
        )

    def test_calendar_days(self) -> None:
        friday = datetime(2024, 1, 5, 15, 30, tzinfo=timezone.utc)
        self.assertEqual(
            forecast_due_date(friday, 1, False),
            datetime(2024, 1, 6, tzinfo=timezone.utc),
        )

    def test_zero_days_keeps_start_day(self) -> None:
        saturday = datetime(2024, 1, 6, 10, tzinfo=timezone.utc)
        self.assertEqual(forecast_due_date(saturday, 0, True), datetime(2024, 1, 6, tzinfo=timezone.utc))

    def test_missing_inputs(self) -> None:
        self.assertIsNone(forecast_due_date(None, 3, True))
        self.assertIsNone(forecast_due_date(_dt(1), None, True))

    def test_forecast_past_calendar_range_is_none(self) -> None:
        self.assertIsNone(forecast_due_date(_dt(1), 3_000_000, False))
        self.assertIsNone(forecast_due_date(_dt(1), 3_000_000, True))

    def test_large_business_day_count_uses_whole_weeks(self) -> None:
        monday = datetime(2024, 1, 1, 9, tzinfo=timezone.utc)
        self.assertEqual(forecast_due_date(monday, 500, True), datetime(2025, 12, 1, tzinfo=timezone.utc))


class DeriveMetricsTests(unittest.TestCase):
    def setUp(self) -> None:
        self.options = MetricsOptions()
        # 2024-01-01 is a Monday.
        self.revisions = [
            _rev(1, 1, "New"),
            _rev(2, 2, "Active"),
            _rev(3, 3, "Active", due=_dt(5, hour=0)),
            _rev(4, 4, "In Progress", due=_dt(5, hour=0)),
            _rev(5, 10, "Done", due=_dt(5, hour=0)),
        ]

    def test_completed_item(self) -> None:
        m = derive_metrics(8.0, _dt(5, hour=0), self.revisions, self.options)
        self.assertEqual(m.start_date, _dt(2))
        self.assertEqual(m.in_progress_date, _dt(4))
        self.assertEqual(m.done_date, _dt(10))
        self.assertEqual(m.due_date_set_date, _dt(3))
        self.assertEqual(m.expected_days, 2)
        self.assertEqual(m.forecast_due_date, datetime(2024, 1, 4, tzinfo=timezone.utc))
        self.assertEqual(m.effective_due_date_source, "due")
        self.assertEqual(m.commitment_variance_days, 5)
        self.assertEqual(m.forecast_variance_days, 6)
        self.assertEqual(m.slack_days, 1)
        self.assertEqual(m.planning_lag_days, 1)

    def test_is_idempotent(self) -> None:
        first = derive_metrics(8.0, _dt(5, hour=0), self.revisions, self.options)
        second = derive_metrics(8.0, _dt(5, hour=0), list(self.revisions), self.options)
        self.assertEqual(first, second)

    def test_revision_order_comes_from_revision_number(self) -> None:
        shuffled = list(reversed(self.revisions))
        self.assertEqual(
            derive_metrics(8.0, None, shuffled, self.options),
            derive_metrics(8.0, None, self.revisions, self.options),
        )

    def test_forecast_becomes_effective_when_no_due_date(self) -> None:
        m = derive_metrics(8.0, None, self.revisions, self.options)
        self.assertEqual(m.effective_due_date_source, "forecast")
        self.assertEqual(m.effective_due_date, m.forecast_due_date)
        self.assertEqual(m.slack_days, 0)

    def test_variances_wait_for_done(self) -> None:
        m = derive_metrics(8.0, _dt(5, hour=0), self.revisions[:4], self.options)
        self.assertIsNone(m.done_date)
        self.assertIsNone(m.commitment_variance_days)
        self.assertIsNone(m.forecast_variance_days)
        self.assertIsNone(m.slack_days)

    def test_forecast_falls_back_to_in_progress_entry(self) -> None:
        options = MetricsOptions(start_states=("Active",), in_progress_states=("Doing",))
        revs = [_rev(1, 1, "New"), _rev(2, 2, "Doing")]
        m = derive_metrics(4.0, None, revs, options)
        self.assertIsNone(m.start_date)
        self.assertEqual(m.in_progress_date, _dt(2))
        self.assertEqual(m.forecast_due_date, datetime(2024, 1, 3, tzinfo=timezone.utc))

    def test_huge_effort_degrades_to_partial_result(self) -> None:
        for effort in (1e9, float("inf")):
            for business in (True, False):
                options = MetricsOptions(use_business_days=business)
                m = derive_metrics(effort, None, self.revisions, options)
                self.assertIsNone(m.expected_days)
                self.assertIsNone(m.forecast_due_date)
                self.assertIsNone(m.effective_due_date)
                self.assertEqual(m.start_date, _dt(2))
                self.assertEqual(m.done_date, _dt(10))

    def test_effort_beyond_calendar_range_keeps_estimate_without_forecast(self) -> None:
        m = derive_metrics(1e7, _dt(5, hour=0), self.revisions, self.options)
        self.assertEqual(m.expected_days, 2_500_000)
        self.assertIsNone(m.forecast_due_date)
        self.assertEqual(m.effective_due_date_source, "due")
        self.assertIsNone(m.forecast_variance_days)
        self.assertEqual(m.commitment_variance_days, 5)

    def test_empty_history(self) -> None:
        m = derive_metrics(None, None, [], self.options)
        self.assertEqual(m, DerivedMetrics())


if __name__ == "__main__":
    unittest.main()
