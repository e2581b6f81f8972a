"""Baseline calculator tests.

Deterministic: every test folds a fixed sequence of observations and checks
the resulting averages, thresholds, and trigger levels.
"""

from datetime import datetime, timedelta, timezone

import pytest

from core.config import BaselineConfig
from schemas.diagnosis import Severity
from signals.baseline import (
    BaselineCalculator,
    BaselineCollection,
    MetricBaseline,
    TriggerLevel,
)

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def make_calculator(min_samples=10, **overrides):
    return BaselineCalculator(BaselineConfig(min_samples=min_samples, **overrides))


def fold(calculator, baseline, values, inverted=False):
    update = calculator.update_inverted if inverted else calculator.update
    for i, value in enumerate(values):
        update(baseline, value, T0 + timedelta(seconds=i))
    return baseline


def error_stream(total, failures):
    """1.0 for each failure, 0.0 for each success."""
    return [1.0] * failures + [0.0] * (total - failures)


# ── Folding ───────────────────────────────────────────────────────────────────

class TestFolding:
    def test_first_observation_seeds_both_estimators(self):
        calc = make_calculator()
        b = fold(calc, calc.new_baseline("latency_p95"), [200.0])
        assert b.rolling_avg == 200.0
        assert b.ema_value == 200.0
        assert b.rolling_sample_count == 1
        assert b.rolling_window_start == T0

    def test_rolling_average_is_incremental_mean(self):
        calc = make_calculator()
        b = fold(calc, calc.new_baseline("latency_p95"), [100.0, 200.0, 300.0])
        assert b.rolling_avg == pytest.approx(200.0)

    def test_ema_moves_by_alpha(self):
        calc = make_calculator(ema_alpha=0.5)
        b = fold(calc, calc.new_baseline("latency_p95"), [100.0, 200.0])
        assert b.ema_value == pytest.approx(150.0)

    def test_thresholds_are_multiples_of_average(self):
        calc = make_calculator()
        b = fold(calc, calc.new_baseline("error_rate"), error_stream(100, 2))
        assert b.rolling_avg == pytest.approx(0.02)
        assert b.warning_threshold == pytest.approx(0.03)
        assert b.critical_threshold == pytest.approx(0.04)

    def test_inverted_thresholds_sit_below_average(self):
        calc = make_calculator()
        b = fold(calc, calc.new_baseline("quality_score"), [0.9] * 20, inverted=True)
        assert b.warning_threshold == pytest.approx(0.6)
        assert b.critical_threshold == pytest.approx(0.45)

    def test_becomes_valid_at_min_samples(self):
        calc = make_calculator(min_samples=5)
        b = calc.new_baseline("error_rate")
        fold(calc, b, [0.0] * 4)
        assert not b.is_valid
        fold(calc, b, [0.0])
        assert b.is_valid


# ── Trigger checks ────────────────────────────────────────────────────────────

class TestCheckTrigger:
    def test_invalid_baseline_never_triggers(self):
        calc = make_calculator(min_samples=1000)
        b = fold(calc, calc.new_baseline("error_rate"), error_stream(100, 2))
        assert calc.check_trigger(b, 0.99) is None

    def test_two_percent_baseline_eight_percent_observed_is_critical(self):
        calc = make_calculator(min_samples=100)
        b = fold(calc, calc.new_baseline("error_rate"), error_stream(100, 2))
        assert calc.check_trigger(b, 0.08) == TriggerLevel.CRITICAL
        assert Severity.from_deviation(calc.deviation_pct(b, 0.08)) == Severity.CRITICAL

    def test_warning_between_thresholds(self):
        calc = make_calculator()
        b = fold(calc, calc.new_baseline("error_rate"), error_stream(100, 2))
        assert calc.check_trigger(b, 0.035) == TriggerLevel.WARNING

    def test_trend_when_far_from_ema_but_below_warning(self):
        calc = make_calculator()
        b = MetricBaseline(
            metric_name="latency_p95",
            rolling_avg=100.0,
            ema_value=100.0,
            warning_threshold=150.0,
            critical_threshold=200.0,
            is_valid=True,
        )
        assert calc.check_trigger(b, 40.0) == TriggerLevel.TREND
        assert calc.check_trigger(b, 140.0) is None

    def test_inverted_check_triggers_on_low_values(self):
        calc = make_calculator()
        b = fold(calc, calc.new_baseline("quality_score"), [0.9] * 20, inverted=True)
        assert calc.check_trigger_inverted(b, 0.4) == TriggerLevel.CRITICAL
        assert calc.check_trigger_inverted(b, 0.55) == TriggerLevel.WARNING
        assert calc.check_trigger_inverted(b, 0.88) is None

    def test_trigger_levels_are_ordered(self):
        assert TriggerLevel.TREND < TriggerLevel.WARNING < TriggerLevel.CRITICAL


class TestDeviation:
    def test_zero_average_with_positive_value_is_full_deviation(self):
        calc = make_calculator()
        b = calc.new_baseline("fallback_rate")
        assert calc.deviation_pct(b, 0.2) == 100.0
        assert calc.deviation_pct(b, 0.0) == 0.0

    def test_inverted_deviation_is_positive_when_worse(self):
        calc = make_calculator()
        b = fold(calc, calc.new_baseline("quality_score"), [0.8] * 10, inverted=True)
        assert calc.deviation_pct_inverted(b, 0.6) == pytest.approx(25.0)


class TestWindowReset:
    def test_resets_after_twice_the_window(self):
        calc = make_calculator(rolling_window_secs=60)
        b = fold(calc, calc.new_baseline("error_rate"), [0.0])
        assert not calc.should_reset_window(b, T0 + timedelta(seconds=100))
        assert calc.should_reset_window(b, T0 + timedelta(seconds=121))

    def test_empty_baseline_never_resets(self):
        calc = make_calculator()
        assert not calc.should_reset_window(calc.new_baseline("error_rate"))


# ── Collection ────────────────────────────────────────────────────────────────

class TestBaselineCollection:
    def test_to_baselines_is_none_until_valid(self):
        calc = make_calculator(min_samples=3)
        coll = BaselineCollection.initialize(calc)
        assert coll.to_baselines() is None

        fold(calc, coll.error_rate, [0.0, 0.0, 1.0])
        fold(calc, coll.latency, [100.0, 200.0, 300.0])
        fold(calc, coll.quality_score, [0.9, 0.9, 0.9], inverted=True)

        baselines = coll.to_baselines()
        assert baselines is not None
        assert baselines.error_rate == pytest.approx(1 / 3)
        assert baselines.latency_ms == pytest.approx(200.0)

    def test_fallback_baseline_is_not_required(self):
        calc = make_calculator(min_samples=1)
        coll = BaselineCollection.initialize(calc)
        fold(calc, coll.error_rate, [0.0])
        fold(calc, coll.latency, [100.0])
        fold(calc, coll.quality_score, [0.9], inverted=True)
        assert not coll.fallback_rate.is_valid
        assert coll.all_valid()

    def test_replace_swaps_by_metric_name(self):
        calc = make_calculator()
        coll = BaselineCollection.initialize(calc)
        persisted = MetricBaseline(metric_name="latency_p95", rolling_avg=250.0, rolling_sample_count=500)
        coll.replace(persisted)
        assert coll.latency.rolling_avg == 250.0
        coll.replace(MetricBaseline(metric_name="unknown"))
        assert [b.metric_name for b in coll.all()] == [
            "error_rate", "latency_p95", "quality_score", "fallback_rate",
        ]


class TestSeverity:
    @pytest.mark.parametrize("deviation,expected", [
        (10.0, Severity.INFO),
        (25.0, Severity.WARNING),
        (-60.0, Severity.HIGH),
        (300.0, Severity.CRITICAL),
    ])
    def test_from_deviation(self, deviation, expected):
        assert Severity.from_deviation(deviation) == expected

    def test_larger_deviation_never_lowers_severity(self):
        levels = [Severity.from_deviation(d).level for d in range(0, 400, 5)]
        assert levels == sorted(levels)
