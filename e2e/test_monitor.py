"""Monitor tests.

Events are generated deterministically: the first `failures` events of a
batch fail, the rest succeed, and latency and quality are constant unless a
test says otherwise.
"""

from datetime import datetime, timedelta, timezone

import pytest

from core.config import SelfImprovementConfig
from core.monitor import AggregatedMetrics, Monitor
from schemas.diagnosis import Severity
from schemas.metrics import (
    ErrorRateTrigger,
    InvocationEvent,
    LatencyTrigger,
    QualityTrigger,
)


def make_config(min_sample_size=50, min_samples=100, **monitor):
    config = SelfImprovementConfig()
    config.monitor.min_sample_size = min_sample_size
    config.baseline.min_samples = min_samples
    for key, value in monitor.items():
        setattr(config.monitor, key, value)
    return config


def make_event(success=True, latency_ms=200.0, quality=0.85, fallback=False):
    return InvocationEvent(
        tool_name="reasoning_linear",
        latency_ms=latency_ms,
        success=success,
        quality_score=quality,
        fallback=fallback,
    )


def feed(monitor, count, failures=0, **kwargs):
    for i in range(count):
        monitor.record_invocation(make_event(success=i >= failures, **kwargs))


# ── Aggregation ───────────────────────────────────────────────────────────────

class TestAggregatedMetrics:
    def test_empty_window_is_all_zero(self):
        snapshot = AggregatedMetrics().to_snapshot()
        assert snapshot.error_rate == 0.0
        assert snapshot.latency_p95_ms == 0.0
        assert snapshot.sample_count == 0

    def test_p95_of_one_to_hundred(self):
        agg = AggregatedMetrics()
        for ms in range(1, 101):
            agg.add(make_event(latency_ms=float(ms)))
        assert agg.latency_p95() == 95.0

    def test_unassessed_quality_is_not_averaged(self):
        agg = AggregatedMetrics()
        agg.add(make_event(quality=None))
        agg.add(make_event(quality=0.0))
        agg.add(make_event(quality=0.6))
        assert agg.quality_count == 1
        assert agg.quality_score() == pytest.approx(0.6)


# ── Health checks ─────────────────────────────────────────────────────────────

class TestHealthCheck:
    def test_below_min_sample_size_returns_none(self):
        monitor = Monitor(make_config(min_sample_size=50))
        feed(monitor, 49)
        assert monitor.force_check() is None
        assert monitor.current_metrics().sample_count == 49

    def test_healthy_window_produces_healthy_report_and_resets(self):
        monitor = Monitor(make_config())
        feed(monitor, 100, failures=1)
        report = monitor.force_check()
        assert report.is_healthy
        assert report.triggers == []
        assert report.current_metrics.error_rate == pytest.approx(0.01)
        assert report.current_metrics.sample_count == 100
        assert monitor.current_metrics().sample_count == 0
        assert monitor.last_report() is report

    def test_stale_window_is_discarded(self):
        monitor = Monitor(make_config(aggregation_window_secs=60))
        two_hours_ago = datetime.now(timezone.utc) - timedelta(hours=2)
        for _ in range(30):
            event = make_event(success=False)
            monitor.record_invocation(event.model_copy(update={"timestamp": two_hours_ago}))
        assert monitor.current_metrics().sample_count == 30

        feed(monitor, 10)

        current = monitor.current_metrics()
        assert current.sample_count == 10
        assert current.error_rate == 0.0

    def test_check_health_respects_interval(self):
        monitor = Monitor(make_config(check_interval_secs=300))
        feed(monitor, 60)
        assert monitor.check_health() is not None
        feed(monitor, 60)
        assert monitor.check_health() is None
        assert monitor.force_check() is not None

    def test_error_rate_above_configured_threshold(self):
        monitor = Monitor(make_config())
        feed(monitor, 100, failures=12)
        report = monitor.force_check()
        assert not report.is_healthy
        assert report.needs_action()
        trigger = report.most_severe_trigger()
        assert isinstance(trigger, ErrorRateTrigger)
        assert trigger.observed == pytest.approx(0.12)
        assert trigger.threshold == 0.05

    def test_baseline_regression_is_reported_against_baseline(self):
        monitor = Monitor(make_config(error_rate_threshold=0.5))
        feed(monitor, 200, failures=4)
        assert monitor.force_check().is_healthy

        feed(monitor, 100, failures=8)
        report = monitor.force_check()
        trigger = report.most_severe_trigger()
        assert isinstance(trigger, ErrorRateTrigger)
        assert trigger.baseline == pytest.approx(12 / 300)
        assert Severity.from_deviation(trigger.deviation_pct()).level >= Severity.HIGH.level

    def test_latency_above_configured_threshold(self):
        monitor = Monitor(make_config(latency_threshold_ms=1000.0))
        feed(monitor, 60, latency_ms=1500.0)
        triggers = monitor.force_check().triggers
        assert [type(t) for t in triggers] == [LatencyTrigger]
        assert triggers[0].observed_p95_ms == 1500.0

    def test_low_quality_triggers(self):
        monitor = Monitor(make_config(quality_threshold=0.7))
        feed(monitor, 60, quality=0.5)
        triggers = monitor.force_check().triggers
        assert any(isinstance(t, QualityTrigger) for t in triggers)

    def test_quality_skipped_without_quality_samples(self):
        monitor = Monitor(make_config(quality_threshold=0.7))
        feed(monitor, 60, quality=None)
        report = monitor.force_check()
        assert report.current_metrics.quality_score == 0.0
        assert not any(isinstance(t, QualityTrigger) for t in report.triggers)

    def test_fallback_rate_above_threshold(self):
        monitor = Monitor(make_config(fallback_rate_threshold=0.1))
        feed(monitor, 60, fallback=True)
        assert [t.metric for t in monitor.force_check().triggers] == ["fallback_rate"]


# ── Baselines and host integration ────────────────────────────────────────────

class TestBaselines:
    def test_default_quality_baseline_before_samples(self):
        monitor = Monitor(make_config())
        assert monitor.get_baselines().quality_score == 0.8

    def test_events_fold_into_baselines(self):
        monitor = Monitor(make_config(min_samples=10))
        feed(monitor, 20, failures=2, latency_ms=300.0)
        baselines = monitor.get_baselines()
        assert baselines.error_rate == pytest.approx(0.1)
        assert baselines.latency_ms == pytest.approx(300.0)
        assert monitor.baselines_valid()

    def test_restore_replaces_matching_baselines(self):
        source = Monitor(make_config(min_samples=10))
        feed(source, 20, latency_ms=450.0)

        target = Monitor(make_config(min_samples=10))
        target.restore_baselines(source.baselines())
        assert target.get_baselines().latency_ms == pytest.approx(450.0)
        assert target.baselines_valid()

    def test_record_invocation_never_raises(self):
        monitor = Monitor(make_config())

        def broken(event):
            raise RuntimeError("aggregation failed")

        monitor._aggregation.add = broken
        monitor.record_invocation(make_event())
        assert monitor.current_stats()["dropped_events"] == 1

    def test_reset_discards_window_and_baselines(self):
        monitor = Monitor(make_config(min_samples=10))
        feed(monitor, 20)
        monitor.reset()
        assert monitor.current_metrics().sample_count == 0
        assert not monitor.baselines_valid()
