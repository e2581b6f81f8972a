"""Monitor: turns the invocation stream into health reports.

The host service calls record_invocation() from its request path for every
request it serves. That call only appends to an in-memory aggregation and
folds the values into the baselines; it never blocks on I/O and never raises
into the caller.

Periodically the orchestrator asks for a health check. The Monitor closes the
current aggregation window into a MetricsSnapshot, compares each metric
against its configured threshold and its baseline, and returns a
HealthReport listing every trigger. It never takes action itself.

Trigger rules, per metric:
    error rate   observed > configured threshold, or a meaningful baseline
                 (>= 0.001) reports WARNING or worse
    latency p95  observed > configured threshold, or baseline WARNING or worse
    quality      observed < configured minimum, or inverted baseline WARNING
                 or worse; skipped when the window carried no quality scores
    fallback     observed > configured threshold, or baseline WARNING or
                 worse with observed > 1%
"""

import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from core.config import SelfImprovementConfig
from schemas.metrics import (
    Baselines,
    ErrorRateTrigger,
    FallbackTrigger,
    HealthReport,
    InvocationEvent,
    LatencyTrigger,
    MetricsSnapshot,
    QualityTrigger,
)
from signals.baseline import (
    BaselineCalculator,
    BaselineCollection,
    MetricBaseline,
    TriggerLevel,
)

logger = logging.getLogger(__name__)

MEANINGFUL_ERROR_BASELINE = 0.001
MIN_FALLBACK_RATE = 0.01
DEFAULT_QUALITY_BASELINE = 0.8


@dataclass
class AggregatedMetrics:
    """Running totals for the current monitoring window."""

    total_invocations: int = 0
    error_count: int = 0
    latencies: list[float] = field(default_factory=list)
    quality_sum: float = 0.0
    quality_count: int = 0
    fallback_count: int = 0
    window_start: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    window_end: datetime | None = None

    def add(self, event: InvocationEvent) -> None:
        self.total_invocations += 1
        if not event.success:
            self.error_count += 1
        self.latencies.append(event.latency_ms)
        # Zero means "not assessed" for hosts that cannot send None.
        if event.quality_score is not None and event.quality_score > 0:
            self.quality_sum += event.quality_score
            self.quality_count += 1
        if event.fallback:
            self.fallback_count += 1
        self.window_end = event.timestamp

    def error_rate(self) -> float:
        if self.total_invocations == 0:
            return 0.0
        return self.error_count / self.total_invocations

    def latency_p95(self) -> float:
        if not self.latencies:
            return 0.0
        ordered = sorted(self.latencies)
        idx = math.ceil(len(ordered) * 0.95) - 1
        return ordered[min(max(idx, 0), len(ordered) - 1)]

    def quality_score(self) -> float:
        if self.quality_count == 0:
            return 0.0
        return self.quality_sum / self.quality_count

    def fallback_rate(self) -> float:
        if self.total_invocations == 0:
            return 0.0
        return self.fallback_count / self.total_invocations

    def to_snapshot(self) -> MetricsSnapshot:
        return MetricsSnapshot(
            error_rate=self.error_rate(),
            latency_p95_ms=self.latency_p95(),
            quality_score=self.quality_score(),
            fallback_rate=self.fallback_rate(),
            sample_count=self.total_invocations,
        )


class Monitor:
    """Aggregates invocation events and produces health reports.

    Thread-safe: the host may record events from any thread while the
    orchestrator runs health checks on the event loop. The lock is held only
    for in-memory bookkeeping.

    Attributes:
        config: Full self-improvement config; uses the monitor and baseline
            sections.
        calculator: Folds observations into baselines and checks triggers.
    """

    def __init__(self, config: SelfImprovementConfig | None = None) -> None:
        self.config = config or SelfImprovementConfig()
        self.calculator = BaselineCalculator(self.config.baseline)
        self._lock = threading.Lock()
        self._aggregation = AggregatedMetrics()
        self._baselines = BaselineCollection.initialize(self.calculator)
        self._last_check: datetime | None = None
        self._last_report: HealthReport | None = None
        self._dropped_events = 0

    def record_invocation(self, event: InvocationEvent) -> None:
        """Record one request. Never raises into the request path."""
        try:
            with self._lock:
                self._roll_stale_window(event.timestamp)
                self._aggregation.add(event)
                self._fold_into_baselines(event)
        except Exception as exc:
            self._dropped_events += 1
            logger.error("Dropped invocation event for '%s': %s", event.tool_name, exc)

    def check_health(self) -> HealthReport | None:
        """Close the window and report, if the interval and sample size allow.

        Returns:
            None when the check interval has not elapsed since the last check
            or the window holds fewer than min_sample_size events. Otherwise a
            HealthReport; the aggregation window is reset afterwards.
        """
        now = datetime.now(timezone.utc)
        interval = timedelta(seconds=self.config.monitor.check_interval_secs)
        with self._lock:
            if self._last_check is not None and now - self._last_check < interval:
                return None
            return self._report_locked(now)

    def force_check(self) -> HealthReport | None:
        """Like check_health() but ignores the check interval."""
        with self._lock:
            return self._report_locked(datetime.now(timezone.utc))

    def current_metrics(self) -> MetricsSnapshot:
        """Snapshot of the open window, without closing it."""
        with self._lock:
            return self._aggregation.to_snapshot()

    def get_baselines(self) -> Baselines:
        """Reward baselines. Quality falls back to 0.8 before any samples."""
        with self._lock:
            b = self._baselines
            return Baselines(
                error_rate=b.error_rate.rolling_avg,
                latency_ms=b.latency.rolling_avg,
                quality_score=(
                    b.quality_score.rolling_avg
                    if b.quality_score.rolling_sample_count
                    else DEFAULT_QUALITY_BASELINE
                ),
            )

    def baselines(self) -> list[MetricBaseline]:
        """Copies of every metric baseline, for persistence and status."""
        with self._lock:
            return [b.model_copy() for b in self._baselines.all()]

    def baselines_valid(self) -> bool:
        with self._lock:
            return self._baselines.all_valid()

    def restore_baselines(self, baselines: list[MetricBaseline]) -> None:
        """Load persisted baselines, replacing the matching in-memory ones."""
        with self._lock:
            for baseline in baselines:
                self._baselines.replace(baseline)
        logger.info("Restored %d persisted baselines.", len(baselines))

    def last_report(self) -> HealthReport | None:
        return self._last_report

    def current_stats(self) -> dict:
        with self._lock:
            agg = self._aggregation
            return {
                "total_invocations": agg.total_invocations,
                "error_rate": agg.error_rate(),
                "latency_p95_ms": agg.latency_p95(),
                "quality_score": agg.quality_score(),
                "fallback_rate": agg.fallback_rate(),
                "baselines_valid": self._baselines.all_valid(),
                "last_check": self._last_check,
                "dropped_events": self._dropped_events,
            }

    def reset(self) -> None:
        """Discard the window, the baselines, and the last report."""
        with self._lock:
            self._aggregation = AggregatedMetrics()
            self._baselines = BaselineCollection.initialize(self.calculator)
            self._last_check = None
            self._last_report = None

    # ── Private helpers ───────────────────────────────────────────────────────

    def _roll_stale_window(self, now: datetime) -> None:
        """Start a fresh window once the open one spans aggregation_window_secs."""
        agg = self._aggregation
        if agg.total_invocations == 0:
            agg.window_start = now
            return
        limit = timedelta(seconds=self.config.monitor.aggregation_window_secs)
        if now - agg.window_start > limit:
            logger.info(
                "Aggregation window exceeded %ds with %d unreported events. Starting a new one.",
                self.config.monitor.aggregation_window_secs,
                agg.total_invocations,
            )
            self._aggregation = AggregatedMetrics(window_start=now)

    def _fold_into_baselines(self, event: InvocationEvent) -> None:
        ts = event.timestamp
        b = self._baselines
        for attr in ("error_rate", "latency", "quality_score", "fallback_rate"):
            baseline = getattr(b, attr)
            if self.calculator.should_reset_window(baseline, ts):
                logger.info("Rolling window for '%s' expired. Starting a new baseline.",
                            baseline.metric_name)
                setattr(b, attr, self.calculator.new_baseline(baseline.metric_name))

        self.calculator.update(b.error_rate, 0.0 if event.success else 1.0, ts)
        self.calculator.update(b.latency, event.latency_ms, ts)
        if event.quality_score is not None and event.quality_score > 0:
            self.calculator.update_inverted(b.quality_score, event.quality_score, ts)
        self.calculator.update(b.fallback_rate, 1.0 if event.fallback else 0.0, ts)

    def _report_locked(self, now: datetime) -> HealthReport | None:
        agg = self._aggregation
        if agg.total_invocations < self.config.monitor.min_sample_size:
            logger.debug(
                "Not enough samples for health check (%d < %d).",
                agg.total_invocations,
                self.config.monitor.min_sample_size,
            )
            return None

        snapshot = agg.to_snapshot()
        triggers = [
            t for t in (
                self._check_error_rate(snapshot),
                self._check_latency(snapshot),
                self._check_quality(snapshot, agg.quality_count),
                self._check_fallback(snapshot),
            )
            if t is not None
        ]

        b = self._baselines
        report = HealthReport(
            current_metrics=snapshot,
            baselines=b.to_baselines() or Baselines(
                error_rate=b.error_rate.rolling_avg,
                latency_ms=b.latency.rolling_avg,
                quality_score=b.quality_score.rolling_avg,
            ),
            triggers=triggers,
            is_healthy=not triggers,
            generated_at=now,
        )

        self._last_check = now
        self._last_report = report
        self._aggregation = AggregatedMetrics()

        logger.info(
            "Health report over %d samples: %s (%d triggers).",
            snapshot.sample_count,
            "healthy" if report.is_healthy else "degraded",
            len(triggers),
        )
        return report

    def _check_error_rate(self, snapshot: MetricsSnapshot) -> ErrorRateTrigger | None:
        baseline = self._baselines.error_rate
        observed = snapshot.error_rate
        threshold = self.config.monitor.error_rate_threshold

        if observed > threshold:
            return ErrorRateTrigger(observed=observed, baseline=baseline.rolling_avg, threshold=threshold)

        # A zero baseline is perfect health, not a reference point.
        if baseline.rolling_avg < MEANINGFUL_ERROR_BASELINE:
            return None

        level = self.calculator.check_trigger(baseline, observed)
        if level is not None and level >= TriggerLevel.WARNING:
            return ErrorRateTrigger(
                observed=observed,
                baseline=baseline.rolling_avg,
                threshold=baseline.warning_threshold,
            )
        return None

    def _check_latency(self, snapshot: MetricsSnapshot) -> LatencyTrigger | None:
        baseline = self._baselines.latency
        observed = snapshot.latency_p95_ms
        threshold = self.config.monitor.latency_threshold_ms

        if observed > threshold:
            return LatencyTrigger(
                observed_p95_ms=observed,
                baseline_ms=baseline.rolling_avg,
                threshold_ms=threshold,
            )

        level = self.calculator.check_trigger(baseline, observed)
        if level is not None and level >= TriggerLevel.WARNING:
            return LatencyTrigger(
                observed_p95_ms=observed,
                baseline_ms=baseline.rolling_avg,
                threshold_ms=baseline.warning_threshold,
            )
        return None

    def _check_quality(self, snapshot: MetricsSnapshot, quality_count: int) -> QualityTrigger | None:
        if quality_count == 0:
            return None

        baseline = self._baselines.quality_score
        observed = snapshot.quality_score
        minimum = self.config.monitor.quality_threshold

        if observed < minimum:
            return QualityTrigger(observed=observed, baseline=baseline.rolling_avg, minimum=minimum)

        level = self.calculator.check_trigger_inverted(baseline, observed)
        if level is not None and level >= TriggerLevel.WARNING:
            return QualityTrigger(
                observed=observed,
                baseline=baseline.rolling_avg,
                minimum=baseline.warning_threshold,
            )
        return None

    def _check_fallback(self, snapshot: MetricsSnapshot) -> FallbackTrigger | None:
        baseline = self._baselines.fallback_rate
        observed = snapshot.fallback_rate
        threshold = self.config.monitor.fallback_rate_threshold

        if observed > threshold:
            return FallbackTrigger(observed=observed, baseline=baseline.rolling_avg, threshold=threshold)

        level = self.calculator.check_trigger(baseline, observed)
        if level is not None and level >= TriggerLevel.WARNING and observed > MIN_FALLBACK_RATE:
            return FallbackTrigger(
                observed=observed,
                baseline=baseline.rolling_avg,
                threshold=baseline.warning_threshold,
            )
        return None
