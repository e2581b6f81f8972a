"""Baseline calculator: rolling expectation and alert thresholds per metric.

Each monitored metric keeps two estimators side by side:

- an incremental rolling average, slow to move, from which the warning and
  critical thresholds are derived (avg × multiplier), and
- an exponential moving average, quick to move, used only to flag a trend
  (the observed value sits more than 50% away from the EMA).

A baseline is not trusted until it has seen `min_samples` observations. Until
then check_trigger() returns None no matter how extreme the value is.

Quality is the odd one out: it improves upward, so its thresholds sit below
the average (avg ÷ multiplier) and the *_inverted variants compare with <=.

No LLM involved. Same observations always produce the same baseline.
"""

import logging
from datetime import datetime, timedelta, timezone
from enum import IntEnum

from pydantic import BaseModel

from core.config import BaselineConfig
from schemas.metrics import Baselines

logger = logging.getLogger(__name__)

TREND_DEVIATION = 0.5   # |value - ema| / ema above this counts as a trend


class TriggerLevel(IntEnum):
    """How strongly a value deviates from its baseline. Ordered."""

    TREND = 1
    WARNING = 2
    CRITICAL = 3


class MetricBaseline(BaseModel):
    """Baseline state for one metric.

    Attributes:
        metric_name: e.g. "error_rate", "latency_p95".
        rolling_avg: Incremental mean of every observation in the window.
        rolling_sample_count: Observations folded into rolling_avg.
        rolling_window_start: Timestamp of the first observation.
        ema_value: Exponential moving average.
        ema_alpha: Smoothing factor for ema_value.
        warning_threshold: Derived from rolling_avg.
        critical_threshold: Derived from rolling_avg.
        last_updated: Timestamp of the latest observation.
        is_valid: True once rolling_sample_count >= min_samples.
    """

    metric_name: str
    rolling_avg: float = 0.0
    rolling_sample_count: int = 0
    rolling_window_start: datetime | None = None
    ema_value: float = 0.0
    ema_alpha: float = 0.1
    warning_threshold: float = 0.0
    critical_threshold: float = 0.0
    last_updated: datetime | None = None
    is_valid: bool = False


class BaselineCalculator:
    """Folds observations into MetricBaselines and checks values against them.

    Attributes:
        config: Smoothing factor, validity threshold, and multipliers.
    """

    def __init__(self, config: BaselineConfig | None = None) -> None:
        self.config = config or BaselineConfig()

    def new_baseline(self, metric_name: str) -> MetricBaseline:
        return MetricBaseline(metric_name=metric_name, ema_alpha=self.config.ema_alpha)

    def update(self, baseline: MetricBaseline, value: float, timestamp: datetime) -> None:
        """Fold one observation into a baseline, in place.

        The first observation seeds both estimators. Later observations move
        the EMA by alpha and the rolling average incrementally. Thresholds are
        then recomputed as multiples of the rolling average.

        Args:
            baseline: The baseline to update.
            value: The new observation.
            timestamp: When the observation was made.
        """
        self._fold(baseline, value, timestamp)
        baseline.warning_threshold = baseline.rolling_avg * self.config.warning_multiplier
        baseline.critical_threshold = baseline.rolling_avg * self.config.critical_multiplier

    def update_inverted(self, baseline: MetricBaseline, value: float, timestamp: datetime) -> None:
        """Like update(), for metrics where lower is worse.

        Thresholds are placed below the average by dividing by the multipliers.
        """
        self._fold(baseline, value, timestamp)
        baseline.warning_threshold = baseline.rolling_avg / self.config.warning_multiplier
        baseline.critical_threshold = baseline.rolling_avg / self.config.critical_multiplier

    def check_trigger(self, baseline: MetricBaseline, value: float) -> TriggerLevel | None:
        """Compare a value against a baseline where higher is worse.

        Returns:
            None while the baseline is not yet valid. Otherwise CRITICAL at or
            above the critical threshold, WARNING at or above the warning
            threshold, TREND when the value is more than 50% away from the
            EMA, and None when nothing applies.
        """
        if not baseline.is_valid:
            return None
        if value >= baseline.critical_threshold:
            return TriggerLevel.CRITICAL
        if value >= baseline.warning_threshold:
            return TriggerLevel.WARNING
        if baseline.ema_value > 0 and abs(value - baseline.ema_value) / baseline.ema_value > TREND_DEVIATION:
            return TriggerLevel.TREND
        return None

    def check_trigger_inverted(self, baseline: MetricBaseline, value: float) -> TriggerLevel | None:
        """Compare a value against a baseline where lower is worse."""
        if not baseline.is_valid:
            return None
        if value <= baseline.critical_threshold:
            return TriggerLevel.CRITICAL
        if value <= baseline.warning_threshold:
            return TriggerLevel.WARNING
        if baseline.ema_value > 0 and (baseline.ema_value - value) / baseline.ema_value > TREND_DEVIATION:
            return TriggerLevel.TREND
        return None

    def deviation_pct(self, baseline: MetricBaseline, value: float) -> float:
        """Percent above the rolling average. Positive means worse."""
        if baseline.rolling_avg == 0:
            return 100.0 if value > 0 else 0.0
        return (value - baseline.rolling_avg) / baseline.rolling_avg * 100.0

    def deviation_pct_inverted(self, baseline: MetricBaseline, value: float) -> float:
        """Percent below the rolling average. Positive means worse."""
        if baseline.rolling_avg == 0:
            return -100.0
        return (baseline.rolling_avg - value) / baseline.rolling_avg * 100.0

    def should_reset_window(self, baseline: MetricBaseline, now: datetime | None = None) -> bool:
        """True when the rolling window has run past twice its configured length."""
        if baseline.rolling_window_start is None:
            return False
        now = now or datetime.now(timezone.utc)
        window = timedelta(seconds=self.config.rolling_window_secs)
        return now - baseline.rolling_window_start > window * 2

    # ── Private ───────────────────────────────────────────────────────────────

    def _fold(self, baseline: MetricBaseline, value: float, timestamp: datetime) -> None:
        n = baseline.rolling_sample_count
        if n == 0:
            baseline.ema_value = value
            baseline.rolling_avg = value
            baseline.rolling_window_start = timestamp
        else:
            alpha = baseline.ema_alpha
            baseline.ema_value = alpha * value + (1.0 - alpha) * baseline.ema_value
            baseline.rolling_avg += (value - baseline.rolling_avg) / (n + 1)

        baseline.rolling_sample_count = n + 1
        baseline.last_updated = timestamp
        was_valid = baseline.is_valid
        baseline.is_valid = baseline.rolling_sample_count >= self.config.min_samples
        if baseline.is_valid and not was_valid:
            logger.info(
                "Baseline '%s' became valid after %d samples (avg %.4f).",
                baseline.metric_name,
                baseline.rolling_sample_count,
                baseline.rolling_avg,
            )


class BaselineCollection(BaseModel):
    """The four baselines the Monitor maintains."""

    error_rate: MetricBaseline
    latency: MetricBaseline
    quality_score: MetricBaseline
    fallback_rate: MetricBaseline

    @classmethod
    def initialize(cls, calculator: BaselineCalculator) -> "BaselineCollection":
        return cls(
            error_rate=calculator.new_baseline("error_rate"),
            latency=calculator.new_baseline("latency_p95"),
            quality_score=calculator.new_baseline("quality_score"),
            fallback_rate=calculator.new_baseline("fallback_rate"),
        )

    def all(self) -> list[MetricBaseline]:
        return [self.error_rate, self.latency, self.quality_score, self.fallback_rate]

    def all_valid(self) -> bool:
        """True when the three reward-bearing baselines are valid.

        The fallback baseline is not required; many hosts never use fallbacks.
        """
        return self.error_rate.is_valid and self.latency.is_valid and self.quality_score.is_valid

    def to_baselines(self) -> Baselines | None:
        """Return the reward baselines, or None until all_valid()."""
        if not self.all_valid():
            return None
        return Baselines(
            error_rate=self.error_rate.rolling_avg,
            latency_ms=self.latency.rolling_avg,
            quality_score=self.quality_score.rolling_avg,
        )

    def replace(self, baseline: MetricBaseline) -> None:
        """Swap in a persisted baseline by metric name. Unknown names are ignored."""
        for attr, current in (
            ("error_rate", self.error_rate),
            ("latency", self.latency),
            ("quality_score", self.quality_score),
            ("fallback_rate", self.fallback_rate),
        ):
            if current.metric_name == baseline.metric_name:
                setattr(self, attr, baseline)
                return
