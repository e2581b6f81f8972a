"""Metric schemas.

Types that describe what the Monitor sees: the raw invocation events emitted
by the host request path, the aggregated MetricsSnapshot for a window, the
baseline values a snapshot is compared against, the TriggerMetric variants
raised when a metric crosses a threshold, and the HealthReport that bundles
all of it for the Analyzer.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InvocationEvent(BaseModel):
    """One request handled by the host service.

    Attributes:
        tool_name: Identifier of the tool or endpoint that served the request.
        latency_ms: Wall-clock latency of the request in milliseconds.
        success: False if the request ended in an error.
        quality_score: Optional output quality in [0.0, 1.0]. None when the
            host did not assess quality for this request.
        fallback: True if the request was served by a fallback path.
        timestamp: When the request completed.
    """

    tool_name: str
    latency_ms: float = Field(ge=0.0)
    success: bool
    quality_score: float | None = Field(default=None, ge=0.0, le=1.0)
    fallback: bool = False
    timestamp: datetime = Field(default_factory=_now)


class MetricsSnapshot(BaseModel):
    """Aggregated metrics over one monitoring window."""

    error_rate: float = 0.0
    latency_p95_ms: float = 0.0
    quality_score: float = 0.0
    fallback_rate: float = 0.0
    sample_count: int = 0
    timestamp: datetime = Field(default_factory=_now)


class Baselines(BaseModel):
    """Expected values for the metrics that feed the reward calculation."""

    error_rate: float = 0.0
    latency_ms: float = 0.0
    quality_score: float = 0.8


# ── Triggers ──────────────────────────────────────────────────────────────────

class TriggerKind(str, Enum):
    ERROR_RATE = "error_rate"
    LATENCY = "latency_p95"
    QUALITY = "quality_score"
    FALLBACK = "fallback_rate"


def _pct_above(observed: float, baseline: float) -> float:
    if baseline == 0:
        return 100.0 if observed > 0 else 0.0
    return (observed - baseline) / baseline * 100.0


class ErrorRateTrigger(BaseModel):
    metric: Literal["error_rate"] = "error_rate"
    observed: float
    baseline: float
    threshold: float

    @property
    def kind(self) -> TriggerKind:
        return TriggerKind.ERROR_RATE

    @property
    def observed_value(self) -> float:
        return self.observed

    @property
    def baseline_value(self) -> float:
        return self.baseline

    def deviation_pct(self) -> float:
        return _pct_above(self.observed, self.baseline)


class LatencyTrigger(BaseModel):
    metric: Literal["latency_p95"] = "latency_p95"
    observed_p95_ms: float
    baseline_ms: float
    threshold_ms: float

    @property
    def kind(self) -> TriggerKind:
        return TriggerKind.LATENCY

    @property
    def observed_value(self) -> float:
        return self.observed_p95_ms

    @property
    def baseline_value(self) -> float:
        return self.baseline_ms

    def deviation_pct(self) -> float:
        return _pct_above(self.observed_p95_ms, self.baseline_ms)


class QualityTrigger(BaseModel):
    """Quality improves upward, so deviation is baseline minus observed."""

    metric: Literal["quality_score"] = "quality_score"
    observed: float
    baseline: float
    minimum: float

    @property
    def kind(self) -> TriggerKind:
        return TriggerKind.QUALITY

    @property
    def observed_value(self) -> float:
        return self.observed

    @property
    def baseline_value(self) -> float:
        return self.baseline

    def deviation_pct(self) -> float:
        if self.baseline == 0:
            return -100.0
        return (self.baseline - self.observed) / self.baseline * 100.0


class FallbackTrigger(BaseModel):
    metric: Literal["fallback_rate"] = "fallback_rate"
    observed: float
    baseline: float
    threshold: float

    @property
    def kind(self) -> TriggerKind:
        return TriggerKind.FALLBACK

    @property
    def observed_value(self) -> float:
        return self.observed

    @property
    def baseline_value(self) -> float:
        return self.baseline

    def deviation_pct(self) -> float:
        return _pct_above(self.observed, self.baseline)


TriggerMetric = Annotated[
    Union[ErrorRateTrigger, LatencyTrigger, QualityTrigger, FallbackTrigger],
    Field(discriminator="metric"),
]


class HealthReport(BaseModel):
    """Result of one Monitor health check.

    Attributes:
        current_metrics: Snapshot of the window that was just closed.
        baselines: Baseline values at report time.
        triggers: Every metric that crossed a threshold. Empty when healthy.
        is_healthy: True when triggers is empty.
        generated_at: When the report was produced.
    """

    current_metrics: MetricsSnapshot
    baselines: Baselines
    triggers: list[TriggerMetric] = []
    is_healthy: bool = True
    generated_at: datetime = Field(default_factory=_now)

    def has_triggers(self) -> bool:
        return bool(self.triggers)

    def needs_action(self) -> bool:
        return not self.is_healthy and self.has_triggers()

    def most_severe_trigger(self):
        """Return the trigger with the largest absolute deviation, or None."""
        if not self.triggers:
            return None
        return max(self.triggers, key=lambda t: abs(t.deviation_pct()))
