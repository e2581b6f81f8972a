"""Result schemas.

Defines the outputs of the Execute and Learn phases (ActionRecord,
NormalizedReward, ActionEffectiveness) and of the orchestrator itself
(CycleResult, SystemStatus). ActionRecord is the durable audit trail of a
single executed action: everything needed to explain it, score it, and roll
it back lives on the record.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from schemas.actions import ParamValue, ResourceType, SuggestedAction
from schemas.diagnosis import SelfDiagnosis
from schemas.metrics import Baselines, MetricsSnapshot, TriggerKind


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _clamp(value: float) -> float:
    return max(-1.0, min(1.0, value))


# ── Reward ────────────────────────────────────────────────────────────────────

class RewardWeights(BaseModel):
    """Per-metric weights applied to component rewards. Sum to 1.0."""

    error_rate: float = 0.5
    latency: float = 0.3
    quality: float = 0.2

    @classmethod
    def for_trigger(cls, kind: TriggerKind) -> "RewardWeights":
        """Return the weights that emphasise the metric that caused the trigger."""
        return _WEIGHTS_BY_TRIGGER[kind]


_WEIGHTS_BY_TRIGGER = {
    TriggerKind.ERROR_RATE: RewardWeights(error_rate=0.7, latency=0.2, quality=0.1),
    TriggerKind.LATENCY: RewardWeights(error_rate=0.3, latency=0.6, quality=0.1),
    TriggerKind.QUALITY: RewardWeights(error_rate=0.3, latency=0.2, quality=0.5),
    TriggerKind.FALLBACK: RewardWeights(error_rate=0.5, latency=0.3, quality=0.2),
}


class RewardBreakdown(BaseModel):
    """Component rewards, each already clamped to [-1.0, 1.0]."""

    error_rate_reward: float
    latency_reward: float
    quality_reward: float
    weights: RewardWeights


class NormalizedReward(BaseModel):
    """A [-1.0, 1.0] score of whether an action helped.

    Attributes:
        value: Weighted sum of the component rewards.
        breakdown: The clamped component rewards and the weights used.
        confidence: post.sample_count / 100, capped at 1.0.
    """

    value: float = Field(ge=-1.0, le=1.0)
    breakdown: RewardBreakdown
    confidence: float = Field(ge=0.0, le=1.0)

    @classmethod
    def calculate(
        cls,
        kind: TriggerKind,
        pre: MetricsSnapshot,
        post: MetricsSnapshot,
        baselines: Baselines,
    ) -> "NormalizedReward":
        """Score the change from pre to post, relative to the baselines.

        Error rate and latency improve downward, so a drop from pre to post is
        rewarded, scaled by the baseline. Quality improves upward and is scaled
        by the headroom left above the baseline. Each component is clamped to
        [-1, 1] before weighting; a zero baseline (or a perfect quality
        baseline) contributes 0.

        Args:
            kind: Trigger that caused the action. Selects the weights.
            pre: Metrics captured before the action was applied.
            post: Metrics collected after the stabilization period.
            baselines: Baseline values at verification time.

        Returns:
            The normalized reward with its breakdown.
        """
        weights = RewardWeights.for_trigger(kind)

        error_reward = 0.0
        if baselines.error_rate > 0:
            error_reward = _clamp((pre.error_rate - post.error_rate) / baselines.error_rate)

        latency_reward = 0.0
        if baselines.latency_ms > 0:
            latency_reward = _clamp((pre.latency_p95_ms - post.latency_p95_ms) / baselines.latency_ms)

        quality_reward = 0.0
        if baselines.quality_score < 1.0:
            quality_reward = _clamp(
                (post.quality_score - pre.quality_score) / (1.0 - baselines.quality_score)
            )

        value = (
            error_reward * weights.error_rate
            + latency_reward * weights.latency
            + quality_reward * weights.quality
        )

        return cls(
            value=_clamp(value),
            breakdown=RewardBreakdown(
                error_rate_reward=error_reward,
                latency_reward=latency_reward,
                quality_reward=quality_reward,
                weights=weights,
            ),
            confidence=min(post.sample_count / 100.0, 1.0),
        )

    def is_positive(self) -> bool:
        return self.value > 0.0

    def is_negative(self) -> bool:
        return self.value < 0.0


# ── Action records ────────────────────────────────────────────────────────────

class ActionOutcome(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class ConfigState(BaseModel):
    """Snapshot of every value the Executor is allowed to change."""

    params: dict[str, ParamValue] = {}
    features: dict[str, bool] = {}
    resources: dict[ResourceType, int] = {}
    timestamp: datetime = Field(default_factory=_now)


def new_action_id() -> str:
    return f"action_{uuid.uuid4()}"


class ActionRecord(BaseModel):
    """One executed action, from application through verification.

    Created with outcome PENDING when the action is applied and finalized
    once post-action metrics have been scored.

    Attributes:
        id: "action_<uuid4>".
        diagnosis_id: The diagnosis that proposed this action.
        action: The action that was applied.
        pre_state: Configuration immediately before the action.
        post_state: Configuration immediately after the action. None if
            application failed before the state changed.
        metrics_before: Metrics captured before the action.
        metrics_after: Metrics collected after stabilization.
        outcome: PENDING until verified.
        reward: Normalized reward. None until verified.
        rollback_reason: Why the action was reverted, when it was.
        lessons: Lesson summary from the reasoning collaborator.
        executed_at: When the action was applied.
        verified_at: When post-action metrics were scored.
        completed_at: When the Learner finalized the record.
    """

    id: str = Field(default_factory=new_action_id)
    diagnosis_id: str
    action: SuggestedAction
    pre_state: ConfigState
    post_state: ConfigState | None = None
    metrics_before: MetricsSnapshot
    metrics_after: MetricsSnapshot | None = None
    outcome: ActionOutcome = ActionOutcome.PENDING
    reward: NormalizedReward | None = None
    rollback_reason: str | None = None
    lessons: str | None = None
    executed_at: datetime = Field(default_factory=_now)
    verified_at: datetime | None = None
    completed_at: datetime | None = None


class CooldownPeriod(BaseModel):
    """A quiet period after a successful action. Persisted so restarts honour it."""

    started_at: datetime = Field(default_factory=_now)
    expires_at: datetime
    reason: str = ""
    is_active: bool = True

    def remaining_secs(self, now: datetime | None = None) -> int:
        if not self.is_active:
            return 0
        now = now or _now()
        return max(int((self.expires_at - now).total_seconds()), 0)


class ActionEffectiveness(BaseModel):
    """Running statistics for one (action_type, action_signature) pair."""

    action_type: str
    action_signature: str
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    rolled_back_attempts: int = 0
    avg_reward: float = 0.0
    min_reward: float | None = None
    max_reward: float | None = None
    effectiveness_score: float = 0.0
    last_updated: datetime = Field(default_factory=_now)

    def success_rate(self) -> float:
        if self.total_attempts == 0:
            return 0.0
        return self.successful_attempts / self.total_attempts


# ── Orchestrator outputs ──────────────────────────────────────────────────────

class CycleResult(BaseModel):
    """Outcome of one Monitor → Analyze → Execute → Learn cycle.

    Attributes:
        success: False only when the cycle aborted on an error.
        action_taken: True if an action was applied to configuration.
        diagnosis: The diagnosis produced, if the Analyzer ran.
        action: The action record, if an action was applied.
        reward: Normalized reward value, if the action was verified.
        lessons: Lesson summary, if the Learner obtained one.
        error: Reason the cycle stopped early. Set for blocked phases as
            well as for errors.
        duration_ms: Wall-clock time of the cycle.
    """

    success: bool
    action_taken: bool = False
    diagnosis: SelfDiagnosis | None = None
    action: ActionRecord | None = None
    reward: float | None = None
    lessons: str | None = None
    error: str | None = None
    duration_ms: float = 0.0


class SystemStatus(BaseModel):
    """Point-in-time status for the control surface."""

    enabled: bool
    paused_until: datetime | None = None
    circuit_state: str
    consecutive_failures: int
    cooldown_remaining_secs: int
    pending_diagnoses: int
    current_metrics: MetricsSnapshot
    baselines: Baselines
    baselines_valid: bool
    last_cycle_at: datetime | None = None
    total_cycles: int = 0
    total_actions: int = 0
    total_rollbacks: int = 0
    cycle_running: bool = False
