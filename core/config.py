"""Self-improvement configuration.

SelfImprovementConfig groups every tunable of the control loop into one
pydantic model with a section per component. Defaults are conservative: the
system ships disabled, acts at most three times an hour, and rolls back any
action that makes things worse.

Values come from three places, later ones winning:
    1. The defaults declared on the models below
    2. A .env file in the working directory (loaded with python-dotenv)
    3. SI_* environment variables

Usage:
    config = SelfImprovementConfig.from_env()
    config.ensure_valid()
"""

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from schemas.diagnosis import Severity

DEFAULT_REASONING_MODEL = "anthropic/claude-sonnet-4-6"


class MonitorConfig(BaseModel):
    check_interval_secs: int = 300
    error_rate_threshold: float = 0.05
    latency_threshold_ms: float = 5000.0
    quality_threshold: float = 0.7
    fallback_rate_threshold: float = 0.1
    min_sample_size: int = 50
    aggregation_window_secs: int = 3600


class AnalyzerConfig(BaseModel):
    max_pending_diagnoses: int = 10
    min_action_severity: Severity = Severity.WARNING


class ExecutorConfig(BaseModel):
    """Executor gating and verification settings.

    Attributes:
        max_actions_per_hour: Actions allowed in any trailing hour.
        cooldown_duration_secs: Quiet period after a successful action.
        verification_timeout_secs: Budget for collecting post-action metrics.
        rollback_on_regression: Revert actions whose reward is negative.
        stabilization_period_secs: Wait after applying an action before
            measuring its effect.
        require_approval: Hold every diagnosis for operator approval.
    """

    max_actions_per_hour: int = 3
    cooldown_duration_secs: int = 3600
    verification_timeout_secs: int = 60
    rollback_on_regression: bool = True
    stabilization_period_secs: float = 120.0
    require_approval: bool = False


class LearnerConfig(BaseModel):
    effective_reward_threshold: float = 0.1
    history_weight: float = 0.3
    max_history_per_action: int = 100
    use_reflection_for_learning: bool = True
    min_learning_samples: int = 10


class CircuitBreakerConfig(BaseModel):
    failure_threshold: int = 3
    success_threshold: int = 2
    recovery_timeout_secs: int = 3600


class BaselineConfig(BaseModel):
    ema_alpha: float = 0.1
    rolling_window_secs: int = 86400
    min_samples: int = 100
    warning_multiplier: float = 1.5
    critical_multiplier: float = 2.0


class ReasoningConfig(BaseModel):
    """Timeouts and switches for calls to the reasoning collaborator.

    Each operation has its own budget so a slow validation step cannot eat
    into the time reserved for diagnosis.
    """

    model: str = DEFAULT_REASONING_MODEL
    diagnosis_timeout_ms: int = 30000
    selection_timeout_ms: int = 30000
    validation_timeout_ms: int = 30000
    learning_timeout_ms: int = 30000
    enable_validation: bool = True


class StoreConfig(BaseModel):
    timeout_secs: float = 5.0


class SelfImprovementConfig(BaseModel):
    """Top-level configuration for the self-improvement control loop."""

    enabled: bool = False
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    analyzer: AnalyzerConfig = Field(default_factory=AnalyzerConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    learner: LearnerConfig = Field(default_factory=LearnerConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    baseline: BaselineConfig = Field(default_factory=BaselineConfig)
    reasoning: ReasoningConfig = Field(default_factory=ReasoningConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)

    @classmethod
    def from_env(cls) -> "SelfImprovementConfig":
        """Build a config from defaults, .env, and SI_* environment variables.

        Returns:
            A config with every recognised variable applied. Unset variables
            keep their defaults.

        Raises:
            ValueError: If a variable is set but cannot be parsed. The message
                names the offending variable.
        """
        load_dotenv()
        config = cls()

        config.enabled = _env_bool("SELF_IMPROVEMENT_ENABLED", config.enabled)

        m = config.monitor
        m.check_interval_secs = _env_int("SI_CHECK_INTERVAL_SECS", m.check_interval_secs)
        m.error_rate_threshold = _env_float("SI_ERROR_RATE_THRESHOLD", m.error_rate_threshold)
        m.latency_threshold_ms = _env_float("SI_LATENCY_THRESHOLD_MS", m.latency_threshold_ms)
        m.quality_threshold = _env_float("SI_QUALITY_THRESHOLD", m.quality_threshold)
        m.fallback_rate_threshold = _env_float("SI_FALLBACK_RATE_THRESHOLD", m.fallback_rate_threshold)
        m.min_sample_size = _env_int("SI_MIN_SAMPLE_SIZE", m.min_sample_size)
        m.aggregation_window_secs = _env_int("SI_AGGREGATION_WINDOW_SECS", m.aggregation_window_secs)

        e = config.executor
        e.max_actions_per_hour = _env_int("SI_MAX_ACTIONS_PER_HOUR", e.max_actions_per_hour)
        e.cooldown_duration_secs = _env_int("SI_COOLDOWN_SECS", e.cooldown_duration_secs)
        e.stabilization_period_secs = _env_float("SI_STABILIZATION_SECS", e.stabilization_period_secs)
        e.require_approval = _env_bool("SI_REQUIRE_APPROVAL", e.require_approval)
        # Rollback stays on unless explicitly switched off.
        rollback = os.environ.get("SI_ROLLBACK_ON_REGRESSION")
        if rollback is not None:
            e.rollback_on_regression = rollback.strip().lower() != "false"

        cb = config.circuit_breaker
        cb.failure_threshold = _env_int("SI_CB_FAILURE_THRESHOLD", cb.failure_threshold)
        cb.success_threshold = _env_int("SI_CB_SUCCESS_THRESHOLD", cb.success_threshold)
        cb.recovery_timeout_secs = _env_int("SI_CB_RECOVERY_TIMEOUT_SECS", cb.recovery_timeout_secs)

        b = config.baseline
        b.ema_alpha = _env_float("SI_EMA_ALPHA", b.ema_alpha)
        b.min_samples = _env_int("SI_MIN_SAMPLES", b.min_samples)
        b.warning_multiplier = _env_float("SI_WARNING_MULTIPLIER", b.warning_multiplier)
        b.critical_multiplier = _env_float("SI_CRITICAL_MULTIPLIER", b.critical_multiplier)

        config.reasoning.model = os.environ.get("SI_REASONING_MODEL", config.reasoning.model)

        return config

    def ensure_valid(self) -> None:
        """Reject configurations the control loop cannot run safely with.

        Raises:
            ValueError: Describing the first inconsistency found.
        """
        b = self.baseline
        if not 0.0 < b.ema_alpha <= 1.0:
            raise ValueError(f"baseline.ema_alpha must be in (0, 1], got {b.ema_alpha}")
        if b.warning_multiplier <= 1.0:
            raise ValueError("baseline.warning_multiplier must be greater than 1.0")
        if b.critical_multiplier < b.warning_multiplier:
            raise ValueError("baseline.critical_multiplier must not be below warning_multiplier")
        if self.circuit_breaker.failure_threshold < 1 or self.circuit_breaker.success_threshold < 1:
            raise ValueError("circuit_breaker thresholds must be at least 1")
        if self.executor.max_actions_per_hour < 1:
            raise ValueError("executor.max_actions_per_hour must be at least 1")
        if self.analyzer.max_pending_diagnoses < 1:
            raise ValueError("analyzer.max_pending_diagnoses must be at least 1")


# ── Private helpers ────────────────────────────────────────────────────────────

def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("true", "1", "yes")
