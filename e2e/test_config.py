"""SelfImprovementConfig tests: defaults, environment overrides, validation."""

import pytest

from core.config import SelfImprovementConfig
from schemas.diagnosis import Severity

ENV_VARS = (
    "SELF_IMPROVEMENT_ENABLED",
    "SI_MAX_ACTIONS_PER_HOUR",
    "SI_ROLLBACK_ON_REGRESSION",
    "SI_ERROR_RATE_THRESHOLD",
    "SI_EMA_ALPHA",
    "SI_REASONING_MODEL",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestDefaults:
    def test_disabled_until_switched_on(self):
        assert SelfImprovementConfig().enabled is False

    def test_default_values(self):
        config = SelfImprovementConfig()
        assert config.monitor.error_rate_threshold == 0.05
        assert config.monitor.min_sample_size == 50
        assert config.analyzer.min_action_severity == Severity.WARNING
        assert config.executor.rollback_on_regression is True
        assert config.baseline.min_samples == 100
        config.ensure_valid()


class TestFromEnv:
    def test_overrides_are_applied(self, clean_env):
        clean_env.setenv("SELF_IMPROVEMENT_ENABLED", "true")
        clean_env.setenv("SI_MAX_ACTIONS_PER_HOUR", "7")
        clean_env.setenv("SI_ERROR_RATE_THRESHOLD", "0.1")
        clean_env.setenv("SI_REASONING_MODEL", "google/gemini-2.0-flash-001")

        config = SelfImprovementConfig.from_env()

        assert config.enabled is True
        assert config.executor.max_actions_per_hour == 7
        assert config.monitor.error_rate_threshold == 0.1
        assert config.reasoning.model == "google/gemini-2.0-flash-001"

    def test_rollback_off_only_when_explicitly_false(self, clean_env):
        clean_env.setenv("SI_ROLLBACK_ON_REGRESSION", "no")
        assert SelfImprovementConfig.from_env().executor.rollback_on_regression is True
        clean_env.setenv("SI_ROLLBACK_ON_REGRESSION", "FALSE")
        assert SelfImprovementConfig.from_env().executor.rollback_on_regression is False

    def test_bad_integer_names_the_variable(self, clean_env):
        clean_env.setenv("SI_MAX_ACTIONS_PER_HOUR", "lots")
        with pytest.raises(ValueError, match="SI_MAX_ACTIONS_PER_HOUR"):
            SelfImprovementConfig.from_env()


class TestEnsureValid:
    @pytest.mark.parametrize("section,field,value", [
        ("baseline", "ema_alpha", 0.0),
        ("baseline", "warning_multiplier", 1.0),
        ("baseline", "critical_multiplier", 1.2),
        ("circuit_breaker", "failure_threshold", 0),
        ("executor", "max_actions_per_hour", 0),
        ("analyzer", "max_pending_diagnoses", 0),
    ])
    def test_rejects_unsafe_values(self, section, field, value):
        config = SelfImprovementConfig()
        setattr(getattr(config, section), field, value)
        with pytest.raises(ValueError):
            config.ensure_valid()
