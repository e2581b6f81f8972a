"""Learner tests: effectiveness bookkeeping, signatures, and lesson synthesis."""

import pytest

from core.config import SelfImprovementConfig
from core.learner import Learner, LearningBlocked, LearningBlockedReason, signature
from schemas.actions import (
    AdjustParam,
    ClearCache,
    IntegerValue,
    NoOp,
    ResourceType,
    RestartService,
    ScaleResource,
    ServiceComponent,
    ToggleFeature,
)
from schemas.diagnosis import SelfDiagnosis, Severity
from schemas.metrics import Baselines, ErrorRateTrigger, MetricsSnapshot, TriggerKind
from schemas.result import ActionEffectiveness, ActionOutcome, ActionRecord, ConfigState, NormalizedReward
from stubs import DeterministicReasoner

BASELINES = Baselines(error_rate=0.02, latency_ms=200.0, quality_score=0.85)


def window(error_rate, samples=100):
    return MetricsSnapshot(error_rate=error_rate, latency_p95_ms=200.0, quality_score=0.85, sample_count=samples)


def retries_up():
    return AdjustParam(key="MAX_RETRIES", old_value=IntegerValue(value=3), new_value=IntegerValue(value=4))


def make_diagnosis(action=None):
    return SelfDiagnosis(
        trigger=ErrorRateTrigger(observed=0.05, baseline=0.02, threshold=0.04),
        severity=Severity.HIGH,
        description="error_rate regression",
        suggested_action=action or retries_up(),
    )


def make_record(outcome=ActionOutcome.SUCCESS, post_error=0.02, samples=100, scored=True, action=None):
    pre, post = window(0.05), window(post_error, samples)
    return ActionRecord(
        diagnosis_id="diag_test",
        action=action or retries_up(),
        pre_state=ConfigState(),
        metrics_before=pre,
        metrics_after=post,
        outcome=outcome,
        reward=NormalizedReward.calculate(TriggerKind.ERROR_RATE, pre, post, BASELINES) if scored else None,
    )


def make_learner(reasoner=None, **learner):
    config = SelfImprovementConfig()
    for key, value in learner.items():
        setattr(config.learner, key, value)
    return Learner(config, reasoner or DeterministicReasoner())


# ── Blocked ───────────────────────────────────────────────────────────────────

class TestBlocked:
    async def test_pending_record_is_not_learned_from(self):
        with pytest.raises(LearningBlocked) as exc_info:
            await make_learner().learn(make_record(outcome=ActionOutcome.PENDING), make_diagnosis())
        assert exc_info.value.reason == LearningBlockedReason.EXECUTION_NOT_COMPLETED

    async def test_too_few_post_action_samples(self):
        with pytest.raises(LearningBlocked) as exc_info:
            await make_learner().learn(make_record(samples=5), make_diagnosis())
        assert exc_info.value.reason == LearningBlockedReason.INSUFFICIENT_SAMPLES
        assert str(exc_info.value) == "Insufficient samples: 5 < 10"

    async def test_unscored_record(self):
        with pytest.raises(LearningBlocked) as exc_info:
            await make_learner().learn(make_record(scored=False), make_diagnosis())
        assert exc_info.value.reason == LearningBlockedReason.INSUFFICIENT_SAMPLES


# ── Effectiveness ─────────────────────────────────────────────────────────────

class TestEffectiveness:
    async def test_first_effective_attempt(self):
        outcome = await make_learner().learn(make_record(), make_diagnosis())
        row = outcome.effectiveness

        assert outcome.is_effective
        assert row.action_signature == "adjust_param:MAX_RETRIES:increase"
        assert row.total_attempts == 1
        assert row.successful_attempts == 1
        assert row.avg_reward == pytest.approx(0.7)
        # (1.0 * 0.6 + 0.85 * 0.4) discounted by 1/10 attempts
        assert row.effectiveness_score == pytest.approx(0.094)

    async def test_second_attempt_blends_with_history(self):
        learner = make_learner()
        await learner.learn(make_record(), make_diagnosis())
        outcome = await learner.learn(
            make_record(outcome=ActionOutcome.ROLLED_BACK, post_error=0.09),
            make_diagnosis(),
        )
        row = outcome.effectiveness

        assert not outcome.is_effective
        assert row.total_attempts == 2
        assert row.successful_attempts == 1
        assert row.rolled_back_attempts == 1
        assert row.avg_reward == pytest.approx(0.0)
        assert row.min_reward == pytest.approx(-0.7)
        assert row.max_reward == pytest.approx(0.7)
        assert row.effectiveness_score == pytest.approx(0.3 * 0.094 + 0.7 * 0.1)

    async def test_rows_sorted_most_effective_first(self):
        learner = make_learner()
        await learner.learn(make_record(post_error=0.09), make_diagnosis())
        cache = ClearCache(cache_name="responses")
        await learner.learn(make_record(action=cache), make_diagnosis(cache))

        rows = learner.effectiveness()
        assert [r.action_signature for r in rows] == [
            "clear_cache:responses",
            "adjust_param:MAX_RETRIES:increase",
        ]
        assert learner.stats()["most_effective_action"] == "clear_cache:responses"

    async def test_restore_seeds_running_average(self):
        learner = make_learner()
        learner.restore([ActionEffectiveness(
            action_type="adjust_param",
            action_signature="adjust_param:MAX_RETRIES:increase",
            total_attempts=3,
            successful_attempts=3,
            avg_reward=0.5,
            effectiveness_score=0.3,
        )])
        outcome = await learner.learn(make_record(), make_diagnosis())
        assert outcome.effectiveness.total_attempts == 4
        assert outcome.effectiveness.avg_reward == pytest.approx((0.5 * 3 + 0.7) / 4)

    async def test_reward_history_is_capped(self):
        learner = make_learner(max_history_per_action=1)
        await learner.learn(make_record(post_error=0.09), make_diagnosis())
        outcome = await learner.learn(make_record(), make_diagnosis())
        assert outcome.effectiveness.avg_reward == pytest.approx(0.7)
        assert outcome.effectiveness.total_attempts == 2


# ── Lessons ───────────────────────────────────────────────────────────────────

class TestLessons:
    async def test_lessons_are_attached_to_record(self):
        outcome = await make_learner().learn(make_record(), make_diagnosis())
        assert outcome.lessons == "adjust_param on error_rate helped"
        assert outcome.record.lessons == outcome.lessons
        assert outcome.record.completed_at is not None

    async def test_reflection_disabled_skips_synthesis(self):
        reasoner = DeterministicReasoner()
        outcome = await make_learner(reasoner, use_reflection_for_learning=False).learn(
            make_record(), make_diagnosis(),
        )
        assert outcome.lessons is None
        assert reasoner.calls["synthesize_learning"] == 0

    async def test_synthesis_failure_still_updates_effectiveness(self):
        reasoner = DeterministicReasoner(fail_on={"synthesize_learning"})
        learner = make_learner(reasoner)
        outcome = await learner.learn(make_record(), make_diagnosis())
        assert outcome.lessons is None
        assert learner.effectiveness_for(retries_up()).total_attempts == 1


# ── Signatures ────────────────────────────────────────────────────────────────

class TestSignature:
    @pytest.mark.parametrize("action,expected", [
        (retries_up(), "adjust_param:MAX_RETRIES:increase"),
        (
            AdjustParam(key="MAX_RETRIES", old_value=IntegerValue(value=3), new_value=IntegerValue(value=2)),
            "adjust_param:MAX_RETRIES:decrease",
        ),
        (ToggleFeature(feature_name="ENABLE_AUTO_REFLECTION", desired_state=False),
         "toggle_feature:ENABLE_AUTO_REFLECTION:false"),
        (RestartService(component=ServiceComponent.LLM_CLIENT), "restart_service:llm_client"),
        (RestartService(component=ServiceComponent.MODE, mode_name="tree"), "restart_service:tree"),
        (ScaleResource(resource=ResourceType.CACHE_SIZE, old_value=500, new_value=400),
         "scale_resource:cache_size:decrease"),
        (NoOp(reason="none"), "no_op"),
    ])
    def test_signature(self, action, expected):
        assert signature(action) == expected
