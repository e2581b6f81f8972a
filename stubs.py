"""Deterministic reasoning collaborator for tests, the CLI demo, and keyless runs."""

import asyncio
from collections import Counter

from agents.base import ReasoningClient, ReasoningError, ReasoningErrorKind, SelectionContext
from schemas.actions import SuggestedAction
from schemas.diagnosis import SelfDiagnosis
from schemas.metrics import HealthReport, TriggerKind
from schemas.reasoning import (
    ActionScores,
    ActionSelectionResponse,
    DiagnosisResponse,
    LearningResponse,
    ValidationResponse,
)
from schemas.result import ActionRecord, NormalizedReward

# trigger -> (suspected cause, action type, target)
_PLAYBOOK = {
    TriggerKind.ERROR_RATE: (
        "Transient upstream failures are exhausting the retry budget",
        "adjust_param",
        "MAX_RETRIES",
    ),
    TriggerKind.LATENCY: (
        "Upstream calls are timing out under load",
        "adjust_param",
        "REQUEST_TIMEOUT_MS",
    ),
    TriggerKind.QUALITY: (
        "Responses below the reflection threshold are not being refined",
        "adjust_param",
        "REFLECTION_QUALITY_THRESHOLD",
    ),
    TriggerKind.FALLBACK: (
        "Aggressive pruning leaves too few branches and forces fallbacks",
        "adjust_param",
        "GOT_PRUNE_THRESHOLD",
    ),
}


class DeterministicReasoner(ReasoningClient):
    """Answers every operation from a fixed playbook.

    Attributes:
        delay: Seconds to sleep before answering, to exercise timeouts.
        fail_on: Operation names that raise ReasoningError instead.
        approve: What validate_decision() returns.
        overrides: Operation name -> canned response, used instead of the
            playbook.
        calls: Per-operation call counter.
    """

    name = "deterministic_reasoner"

    def __init__(
        self,
        delay: float = 0.0,
        fail_on: set[str] | None = None,
        approve: bool = True,
        overrides: dict | None = None,
    ) -> None:
        self.delay = delay
        self.fail_on = fail_on or set()
        self.approve = approve
        self.overrides = overrides or {}
        self.calls: Counter = Counter()

    async def diagnose(self, report: HealthReport) -> DiagnosisResponse:
        await self._enter("diagnose")
        if "diagnose" in self.overrides:
            return self.overrides["diagnose"]
        trigger = report.most_severe_trigger()
        cause, action, target = _PLAYBOOK[trigger.kind]
        return DiagnosisResponse(
            suspected_cause=cause,
            severity="high",
            confidence=0.8,
            evidence=[
                f"{t.metric} observed {t.observed_value:.4g} against baseline {t.baseline_value:.4g}"
                for t in report.triggers
            ],
            recommended_action_type=action,
            action_target=target,
            rationale=f"{target} is the allowlisted knob closest to the symptom",
        )

    async def select_action(self, context: SelectionContext) -> ActionSelectionResponse:
        await self._enter("select_action")
        if "select_action" in self.overrides:
            return self.overrides["select_action"]
        diagnosis = context.diagnosis
        history = {e.action_signature: e.effectiveness_score for e in context.effectiveness}
        best = max(history.values(), default=0.0)
        return ActionSelectionResponse(
            selected_option=diagnosis.recommended_action_type,
            action_target=diagnosis.action_target,
            scores=ActionScores(effectiveness=0.7, risk=0.2, reversibility=1.0, historical_success=best),
            total_score=0.7,
            rationale=diagnosis.rationale,
            alternatives_considered=[t for t in context.allowed_action_types if t != diagnosis.recommended_action_type],
        )

    async def validate_decision(self, diagnosis: SelfDiagnosis, action: SuggestedAction) -> ValidationResponse:
        await self._enter("validate_decision")
        if "validate_decision" in self.overrides:
            return self.overrides["validate_decision"]
        if self.approve:
            return ValidationResponse(approved=True, overall_quality=0.9)
        return ValidationResponse(
            approved=False,
            concerns=["Evidence does not support the proposed change"],
            overall_quality=0.3,
        )

    async def synthesize_learning(
        self,
        record: ActionRecord,
        diagnosis: SelfDiagnosis,
        reward: NormalizedReward,
    ) -> LearningResponse:
        await self._enter("synthesize_learning")
        if "synthesize_learning" in self.overrides:
            return self.overrides["synthesize_learning"]
        verdict = "helped" if reward.is_positive() else "did not help"
        return LearningResponse(
            outcome_assessment=f"{record.action.type} {verdict} (reward {reward.value:+.2f})",
            root_cause_accuracy=0.7 if reward.is_positive() else 0.3,
            action_effectiveness=(reward.value + 1.0) / 2.0,
            lessons=[f"{record.action.type} on {diagnosis.trigger.metric} {verdict}"],
            confidence=reward.confidence,
        )

    async def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if operation in self.fail_on:
            raise ReasoningError(ReasoningErrorKind.UNAVAILABLE, operation, "scripted failure")
