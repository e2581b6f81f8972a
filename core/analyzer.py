"""Analyzer — turns a degraded health report into one safe, allowlisted action.

Flow inside analyze():
    1. Refuse when there is nothing to analyze or the pending backlog is full
    2. Pick the most severe trigger and derive severity from its deviation
    3. Ask the reasoning collaborator for a diagnosis
       (failure or timeout -> NoOp diagnosis, never a guess)
    4. Ask the collaborator to select an action, passing the allowed action
       types and the historical effectiveness of past actions
       (failure or timeout -> the diagnosis's own recommendation)
    5. Validate the action through the allowlist
       (rejection -> NoOp carrying the violated rule, never a substitute)
    6. Optionally ask for an independent validation of the decision
       (failure or timeout -> proceed with a warning; explicit rejection -> NoOp)
    7. Queue the diagnosis as pending (or awaiting approval)

Every collaborator call has its own timeout from ReasoningConfig.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from agents.base import ReasoningClient, SelectionContext
from core.config import SelfImprovementConfig
from judge.allowlist import ActionAllowlist, AllowlistError, ParamBounds
from schemas.actions import (
    AdjustParam,
    ClearCache,
    FloatValue,
    IntegerValue,
    NoOp,
    ResourceType,
    RestartService,
    ScaleResource,
    ServiceComponent,
    SuggestedAction,
    ToggleFeature,
    no_op_diagnosis_unavailable,
    numeric,
)
from schemas.diagnosis import DiagnosisStatus, SelfDiagnosis, Severity
from schemas.metrics import HealthReport, TriggerKind, TriggerMetric
from schemas.reasoning import ActionSelectionResponse, DiagnosisResponse
from schemas.result import ActionEffectiveness

logger = logging.getLogger(__name__)

# Parameter adjusted when the collaborator names no target.
DEFAULT_PARAM_FOR_TRIGGER = {
    TriggerKind.LATENCY: "REQUEST_TIMEOUT_MS",
    TriggerKind.ERROR_RATE: "MAX_RETRIES",
    TriggerKind.QUALITY: "REFLECTION_QUALITY_THRESHOLD",
    TriggerKind.FALLBACK: "GOT_PRUNE_THRESHOLD",
}

DEFAULT_RESOURCE_FOR_TRIGGER = {
    TriggerKind.LATENCY: ResourceType.MAX_CONCURRENT_REQUESTS,
    TriggerKind.ERROR_RATE: ResourceType.MAX_RETRIES,
}

DEFAULT_CACHE_NAME = "responses"


class AnalysisBlockedReason(str, Enum):
    NO_TRIGGERS = "no_triggers"
    MAX_PENDING_REACHED = "max_pending_reached"
    SEVERITY_TOO_LOW = "severity_too_low"


class AnalysisBlocked(Exception):
    """Raised when analyze() declines to produce a diagnosis at all.

    Blocked is not failed: the trigger is noted and the cycle simply ends.

    Attributes:
        reason: Why analysis did not run.
    """

    def __init__(self, reason: AnalysisBlockedReason, message: str):
        super().__init__(message)
        self.reason = reason


@dataclass
class AnalysisResult:
    """What analyze() produced.

    Attributes:
        diagnosis: The diagnosis, carrying exactly one action.
        passed_validation: False if the decision validation rejected it.
        validation_warnings: Concerns raised, or why validation was skipped.
        elapsed_ms: Wall-clock time spent analyzing.
    """

    diagnosis: SelfDiagnosis
    passed_validation: bool = True
    validation_warnings: list[str] = field(default_factory=list)
    elapsed_ms: float = 0.0


class Analyzer:
    """Diagnoses triggers and proposes allowlisted actions.

    Attributes:
        config: Analyzer limits plus the reasoning timeouts.
        reasoner: The reasoning collaborator.
        allowlist: The safety boundary every action is checked against.
    """

    def __init__(
        self,
        config: SelfImprovementConfig,
        reasoner: ReasoningClient,
        allowlist: ActionAllowlist,
    ) -> None:
        self.config = config
        self.reasoner = reasoner
        self.allowlist = allowlist
        self._pending: dict[str, SelfDiagnosis] = {}
        self._effectiveness: list[ActionEffectiveness] = []
        self._total_analyses = 0
        self._noop_diagnoses = 0
        self._rejected_actions = 0
        self._deferred_triggers = 0

    async def analyze(self, report: HealthReport) -> AnalysisResult:
        """Produce a diagnosis and one action for a degraded health report.

        Args:
            report: A health report with at least one trigger.

        Returns:
            An AnalysisResult. Its diagnosis carries a NoOp whenever no safe
            action could be established; it never raises for collaborator
            failures.

        Raises:
            AnalysisBlocked: When there are no triggers, the pending backlog
                is full, or the severity is below the configured minimum.
        """
        start = time.perf_counter()

        if not report.triggers:
            raise AnalysisBlocked(AnalysisBlockedReason.NO_TRIGGERS, "No triggers to analyze")

        max_pending = self.config.analyzer.max_pending_diagnoses
        if len(self._pending) >= max_pending:
            self._deferred_triggers += 1
            logger.warning(
                "Pending backlog full (%d/%d). Trigger recorded but not acted upon.",
                len(self._pending),
                max_pending,
            )
            raise AnalysisBlocked(
                AnalysisBlockedReason.MAX_PENDING_REACHED,
                f"Max pending diagnoses reached: {len(self._pending)}",
            )

        trigger = report.most_severe_trigger()
        deviation = trigger.deviation_pct()
        severity = Severity.from_deviation(deviation)
        minimum = self.config.analyzer.min_action_severity
        if severity.level < minimum.level:
            raise AnalysisBlocked(
                AnalysisBlockedReason.SEVERITY_TOO_LOW,
                f"Severity {severity.value} below minimum {minimum.value}",
            )

        self._total_analyses += 1
        description = (
            f"{trigger.metric} at {trigger.observed_value:.4g} vs baseline "
            f"{trigger.baseline_value:.4g} ({deviation:+.1f}%)"
        )

        # Step 3: diagnosis. No diagnosis means no action.
        response, error = await self._diagnose(report)
        if response is None:
            self._noop_diagnoses += 1
            diagnosis = SelfDiagnosis(
                trigger=trigger,
                severity=severity,
                description=description,
                suggested_action=no_op_diagnosis_unavailable(error),
                status=DiagnosisStatus.COMPLETED,
            )
            return AnalysisResult(diagnosis=diagnosis, elapsed_ms=_elapsed_ms(start))

        # Step 4: action selection.
        selection = await self._select_action(response, trigger)
        action, rationale = self._build_action(response, selection, trigger)

        # Step 5: allowlist.
        try:
            self.allowlist.validate(action)
        except AllowlistError as exc:
            self._rejected_actions += 1
            logger.warning("Proposed action rejected by allowlist (%s): %s", exc.kind.value, exc)
            action = NoOp(reason=f"Action not allowed: {exc}")

        diagnosis = SelfDiagnosis(
            trigger=trigger,
            severity=severity,
            description=description,
            suspected_cause=response.suspected_cause,
            confidence=response.confidence,
            evidence=response.evidence,
            suggested_action=action,
            action_rationale=rationale,
        )

        # Step 6: independent validation.
        passed, warnings = await self._validate(diagnosis)
        if not passed:
            diagnosis = diagnosis.model_copy(update={
                "suggested_action": NoOp(reason=f"Validation rejected action: {'; '.join(warnings)}"),
            })
        diagnosis = diagnosis.model_copy(update={"validation_warnings": warnings})

        # Step 7: queue.
        if isinstance(diagnosis.suggested_action, NoOp):
            self._noop_diagnoses += 1
            diagnosis = diagnosis.with_status(DiagnosisStatus.COMPLETED)
        else:
            status = (
                DiagnosisStatus.AWAITING_APPROVAL
                if self.config.executor.require_approval
                else DiagnosisStatus.PENDING
            )
            diagnosis = diagnosis.with_status(status)
            self._pending[diagnosis.id] = diagnosis

        logger.info(
            "Diagnosis %s: severity=%s action=%s status=%s.",
            diagnosis.id,
            diagnosis.severity.value,
            diagnosis.suggested_action.type,
            diagnosis.status.value,
        )
        return AnalysisResult(
            diagnosis=diagnosis,
            passed_validation=passed,
            validation_warnings=warnings,
            elapsed_ms=_elapsed_ms(start),
        )

    # ── Pending diagnoses ─────────────────────────────────────────────────────

    def pending_diagnoses(self) -> list[SelfDiagnosis]:
        return list(self._pending.values())

    def get_pending(self, diagnosis_id: str) -> SelfDiagnosis | None:
        return self._pending.get(diagnosis_id)

    def track_pending(self, diagnosis: SelfDiagnosis) -> None:
        """Put a diagnosis back on the pending list, e.g. after a restart."""
        self._pending[diagnosis.id] = diagnosis

    def remove_pending(self, diagnosis_id: str) -> SelfDiagnosis | None:
        return self._pending.pop(diagnosis_id, None)

    def supersede_all_pending(self) -> list[SelfDiagnosis]:
        """Mark every pending diagnosis superseded and clear the list."""
        superseded = [d.with_status(DiagnosisStatus.SUPERSEDED) for d in self._pending.values()]
        self._pending.clear()
        if superseded:
            logger.info("Superseded %d pending diagnoses.", len(superseded))
        return superseded

    def update_effectiveness(self, history: list[ActionEffectiveness]) -> None:
        """Replace the track record passed to action selection."""
        self._effectiveness = list(history)

    def stats(self) -> dict:
        return {
            "total_analyses": self._total_analyses,
            "pending": len(self._pending),
            "noop_diagnoses": self._noop_diagnoses,
            "rejected_actions": self._rejected_actions,
            "deferred_triggers": self._deferred_triggers,
            "effectiveness_entries": len(self._effectiveness),
        }

    # ── Private helpers ───────────────────────────────────────────────────────

    async def _diagnose(self, report: HealthReport) -> tuple[DiagnosisResponse | None, str]:
        timeout = self.config.reasoning.diagnosis_timeout_ms / 1000
        try:
            response = await asyncio.wait_for(self.reasoner.diagnose(report), timeout=timeout)
            return response, ""
        except asyncio.TimeoutError:
            logger.error("Diagnosis timed out after %.1fs. Falling back to no-op.", timeout)
            return None, f"timed out after {timeout:.1f}s"
        except Exception as exc:
            logger.error("Diagnosis failed: %s. Falling back to no-op.", exc)
            return None, str(exc)

    async def _select_action(
        self,
        response: DiagnosisResponse,
        trigger: TriggerMetric,
    ) -> ActionSelectionResponse | None:
        context = SelectionContext(
            diagnosis=response,
            trigger=trigger,
            allowed_action_types=self._allowed_action_types(),
            effectiveness=self._effectiveness,
            allowlist=self.allowlist.summary(),
        )
        timeout = self.config.reasoning.selection_timeout_ms / 1000
        try:
            return await asyncio.wait_for(self.reasoner.select_action(context), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Action selection timed out. Using the diagnosis recommendation.")
        except Exception as exc:
            logger.warning("Action selection failed: %s. Using the diagnosis recommendation.", exc)
        return None

    async def _validate(self, diagnosis: SelfDiagnosis) -> tuple[bool, list[str]]:
        if not self.config.reasoning.enable_validation or isinstance(diagnosis.suggested_action, NoOp):
            return True, []

        timeout = self.config.reasoning.validation_timeout_ms / 1000
        try:
            result = await asyncio.wait_for(
                self.reasoner.validate_decision(diagnosis, diagnosis.suggested_action),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Decision validation timed out. Proceeding without it.")
            return True, ["Validation skipped: timed out"]
        except Exception as exc:
            logger.warning("Decision validation failed: %s. Proceeding without it.", exc)
            return True, [f"Validation skipped: {exc}"]

        warnings = list(result.concerns)
        for issue in result.biases_detected + result.fallacies_detected:
            warnings.append(f"{issue.kind} (severity {issue.severity}): {issue.explanation}")
        if not result.approved:
            logger.warning("Decision validation rejected %s: %s", diagnosis.id, warnings)
        return result.approved, warnings

    def _allowed_action_types(self) -> list[str]:
        types = []
        if self.allowlist.params:
            types.append("adjust_param")
        if self.allowlist.features:
            types.append("toggle_feature")
        if self.allowlist.resources:
            types.append("scale_resource")
        return types + ["restart_service", "clear_cache", "no_op"]

    def _build_action(
        self,
        response: DiagnosisResponse,
        selection: ActionSelectionResponse | None,
        trigger: TriggerMetric,
    ) -> tuple[SuggestedAction, str]:
        """Turn the collaborator's choice into a concrete action.

        Uses the selection when there is one, else the diagnosis's own
        recommendation. Targets the collaborator names are used as given so
        that an unlisted target is rejected by the allowlist rather than
        swapped for a listed one.
        """
        if selection is not None:
            kind, target, proposed = selection.selected_option, selection.action_target, selection.proposed_value
            rationale = selection.rationale or response.rationale
        else:
            kind, target, proposed = response.recommended_action_type, response.action_target, None
            rationale = response.rationale
        kind = (kind or "no_op").strip().lower()

        if kind == "adjust_param":
            key = target or DEFAULT_PARAM_FOR_TRIGGER[trigger.kind]
            bounds = self.allowlist.get_param_bounds(key)
            if bounds is None:
                return NoOp(reason=f"Action not allowed: Parameter not in allowlist: {key}"), rationale
            return self._adjust_param(key, bounds, trigger, proposed), rationale

        if kind == "toggle_feature":
            if not target:
                return NoOp(reason="No feature named to toggle"), rationale
            desired = proposed if isinstance(proposed, bool) else False
            return ToggleFeature(feature_name=target, desired_state=desired, reason=rationale), rationale

        if kind == "scale_resource":
            if target and _resource_from(target) is None:
                return NoOp(reason=f"Action not allowed: Resource not scalable: {target}"), rationale
            resource = _resource_from(target) or DEFAULT_RESOURCE_FOR_TRIGGER.get(trigger.kind)
            if resource is None:
                return self._build_default_adjustment(trigger), rationale
            return self._scale_resource(resource, trigger, proposed), rationale

        if kind == "clear_cache":
            return ClearCache(cache_name=target or DEFAULT_CACHE_NAME), rationale

        if kind == "restart_service":
            component, mode = _component_from(target)
            return RestartService(component=component, mode_name=mode, graceful=True), rationale

        if kind == "no_op":
            return NoOp(reason=rationale or "Collaborator recommended no action"), rationale

        return NoOp(reason=f"Unknown action type: {kind}"), rationale

    def _build_default_adjustment(self, trigger: TriggerMetric) -> SuggestedAction:
        key = DEFAULT_PARAM_FOR_TRIGGER[trigger.kind]
        bounds = self.allowlist.get_param_bounds(key)
        if bounds is None:
            return NoOp(reason=f"No default adjustment available for {trigger.metric}")
        return self._adjust_param(key, bounds, trigger, None)

    def _adjust_param(
        self,
        key: str,
        bounds: ParamBounds,
        trigger: TriggerMetric,
        proposed: float | bool | str | None,
    ) -> AdjustParam:
        current = numeric(bounds.current_value)
        if isinstance(proposed, (int, float)) and not isinstance(proposed, bool):
            new = float(proposed)
        else:
            step = numeric(bounds.step)
            lo, hi = numeric(bounds.min_value), numeric(bounds.max_value)
            new = min(current + step, hi) if _should_increase(trigger) else max(current - step, lo)

        if isinstance(bounds.current_value, IntegerValue):
            new_value = IntegerValue(value=int(round(new)))
        else:
            new_value = FloatValue(value=round(new, 6))
        return AdjustParam(key=key, old_value=bounds.current_value, new_value=new_value)

    def _scale_resource(
        self,
        resource: ResourceType,
        trigger: TriggerMetric,
        proposed: float | bool | str | None,
    ) -> SuggestedAction:
        bounds = self.allowlist.get_resource_bounds(resource)
        if bounds is None:
            return NoOp(reason=f"Action not allowed: Resource not scalable: {resource.value}")
        current = bounds.current_value if bounds.current_value is not None else bounds.midpoint
        if isinstance(proposed, (int, float)) and not isinstance(proposed, bool):
            new = int(proposed)
        elif _should_increase(trigger):
            new = min(current + bounds.step, bounds.max_value)
        else:
            new = max(current - bounds.step, bounds.min_value)
        return ScaleResource(resource=resource, old_value=current, new_value=new)


def _should_increase(trigger: TriggerMetric) -> bool:
    """Latency and error-rate problems call for more headroom; the rest for less."""
    return trigger.kind in (TriggerKind.LATENCY, TriggerKind.ERROR_RATE)


def _resource_from(target: str | None) -> ResourceType | None:
    if not target:
        return None
    try:
        return ResourceType(target.strip().lower())
    except ValueError:
        return None


def _component_from(target: str | None) -> tuple[ServiceComponent, str | None]:
    if not target:
        return ServiceComponent.LLM_CLIENT, None
    try:
        return ServiceComponent(target.strip().lower()), None
    except ValueError:
        return ServiceComponent.MODE, target


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000
