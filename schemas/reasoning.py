"""Reasoning collaborator schemas.

The four response shapes returned by a ReasoningClient. The LLM-backed
implementation parses model output straight into these models, so field
names here are the JSON keys the prompts ask for.
"""

from pydantic import BaseModel, Field


class DiagnosisResponse(BaseModel):
    """Root-cause assessment for a health report.

    Attributes:
        suspected_cause: One-sentence statement of the likely cause.
        severity: Collaborator's own severity label. Informational only; the
            Analyzer derives severity from the trigger deviation.
        confidence: 0.0-1.0.
        evidence: Observations from the report that support the cause.
        recommended_action_type: One of the SuggestedAction type tags.
        action_target: Parameter, feature, resource, component, or cache
            name the recommended action applies to.
        rationale: Why this action type addresses the suspected cause.
    """

    suspected_cause: str
    severity: str = "warning"
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    evidence: list[str] = []
    recommended_action_type: str = "no_op"
    action_target: str | None = None
    rationale: str = ""


class ActionScores(BaseModel):
    effectiveness: float = 0.0
    risk: float = 0.0
    reversibility: float = 0.0
    historical_success: float = 0.0


class ActionSelectionResponse(BaseModel):
    """The collaborator's pick among the allowed action types.

    Attributes:
        selected_option: SuggestedAction type tag, e.g. "adjust_param".
        action_target: What the action applies to.
        proposed_value: Explicit new value. When None the Analyzer moves the
            target by one allowlist step.
        scores: Per-criterion scores behind the choice.
        total_score: Aggregate score of the selected option.
        rationale: Why this option was chosen.
        alternatives_considered: Other options that were weighed.
    """

    selected_option: str
    action_target: str | None = None
    proposed_value: float | bool | str | None = None
    scores: ActionScores = Field(default_factory=ActionScores)
    total_score: float = 0.0
    rationale: str = ""
    alternatives_considered: list[str] = []


class DetectedIssue(BaseModel):
    kind: str
    severity: int = Field(default=1, ge=1, le=5)
    explanation: str = ""


class ValidationResponse(BaseModel):
    """Independent bias and fallacy review of a diagnosis and its action."""

    approved: bool = True
    concerns: list[str] = []
    biases_detected: list[DetectedIssue] = []
    fallacies_detected: list[DetectedIssue] = []
    overall_quality: float = Field(default=1.0, ge=0.0, le=1.0)


class ParamAdjustmentHint(BaseModel):
    key: str
    direction: str
    reason: str = ""


class LearningRecommendations(BaseModel):
    adjust_allowlist: bool = False
    param_adjustments: list[ParamAdjustmentHint] = []
    adjust_cooldown: bool = False
    new_cooldown_secs: int | None = None


class LearningResponse(BaseModel):
    """Qualitative lesson summary for an executed action."""

    outcome_assessment: str = ""
    root_cause_accuracy: float = Field(default=0.0, ge=0.0, le=1.0)
    action_effectiveness: float = Field(default=0.0, ge=0.0, le=1.0)
    lessons: list[str] = []
    recommendations: LearningRecommendations = Field(default_factory=LearningRecommendations)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
