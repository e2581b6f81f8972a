"""Diagnosis schemas.

A SelfDiagnosis is what the Analyzer hands to the Executor: the trigger that
started the cycle, how bad it is, what the reasoning collaborator thinks is
going on, and exactly one SuggestedAction. Everything on it is fixed at
creation time except `status`, which tracks the diagnosis through its
lifecycle:

    pending ─┬─> executing ─┬─> completed
             │              └─> rolled_back
             ├─> awaiting_approval ─> executing ...
             └─> superseded
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from schemas.actions import SuggestedAction
from schemas.metrics import TriggerMetric


class Severity(str, Enum):
    """How far a metric has drifted. Ordered by `level`."""

    INFO = "info"
    WARNING = "warning"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def level(self) -> int:
        return _SEVERITY_LEVELS[self]

    @classmethod
    def from_deviation(cls, deviation_pct: float) -> "Severity":
        """Map an absolute deviation percentage onto a severity.

        Monotonic: a larger deviation never yields a lower severity.
        """
        magnitude = abs(deviation_pct)
        if magnitude >= 100.0:
            return cls.CRITICAL
        if magnitude >= 50.0:
            return cls.HIGH
        if magnitude >= 25.0:
            return cls.WARNING
        return cls.INFO


_SEVERITY_LEVELS = {
    Severity.INFO: 0,
    Severity.WARNING: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class DiagnosisStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    SUPERSEDED = "superseded"
    AWAITING_APPROVAL = "awaiting_approval"


def new_diagnosis_id() -> str:
    return f"diag_{uuid.uuid4()}"


class SelfDiagnosis(BaseModel):
    """A diagnosed degradation and the single action proposed to address it.

    Attributes:
        id: "diag_<uuid4>".
        trigger: The metric that crossed its threshold.
        severity: Derived from the trigger's deviation magnitude.
        description: Human-readable summary of the trigger.
        suspected_cause: Root cause proposed by the reasoning collaborator.
            Empty when no diagnosis could be obtained.
        confidence: Collaborator confidence in the suspected cause.
        evidence: Supporting observations quoted by the collaborator.
        suggested_action: Exactly one action. A NoOp when no safe action exists.
        action_rationale: Why this action was chosen.
        validation_warnings: Concerns raised by the decision validation step.
        status: Lifecycle state. The only mutable field.
        created_at: When the diagnosis was produced.
    """

    id: str = Field(default_factory=new_diagnosis_id)
    trigger: TriggerMetric
    severity: Severity
    description: str
    suspected_cause: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    evidence: list[str] = []
    suggested_action: SuggestedAction
    action_rationale: str = ""
    validation_warnings: list[str] = []
    status: DiagnosisStatus = DiagnosisStatus.PENDING
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def with_status(self, status: DiagnosisStatus) -> "SelfDiagnosis":
        """Return a copy with the lifecycle status moved on."""
        return self.model_copy(update={"status": status})
