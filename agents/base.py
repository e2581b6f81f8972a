"""Reasoning collaborator interface.

The control loop never decides on its own what is semantically wrong with
the service. That judgment is delegated to a ReasoningClient, which offers
four operations:

    diagnose             health report -> suspected cause + recommended action
    select_action        diagnosis + allowed actions + track record -> choice
    validate_decision    diagnosis + action -> independent bias/fallacy review
    synthesize_learning  executed action + reward -> lessons

The core depends only on this interface. The production implementation
(agents/llm_reasoner.py) calls an LLM; the deterministic double (stubs.py)
lets every phase of the loop run in tests and demos without a network.

Implementations raise ReasoningError for anything that goes wrong. Callers
wrap every call in its own timeout and fall back to a safe default: NoOp for
diagnosis, the collaborator's own recommendation for selection, proceed for
validation, no lesson for learning.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

from schemas.actions import SuggestedAction
from schemas.diagnosis import SelfDiagnosis
from schemas.metrics import HealthReport, TriggerMetric
from schemas.reasoning import (
    ActionSelectionResponse,
    DiagnosisResponse,
    LearningResponse,
    ValidationResponse,
)
from schemas.result import ActionEffectiveness, ActionRecord, NormalizedReward


class ReasoningErrorKind(str, Enum):
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"
    PARSE_FAILED = "parse_failed"


class ReasoningError(Exception):
    """Raised when a reasoning operation cannot produce a usable answer.

    Attributes:
        kind: Unavailable, Timeout, or ParseFailed.
        operation: Which of the four operations failed, e.g. "diagnose".
    """

    def __init__(self, kind: ReasoningErrorKind, operation: str, message: str):
        super().__init__(f"{operation}: {message}")
        self.kind = kind
        self.operation = operation


@dataclass
class SelectionContext:
    """Everything select_action() reasons over.

    A dataclass rather than a pydantic model because it is an internal call
    argument, never serialized as a whole.

    Attributes:
        diagnosis: The collaborator's own diagnosis of the trigger.
        trigger: The metric that crossed its threshold.
        allowed_action_types: SuggestedAction type tags the allowlist permits.
        effectiveness: Historical statistics so proven actions can be preferred.
        allowlist: Summary of every bound, as served by config inspection.
    """

    diagnosis: DiagnosisResponse
    trigger: TriggerMetric
    allowed_action_types: list[str]
    effectiveness: list[ActionEffectiveness] = field(default_factory=list)
    allowlist: dict = field(default_factory=dict)


class ReasoningClient(ABC):
    """Abstract base class for reasoning collaborators.

    To add a new collaborator, subclass ReasoningClient and implement the
    four operations. The Analyzer and Learner receive an instance at
    construction time and never reference a concrete class.
    """

    @abstractmethod
    async def diagnose(self, report: HealthReport) -> DiagnosisResponse:
        """Explain a degraded health report.

        Raises:
            ReasoningError: If no usable diagnosis could be produced.
        """
        ...

    @abstractmethod
    async def select_action(self, context: SelectionContext) -> ActionSelectionResponse:
        """Choose one action type (and target) for a diagnosis.

        Raises:
            ReasoningError: If no usable selection could be produced.
        """
        ...

    @abstractmethod
    async def validate_decision(
        self,
        diagnosis: SelfDiagnosis,
        action: SuggestedAction,
    ) -> ValidationResponse:
        """Review a diagnosis and its action for biases and fallacies.

        Raises:
            ReasoningError: If the review could not be completed.
        """
        ...

    @abstractmethod
    async def synthesize_learning(
        self,
        record: ActionRecord,
        diagnosis: SelfDiagnosis,
        reward: NormalizedReward,
    ) -> LearningResponse:
        """Summarize what an executed action taught us.

        Raises:
            ReasoningError: If no lesson could be produced.
        """
        ...
