"""LLM Reasoner — the production reasoning collaborator.

Each of the four operations follows the same shape:
    1. Load the operation's system prompt from prompts/<operation>.txt
    2. Serialize the inputs into labelled JSON sections for the user turn
    3. Call the injected LLMClient
    4. Parse the reply into the operation's response schema

Failures are re-raised as ReasoningError so callers deal with one exception
type. Timeouts are the caller's responsibility: each operation has its own
budget in ReasoningConfig and the Analyzer and Learner enforce them.
"""

import json
import logging
import pathlib

import openai

from agents.base import ReasoningClient, ReasoningError, ReasoningErrorKind, SelectionContext
from llm.base import LLMClient
from schemas.actions import SuggestedAction
from schemas.diagnosis import SelfDiagnosis
from schemas.metrics import HealthReport
from schemas.reasoning import (
    ActionSelectionResponse,
    DiagnosisResponse,
    LearningResponse,
    ValidationResponse,
)
from schemas.result import ActionRecord, NormalizedReward
from utils.parse import LLMParseError, parse_llm_json

logger = logging.getLogger(__name__)

_PROMPT_DIR = pathlib.Path(__file__).parent.parent / "prompts"


class LLMReasoner(ReasoningClient):
    """ReasoningClient backed by an LLM.

    Attributes:
        llm: Provider client used for every operation.
        _prompts: System prompt per operation name, loaded once at construction.
    """

    name = "llm_reasoner"

    def __init__(self, llm: LLMClient) -> None:
        self.llm = llm
        self._prompts = {
            op: (_PROMPT_DIR / f"{op}.txt").read_text()
            for op in ("diagnose", "select_action", "validate_decision", "synthesize_learning")
        }

    async def diagnose(self, report: HealthReport) -> DiagnosisResponse:
        trigger = report.most_severe_trigger()
        user = _sections(
            ("Trigger Event", trigger.model_dump(mode="json") if trigger else None),
            ("All Triggers", [t.model_dump(mode="json") for t in report.triggers]),
            ("Current Metrics", report.current_metrics.model_dump(mode="json")),
            ("Baseline Values", report.baselines.model_dump(mode="json")),
        )
        return await self._call("diagnose", user, DiagnosisResponse)

    async def select_action(self, context: SelectionContext) -> ActionSelectionResponse:
        user = _sections(
            ("Diagnosis", context.diagnosis.model_dump(mode="json")),
            ("Trigger", context.trigger.model_dump(mode="json")),
            ("Allowed Action Types", context.allowed_action_types),
            ("Allowlist", context.allowlist),
            ("Historical Effectiveness", [e.model_dump(mode="json") for e in context.effectiveness]),
        )
        return await self._call("select_action", user, ActionSelectionResponse)

    async def validate_decision(
        self,
        diagnosis: SelfDiagnosis,
        action: SuggestedAction,
    ) -> ValidationResponse:
        user = _sections(
            ("Diagnosis", diagnosis.model_dump(mode="json", exclude={"suggested_action"})),
            ("Proposed Action", action.model_dump(mode="json")),
        )
        return await self._call("validate_decision", user, ValidationResponse)

    async def synthesize_learning(
        self,
        record: ActionRecord,
        diagnosis: SelfDiagnosis,
        reward: NormalizedReward,
    ) -> LearningResponse:
        user = _sections(
            ("Original Diagnosis", diagnosis.model_dump(mode="json", exclude={"suggested_action"})),
            ("Executed Action", record.action.model_dump(mode="json")),
            ("Outcome", record.outcome.value),
            ("Metrics Before", record.metrics_before.model_dump(mode="json")),
            ("Metrics After", record.metrics_after.model_dump(mode="json") if record.metrics_after else None),
            ("Calculated Reward", reward.model_dump(mode="json")),
        )
        return await self._call("synthesize_learning", user, LearningResponse)

    # ── Private helpers ───────────────────────────────────────────────────────

    async def _call(self, operation: str, user: str, schema):
        try:
            raw = await self.llm.complete(system=self._prompts[operation], user=user)
        except openai.APIError as exc:
            raise ReasoningError(ReasoningErrorKind.UNAVAILABLE, operation, str(exc)) from exc

        try:
            return parse_llm_json(raw, schema)
        except LLMParseError as exc:
            logger.error("%s: failed to parse LLM response: %s\nRaw: %s", operation, exc, exc.raw[:500])
            raise ReasoningError(ReasoningErrorKind.PARSE_FAILED, operation, str(exc)) from exc


def _sections(*sections: tuple[str, object]) -> str:
    """Render (title, data) pairs as markdown headings over JSON blocks."""
    parts = []
    for title, data in sections:
        parts.append(f"### {title}\n```json\n{json.dumps(data, indent=2, default=str)}\n```")
    return "\n\n".join(parts)
