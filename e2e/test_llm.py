"""LLM layer tests.

TestLLMClientInterface  — no API key needed, runs in CI
TestOpenRouterClient    — the live call is skipped unless OPENROUTER_API_KEY
                          is set in the environment or .env file
TestLLMReasoner         — canned replies from a stub LLMClient, no network
"""

import json
import os

import httpx
import openai
import pytest

from agents.base import ReasoningClient, ReasoningError, ReasoningErrorKind
from agents.llm_reasoner import LLMReasoner
from llm.base import LLMClient
from llm.openrouter import OpenRouterClient
from schemas.actions import AdjustParam, IntegerValue
from schemas.diagnosis import SelfDiagnosis, Severity
from schemas.metrics import Baselines, ErrorRateTrigger, HealthReport, MetricsSnapshot
from schemas.reasoning import DiagnosisResponse, ValidationResponse


# ── Shared helpers ────────────────────────────────────────────────────────────

class StubLLM(LLMClient):
    """Returns one canned reply and remembers the prompts it was sent."""

    def __init__(self, reply="", error=None):
        self.reply = reply
        self.error = error
        self.prompts = []

    async def complete(self, system: str, user: str) -> str:
        self.prompts.append((system, user))
        if self.error is not None:
            raise self.error
        return self.reply


def make_report():
    trigger = ErrorRateTrigger(observed=0.08, baseline=0.02, threshold=0.05)
    return HealthReport(
        current_metrics=MetricsSnapshot(error_rate=0.08, latency_p95_ms=220.0, quality_score=0.85, sample_count=100),
        baselines=Baselines(error_rate=0.02, latency_ms=200.0, quality_score=0.85),
        triggers=[trigger],
        is_healthy=False,
    )


def make_diagnosis():
    return SelfDiagnosis(
        trigger=ErrorRateTrigger(observed=0.08, baseline=0.02, threshold=0.05),
        severity=Severity.CRITICAL,
        description="error_rate at 0.08 vs baseline 0.02 (+300.0%)",
        suggested_action=AdjustParam(
            key="MAX_RETRIES", old_value=IntegerValue(value=3), new_value=IntegerValue(value=4),
        ),
    )


# ── LLMClient (abstract) ──────────────────────────────────────────────────────

class TestLLMClientInterface:
    def test_interface_is_abstract(self):
        with pytest.raises(TypeError, match="abstract"):
            LLMClient()

    def test_reasoner_interface_is_abstract(self):
        with pytest.raises(TypeError, match="abstract"):
            ReasoningClient()

    def test_reasoner_is_a_reasoning_client(self):
        assert isinstance(LLMReasoner(StubLLM()), ReasoningClient)


# ── OpenRouterClient ──────────────────────────────────────────────────────────

class TestOpenRouterClient:
    def test_missing_api_key_fails_at_construction(self, monkeypatch):
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
        with pytest.raises(KeyError):
            OpenRouterClient(model="google/gemini-2.0-flash-001")

    def test_sampling_defaults_are_cold(self, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "test-key")
        client = OpenRouterClient(model="google/gemini-2.0-flash-001")
        assert client.temperature == 0.2
        assert client.model == "google/gemini-2.0-flash-001"

    @pytest.mark.skipif(
        not os.getenv("OPENROUTER_API_KEY"),
        reason="OPENROUTER_API_KEY not set — skipping live API call",
    )
    @pytest.mark.live
    async def test_live_diagnosis_parses(self):
        reasoner = LLMReasoner(OpenRouterClient(model="google/gemini-2.0-flash-001"))
        response = await reasoner.diagnose(make_report())
        assert isinstance(response, DiagnosisResponse)
        assert response.suspected_cause


# ── LLMReasoner ───────────────────────────────────────────────────────────────

class TestLLMReasoner:
    async def test_diagnose_parses_fenced_reply(self):
        reply = "```json\n" + json.dumps({
            "suspected_cause": "Upstream provider is timing out",
            "confidence": 0.8,
            "recommended_action_type": "adjust_param",
            "action_target": "MAX_RETRIES",
        }) + "\n```"
        llm = StubLLM(reply)

        response = await LLMReasoner(llm).diagnose(make_report())

        assert response.recommended_action_type == "adjust_param"
        assert response.action_target == "MAX_RETRIES"
        system, user = llm.prompts[0]
        assert system.strip()
        assert "### Trigger Event" in user
        assert "### Baseline Values" in user

    async def test_validation_prompt_carries_action(self):
        llm = StubLLM('{"approved": false, "concerns": ["step too eager"]}')
        diagnosis = make_diagnosis()

        response = await LLMReasoner(llm).validate_decision(diagnosis, diagnosis.suggested_action)

        assert isinstance(response, ValidationResponse)
        assert not response.approved
        assert '"MAX_RETRIES"' in llm.prompts[0][1]

    async def test_unparseable_reply_is_parse_failed(self):
        with pytest.raises(ReasoningError) as exc_info:
            await LLMReasoner(StubLLM("I cannot help with that.")).diagnose(make_report())
        assert exc_info.value.kind == ReasoningErrorKind.PARSE_FAILED
        assert exc_info.value.operation == "diagnose"

    async def test_provider_error_is_unavailable(self):
        error = openai.APIConnectionError(request=httpx.Request("POST", "https://openrouter.ai/api/v1"))
        with pytest.raises(ReasoningError) as exc_info:
            await LLMReasoner(StubLLM(error=error)).diagnose(make_report())
        assert exc_info.value.kind == ReasoningErrorKind.UNAVAILABLE
