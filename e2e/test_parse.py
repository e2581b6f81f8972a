"""parse_llm_json tests."""

import pytest

from schemas.reasoning import ActionSelectionResponse, DiagnosisResponse, ValidationResponse
from utils.parse import LLMParseError, parse_llm_json


def test_plain_json():
    result = parse_llm_json('{"suspected_cause": "cold cache"}', DiagnosisResponse)
    assert result.suspected_cause == "cold cache"


def test_fenced_json():
    raw = '```json\n{"selected_option": "clear_cache", "action_target": "responses"}\n```'
    result = parse_llm_json(raw, ActionSelectionResponse)
    assert result.selected_option == "clear_cache"


def test_leading_commentary():
    raw = 'Here is my assessment:\n{"suspected_cause": "provider outage", "confidence": 0.6}\nHope this helps.'
    result = parse_llm_json(raw, DiagnosisResponse)
    assert result.confidence == 0.6


def test_scores_are_clamped():
    raw = '{"suspected_cause": "x", "confidence": 1.2}'
    assert parse_llm_json(raw, DiagnosisResponse).confidence == 1.0


def test_nested_scores_are_clamped():
    raw = '{"approved": true, "overall_quality": -0.1, "biases_detected": [{"kind": "anchoring", "severity": 9}]}'
    result = parse_llm_json(raw, ValidationResponse)
    assert result.overall_quality == 0.0
    assert result.biases_detected[0].severity == 5


def test_empty_response():
    with pytest.raises(LLMParseError):
        parse_llm_json("", DiagnosisResponse)


def test_no_json_keeps_raw():
    with pytest.raises(LLMParseError) as exc_info:
        parse_llm_json("no braces here", DiagnosisResponse)
    assert exc_info.value.raw == "no braces here"


def test_schema_mismatch_keeps_raw():
    raw = '{"confidence": 0.4}'
    with pytest.raises(LLMParseError, match="does not match schema") as exc_info:
        parse_llm_json(raw, DiagnosisResponse)
    assert exc_info.value.raw == raw
