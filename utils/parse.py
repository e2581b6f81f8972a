"""Tolerant parsing of reasoning replies into pydantic models.

Models asked for JSON still wrap it in prose or markdown fences, and their
scores drift a hair outside [0, 1]. parse_llm_json() looks for the first JSON
object in a reply, pulls unit-interval scores back into range, and validates
the result against the operation's response schema.
"""

import json
import re

from pydantic import BaseModel, ValidationError

# Keys holding 0.0-1.0 scores anywhere in a reasoning response.
_UNIT_INTERVAL_KEYS = {
    "confidence",
    "overall_quality",
    "root_cause_accuracy",
    "action_effectiveness",
    "effectiveness",
    "risk",
    "reversibility",
    "historical_success",
}

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)
_decoder = json.JSONDecoder()


class LLMParseError(Exception):
    """A reply held no JSON object, or one that did not fit the schema.

    Attributes:
        raw: The reply as received, for the error log.
    """

    def __init__(self, message: str, raw: str):
        super().__init__(message)
        self.raw = raw


def parse_llm_json(response: str, schema: type[BaseModel]) -> BaseModel:
    """Validate the first JSON object found in a reply against a schema.

    Fenced blocks are searched first, then the reply as a whole. Within each
    candidate the first position that decodes to a JSON object wins, so
    commentary before or after the object is ignored.

    Args:
        response: Text returned by LLMClient.complete().
        schema: Response model for the reasoning operation.

    Returns:
        An instance of schema.

    Raises:
        LLMParseError: Empty reply, no JSON object, or a schema mismatch.
    """
    name = schema.__name__
    if not response or not response.strip():
        raise LLMParseError(f"Empty reply for {name}", raw=response or "")

    data = _first_object(response)
    if data is None:
        raise LLMParseError(f"No JSON object in reply for {name}", raw=response)

    _clamp_scores(data)
    try:
        return schema.model_validate(data)
    except ValidationError as exc:
        raise LLMParseError(f"Reply does not match schema {name}: {exc}", raw=response) from exc


# ── Private helpers ────────────────────────────────────────────────────────────

def _first_object(text: str) -> dict | None:
    candidates = [m.group(1) for m in _FENCE.finditer(text)] + [text]
    for candidate in candidates:
        start = candidate.find("{")
        while start != -1:
            try:
                value, _ = _decoder.raw_decode(candidate, start)
            except json.JSONDecodeError:
                start = candidate.find("{", start + 1)
                continue
            if isinstance(value, dict):
                return value
            start = candidate.find("{", start + 1)
    return None


def _clamp_scores(data) -> None:
    """Clamp unit-interval scores in place, recursing into dicts and lists."""
    if isinstance(data, list):
        for item in data:
            _clamp_scores(item)
        return
    if not isinstance(data, dict):
        return
    for key, value in data.items():
        if key in _UNIT_INTERVAL_KEYS and isinstance(value, (int, float)) and not isinstance(value, bool):
            data[key] = max(0.0, min(1.0, float(value)))
        elif key == "severity" and isinstance(value, int) and not isinstance(value, bool):
            data[key] = max(1, min(5, value))
        else:
            _clamp_scores(value)
