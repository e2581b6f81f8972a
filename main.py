"""Self-improvement control surface — operator API over the runtime.

Endpoints:
    GET  /health                       liveness
    GET  /status                       breaker, cooldown, metrics vs baselines
    GET  /history                      action records, filterable
    POST /enable | /disable            switch the control loop on or off
    POST /pause | /resume              skip cycles until a deadline
    POST /rollback/{action_id}         revert an executed action
    POST /diagnoses/{id}/approve       execute a diagnosis held for approval
    POST /diagnoses/{id}/reject        drop a pending diagnosis
    GET  /config                       config, allowlist bounds, live values
    POST /check                        force a health check now
    POST /events                       record one invocation event
    POST /cycle                        run one cycle now

The periodic loop starts with the app and stops with it. With
OPENROUTER_API_KEY set the runtime reasons with the LLM; without it the
deterministic reasoner is used so the surface still works locally.

Run locally:
    uv run uvicorn main:app --reload
"""

import logging
import logging.handlers
import os
import pathlib
from contextlib import asynccontextmanager
from datetime import datetime

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

load_dotenv()

from agents.base import ReasoningClient
from agents.llm_reasoner import LLMReasoner
from core.config import SelfImprovementConfig
from core.runtime import SelfImprovementError, SelfImprovementErrorKind, SelfImprovementRuntime
from core.store import StorageError
from llm.openrouter import OpenRouterClient
from schemas.metrics import InvocationEvent
from schemas.result import ActionOutcome
from stubs import DeterministicReasoner

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_FILE = pathlib.Path(__file__).parent / "self_improvement.log"
LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s  %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_file_handler = logging.handlers.RotatingFileHandler(
    LOG_FILE, maxBytes=1_000_000, backupCount=3, encoding="utf-8",
)
_file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))

_root_logger = logging.getLogger()
_root_logger.setLevel(logging.INFO)
_root_logger.addHandler(_file_handler)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Runtime setup
# ---------------------------------------------------------------------------

config = SelfImprovementConfig.from_env()
config.ensure_valid()


def _build_reasoner() -> ReasoningClient:
    if os.environ.get("OPENROUTER_API_KEY"):
        return LLMReasoner(OpenRouterClient(config.reasoning.model))
    logger.warning("OPENROUTER_API_KEY not set. Using the deterministic reasoner.")
    return DeterministicReasoner()


runtime = SelfImprovementRuntime(config, _build_reasoner())


@asynccontextmanager
async def lifespan(_app: FastAPI):
    await runtime.start()
    yield
    await runtime.stop()


app = FastAPI(title="Self-Improvement Control", lifespan=lifespan)

# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

_STATUS_BY_KIND = {
    SelfImprovementErrorKind.NOT_FOUND: 404,
    SelfImprovementErrorKind.INVALID_STATE: 409,
    SelfImprovementErrorKind.DISABLED: 409,
    SelfImprovementErrorKind.PAUSED: 409,
    SelfImprovementErrorKind.CIRCUIT_BREAKER_OPEN: 409,
    SelfImprovementErrorKind.IN_COOLDOWN: 409,
    SelfImprovementErrorKind.RATE_LIMIT_EXCEEDED: 409,
    SelfImprovementErrorKind.STORAGE_ERROR: 503,
}


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, SelfImprovementError):
        return HTTPException(status_code=_STATUS_BY_KIND.get(exc.kind, 500), detail=str(exc))
    if isinstance(exc, StorageError):
        return HTTPException(status_code=503, detail=f"Storage unavailable: {exc}")
    return HTTPException(status_code=500, detail=str(exc))


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class PauseRequest(BaseModel):
    duration_secs: int = Field(gt=0)


# ---------------------------------------------------------------------------
# Read endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/status")
def status():
    return runtime.status().model_dump(mode="json")


@app.get("/history")
async def history(limit: int = 50, outcome: ActionOutcome | None = None, since: datetime | None = None):
    """Return action records, most recent first."""
    try:
        records = await runtime.history(limit=limit, outcome=outcome, since=since)
    except StorageError as exc:
        raise _http_error(exc)
    return [r.model_dump(mode="json") for r in records]


@app.get("/config")
def config_summary():
    return runtime.config_summary()


# ---------------------------------------------------------------------------
# Control endpoints
# ---------------------------------------------------------------------------

@app.post("/enable")
def enable():
    runtime.enable()
    return {"enabled": True}


@app.post("/disable")
def disable():
    runtime.disable()
    return {"enabled": False}


@app.post("/pause")
def pause(body: PauseRequest):
    until = runtime.pause(body.duration_secs)
    return {"paused_until": until.isoformat()}


@app.post("/resume")
def resume():
    runtime.resume()
    return {"paused_until": None}


@app.post("/rollback/{action_id}")
async def rollback(action_id: str):
    try:
        record = await runtime.rollback(action_id)
    except (SelfImprovementError, StorageError) as exc:
        raise _http_error(exc)
    return record.model_dump(mode="json")


@app.post("/diagnoses/{diagnosis_id}/approve")
async def approve(diagnosis_id: str):
    try:
        result = await runtime.approve(diagnosis_id)
    except (SelfImprovementError, StorageError) as exc:
        raise _http_error(exc)
    return result.model_dump(mode="json")


@app.post("/diagnoses/{diagnosis_id}/reject")
async def reject(diagnosis_id: str):
    try:
        diagnosis = await runtime.reject(diagnosis_id)
    except (SelfImprovementError, StorageError) as exc:
        raise _http_error(exc)
    return diagnosis.model_dump(mode="json")


@app.post("/check")
def check():
    """Close the current window now. 'report' is null below the minimum sample size."""
    report = runtime.force_check()
    return {"report": report.model_dump(mode="json") if report else None}


@app.post("/events", status_code=202)
def record_event(event: InvocationEvent):
    runtime.record_invocation(event)
    return {"accepted": True}


@app.post("/cycle")
async def run_cycle():
    try:
        result = await runtime.run_cycle(force=True)
    except StorageError as exc:
        raise _http_error(exc)
    return result.model_dump(mode="json")


if __name__ == "__main__":
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)
