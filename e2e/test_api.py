"""Control surface tests.

The app is entered through TestClient as a context manager so the lifespan
runs: crash recovery, then the periodic loop, which stops on exit once any
running cycle finishes.
"""

import pytest
from fastapi.testclient import TestClient

from main import app, runtime


@pytest.fixture
def client():
    runtime.disable()
    runtime.resume()
    with TestClient(app) as c:
        yield c
    runtime.disable()
    runtime.resume()


def test_health(client):
    res = client.get("/health")
    assert res.json()["status"] == "ok"


def test_status_reports_disabled_by_default(client):
    body = client.get("/status").json()
    assert body["enabled"] is False
    assert body["circuit_state"] == "closed"
    assert body["cycle_running"] is False


def test_enable_and_disable(client):
    assert client.post("/enable").json() == {"enabled": True}
    assert client.get("/status").json()["enabled"] is True
    assert client.post("/disable").json() == {"enabled": False}
    assert client.get("/status").json()["enabled"] is False


def test_cycle_while_disabled_is_skipped(client):
    res = client.post("/cycle")
    assert res.status_code == 200
    assert res.json()["error"] == "Self-improvement is disabled"
    assert res.json()["action_taken"] is False


# ── Pause ─────────────────────────────────────────────────────────────────────

def test_pause_requires_positive_duration(client):
    res = client.post("/pause", json={"duration_secs": 0})
    assert res.status_code == 422


def test_pause_and_resume(client):
    res = client.post("/pause", json={"duration_secs": 60})
    assert res.status_code == 200
    assert res.json()["paused_until"]
    assert client.get("/status").json()["paused_until"] is not None

    assert client.post("/resume").json() == {"paused_until": None}
    assert client.get("/status").json()["paused_until"] is None


# ── Inspection ────────────────────────────────────────────────────────────────

def test_config_lists_allowlist_and_live_values(client):
    body = client.get("/config").json()
    assert "MAX_RETRIES" in body["allowlist"]["params"]
    assert "MAX_RETRIES" in body["config_state"]["params"]
    assert body["config"]["executor"]["rollback_on_regression"] is True


def test_history_is_a_list(client):
    res = client.get("/history", params={"limit": 5})
    assert res.status_code == 200
    assert isinstance(res.json(), list)


def test_events_are_accepted_and_counted(client):
    event = {"tool_name": "reasoning_linear", "latency_ms": 120.0, "success": True}
    res = client.post("/events", json=event)
    assert res.status_code == 202
    assert res.json() == {"accepted": True}
    assert client.get("/status").json()["current_metrics"]["sample_count"] >= 1


def test_check_below_min_samples_has_no_report(client):
    client.post("/check")
    assert client.post("/check").json() == {"report": None}


def test_event_missing_fields_is_rejected(client):
    res = client.post("/events", json={"latency_ms": 10.0})
    assert res.status_code == 422


# ── Operator errors ───────────────────────────────────────────────────────────

def test_rollback_unknown_action_is_404(client):
    res = client.post("/rollback/action_missing")
    assert res.status_code == 404


def test_approve_unknown_diagnosis_is_404(client):
    res = client.post("/diagnoses/diag_missing/approve")
    assert res.status_code == 404


def test_reject_unknown_diagnosis_is_404(client):
    res = client.post("/diagnoses/diag_missing/reject")
    assert res.status_code == 404
