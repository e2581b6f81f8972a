"""Drive a local control surface: feed traffic, run a cycle, print the outcome."""

import random
import sys

import httpx

BASE_URL = "http://127.0.0.1:8000"
TIMEOUT_SECONDS = 300


def _events(rng: random.Random, count: int, error_rate: float) -> list[dict]:
    return [
        {
            "tool_name": "reasoning_linear",
            "latency_ms": max(rng.gauss(200, 20), 1.0),
            "success": rng.random() >= error_rate,
            "quality_score": 0.85,
        }
        for _ in range(count)
    ]


def main() -> int:
    rng = random.Random(11)
    with httpx.Client(base_url=BASE_URL, timeout=TIMEOUT_SECONDS) as client:
        try:
            client.get("/health").raise_for_status()
        except httpx.HTTPError as exc:
            print(f"Failed to reach API at {BASE_URL}: {exc}", file=sys.stderr)
            print("Start it first with: uvicorn main:app", file=sys.stderr)
            return 1

        client.post("/enable").raise_for_status()

        print("Posting healthy traffic ...")
        for event in _events(rng, 200, error_rate=0.02):
            client.post("/events", json=event).raise_for_status()
        client.post("/check").raise_for_status()

        print("Posting regressed traffic ...")
        for event in _events(rng, 100, error_rate=0.15):
            client.post("/events", json=event).raise_for_status()

        print("Running one cycle (this waits for verification) ...")
        result = client.post("/cycle").json()

        action = result.get("action")
        if action is None:
            print(f"No action taken: {result.get('error')}")
        else:
            print(f"Action {action['id']}: {action['action']['type']} -> {action['outcome']}")
            print(f"Reward: {result.get('reward')}")

        status = client.get("/status").json()
        print(f"Circuit: {status['circuit_state']}  cooldown: {status['cooldown_remaining_secs']}s")
    return 0


if __name__ == "__main__":
    sys.exit(main())
