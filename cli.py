"""Self-improvement CLI demo runner.

Simulates a healthy traffic period followed by an error-rate regression, then
runs one full control cycle with the deterministic reasoner and renders the
four phases live in the terminal. Recovered traffic keeps flowing while the
Executor verifies its action, so the cycle ends with a scored action record.

Usage:
    uv run python cli.py
"""

import asyncio
import random

from rich.console import Console
from rich.table import Table

from core.config import SelfImprovementConfig
from core.runtime import SelfImprovementRuntime
from display.live import LiveDisplay
from schemas.actions import describe
from schemas.metrics import InvocationEvent
from schemas.result import ActionOutcome, CycleResult
from stubs import DeterministicReasoner

console = Console()

HEALTHY_EVENTS = 200
REGRESSION_EVENTS = 100
RECOVERY_EVENTS = 60


# ── Traffic simulation ────────────────────────────────────────────────────────

def _event(rng: random.Random, error_rate: float, latency_ms: float) -> InvocationEvent:
    return InvocationEvent(
        tool_name=rng.choice(["reasoning_linear", "reasoning_tree", "reasoning_got"]),
        latency_ms=max(rng.gauss(latency_ms, latency_ms * 0.1), 1.0),
        success=rng.random() >= error_rate,
        quality_score=round(rng.uniform(0.8, 0.9), 3),
    )


async def _recovered_traffic(runtime: SelfImprovementRuntime, rng: random.Random) -> None:
    """Healthy traffic arriving after the action has been applied."""
    await asyncio.sleep(0.5)
    for _ in range(RECOVERY_EVENTS):
        runtime.record_invocation(_event(rng, error_rate=0.02, latency_ms=220))
        await asyncio.sleep(0.01)


def _demo_config() -> SelfImprovementConfig:
    config = SelfImprovementConfig(enabled=True)
    config.executor.stabilization_period_secs = 1.0
    config.executor.verification_timeout_secs = 5
    config.reasoning.diagnosis_timeout_ms = 5000
    return config


# ── Results table ─────────────────────────────────────────────────────────────

def _print_results(result: CycleResult) -> None:
    if result.diagnosis is not None:
        d = result.diagnosis
        console.print(f"\n  diagnosis  [cyan]{d.id}[/cyan]  severity [bold]{d.severity.value}[/bold]")
        console.print(f"  cause      {d.suspected_cause or '[dim]none[/dim]'}")

    if result.action is None:
        console.print(f"\n[yellow]No action taken: {result.error}[/yellow]\n")
        return

    record = result.action
    table = Table(title="Action Record", show_lines=True, border_style="bright_black")
    table.add_column("Action",  style="bold", min_width=30)
    table.add_column("Outcome", width=12, justify="center")
    table.add_column("Reward",  width=8,  justify="right")
    table.add_column("Error before → after", min_width=22, justify="center")
    table.add_column("Lessons", style="dim", min_width=24)

    outcome_color = {
        ActionOutcome.SUCCESS: "green",
        ActionOutcome.ROLLED_BACK: "yellow",
        ActionOutcome.FAILED: "red",
    }.get(record.outcome, "dim")
    after = f"{record.metrics_after.error_rate:.1%}" if record.metrics_after else "n/a"

    table.add_row(
        describe(record.action),
        f"[{outcome_color}]{record.outcome.value}[/{outcome_color}]",
        f"{record.reward.value:+.2f}" if record.reward else "n/a",
        f"{record.metrics_before.error_rate:.1%} → {after}",
        result.lessons or "",
    )

    console.print()
    console.print(table)
    console.print(f"[dim]action: {record.id}  ({result.duration_ms / 1000:.1f}s)[/dim]\n")


# ── Entry point ───────────────────────────────────────────────────────────────

async def _run() -> None:
    rng = random.Random(7)
    config = _demo_config()
    runtime = SelfImprovementRuntime(config, DeterministicReasoner(delay=0.3))

    console.rule("[bold]Self-Improvement[/bold]")

    for _ in range(HEALTHY_EVENTS):
        runtime.record_invocation(_event(rng, error_rate=0.02, latency_ms=200))
    healthy = runtime.force_check()
    console.print(f"  healthy window   [cyan]{HEALTHY_EVENTS} events[/cyan], "
                  f"error rate {healthy.current_metrics.error_rate:.1%}")

    for _ in range(REGRESSION_EVENTS):
        runtime.record_invocation(_event(rng, error_rate=0.12, latency_ms=240))
    console.print(f"  regression       [cyan]{REGRESSION_EVENTS} events[/cyan], "
                  f"error rate {runtime.monitor.current_metrics().error_rate:.1%}")
    console.print()

    display = LiveDisplay()
    event_queue: asyncio.Queue = asyncio.Queue()

    with display.make_live() as live:
        cycle = asyncio.create_task(runtime.run_cycle(event_queue, force=True))
        consumer = asyncio.create_task(display.consume(event_queue, live))
        traffic = asyncio.create_task(_recovered_traffic(runtime, rng))

        result = await cycle
        await traffic
        await event_queue.put(None)   # sentinel: tell consumer to stop
        await consumer

    _print_results(result)


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
