"""Rich live display: one panel per cycle phase, updating in real time.

The display is decoupled from the runtime. It reads CycleEvents from an
asyncio.Queue and renders them; the runtime only puts events into the queue
and never checks whether anyone is reading.

Usage:
    event_queue = asyncio.Queue()
    display = LiveDisplay()

    with display.make_live() as live:
        cycle = asyncio.create_task(runtime.run_cycle(event_queue, force=True))
        consumer = asyncio.create_task(display.consume(event_queue, live))
        result = await cycle
        await event_queue.put(None)  # sentinel, stops consume()
        await consumer
"""

import asyncio
from dataclasses import dataclass, field

from rich.columns import Columns
from rich.console import Group
from rich.live import Live
from rich.panel import Panel
from rich.text import Text

from schemas.events import CycleEvent, EventType, Phase

MAX_LINES = 4


@dataclass
class _PhaseState:
    phase: Phase
    status: str = "waiting"    # waiting | running | complete | skipped | error
    elapsed_ms: float = 0.0
    messages: list[str] = field(default_factory=list)


_ICONS = {
    "waiting":  "[dim]○[/dim]",
    "running":  "[bold yellow]●[/bold yellow]",
    "complete": "[bold green]✓[/bold green]",
    "skipped":  "[bold blue]–[/bold blue]",
    "error":    "[bold red]✗[/bold red]",
}

_BORDERS = {
    "waiting":  "dim",
    "running":  "yellow",
    "complete": "green",
    "skipped":  "blue",
    "error":    "red",
}

# Event type -> (new panel status or None to keep it, message prefix)
_TRANSITIONS = {
    EventType.STARTED:  ("running", ""),
    EventType.PROGRESS: (None, "→ "),
    EventType.COMPLETE: ("complete", "✓ "),
    EventType.SKIPPED:  ("skipped", "– "),
    EventType.ERROR:    ("error", "✗ "),
}


class LiveDisplay:
    """Renders the four phases of a cycle as panels in two rows."""

    def __init__(self) -> None:
        self._states = {phase: _PhaseState(phase=phase) for phase in Phase}

    def make_live(self) -> Live:
        return Live(self._render(), refresh_per_second=12, transient=False)

    async def consume(self, queue: asyncio.Queue, live: Live) -> None:
        """Apply events from the queue until the None sentinel arrives."""
        while True:
            event = await queue.get()
            if event is None:
                break
            self._apply(event)
            live.update(self._render())

    # ── Private ───────────────────────────────────────────────────────────────

    def _apply(self, event: CycleEvent) -> None:
        state = self._states[event.phase]
        state.elapsed_ms = event.timestamp_ms
        status, prefix = _TRANSITIONS[event.event_type]
        state.status = status or state.status
        state.messages = (state.messages + [f"{prefix}{event.message}"])[-MAX_LINES:]

    def _render_panel(self, state: _PhaseState) -> Panel:
        elapsed = f"[dim][{state.elapsed_ms / 1000:.2f}s][/dim]"
        lines = [Text.from_markup(f"{elapsed}  {_ICONS.get(state.status, '○')}")]
        for msg in state.messages:
            lines.append(Text(f"  {msg}", style="dim"))
        return Panel(
            Group(*lines),
            title=f"[bold]{state.phase.value}[/bold]",
            border_style=_BORDERS.get(state.status, "dim"),
            width=48,
        )

    def _render(self) -> Group:
        panels = [self._render_panel(self._states[phase]) for phase in Phase]
        return Group(*(Columns(panels[i:i + 2], equal=True) for i in range(0, len(panels), 2)))
