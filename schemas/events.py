"""Cycle event schema.

Events are emitted by the runtime as a cycle moves through its phases so the
display layer can update its live panels. The runtime does not depend on
anyone listening: with no queue attached, events are simply not produced.
"""

from enum import Enum

from pydantic import BaseModel


class Phase(str, Enum):
    """The four phases of a control cycle, in execution order."""

    MONITOR = "monitor"
    ANALYZE = "analyze"
    EXECUTE = "execute"
    LEARN = "learn"


class EventType(str, Enum):
    """Lifecycle stages a phase can report.

    Values:
        STARTED: Phase has begun.
        PROGRESS: Intermediate note, e.g. "trigger: error_rate".
        COMPLETE: Phase finished and handed off to the next one.
        SKIPPED: Phase ended the cycle early without an error.
        ERROR: Phase raised or timed out.
    """

    STARTED = "started"
    PROGRESS = "progress"
    COMPLETE = "complete"
    SKIPPED = "skipped"
    ERROR = "error"


class CycleEvent(BaseModel):
    """A single event emitted while a cycle runs.

    Attributes:
        phase: Phase that emitted the event. Maps to a panel in the display.
        event_type: Lifecycle stage of the phase.
        message: Human-readable note shown in the panel.
        timestamp_ms: Milliseconds since the cycle started.
    """

    phase: Phase
    event_type: EventType
    message: str
    timestamp_ms: float
