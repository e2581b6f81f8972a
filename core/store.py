"""Persistence for the control loop.

The orchestrator persists everything it needs to survive a restart through a
SelfImprovementStore: metric baselines, diagnoses (append-only, with a
mutable status), action records (append-only, with a mutable outcome), the
circuit breaker's singleton row, the cooldown period, and the
action-effectiveness table keyed by (action_type, action_signature).

InMemoryStore is the implementation shipped here. It serializes every write
behind one asyncio.Lock, so two near-simultaneous writes to the same row
cannot interleave. A durable backend implements the same interface; the
orchestrator wraps every call in a timeout and lets StorageError propagate.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime

from judge.circuit_breaker import CircuitBreakerSnapshot
from schemas.diagnosis import DiagnosisStatus, SelfDiagnosis
from schemas.result import ActionEffectiveness, ActionOutcome, ActionRecord, CooldownPeriod
from signals.baseline import MetricBaseline

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when the store cannot complete an operation."""


class SelfImprovementStore(ABC):
    """Interface every persistence backend implements."""

    # ── Baselines ─────────────────────────────────────────────────────────────

    @abstractmethod
    async def save_baselines(self, baselines: list[MetricBaseline]) -> None: ...

    @abstractmethod
    async def get_baselines(self) -> list[MetricBaseline]: ...

    # ── Diagnoses ─────────────────────────────────────────────────────────────

    @abstractmethod
    async def save_diagnosis(self, diagnosis: SelfDiagnosis) -> None: ...

    @abstractmethod
    async def get_diagnosis(self, diagnosis_id: str) -> SelfDiagnosis | None: ...

    @abstractmethod
    async def get_pending_diagnoses(self) -> list[SelfDiagnosis]:
        """Diagnoses still PENDING, EXECUTING, or AWAITING_APPROVAL."""
        ...

    @abstractmethod
    async def update_diagnosis_status(self, diagnosis_id: str, status: DiagnosisStatus) -> None:
        """Raises StorageError if the diagnosis does not exist."""
        ...

    # ── Actions ───────────────────────────────────────────────────────────────

    @abstractmethod
    async def save_action(self, record: ActionRecord) -> None:
        """Insert a record, or replace the record with the same id."""
        ...

    @abstractmethod
    async def get_action(self, action_id: str) -> ActionRecord | None: ...

    @abstractmethod
    async def get_action_history(
        self,
        limit: int = 50,
        outcome: ActionOutcome | None = None,
        since: datetime | None = None,
    ) -> list[ActionRecord]:
        """Most recent first."""
        ...

    @abstractmethod
    async def get_pending_actions(self) -> list[ActionRecord]: ...

    # ── Circuit breaker and cooldown ──────────────────────────────────────────

    @abstractmethod
    async def save_circuit_breaker(self, snapshot: CircuitBreakerSnapshot) -> None: ...

    @abstractmethod
    async def load_circuit_breaker(self) -> CircuitBreakerSnapshot | None: ...

    @abstractmethod
    async def save_cooldown(self, period: CooldownPeriod | None) -> None: ...

    @abstractmethod
    async def get_cooldown(self) -> CooldownPeriod | None: ...

    # ── Effectiveness ─────────────────────────────────────────────────────────

    @abstractmethod
    async def update_effectiveness(self, row: ActionEffectiveness) -> None: ...

    @abstractmethod
    async def get_effectiveness(self) -> list[ActionEffectiveness]: ...

    async def health_check(self) -> bool:
        return True


class InMemoryStore(SelfImprovementStore):
    """Process-local store. Durable for the life of the process only."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._baselines: dict[str, MetricBaseline] = {}
        self._diagnoses: dict[str, SelfDiagnosis] = {}
        self._actions: dict[str, ActionRecord] = {}
        self._circuit_breaker: CircuitBreakerSnapshot | None = None
        self._cooldown: CooldownPeriod | None = None
        self._effectiveness: dict[tuple[str, str], ActionEffectiveness] = {}

    async def save_baselines(self, baselines: list[MetricBaseline]) -> None:
        async with self._lock:
            for baseline in baselines:
                self._baselines[baseline.metric_name] = baseline.model_copy()

    async def get_baselines(self) -> list[MetricBaseline]:
        return [b.model_copy() for b in self._baselines.values()]

    async def save_diagnosis(self, diagnosis: SelfDiagnosis) -> None:
        async with self._lock:
            self._diagnoses[diagnosis.id] = diagnosis

    async def get_diagnosis(self, diagnosis_id: str) -> SelfDiagnosis | None:
        return self._diagnoses.get(diagnosis_id)

    async def get_pending_diagnoses(self) -> list[SelfDiagnosis]:
        open_states = (
            DiagnosisStatus.PENDING,
            DiagnosisStatus.EXECUTING,
            DiagnosisStatus.AWAITING_APPROVAL,
        )
        return [d for d in self._diagnoses.values() if d.status in open_states]

    async def update_diagnosis_status(self, diagnosis_id: str, status: DiagnosisStatus) -> None:
        async with self._lock:
            diagnosis = self._diagnoses.get(diagnosis_id)
            if diagnosis is None:
                raise StorageError(f"Diagnosis not found: {diagnosis_id}")
            self._diagnoses[diagnosis_id] = diagnosis.with_status(status)

    async def save_action(self, record: ActionRecord) -> None:
        async with self._lock:
            self._actions[record.id] = record

    async def get_action(self, action_id: str) -> ActionRecord | None:
        return self._actions.get(action_id)

    async def get_action_history(
        self,
        limit: int = 50,
        outcome: ActionOutcome | None = None,
        since: datetime | None = None,
    ) -> list[ActionRecord]:
        records = sorted(self._actions.values(), key=lambda r: r.executed_at, reverse=True)
        if outcome is not None:
            records = [r for r in records if r.outcome == outcome]
        if since is not None:
            records = [r for r in records if r.executed_at >= since]
        return records[:limit]

    async def get_pending_actions(self) -> list[ActionRecord]:
        return [r for r in self._actions.values() if r.outcome == ActionOutcome.PENDING]

    async def save_circuit_breaker(self, snapshot: CircuitBreakerSnapshot) -> None:
        async with self._lock:
            self._circuit_breaker = snapshot

    async def load_circuit_breaker(self) -> CircuitBreakerSnapshot | None:
        return self._circuit_breaker

    async def save_cooldown(self, period: CooldownPeriod | None) -> None:
        async with self._lock:
            self._cooldown = period

    async def get_cooldown(self) -> CooldownPeriod | None:
        return self._cooldown

    async def update_effectiveness(self, row: ActionEffectiveness) -> None:
        async with self._lock:
            self._effectiveness[(row.action_type, row.action_signature)] = row

    async def get_effectiveness(self) -> list[ActionEffectiveness]:
        return list(self._effectiveness.values())
