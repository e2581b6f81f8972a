"""Self-improvement runtime — the top-level control loop orchestrator.

SelfImprovementRuntime wires the four phases together and owns everything
they share: the circuit breaker, the allowlist, the store, and the cycle
lock. The host creates one runtime, feeds it invocation events through
record_invocation(), and either calls run_cycle() itself or lets start() run
it on a periodic timer.

Cycle order inside run_cycle():
    1. Skip when disabled, paused, or another cycle is already running
    2. Monitor closes the window into a HealthReport
    3. Analyzer turns the worst trigger into a diagnosis with one action
    4. Executor applies, verifies, and if needed rolls back the action
    5. Learner scores the action and asks for a lesson
    6. Diagnosis, action record, breaker, cooldown, effectiveness and
       baselines are persisted

Only one cycle runs at a time. A cycle that finds the lock taken is skipped,
not queued. Operator operations that change configuration (approve,
rollback) take the same lock.

Every store call carries the store timeout. StorageError propagates out of
run_cycle(); anything left PENDING by an aborted cycle or an unclean
shutdown is resolved by recover(), which start() runs first.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from enum import Enum

from agents.base import ReasoningClient
from core.analyzer import AnalysisBlocked, Analyzer
from core.config import SelfImprovementConfig
from core.executor import ConfigTarget, ExecutionBlocked, ExecutionBlockedReason, Executor
from core.learner import Learner, LearningBlocked
from core.monitor import Monitor
from core.store import InMemoryStore, SelfImprovementStore, StorageError
from judge.allowlist import ActionAllowlist
from judge.circuit_breaker import CircuitBreaker
from schemas.actions import NoOp, is_reversible
from schemas.diagnosis import DiagnosisStatus, SelfDiagnosis
from schemas.events import CycleEvent, EventType, Phase
from schemas.metrics import HealthReport, InvocationEvent, MetricsSnapshot
from schemas.result import ActionOutcome, ActionRecord, CycleResult, SystemStatus

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50


class SelfImprovementErrorKind(str, Enum):
    DISABLED = "disabled"
    PAUSED = "paused"
    CIRCUIT_BREAKER_OPEN = "circuit_breaker_open"
    IN_COOLDOWN = "in_cooldown"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    MONITOR_FAILED = "monitor_failed"
    ANALYZER_FAILED = "analyzer_failed"
    EXECUTOR_FAILED = "executor_failed"
    LEARNER_FAILED = "learner_failed"
    STORAGE_ERROR = "storage_error"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    INTERNAL = "internal"


class SelfImprovementError(Exception):
    """Raised by operator operations that cannot be carried out.

    Attributes:
        kind: Category, used by the control surface to pick a status code.
    """

    def __init__(self, kind: SelfImprovementErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


class SelfImprovementRuntime:
    """Orchestrates Monitor -> Analyzer -> Executor -> Learner.

    Attributes:
        config: Full configuration.
        store: Durable state.
        allowlist: Shared by the Analyzer and the Executor.
        monitor: Aggregates invocation events.
        circuit_breaker: Single breaker instance, injected into the Executor.
        analyzer: Diagnoses triggers.
        executor: Applies and verifies actions.
        learner: Tracks action effectiveness.
    """

    def __init__(
        self,
        config: SelfImprovementConfig,
        reasoner: ReasoningClient,
        store: SelfImprovementStore | None = None,
        allowlist: ActionAllowlist | None = None,
        target: ConfigTarget | None = None,
    ) -> None:
        self.config = config
        self.store = store or InMemoryStore()
        self.allowlist = allowlist or ActionAllowlist.with_defaults()
        self.monitor = Monitor(config)
        self.circuit_breaker = CircuitBreaker(config.circuit_breaker)
        self.analyzer = Analyzer(config, reasoner, self.allowlist)
        self.executor = Executor(config, self.circuit_breaker, self.allowlist, self.monitor, target)
        self.learner = Learner(config, reasoner)

        self._enabled = config.enabled
        self._paused_until: datetime | None = None
        self._cycle_lock = asyncio.Lock()
        self._loop_task: asyncio.Task | None = None
        self._stopping = asyncio.Event()
        self._last_cycle_at: datetime | None = None
        self._total_cycles = 0
        self._total_actions = 0
        self._total_rollbacks = 0

    # ── Host integration ──────────────────────────────────────────────────────

    def record_invocation(self, event: InvocationEvent) -> None:
        """Record one request. Safe to call from the request path."""
        self.monitor.record_invocation(event)

    async def run_cycle(
        self,
        event_queue: asyncio.Queue | None = None,
        force: bool = False,
    ) -> CycleResult:
        """Run one full cycle, unless it should be skipped.

        Args:
            event_queue: Optional queue to emit CycleEvents into.
            force: Ignore the monitor's check interval.

        Returns:
            A CycleResult. Skipped and blocked cycles return success=True with
            the reason in `error`; unexpected exceptions return success=False.

        Raises:
            StorageError: If the store fails or times out. The cycle aborts.
        """
        if not self._enabled:
            return CycleResult(success=True, error="Self-improvement is disabled")
        if self.is_paused():
            return CycleResult(success=True, error=f"Paused until {self._paused_until.isoformat()}")
        if self._cycle_lock.locked():
            logger.info("Cycle already running. Skipping this one.")
            return CycleResult(success=True, error="Cycle already running")

        async with self._cycle_lock:
            start = time.perf_counter()
            emit = _emitter(event_queue, start)
            try:
                result = await self._run_cycle_locked(emit, force)
            except StorageError:
                raise
            except Exception as exc:
                logger.exception("Cycle failed: %s", exc)
                result = CycleResult(success=False, error=f"Internal error: {exc}")
            finally:
                self._total_cycles += 1
                self._last_cycle_at = datetime.now(timezone.utc)
            return result.model_copy(update={"duration_ms": (time.perf_counter() - start) * 1000})

    async def start(self) -> None:
        """Run crash recovery, then start the periodic timer."""
        await self.recover()
        if self._loop_task is None or self._loop_task.done():
            self._stopping.clear()
            self._loop_task = asyncio.create_task(self._loop(), name="self-improvement-loop")
            logger.info("Control loop started (interval %ds).", self.config.monitor.check_interval_secs)

    async def stop(self) -> None:
        """Stop the periodic timer.

        A cycle already running is allowed to finish, so an applied action is
        always verified and finalized. Cycles not yet started are abandoned.
        """
        if self._loop_task is None:
            return
        self._stopping.set()
        if self._cycle_lock.locked():
            logger.info("Waiting for the running cycle to finish before stopping.")
        await self._loop_task
        self._loop_task = None
        logger.info("Control loop stopped.")

    async def recover(self) -> list[ActionRecord]:
        """Restore persisted state and resolve anything left mid-flight.

        PENDING action records come from a cycle that never finished. A
        reversible action with a pre-state is restored and marked
        ROLLED_BACK; anything else is marked FAILED for operator review.
        Each one counts as a circuit breaker failure.

        Returns:
            The action records that were resolved.
        """
        snapshot = await self._persist(self.store.load_circuit_breaker())
        if snapshot is not None:
            self._set_circuit_breaker(CircuitBreaker.from_snapshot(snapshot, self.config.circuit_breaker))

        self.executor.cooldown.restore(await self._persist(self.store.get_cooldown()))

        baselines = await self._persist(self.store.get_baselines())
        if baselines:
            self.monitor.restore_baselines(baselines)

        rows = await self._persist(self.store.get_effectiveness())
        if rows:
            self.learner.restore(rows)
            self.analyzer.update_effectiveness(self.learner.effectiveness())

        resolved = []
        for record in await self._persist(self.store.get_pending_actions()):
            now = datetime.now(timezone.utc)
            if is_reversible(record.action) and record.pre_state is not None:
                await self.executor.restore(record.action, record.pre_state)
                record = record.model_copy(update={
                    "outcome": ActionOutcome.ROLLED_BACK,
                    "rollback_reason": "Recovered after unclean shutdown",
                    "completed_at": now,
                })
                status = DiagnosisStatus.ROLLED_BACK
                self._total_rollbacks += 1
            else:
                record = record.model_copy(update={
                    "outcome": ActionOutcome.FAILED,
                    "rollback_reason": "Interrupted irreversible action; operator review required",
                    "completed_at": now,
                })
                status = DiagnosisStatus.COMPLETED
            self.circuit_breaker.record_failure()
            await self._persist(self.store.save_action(record))
            await self._persist_status(record.diagnosis_id, status)
            resolved.append(record)
            logger.warning("Recovered interrupted action %s as %s.", record.id, record.outcome.value)

        for diagnosis in await self._persist(self.store.get_pending_diagnoses()):
            if diagnosis.status == DiagnosisStatus.AWAITING_APPROVAL:
                self.analyzer.track_pending(diagnosis)
            elif diagnosis.status == DiagnosisStatus.PENDING:
                await self._persist_status(diagnosis.id, DiagnosisStatus.SUPERSEDED)

        await self._persist(self.store.save_circuit_breaker(self.circuit_breaker.summary()))
        if resolved:
            logger.warning("Crash recovery resolved %d interrupted actions.", len(resolved))
        return resolved

    # ── Operator surface ──────────────────────────────────────────────────────

    def status(self) -> SystemStatus:
        return SystemStatus(
            enabled=self._enabled,
            paused_until=self._paused_until if self.is_paused() else None,
            circuit_state=self.circuit_breaker.state.value,
            consecutive_failures=self.circuit_breaker.consecutive_failures,
            cooldown_remaining_secs=self.executor.cooldown.remaining_secs(),
            pending_diagnoses=len(self.analyzer.pending_diagnoses()),
            current_metrics=self.monitor.current_metrics(),
            baselines=self.monitor.get_baselines(),
            baselines_valid=self.monitor.baselines_valid(),
            last_cycle_at=self._last_cycle_at,
            total_cycles=self._total_cycles,
            total_actions=self._total_actions,
            total_rollbacks=self._total_rollbacks,
            cycle_running=self._cycle_lock.locked(),
        )

    async def history(
        self,
        limit: int = DEFAULT_HISTORY_LIMIT,
        outcome: ActionOutcome | None = None,
        since: datetime | None = None,
    ) -> list[ActionRecord]:
        return await self._persist(self.store.get_action_history(limit, outcome, since))

    def enable(self) -> None:
        self._enabled = True
        logger.info("Self-improvement enabled.")

    def disable(self) -> None:
        self._enabled = False
        logger.info("Self-improvement disabled.")

    def pause(self, duration_secs: int) -> datetime:
        """Skip cycles until now + duration_secs. Returns the deadline."""
        if duration_secs <= 0:
            raise ValueError("Pause duration must be positive")
        self._paused_until = datetime.now(timezone.utc) + timedelta(seconds=duration_secs)
        logger.info("Self-improvement paused until %s.", self._paused_until.isoformat())
        return self._paused_until

    def resume(self) -> None:
        self._paused_until = None
        logger.info("Self-improvement resumed.")

    def is_enabled(self) -> bool:
        return self._enabled

    def is_paused(self) -> bool:
        return self._paused_until is not None and datetime.now(timezone.utc) < self._paused_until

    async def rollback(self, action_id: str) -> ActionRecord:
        """Operator rollback through the Executor's regression path.

        Raises:
            SelfImprovementError: NOT_FOUND for an unknown id, INVALID_STATE
                for an action that is still being verified or cannot be
                reverted (cache clears, restarts).
        """
        async with self._cycle_lock:
            record = await self._persist(self.store.get_action(action_id)) or self.executor.get_record(action_id)
            if record is None:
                raise SelfImprovementError(SelfImprovementErrorKind.NOT_FOUND, f"Action not found: {action_id}")
            if record.outcome == ActionOutcome.PENDING:
                raise SelfImprovementError(
                    SelfImprovementErrorKind.INVALID_STATE,
                    f"Action {action_id} is still being verified",
                )
            if record.outcome == ActionOutcome.ROLLED_BACK:
                return record
            if not is_reversible(record.action):
                raise SelfImprovementError(
                    SelfImprovementErrorKind.INVALID_STATE,
                    f"Action {action_id} ({record.action.type}) cannot be rolled back",
                )

            record = await self.executor.rollback(record, "Operator requested rollback")
            self._total_rollbacks += 1
            await self._persist(self.store.save_action(record))
            await self._persist_status(record.diagnosis_id, DiagnosisStatus.ROLLED_BACK)
            await self._persist(self.store.save_circuit_breaker(self.circuit_breaker.summary()))
            return record

    async def approve(self, diagnosis_id: str, event_queue: asyncio.Queue | None = None) -> CycleResult:
        """Execute a diagnosis that was held for approval.

        Raises:
            SelfImprovementError: NOT_FOUND if no such diagnosis is pending,
                INVALID_STATE if it is not awaiting approval.
        """
        diagnosis = self._pending_or_raise(diagnosis_id)
        if diagnosis.status != DiagnosisStatus.AWAITING_APPROVAL:
            raise SelfImprovementError(
                SelfImprovementErrorKind.INVALID_STATE,
                f"Diagnosis {diagnosis_id} is {diagnosis.status.value}, not awaiting approval",
            )

        async with self._cycle_lock:
            start = time.perf_counter()
            approved = diagnosis.with_status(DiagnosisStatus.PENDING)
            self.analyzer.track_pending(approved)
            await self._persist_status(diagnosis_id, DiagnosisStatus.PENDING)
            logger.info("Diagnosis %s approved by operator.", diagnosis_id)

            report = self.monitor.last_report()
            before = report.current_metrics if report else None
            try:
                result = await self._execute_diagnosis(approved, before, _emitter(event_queue, start))
            except StorageError:
                self._drop_pending(diagnosis_id)
                raise
            return result.model_copy(update={"duration_ms": (time.perf_counter() - start) * 1000})

    async def reject(self, diagnosis_id: str) -> SelfDiagnosis:
        """Drop a pending diagnosis without acting on it."""
        self._pending_or_raise(diagnosis_id)
        diagnosis = self.analyzer.remove_pending(diagnosis_id).with_status(DiagnosisStatus.SUPERSEDED)
        await self._persist_status(diagnosis_id, DiagnosisStatus.SUPERSEDED)
        logger.info("Diagnosis %s rejected by operator.", diagnosis_id)
        return diagnosis

    def force_check(self) -> HealthReport | None:
        """Close the current window now. Returns None below min_sample_size."""
        return self.monitor.force_check()

    def config_summary(self) -> dict:
        return {
            "config": self.config.model_dump(mode="json"),
            "allowlist": self.allowlist.summary(),
            "config_state": self.executor.config_state().model_dump(mode="json"),
        }

    def stats(self) -> dict:
        return {
            "monitor": self.monitor.current_stats(),
            "analyzer": self.analyzer.stats(),
            "executor": self.executor.stats(),
            "learner": self.learner.stats(),
        }

    # ── Private helpers ───────────────────────────────────────────────────────

    async def _run_cycle_locked(self, emit, force: bool) -> CycleResult:
        await emit(Phase.MONITOR, EventType.STARTED, "checking health...")
        report = self.monitor.force_check() if force else self.monitor.check_health()
        if report is None:
            await emit(Phase.MONITOR, EventType.SKIPPED, "not enough samples or interval not elapsed")
            return CycleResult(success=True, error="No health report available")

        await self._persist(self.store.save_baselines(self.monitor.baselines()))
        if not report.needs_action():
            await emit(Phase.MONITOR, EventType.COMPLETE, f"healthy over {report.current_metrics.sample_count} samples")
            return CycleResult(success=True)

        for trigger in report.triggers:
            await emit(Phase.MONITOR, EventType.PROGRESS, f"trigger: {trigger.metric} ({trigger.deviation_pct():+.0f}%)")
        await emit(Phase.MONITOR, EventType.COMPLETE, f"{len(report.triggers)} trigger(s)")

        await emit(Phase.ANALYZE, EventType.STARTED, "diagnosing...")
        try:
            analysis = await self.analyzer.analyze(report)
        except AnalysisBlocked as exc:
            await emit(Phase.ANALYZE, EventType.SKIPPED, str(exc))
            return CycleResult(success=True, error=f"Analysis blocked: {exc}")

        diagnosis = analysis.diagnosis
        try:
            await self._persist(self.store.save_diagnosis(diagnosis))
            await emit(
                Phase.ANALYZE,
                EventType.COMPLETE,
                f"{diagnosis.severity.value}: {diagnosis.suggested_action.type}",
            )
            return await self._execute_diagnosis(diagnosis, report.current_metrics, emit)
        except StorageError:
            self._drop_pending(diagnosis.id)
            raise

    async def _execute_diagnosis(
        self,
        diagnosis: SelfDiagnosis,
        metrics_before: MetricsSnapshot | None,
        emit,
    ) -> CycleResult:
        await emit(Phase.EXECUTE, EventType.STARTED, "checking preconditions...")

        async def on_start(record: ActionRecord) -> None:
            await self._persist(self.store.save_action(record))
            await self._persist_status(diagnosis.id, DiagnosisStatus.EXECUTING)

        try:
            record = await self.executor.execute(diagnosis, metrics_before, on_start=on_start)
        except ExecutionBlocked as exc:
            await emit(Phase.EXECUTE, EventType.SKIPPED, str(exc))
            await self._defer(diagnosis, exc)
            return CycleResult(success=True, diagnosis=diagnosis, error=f"Execution blocked: {exc}")

        self.analyzer.remove_pending(diagnosis.id)
        self._total_actions += 1
        if record.outcome == ActionOutcome.ROLLED_BACK:
            self._total_rollbacks += 1
        final_status = (
            DiagnosisStatus.COMPLETED
            if record.outcome == ActionOutcome.SUCCESS
            else DiagnosisStatus.ROLLED_BACK
        )
        diagnosis = diagnosis.with_status(final_status)
        await self._persist(self.store.save_action(record))
        await self._persist_status(diagnosis.id, final_status)
        await self._persist(self.store.save_circuit_breaker(self.circuit_breaker.summary()))
        await self._persist(self.store.save_cooldown(self.executor.cooldown.period))

        event_type = EventType.ERROR if record.outcome == ActionOutcome.FAILED else EventType.COMPLETE
        await emit(Phase.EXECUTE, event_type, f"{record.outcome.value}")

        await emit(Phase.LEARN, EventType.STARTED, "scoring...")
        lessons = None
        try:
            outcome = await self.learner.learn(record, diagnosis)
        except LearningBlocked as exc:
            logger.info("Learning blocked for %s: %s", record.id, exc)
            await emit(Phase.LEARN, EventType.SKIPPED, str(exc))
        else:
            record, lessons = outcome.record, outcome.lessons
            await self._persist(self.store.update_effectiveness(outcome.effectiveness))
            await self._persist(self.store.save_action(record))
            self.analyzer.update_effectiveness(self.learner.effectiveness())
            await emit(Phase.LEARN, EventType.COMPLETE, f"reward {record.reward.value:+.2f}")

        return CycleResult(
            success=True,
            action_taken=True,
            diagnosis=diagnosis,
            action=record,
            reward=record.reward.value if record.reward else None,
            lessons=lessons,
            error=record.rollback_reason if record.outcome == ActionOutcome.FAILED else None,
        )

    async def _defer(self, diagnosis: SelfDiagnosis, blocked: ExecutionBlocked) -> None:
        """Settle a diagnosis whose action could not run now.

        Awaiting approval stays pending for the operator. Everything else is
        superseded: the next trigger produces a fresh diagnosis on fresh
        metrics instead of filling the backlog.
        """
        if blocked.reason == ExecutionBlockedReason.AWAITING_APPROVAL:
            return
        if isinstance(diagnosis.suggested_action, NoOp):
            return
        self.analyzer.remove_pending(diagnosis.id)
        await self._persist_status(diagnosis.id, DiagnosisStatus.SUPERSEDED)
        logger.warning("Deferred %s: %s", diagnosis.id, blocked)

    def _pending_or_raise(self, diagnosis_id: str) -> SelfDiagnosis:
        diagnosis = self.analyzer.get_pending(diagnosis_id)
        if diagnosis is None:
            raise SelfImprovementError(
                SelfImprovementErrorKind.NOT_FOUND,
                f"No pending diagnosis: {diagnosis_id}",
            )
        return diagnosis

    def _drop_pending(self, diagnosis_id: str) -> None:
        """Forget a diagnosis whose cycle aborted on a store failure.

        The persisted copy, if any, stays open and is settled by recover().
        """
        if self.analyzer.remove_pending(diagnosis_id) is not None:
            logger.warning("Dropped pending diagnosis %s after a storage failure.", diagnosis_id)

    def _set_circuit_breaker(self, cb: CircuitBreaker) -> None:
        self.circuit_breaker = cb
        self.executor.circuit_breaker = cb
        logger.info("Restored circuit breaker in state %s.", cb.state.value)

    async def _persist_status(self, diagnosis_id: str, status: DiagnosisStatus) -> None:
        await self._persist(self.store.update_diagnosis_status(diagnosis_id, status))

    async def _persist(self, operation):
        """Await a store operation within the store timeout.

        Raises:
            StorageError: On timeout, or whatever the store raised.
        """
        timeout = self.config.store.timeout_secs
        try:
            return await asyncio.wait_for(operation, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise StorageError(f"Store operation timed out after {timeout:.1f}s") from exc

    async def _loop(self) -> None:
        interval = self.config.monitor.check_interval_secs
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            if self._stopping.is_set():
                break
            if not self._enabled or self.is_paused():
                continue
            try:
                await self.run_cycle()
            except StorageError as exc:
                logger.error("Cycle aborted on storage failure: %s", exc)


def _emitter(event_queue: asyncio.Queue | None, start: float):
    """Return an async emit(phase, event_type, message) bound to one cycle."""

    async def emit(phase: Phase, event_type: EventType, message: str) -> None:
        if event_queue is not None:
            await event_queue.put(CycleEvent(
                phase=phase,
                event_type=event_type,
                message=message,
                timestamp_ms=(time.perf_counter() - start) * 1000,
            ))

    return emit
