"""Executor — applies one approved action, verifies it, and rolls it back if it hurt.

The Executor owns the live configuration state the control loop is allowed to
change. For every diagnosis handed to it, execute() runs this protocol:

    1. Check the preconditions. Any failure defers the action with a stated
       reason (ExecutionBlocked); deferral is not failure.
    2. Snapshot configuration and metrics ("pre").
    3. Apply the action to configuration and push it to the ConfigTarget.
       Any exception here is rolled back and counted as a circuit breaker
       failure.
    4. Wait for the stabilization period, then collect post-action metrics
       until enough samples arrive or the verification timeout expires.
    5. Score pre against post. A negative reward with rollback_on_regression
       restores the pre-state (ROLLED_BACK, breaker failure); anything else is
       SUCCESS, a breaker success, and the start of a cooldown.

The preconditions are checked in a fixed order. The circuit breaker's
can_execute() has a side effect and is called exactly once per attempt.
"""

import asyncio
import logging
import time
from collections import deque
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Protocol

from core.config import SelfImprovementConfig
from judge.allowlist import ActionAllowlist, AllowlistError
from judge.circuit_breaker import CircuitBreaker
from schemas.actions import (
    AdjustParam,
    ClearCache,
    NoOp,
    RestartService,
    ScaleResource,
    ServiceComponent,
    SuggestedAction,
    ToggleFeature,
    describe,
    is_reversible,
)
from schemas.diagnosis import DiagnosisStatus, SelfDiagnosis
from schemas.metrics import Baselines, MetricsSnapshot
from schemas.result import (
    ActionOutcome,
    ActionRecord,
    ConfigState,
    CooldownPeriod,
    NormalizedReward,
)

logger = logging.getLogger(__name__)

MAX_HISTORY = 100
VERIFICATION_POLL_SECS = 1.0


class ExecutionBlockedReason(str, Enum):
    NO_OP_ACTION = "no_op_action"
    AWAITING_APPROVAL = "awaiting_approval"
    CIRCUIT_OPEN = "circuit_open"
    COOLDOWN_ACTIVE = "cooldown_active"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    NOT_ALLOWED = "not_allowed"


class ExecutionBlocked(Exception):
    """Raised when a precondition defers an action.

    Attributes:
        reason: Which precondition failed.
    """

    def __init__(self, reason: ExecutionBlockedReason, message: str):
        super().__init__(message)
        self.reason = reason


# ── Collaborators ─────────────────────────────────────────────────────────────

class ConfigTarget(Protocol):
    """Where configuration changes actually land in the host service."""

    async def apply_config(self, state: ConfigState) -> None: ...

    async def restart_service(
        self,
        component: ServiceComponent,
        mode_name: str | None,
        graceful: bool,
    ) -> None: ...

    async def clear_cache(self, cache_name: str) -> None: ...


class MetricsSource(Protocol):
    """Read access to live metrics. The Monitor satisfies this."""

    def current_metrics(self) -> MetricsSnapshot: ...

    def get_baselines(self) -> Baselines: ...


class NullConfigTarget:
    """ConfigTarget that only logs. Used when the host wires nothing in."""

    async def apply_config(self, state: ConfigState) -> None:
        logger.info(
            "Config applied: %d params, %d features, %d resources.",
            len(state.params),
            len(state.features),
            len(state.resources),
        )

    async def restart_service(
        self,
        component: ServiceComponent,
        mode_name: str | None,
        graceful: bool,
    ) -> None:
        logger.info("Restart requested for %s (mode=%s, graceful=%s).", component.value, mode_name, graceful)

    async def clear_cache(self, cache_name: str) -> None:
        logger.info("Cache clear requested for '%s'.", cache_name)


def config_state_from_allowlist(allowlist: ActionAllowlist) -> ConfigState:
    """Initial configuration: current param values, features on, resources mid-range."""
    return ConfigState(
        params={key: b.current_value for key, b in allowlist.params.items()},
        features={name: True for name in allowlist.features},
        resources={
            r: (b.current_value if b.current_value is not None else b.midpoint)
            for r, b in allowlist.resources.items()
        },
    )


# ── Gates ─────────────────────────────────────────────────────────────────────

class CooldownTracker:
    def __init__(self) -> None:
        self.period: CooldownPeriod | None = None

    def start(self, duration_secs: int, reason: str = "") -> CooldownPeriod:
        now = datetime.now(timezone.utc)
        self.period = CooldownPeriod(
            started_at=now,
            expires_at=now + timedelta(seconds=duration_secs),
            reason=reason,
        )
        return self.period

    def restore(self, period: CooldownPeriod | None) -> None:
        self.period = period

    def is_active(self) -> bool:
        return self.remaining_secs() > 0

    def remaining_secs(self) -> int:
        if self.period is None:
            return 0
        return self.period.remaining_secs()

    def clear(self) -> None:
        if self.period is not None:
            self.period = self.period.model_copy(update={"is_active": False})


class RateLimiter:
    """Counts actions in the trailing hour."""

    def __init__(self, max_per_hour: int) -> None:
        self.max_per_hour = max_per_hour
        self._actions: deque[datetime] = deque()

    def count(self) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(hours=1)
        while self._actions and self._actions[0] <= cutoff:
            self._actions.popleft()
        return len(self._actions)

    def can_execute(self) -> bool:
        return self.count() < self.max_per_hour

    def record(self, at: datetime | None = None) -> None:
        self._actions.append(at or datetime.now(timezone.utc))


# ── Executor ──────────────────────────────────────────────────────────────────

class Executor:
    """Applies, verifies, and if needed reverts configuration changes.

    Attributes:
        config: Executor and learner sections are used.
        circuit_breaker: Shared breaker owned by the orchestrator.
        allowlist: Re-checked before applying; its current values are kept in
            step with the live configuration.
        metrics: Source of post-action metrics and baselines.
        target: Where changes are pushed.
        cooldown: Quiet period after each successful action.
        rate_limiter: Trailing-hour action counter.
    """

    def __init__(
        self,
        config: SelfImprovementConfig,
        circuit_breaker: CircuitBreaker,
        allowlist: ActionAllowlist,
        metrics: MetricsSource,
        target: ConfigTarget | None = None,
    ) -> None:
        self.config = config
        self.circuit_breaker = circuit_breaker
        self.allowlist = allowlist
        self.metrics = metrics
        self.target = target or NullConfigTarget()
        self.cooldown = CooldownTracker()
        self.rate_limiter = RateLimiter(config.executor.max_actions_per_hour)
        self._state = config_state_from_allowlist(allowlist)
        self._history: deque[ActionRecord] = deque(maxlen=MAX_HISTORY)
        self._total_executions = 0
        self._total_rollbacks = 0
        self._total_failures = 0

    def config_state(self) -> ConfigState:
        return self._state.model_copy(deep=True)

    async def execute(
        self,
        diagnosis: SelfDiagnosis,
        metrics_before: MetricsSnapshot | None = None,
        on_start: Callable[[ActionRecord], Awaitable[None]] | None = None,
    ) -> ActionRecord:
        """Apply a diagnosis's action and verify its effect.

        Args:
            diagnosis: A diagnosis whose action has passed the Analyzer.
            metrics_before: Metrics the trigger was raised on. Defaults to the
                metrics source's current window.
            on_start: Awaited with the PENDING record after the preconditions
                pass and before anything is applied, so the caller can persist
                it for crash recovery. An exception here aborts the attempt.

        Returns:
            The finalized ActionRecord. Its outcome is SUCCESS, ROLLED_BACK, or
            FAILED; an exception while applying never escapes.

        Raises:
            ExecutionBlocked: When a precondition defers the action.
        """
        action = diagnosis.suggested_action
        self._check_preconditions(diagnosis)

        pre_state = self.config_state()
        pre_metrics = metrics_before or self.metrics.current_metrics()
        record = ActionRecord(
            diagnosis_id=diagnosis.id,
            action=action,
            pre_state=pre_state,
            metrics_before=pre_metrics,
        )
        if on_start is not None:
            await on_start(record)
        self.rate_limiter.record(record.executed_at)
        self._total_executions += 1
        logger.info("Executing %s for %s: %s.", record.id, diagnosis.id, describe(action))

        try:
            post_state = await self._apply(action)
        except Exception as exc:
            logger.error("Applying %s failed: %s. Rolling back.", record.id, exc)
            await self._restore_quietly(action, pre_state)
            self.circuit_breaker.record_failure()
            self._total_failures += 1
            record = record.model_copy(update={
                "outcome": ActionOutcome.FAILED,
                "rollback_reason": f"Application failed: {exc}",
                "completed_at": datetime.now(timezone.utc),
            })
            self._history.append(record)
            return record

        record = record.model_copy(update={"post_state": post_state})
        record = await self._verify(record, diagnosis)
        self._history.append(record)
        return record

    async def rollback(
        self,
        record: ActionRecord,
        reason: str,
        count_as_failure: bool = True,
    ) -> ActionRecord:
        """Revert an executed action to its pre-state.

        Idempotent: a record that is already ROLLED_BACK is returned unchanged
        and nothing is touched.

        Args:
            record: The action to revert.
            reason: Recorded as rollback_reason.
            count_as_failure: Report a circuit breaker failure.

        Returns:
            The record with outcome ROLLED_BACK.
        """
        if record.outcome == ActionOutcome.ROLLED_BACK:
            logger.info("Action %s already rolled back. Nothing to do.", record.id)
            return record

        await self._restore(record.action, record.pre_state)
        if count_as_failure:
            self.circuit_breaker.record_failure()
        self._total_rollbacks += 1

        record = record.model_copy(update={
            "outcome": ActionOutcome.ROLLED_BACK,
            "rollback_reason": reason,
            "completed_at": datetime.now(timezone.utc),
        })
        self._replace_in_history(record)
        logger.info("Rolled back %s: %s.", record.id, reason)
        return record

    async def restore(self, action: SuggestedAction, pre_state: ConfigState) -> None:
        """Restore the values an action touched. Used by crash recovery."""
        await self._restore(action, pre_state)

    def history(self) -> list[ActionRecord]:
        return list(self._history)

    def get_record(self, action_id: str) -> ActionRecord | None:
        for record in self._history:
            if record.id == action_id:
                return record
        return None

    def clear_cooldown(self) -> None:
        self.cooldown.clear()
        logger.info("Cooldown cleared by operator.")

    def stats(self) -> dict:
        return {
            "total_executions": self._total_executions,
            "total_rollbacks": self._total_rollbacks,
            "total_failures": self._total_failures,
            "actions_last_hour": self.rate_limiter.count(),
            "max_actions_per_hour": self.rate_limiter.max_per_hour,
            "cooldown_remaining_secs": self.cooldown.remaining_secs(),
        }

    # ── Private helpers ───────────────────────────────────────────────────────

    def _check_preconditions(self, diagnosis: SelfDiagnosis) -> None:
        action = diagnosis.suggested_action
        if isinstance(action, NoOp):
            raise ExecutionBlocked(ExecutionBlockedReason.NO_OP_ACTION, f"NoOp action: {action.reason}")

        if diagnosis.status == DiagnosisStatus.AWAITING_APPROVAL:
            raise ExecutionBlocked(
                ExecutionBlockedReason.AWAITING_APPROVAL,
                f"Awaiting approval for diagnosis: {diagnosis.id}",
            )

        if not self.circuit_breaker.can_execute():
            remaining = self.circuit_breaker.time_until_recovery()
            secs = int(remaining.total_seconds()) if remaining else 0
            raise ExecutionBlocked(
                ExecutionBlockedReason.CIRCUIT_OPEN,
                f"Circuit breaker open; recovery in {secs}s",
            )

        if self.cooldown.is_active():
            raise ExecutionBlocked(
                ExecutionBlockedReason.COOLDOWN_ACTIVE,
                f"Cooldown active: {self.cooldown.remaining_secs()}s remaining",
            )

        if not self.rate_limiter.can_execute():
            raise ExecutionBlocked(
                ExecutionBlockedReason.RATE_LIMIT_EXCEEDED,
                f"Rate limit exceeded: {self.rate_limiter.count()}/{self.rate_limiter.max_per_hour}",
            )

        try:
            self.allowlist.validate(action)
        except AllowlistError as exc:
            raise ExecutionBlocked(ExecutionBlockedReason.NOT_ALLOWED, f"Action not allowed: {exc}") from exc

    async def _apply(self, action: SuggestedAction) -> ConfigState:
        if isinstance(action, AdjustParam):
            self._state.params[action.key] = action.new_value
            self.allowlist.update_param_current(action.key, action.new_value)
        elif isinstance(action, ToggleFeature):
            self._state.features[action.feature_name] = action.desired_state
        elif isinstance(action, ScaleResource):
            self._state.resources[action.resource] = action.new_value
            self.allowlist.update_resource_current(action.resource, action.new_value)
        elif isinstance(action, RestartService):
            await self.target.restart_service(action.component, action.mode_name, action.graceful)
        elif isinstance(action, ClearCache):
            await self.target.clear_cache(action.cache_name)
        elif isinstance(action, NoOp):
            return self.config_state()
        else:
            raise TypeError(f"Unknown action variant: {type(action).__name__}")

        self._state.timestamp = datetime.now(timezone.utc)
        if is_reversible(action):
            await self.target.apply_config(self.config_state())
        return self.config_state()

    async def _restore(self, action: SuggestedAction, pre_state: ConfigState) -> None:
        if not is_reversible(action):
            logger.warning("Cannot roll back irreversible action: %s.", describe(action))
            return

        changed = False
        if isinstance(action, AdjustParam):
            old = pre_state.params.get(action.key, action.old_value)
            if self._state.params.get(action.key) != old:
                self._state.params[action.key] = old
                changed = True
            self.allowlist.update_param_current(action.key, old)
        elif isinstance(action, ToggleFeature):
            old = pre_state.features.get(action.feature_name, not action.desired_state)
            if self._state.features.get(action.feature_name) != old:
                self._state.features[action.feature_name] = old
                changed = True
        elif isinstance(action, ScaleResource):
            old = pre_state.resources.get(action.resource, action.old_value)
            if self._state.resources.get(action.resource) != old:
                self._state.resources[action.resource] = old
                changed = True
            self.allowlist.update_resource_current(action.resource, old)

        if changed:
            self._state.timestamp = datetime.now(timezone.utc)
            await self.target.apply_config(self.config_state())

    async def _restore_quietly(self, action: SuggestedAction, pre_state: ConfigState) -> None:
        try:
            await self._restore(action, pre_state)
        except Exception as exc:
            logger.error("Rollback after failed application also failed: %s", exc)

    async def _verify(self, record: ActionRecord, diagnosis: SelfDiagnosis) -> ActionRecord:
        await asyncio.sleep(self.config.executor.stabilization_period_secs)
        post = await self._collect_post_metrics()
        now = datetime.now(timezone.utc)

        if post.sample_count == 0:
            # No traffic since the change: nothing to judge, so the action stands.
            logger.warning("No post-action traffic for %s. Keeping the action unscored.", record.id)
            self._start_cooldown(record)
            return record.model_copy(update={
                "outcome": ActionOutcome.SUCCESS,
                "verified_at": now,
            })

        reward = NormalizedReward.calculate(
            diagnosis.trigger.kind,
            record.metrics_before,
            post,
            self.metrics.get_baselines(),
        )
        record = record.model_copy(update={
            "metrics_after": post,
            "reward": reward,
            "verified_at": now,
        })
        logger.info("Action %s reward %.3f (confidence %.2f).", record.id, reward.value, reward.confidence)

        if reward.is_negative() and self.config.executor.rollback_on_regression:
            try:
                return await self.rollback(record, f"Regression detected: reward {reward.value:.3f}")
            except Exception as exc:
                logger.error("Rollback of %s failed: %s", record.id, exc)
                self.circuit_breaker.record_failure()
                self._total_failures += 1
                return record.model_copy(update={
                    "outcome": ActionOutcome.FAILED,
                    "rollback_reason": f"Rollback failed: {exc}",
                })

        self.circuit_breaker.record_success()
        self._start_cooldown(record)
        return record.model_copy(update={"outcome": ActionOutcome.SUCCESS})

    async def _collect_post_metrics(self) -> MetricsSnapshot:
        required = self.config.learner.min_learning_samples
        deadline = time.monotonic() + self.config.executor.verification_timeout_secs
        snapshot = self.metrics.current_metrics()
        while snapshot.sample_count < required and time.monotonic() < deadline:
            await asyncio.sleep(min(VERIFICATION_POLL_SECS, max(deadline - time.monotonic(), 0)))
            snapshot = self.metrics.current_metrics()
        return snapshot

    def _start_cooldown(self, record: ActionRecord) -> None:
        self.cooldown.start(
            self.config.executor.cooldown_duration_secs,
            reason=f"after {record.id}",
        )

    def _replace_in_history(self, record: ActionRecord) -> None:
        for i, existing in enumerate(self._history):
            if existing.id == record.id:
                self._history[i] = record
                return
