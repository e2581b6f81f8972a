"""Circuit breaker that gates remediation on recent failure history.

Three states:

    CLOSED     normal operation, every attempt allowed
    OPEN       remediation blocked after too many consecutive failures
    HALF_OPEN  trial mode after the recovery timeout; one more failure
               re-opens, enough successes close

Transitions:
    CLOSED    -> OPEN       consecutive_failures >= failure_threshold
    OPEN      -> HALF_OPEN  recovery_timeout elapsed since the last failure,
                            checked lazily inside can_execute()
    HALF_OPEN -> CLOSED     consecutive_successes >= success_threshold
    HALF_OPEN -> OPEN       any failure

can_execute() has a side effect (the OPEN -> HALF_OPEN check), so the
Executor calls it exactly once per attempt and nothing else calls it at all.
Read-only callers use `state` and summary().

Like the judge, the breaker is deterministic: it reports a verdict and never
decides what the caller does with it.
"""

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import BaseModel

from core.config import CircuitBreakerConfig

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerSnapshot(BaseModel):
    """Persisted form of the breaker. Also served by the status endpoint."""

    state: CircuitState
    consecutive_failures: int
    consecutive_successes: int
    total_failures: int
    total_successes: int
    last_failure: datetime | None
    last_success: datetime | None
    last_state_change: datetime


class CircuitBreaker:
    """Three-state breaker guarding the Executor.

    Attributes:
        config: Failure/success thresholds and the recovery timeout.
        state: Current CircuitState.
        consecutive_failures: Failures since the last success.
        consecutive_successes: Successes since the last failure.
        total_failures: Lifetime failure count.
        total_successes: Lifetime success count.
        last_failure: When the most recent failure was recorded.
        last_success: When the most recent success was recorded.
        last_state_change: When the state last transitioned.
    """

    def __init__(self, config: CircuitBreakerConfig | None = None) -> None:
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.consecutive_successes = 0
        self.total_failures = 0
        self.total_successes = 0
        self.last_failure: datetime | None = None
        self.last_success: datetime | None = None
        self.last_state_change = datetime.now(timezone.utc)

    @classmethod
    def from_snapshot(
        cls,
        snapshot: CircuitBreakerSnapshot,
        config: CircuitBreakerConfig | None = None,
    ) -> "CircuitBreaker":
        """Rebuild a breaker from persisted state, keeping the given thresholds."""
        cb = cls(config)
        cb.state = snapshot.state
        cb.consecutive_failures = snapshot.consecutive_failures
        cb.consecutive_successes = snapshot.consecutive_successes
        cb.total_failures = snapshot.total_failures
        cb.total_successes = snapshot.total_successes
        cb.last_failure = snapshot.last_failure
        cb.last_success = snapshot.last_success
        cb.last_state_change = snapshot.last_state_change
        return cb

    def can_execute(self) -> bool:
        """Return True if a remediation attempt may proceed.

        Side effect: an OPEN breaker whose recovery timeout has elapsed moves
        to HALF_OPEN and allows the attempt.
        """
        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            if self.last_failure is None:
                return False
            elapsed = datetime.now(timezone.utc) - self.last_failure
            if elapsed >= self._recovery_timeout():
                self._transition_to(CircuitState.HALF_OPEN)
                return True
            return False

        return True

    def record_success(self) -> None:
        self.consecutive_failures = 0
        self.consecutive_successes += 1
        self.total_successes += 1
        self.last_success = datetime.now(timezone.utc)

        if self.state == CircuitState.HALF_OPEN:
            if self.consecutive_successes >= self.config.success_threshold:
                self._transition_to(CircuitState.CLOSED)
        elif self.state == CircuitState.OPEN:
            logger.warning("Success recorded while circuit is open. Moving to half-open.")
            self._transition_to(CircuitState.HALF_OPEN)

    def record_failure(self) -> None:
        self.consecutive_successes = 0
        self.consecutive_failures += 1
        self.total_failures += 1
        self.last_failure = datetime.now(timezone.utc)

        if self.state == CircuitState.CLOSED:
            if self.consecutive_failures >= self.config.failure_threshold:
                self._transition_to(CircuitState.OPEN)
        elif self.state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.OPEN)

    def time_until_recovery(self) -> timedelta | None:
        """Time left before an OPEN breaker may try again. None unless OPEN."""
        if self.state != CircuitState.OPEN or self.last_failure is None:
            return None
        remaining = self._recovery_timeout() - (datetime.now(timezone.utc) - self.last_failure)
        return max(remaining, timedelta(0))

    def reset(self) -> None:
        """Force the breaker closed and clear the consecutive counters."""
        logger.info("Circuit breaker manually reset from %s to closed.", self.state.value)
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.consecutive_successes = 0
        self.last_state_change = datetime.now(timezone.utc)

    def summary(self) -> CircuitBreakerSnapshot:
        return CircuitBreakerSnapshot(
            state=self.state,
            consecutive_failures=self.consecutive_failures,
            consecutive_successes=self.consecutive_successes,
            total_failures=self.total_failures,
            total_successes=self.total_successes,
            last_failure=self.last_failure,
            last_success=self.last_success,
            last_state_change=self.last_state_change,
        )

    # ── Private ───────────────────────────────────────────────────────────────

    def _recovery_timeout(self) -> timedelta:
        return timedelta(seconds=self.config.recovery_timeout_secs)

    def _transition_to(self, new_state: CircuitState) -> None:
        logger.info(
            "Circuit breaker %s -> %s (failures=%d, successes=%d).",
            self.state.value,
            new_state.value,
            self.consecutive_failures,
            self.consecutive_successes,
        )
        self.state = new_state
        self.last_state_change = datetime.now(timezone.utc)
