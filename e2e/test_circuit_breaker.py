"""Circuit breaker state machine tests."""

from datetime import timedelta

from core.config import CircuitBreakerConfig
from judge.circuit_breaker import CircuitBreaker, CircuitState


def make_breaker(failures=3, successes=2, recovery_secs=3600):
    return CircuitBreaker(CircuitBreakerConfig(
        failure_threshold=failures,
        success_threshold=successes,
        recovery_timeout_secs=recovery_secs,
    ))


def trip(cb, times=3):
    for _ in range(times):
        cb.record_failure()
    return cb


class TestClosed:
    def test_starts_closed_and_allows(self):
        cb = make_breaker()
        assert cb.state == CircuitState.CLOSED
        assert cb.can_execute()

    def test_opens_at_failure_threshold(self):
        cb = make_breaker()
        trip(cb, 2)
        assert cb.state == CircuitState.CLOSED
        cb.record_failure()
        assert cb.state == CircuitState.OPEN

    def test_success_resets_consecutive_failures(self):
        cb = make_breaker()
        trip(cb, 2)
        cb.record_success()
        cb.record_failure()
        assert cb.state == CircuitState.CLOSED
        assert cb.consecutive_failures == 1
        assert cb.total_failures == 3


class TestOpen:
    def test_blocks_before_recovery_timeout(self):
        cb = trip(make_breaker())
        assert not cb.can_execute()
        assert cb.state == CircuitState.OPEN

    def test_time_until_recovery_only_when_open(self):
        cb = make_breaker(recovery_secs=60)
        assert cb.time_until_recovery() is None
        trip(cb)
        remaining = cb.time_until_recovery()
        assert timedelta(0) < remaining <= timedelta(seconds=60)

    def test_can_execute_moves_to_half_open_after_timeout(self):
        cb = trip(make_breaker(recovery_secs=0))
        assert cb.can_execute()
        assert cb.state == CircuitState.HALF_OPEN


class TestHalfOpen:
    def test_closes_after_success_threshold(self):
        cb = trip(make_breaker(recovery_secs=0))
        cb.can_execute()
        cb.record_success()
        assert cb.state == CircuitState.HALF_OPEN
        cb.record_success()
        assert cb.state == CircuitState.CLOSED

    def test_any_failure_reopens(self):
        cb = trip(make_breaker(recovery_secs=0))
        cb.can_execute()
        cb.record_success()
        cb.record_failure()
        assert cb.state == CircuitState.OPEN

    def test_half_open_allows_attempts(self):
        cb = trip(make_breaker(recovery_secs=0))
        cb.can_execute()
        assert cb.can_execute()


class TestPersistence:
    def test_snapshot_restores_counters_and_state(self):
        cb = trip(make_breaker())
        restored = CircuitBreaker.from_snapshot(cb.summary(), CircuitBreakerConfig())
        assert restored.state == CircuitState.OPEN
        assert restored.consecutive_failures == 3
        assert restored.total_failures == 3
        assert restored.last_failure == cb.last_failure
        assert not restored.can_execute()

    def test_reset_forces_closed(self):
        cb = trip(make_breaker())
        cb.reset()
        assert cb.state == CircuitState.CLOSED
        assert cb.consecutive_failures == 0
        assert cb.total_failures == 3
