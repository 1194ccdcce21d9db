"""Tests for the CircuitBreaker that bounds automatic resyncs."""

import time

from orchestrator.services.health_monitor import CircuitBreaker


class TestCircuitBreakerStates:
    """Test circuit breaker state transitions."""

    def test_initial_state_is_closed(self):
        """Circuit breaker starts in closed state and lets resyncs through."""
        cb = CircuitBreaker("resync:default", failure_threshold=3, recovery_timeout=10.0)
        assert cb.state == CircuitBreaker.CLOSED
        assert cb.is_closed is True
        assert cb.allow_request() is True
        assert cb.allow_request() is True

    def test_opens_after_failure_threshold(self):
        """Rejected applies open the circuit once the threshold is hit."""
        cb = CircuitBreaker("resync:default", failure_threshold=3, recovery_timeout=10.0)

        cb.record_failure("failed to load config: status 400")
        cb.record_failure("failed to load config: status 400")
        assert cb.state == CircuitBreaker.CLOSED

        cb.record_failure("failed to load config: status 400")
        assert cb.state == CircuitBreaker.OPEN
        assert cb.allow_request() is False

    def test_success_resets_failure_count(self):
        """A successful resync clears earlier failures."""
        cb = CircuitBreaker("resync:default", failure_threshold=3, recovery_timeout=10.0)

        cb.record_failure(Exception("error 1"))
        cb.record_failure(Exception("error 2"))
        cb.record_success()

        assert cb.get_status()["failure_count"] == 0
        assert cb.state == CircuitBreaker.CLOSED

    def test_threshold_of_one_opens_immediately(self):
        """Circuit opens on the first failure with threshold 1."""
        cb = CircuitBreaker("resync:edge", failure_threshold=1, recovery_timeout=3600.0)

        cb.record_failure()
        assert cb.state == CircuitBreaker.OPEN
        assert cb.allow_request() is False


class TestCircuitBreakerRecovery:
    """Test circuit breaker recovery behavior."""

    def _open(self, recovery_timeout: float = 0.05, **kwargs) -> CircuitBreaker:
        cb = CircuitBreaker("resync:edge", failure_threshold=1, recovery_timeout=recovery_timeout, **kwargs)
        cb.record_failure(Exception("unreachable"))
        return cb

    def test_half_open_after_recovery_timeout(self):
        """One trial resync is allowed after the recovery timeout."""
        cb = self._open()
        time.sleep(0.1)

        assert cb.allow_request() is True
        assert cb.state == CircuitBreaker.HALF_OPEN

    def test_half_open_limits_trial_requests(self):
        """Half-open circuit allows at most half_open_max_calls extra trials."""
        cb = self._open(half_open_max_calls=1)
        time.sleep(0.1)

        assert cb.allow_request() is True
        assert cb.allow_request() is True
        assert cb.allow_request() is False

    def test_success_in_half_open_closes(self):
        """A successful trial closes the circuit."""
        cb = self._open()
        time.sleep(0.1)
        cb.allow_request()

        cb.record_success()
        assert cb.is_closed is True

    def test_failure_in_half_open_reopens(self):
        """A failed trial re-opens the circuit."""
        cb = self._open()
        time.sleep(0.1)
        cb.allow_request()

        cb.record_failure("still rejected")
        assert cb.state == CircuitBreaker.OPEN


class TestCircuitBreakerStatus:
    """Test circuit breaker status reporting."""

    def test_get_status_fields(self):
        """get_status reports name, state, counters and limits."""
        cb = CircuitBreaker("resync:edge", failure_threshold=5, recovery_timeout=30.0)
        cb.record_failure(Exception("error"))

        status = cb.get_status()
        assert status["name"] == "resync:edge"
        assert status["state"] == CircuitBreaker.CLOSED
        assert status["failure_count"] == 1
        assert status["last_failure_time"] is not None
        assert status["threshold"] == 5
        assert status["recovery_timeout"] == 30.0
