"""Tests for the circuit breaker and status classification helpers."""

import pytest

from chat_session_storage.resilience import (
    CircuitBreaker,
    CircuitState,
    extract_status_code,
    is_auth_status,
    is_transient_status,
)


def trip(breaker: CircuitBreaker) -> None:
    for _ in range(breaker.failure_threshold):
        breaker.record_failure()


class TestCircuitBreakerTransitions:
    """State machine: closed -> open -> half-open -> closed/open."""

    def test_starts_closed(self, breaker):
        assert breaker.state == CircuitState.CLOSED
        assert breaker.is_open() is False

    def test_opens_after_threshold(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.is_open() is False

        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert breaker.is_open() is True

    def test_success_while_closed_resets_failure_count(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        breaker.record_failure()

        assert breaker.failure_count == 2
        assert breaker.state == CircuitState.CLOSED

    def test_late_success_while_open_is_ignored(self, breaker, clock):
        trip(breaker)

        breaker.record_success()

        assert breaker.state == CircuitState.OPEN
        assert breaker.is_open() is True
        clock.advance(30)
        assert breaker.state == CircuitState.HALF_OPEN

    def test_stays_open_during_cooldown(self, breaker, clock):
        trip(breaker)
        clock.advance(29.9)
        assert breaker.is_open() is True

    def test_half_open_admits_single_probe(self, breaker, clock):
        trip(breaker)
        clock.advance(30)

        assert breaker.is_open() is False  # the probe
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.is_open() is True  # everybody else waits

    def test_probe_success_closes(self, breaker, clock):
        trip(breaker)
        clock.advance(30)
        assert breaker.is_open() is False

        breaker.record_success()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert breaker.is_open() is False

    def test_probe_failure_reopens_and_restarts_cooldown(self, breaker, clock):
        trip(breaker)
        clock.advance(30)
        assert breaker.is_open() is False

        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

        clock.advance(29)
        assert breaker.is_open() is True
        clock.advance(1)
        assert breaker.is_open() is False

    def test_unreported_probe_slot_expires(self, breaker, clock):
        trip(breaker)
        clock.advance(30)
        assert breaker.is_open() is False
        assert breaker.is_open() is True

        clock.advance(30)
        assert breaker.is_open() is False

    def test_reset_closes(self, breaker):
        trip(breaker)
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.retry_in() is None

    def test_retry_in(self, breaker, clock):
        assert breaker.retry_in() is None
        trip(breaker)
        clock.advance(10)
        assert breaker.retry_in() == pytest.approx(20.0)


class TestCircuitBreakerMetrics:
    def test_metrics_after_trip(self, breaker, clock):
        trip(breaker)
        clock.advance(5)

        metrics = breaker.metrics()

        assert metrics["name"] == "remote-store"
        assert metrics["state"] == "open"
        assert metrics["failure_count"] == 3
        assert metrics["time_since_last_failure"] == pytest.approx(5.0)
        assert metrics["consecutive_successes"] == 0
        assert metrics["total_trips"] == 1

    def test_metrics_when_fresh(self, breaker):
        metrics = breaker.metrics()
        assert metrics["state"] == "closed"
        assert metrics["time_since_last_failure"] is None
        assert metrics["total_trips"] == 0

    def test_reopen_counts_as_trip(self, breaker, clock):
        trip(breaker)
        clock.advance(30)
        breaker.is_open()
        breaker.record_failure()
        assert breaker.metrics()["total_trips"] == 2


class TestCircuitBreakerValidation:
    def test_rejects_zero_threshold(self):
        with pytest.raises(ValueError):
            CircuitBreaker(failure_threshold=0)

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValueError):
            CircuitBreaker(reset_timeout=0)


class TestStatusHelpers:
    def test_status_code_attribute(self):
        class SdkError(Exception):
            status_code = 503

        assert extract_status_code(SdkError()) == 503

    def test_status_attribute(self):
        class ClientError(Exception):
            status = 401

        assert extract_status_code(ClientError()) == 401

    def test_response_attribute(self):
        class Response:
            status_code = 429

        class WrappedError(Exception):
            response = Response()

        assert extract_status_code(WrappedError()) == 429

    def test_no_status(self):
        assert extract_status_code(RuntimeError("boom")) is None

    def test_classification(self):
        assert is_auth_status(401)
        assert is_auth_status(403)
        assert not is_auth_status(404)
        assert is_transient_status(None)
        assert is_transient_status(429)
        assert is_transient_status(503)
        assert not is_transient_status(400)
