"""Resilience utilities for remote store and secret proxy calls.

Provides a three-state circuit breaker that fails fast while a remote
dependency is down, plus helpers to classify SDK/HTTP exceptions.

Health is only probed on demand: an open circuit moves to half-open on the
first check after the cooldown, never from a background timer.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_RESET_TIMEOUT = 30.0  # seconds
DEFAULT_HALF_OPEN_SUCCESS_THRESHOLD = 1

TRANSIENT_STATUS_CODES = (408, 429, 500, 502, 503, 504)
AUTH_STATUS_CODES = (401, 403)


class CircuitState(Enum):
    CLOSED = "closed"  # Normal - requests flow through
    OPEN = "open"  # Tripped - requests fail fast
    HALF_OPEN = "half_open"  # Probing - one request allowed to test recovery


@dataclass
class CircuitBreaker:
    """Circuit breaker for a remote dependency.

    Tracks consecutive failures. When ``failure_threshold`` is reached the
    circuit opens and every check reports open for ``reset_timeout`` seconds.
    The first check after that moves the circuit to half-open and admits a
    single probe. A successful probe closes the circuit; a failed one re-opens
    it and restarts the cooldown.
    """

    name: str = "remote"
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    reset_timeout: float = DEFAULT_RESET_TIMEOUT
    half_open_success_threshold: int = DEFAULT_HALF_OPEN_SUCCESS_THRESHOLD
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    # Internal state (not constructor args)
    _state: CircuitState = field(default=CircuitState.CLOSED, init=False, repr=False)
    _failure_count: int = field(default=0, init=False, repr=False)
    _last_failure_time: float | None = field(default=None, init=False, repr=False)
    _consecutive_successes: int = field(default=0, init=False, repr=False)
    _probe_started_at: float | None = field(default=None, init=False, repr=False)
    _total_trips: int = field(default=0, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {self.failure_threshold}")
        if self.reset_timeout <= 0:
            raise ValueError(f"reset_timeout must be > 0, got {self.reset_timeout}")

    @property
    def state(self) -> CircuitState:
        """Current state, applying the open to half-open transition if due."""
        if self._state == CircuitState.OPEN and self._cooldown_elapsed():
            self._state = CircuitState.HALF_OPEN
            self._consecutive_successes = 0
            self._probe_started_at = None
            logger.info("Circuit breaker '%s' entering HALF_OPEN - allowing probe request", self.name)
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _cooldown_elapsed(self) -> bool:
        if self._last_failure_time is None:
            return True
        return self.clock() - self._last_failure_time >= self.reset_timeout

    def is_open(self) -> bool:
        """Return True if calls must be rejected right now.

        In half-open only one probe is admitted at a time. A probe that never
        reports back frees its slot after one cooldown window.
        """
        state = self.state  # triggers timeout check
        if state == CircuitState.CLOSED:
            return False
        if state == CircuitState.OPEN:
            return True

        now = self.clock()
        if self._probe_started_at is not None and now - self._probe_started_at < self.reset_timeout:
            return True
        self._probe_started_at = now
        return False

    def allow_request(self) -> bool:
        return not self.is_open()

    def record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._consecutive_successes += 1
            self._probe_started_at = None
            if self._consecutive_successes >= self.half_open_success_threshold:
                logger.info("Circuit breaker '%s' CLOSED - service recovered", self.name)
                self._close()
            return

        if self._state == CircuitState.OPEN:
            # Only a half-open probe may close the circuit.
            logger.debug("Circuit breaker '%s' ignoring late success while open", self.name)
            return

        self._failure_count = 0

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = self.clock()
        self._consecutive_successes = 0

        if self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            self._probe_started_at = None
            self._total_trips += 1
            logger.warning(
                "Circuit breaker '%s' re-OPENED - probe failed, will probe again in %ss",
                self.name,
                self.reset_timeout,
            )
            return

        if self._failure_count >= self.failure_threshold and self._state != CircuitState.OPEN:
            self._state = CircuitState.OPEN
            self._total_trips += 1
            logger.warning(
                "Circuit breaker '%s' OPEN - %d consecutive failures (trip #%d), "
                "will probe again in %ss",
                self.name,
                self._failure_count,
                self._total_trips,
                self.reset_timeout,
            )

    def reset(self) -> None:
        """Administrative reset back to a clean closed state."""
        self._close()
        self._last_failure_time = None
        logger.info("Circuit breaker '%s' manually reset", self.name)

    def retry_in(self) -> float | None:
        """Seconds until an open circuit will admit a probe (None if not open)."""
        if self._state != CircuitState.OPEN or self._last_failure_time is None:
            return None
        return max(0.0, self.reset_timeout - (self.clock() - self._last_failure_time))

    def metrics(self) -> dict[str, Any]:
        state = self.state
        since_failure = (
            None if self._last_failure_time is None else self.clock() - self._last_failure_time
        )
        return {
            "name": self.name,
            "state": state.value,
            "failure_count": self._failure_count,
            "time_since_last_failure": since_failure,
            "consecutive_successes": self._consecutive_successes,
            "total_trips": self._total_trips,
        }

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._consecutive_successes = 0
        self._probe_started_at = None


def extract_status_code(exc: Exception) -> int | None:
    """Try to extract an HTTP status code from common SDK exceptions."""
    # Azure SDK: CosmosHttpResponseError, azure.core.exceptions
    status = getattr(exc, "status_code", None)
    if status is not None:
        try:
            return int(status)
        except (TypeError, ValueError):
            return None
    # aiohttp: ClientResponseError
    status = getattr(exc, "status", None)
    if isinstance(status, int):
        return status
    response = getattr(exc, "response", None)
    if response is not None:
        code = getattr(response, "status_code", None) or getattr(response, "status", None)
        if code is not None:
            try:
                return int(code)
            except (TypeError, ValueError):
                return None
    return None


def is_auth_status(status_code: int | None) -> bool:
    return status_code in AUTH_STATUS_CODES


def is_transient_status(status_code: int | None) -> bool:
    return status_code is None or status_code in TRANSIENT_STATUS_CODES or status_code >= 500
