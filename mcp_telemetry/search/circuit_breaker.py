"""Circuit breaker guarding calls to the embedding service."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger()


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Closed -> Open after `threshold` consecutive failures.
    Open -> Half-open once `cooldown_seconds` have passed; exactly one trial
    is let through. Trial success closes the circuit, trial failure reopens
    it with a fresh cool-down.
    """

    def __init__(
        self,
        threshold: int = 5,
        cooldown_seconds: float = 60.0,
        *,
        name: str = "embeddings",
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Callable[[str, CircuitState], None] | None = None,
    ):
        self.threshold = max(1, threshold)
        self.cooldown_seconds = cooldown_seconds
        self.name = name
        self._clock = clock
        self._on_state_change = on_state_change
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def failures(self) -> int:
        with self._lock:
            return self._failures

    def allow_request(self) -> bool:
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if self._clock() - (self._opened_at or 0.0) < self.cooldown_seconds:
                    return False
                self._transition(CircuitState.HALF_OPEN)
                self._trial_in_flight = True
                return True

            # Half-open: only the single trial call already granted.
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._trial_in_flight = False
            self._opened_at = None
            if self._state != CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._opened_at = self._clock()
                self._transition(CircuitState.OPEN)
                return
            if self._state == CircuitState.CLOSED and self._failures >= self.threshold:
                self._opened_at = self._clock()
                self._transition(CircuitState.OPEN)

    def release_trial(self) -> None:
        """Give back the half-open trial slot when the call ended without a verdict (cancelled)."""
        with self._lock:
            self._trial_in_flight = False

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            retry_in = None
            if self._state == CircuitState.OPEN and self._opened_at is not None:
                retry_in = max(0.0, self.cooldown_seconds - (self._clock() - self._opened_at))
            return {
                "state": self._state.value,
                "failures": self._failures,
                "threshold": self.threshold,
                "retry_in_seconds": retry_in,
            }

    def _transition(self, state: CircuitState) -> None:
        # Caller holds the lock.
        previous = self._state
        self._state = state
        log = logger.warning if state == CircuitState.OPEN else logger.info
        log(
            "Circuit breaker state changed",
            breaker=self.name,
            previous=previous.value,
            state=state.value,
            failures=self._failures,
        )
        if self._on_state_change is not None:
            self._on_state_change(self.name, state)
