"""
Circuit breaker for broker calls.

CLOSED     calls pass; each failure adds to the count and each success
           takes one off. ``failure_threshold`` failures open the circuit.
OPEN       calls are refused with CircuitOpenError until ``reset_timeout``
           has passed, then the next call is let through as a trial.
HALF_OPEN  ``success_threshold`` consecutive successes close the circuit;
           any failure opens it again.

Only exceptions count as failures; a call that returns normally (even None)
is a success.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from broker.port import BrokerError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(BrokerError):
    """Call refused because the circuit is open."""

    def __init__(self, name: str, retry_in: float) -> None:
        super().__init__(f"Circuit {name} is open; retry in {retry_in:.1f}s")
        self.name = name
        self.retry_in = retry_in


StateListener = Callable[[CircuitState, CircuitState, str], None]


class CircuitBreaker:
    """
    Parameters
    ----------
    name:
        Label used in logs and errors.
    failure_threshold:
        Failures (net of successes) that open a closed circuit.
    success_threshold:
        Consecutive half-open successes that close the circuit.
    reset_timeout:
        Seconds an open circuit refuses calls before allowing a trial.
    tracked:
        Exception types that count as failures; others pass through uncounted.
    on_state_change:
        Called with (previous, new, reason) on every transition.
    clock:
        Monotonic seconds source; injectable for tests.
    """

    def __init__(
        self,
        name: str = "broker",
        *,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        reset_timeout: float = 60.0,
        tracked: tuple[type[BaseException], ...] = (Exception,),
        on_state_change: StateListener | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1 or success_threshold < 1:
            raise ValueError("circuit thresholds must be >= 1")
        self.name = name
        self._failure_threshold = failure_threshold
        self._success_threshold = success_threshold
        self._reset_timeout = reset_timeout
        self._tracked = tracked
        self._listener = on_state_change
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at: float | None = None
        self._total_calls = 0
        self._total_failures = 0
        self._rejected = 0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._retry_in() <= 0:
            self._transition(CircuitState.HALF_OPEN, "reset timeout elapsed")
        return self._state

    def _retry_in(self) -> float:
        if self._opened_at is None:
            return 0.0
        return self._reset_timeout - (self._clock() - self._opened_at)

    def _transition(self, state: CircuitState, reason: str) -> None:
        previous = self._state
        if previous is state:
            return
        self._state = state
        self._successes = 0
        if state is CircuitState.OPEN:
            self._opened_at = self._clock()
            logger.error("Circuit %s OPEN: %s", self.name, reason)
        else:
            if state is CircuitState.CLOSED:
                self._failures = 0
                self._opened_at = None
            logger.warning("Circuit %s %s -> %s: %s", self.name, previous.value, state.value, reason)
        if self._listener is not None:
            try:
                self._listener(previous, state, reason)
            except Exception:
                logger.exception("Circuit %s state listener failed", self.name)

    def open(self, reason: str = "opened manually") -> None:
        self._transition(CircuitState.OPEN, reason)

    def close(self, reason: str = "closed manually") -> None:
        self._transition(CircuitState.CLOSED, reason)

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def record_success(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            self._successes += 1
            if self._successes >= self._success_threshold:
                self._transition(CircuitState.CLOSED, f"{self._successes} trial call(s) succeeded")
        elif self._failures:
            self._failures -= 1

    def record_failure(self, exc: BaseException) -> None:
        self._total_failures += 1
        if self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN, f"trial call failed: {exc}")
            return
        self._failures += 1
        if self._failures >= self._failure_threshold:
            self._transition(CircuitState.OPEN, f"{self._failures} failures, last: {exc}")

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run *fn* through the breaker. Raises CircuitOpenError while open."""
        if self.state is CircuitState.OPEN:
            self._rejected += 1
            raise CircuitOpenError(self.name, max(0.0, self._retry_in()))
        self._total_calls += 1
        try:
            result = await fn()
        except self._tracked as exc:
            self.record_failure(exc)
            raise
        self.record_success()
        return result

    def stats(self) -> dict[str, Any]:
        state = self.state
        return {
            "name": self.name,
            "state": state.value,
            "failures": self._failures,
            "total_calls": self._total_calls,
            "total_failures": self._total_failures,
            "rejected_calls": self._rejected,
            "retry_in_seconds": max(0.0, self._retry_in()) if state is CircuitState.OPEN else 0.0,
        }
