"""
Circuit breaker for asynchronous remote operations.

One breaker instance protects one class of operations (for example all
assessment writes). Failures inside the monitoring window open the circuit;
while open every call fails fast with CircuitOpenError until the reset
timeout elapses, after which a single trial call decides whether to close
again.
"""

from __future__ import annotations

import enum
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitOpenError(Exception):
    """Raised without invoking the operation while the circuit is open."""

    code = "CIRCUIT_OPEN"
    retryable = False

    def __init__(self, name: str, retry_after: float) -> None:
        super().__init__(
            f"Circuit '{name}' is open - service degraded, try again in {retry_after:.1f}s"
        )
        self.name = name
        self.retry_after = retry_after


@dataclass(slots=True)
class CircuitBreakerStats:
    name: str
    state: str
    success_count: int
    failure_count: int
    window_failures: int
    average_latency_ms: float
    last_failure_at: float | None
    opened_at: float | None


class CircuitBreaker:
    """Failure-isolation wrapper around awaitable operations."""

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        monitoring_period: float = 10.0,
        ignored_exceptions: tuple[type[BaseException], ...] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.monitoring_period = monitoring_period
        self.ignored_exceptions = ignored_exceptions
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._window: deque[float] = deque()
        self._opened_at: float | None = None
        self._last_failure_at: float | None = None
        self._trial_in_flight = False

        self._success_count = 0
        self._failure_count = 0
        self._completed_calls = 0
        self._average_latency_ms = 0.0

    @property
    def state(self) -> CircuitState:
        return self._state

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` under the breaker and return its result.

        Errors raised by the operation are always re-raised after the state
        and metrics have been updated.
        """
        is_trial = self._admit()
        started = self._clock()
        try:
            result = await operation()
        except self.ignored_exceptions:
            self._record_latency(started)
            if is_trial:
                self._trial_in_flight = False
            raise
        except Exception:
            self._record_latency(started)
            self._on_failure(is_trial)
            raise
        except BaseException:
            # Cancelled: the outcome is unknown, so the next call becomes the trial.
            if is_trial:
                self._trial_in_flight = False
            raise
        self._record_latency(started)
        self._on_success(is_trial)
        return result

    def _admit(self) -> bool:
        """Decide whether a call may run; return True for the half-open trial call."""
        now = self._clock()
        if self._state is CircuitState.OPEN:
            opened_at = now if self._opened_at is None else self._opened_at
            elapsed = now - opened_at
            if elapsed < self.reset_timeout:
                raise CircuitOpenError(self.name, self.reset_timeout - elapsed)
            self._transition(CircuitState.HALF_OPEN)

        if self._state is CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, 0.0)
            self._trial_in_flight = True
            return True
        return False

    def _on_success(self, is_trial: bool) -> None:
        self._success_count += 1
        # Only consecutive failures count towards opening.
        self._window.clear()
        if is_trial:
            self._trial_in_flight = False
            self._transition(CircuitState.CLOSED)

    def _on_failure(self, is_trial: bool) -> None:
        now = self._clock()
        self._failure_count += 1
        self._last_failure_at = now

        if is_trial:
            self._trial_in_flight = False
            self._open(now)
            return

        self._window.append(now)
        self._prune_window(now)
        if self._state is CircuitState.CLOSED and len(self._window) >= self.failure_threshold:
            self._open(now)

    def _open(self, now: float) -> None:
        self._opened_at = now
        self._window.clear()
        self._transition(CircuitState.OPEN)

    def _prune_window(self, now: float) -> None:
        while self._window and now - self._window[0] > self.monitoring_period:
            self._window.popleft()

    def _record_latency(self, started: float) -> None:
        latency_ms = (self._clock() - started) * 1000
        self._completed_calls += 1
        # Cumulative moving average over every completed call.
        self._average_latency_ms += (latency_ms - self._average_latency_ms) / self._completed_calls

    def _transition(self, new_state: CircuitState) -> None:
        if new_state is self._state:
            return
        old_state = self._state
        self._state = new_state
        log = logger.warning if new_state is CircuitState.OPEN else logger.info
        log(
            "circuit_state_changed",
            breaker=self.name,
            from_state=old_state.value,
            to_state=new_state.value,
        )

    def reset(self) -> None:
        """Force the breaker back to closed and clear all counters."""
        self._state = CircuitState.CLOSED
        self._window.clear()
        self._opened_at = None
        self._last_failure_at = None
        self._trial_in_flight = False
        self._success_count = 0
        self._failure_count = 0
        self._completed_calls = 0
        self._average_latency_ms = 0.0

    def stats(self) -> CircuitBreakerStats:
        self._prune_window(self._clock())
        return CircuitBreakerStats(
            name=self.name,
            state=self._state.value,
            success_count=self._success_count,
            failure_count=self._failure_count,
            window_failures=len(self._window),
            average_latency_ms=round(self._average_latency_ms, 3),
            last_failure_at=self._last_failure_at,
            opened_at=self._opened_at,
        )
