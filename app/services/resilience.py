"""
Circuit breaker for upstream providers.

Usage:
    breaker = CircuitBreaker(failure_threshold=5, recovery_timeout=30.0, name="gemini")

    async def call():
        breaker.guard()  # Raises CircuitOpenError if open
        try:
            result = await do_call()
            breaker.record_success()
            return result
        except Exception as e:
            breaker.record_failure(e)
            raise

States:
- CLOSED: normal operation, counting consecutive failures
- OPEN: after ``failure_threshold`` consecutive failures, every call fails fast
- HALF_OPEN: after ``recovery_timeout`` one probe call is admitted; success
  closes the circuit, failure re-opens it for another cool-down
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

import numpy as np

from app.core.logging import get_logger


logger = get_logger("resilience")


class CircuitOpenError(Exception):
    """Raised when circuit breaker is open and blocking calls."""

    def __init__(self, name: str, message: str = "Circuit breaker is open"):
        self.name = name
        self.message = message
        super().__init__(f"{name}: {message}")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    Args:
        failure_threshold: Consecutive failures before opening
        recovery_timeout: Seconds open before a probe is allowed
        name: Identifier for logging
        excluded_exceptions: Exception types that don't count as failures
        clock: Monotonic time source
    """

    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    name: str = "circuit"
    excluded_exceptions: tuple[type, ...] = ()
    clock: Callable[[], float] = time.monotonic

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _opened_at: float | None = field(default=None, init=False)
    _probe_in_flight: bool = field(default=False, init=False)

    @property
    def state(self) -> CircuitState:
        """Current state; OPEN reads as HALF_OPEN once the cool-down elapsed."""
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self.clock() - self._opened_at >= self.recovery_timeout:
                return CircuitState.HALF_OPEN
        return self._state

    @property
    def is_healthy(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def guard(self) -> None:
        """Raise CircuitOpenError unless a call may proceed."""
        state = self.state

        if state == CircuitState.OPEN:
            remaining = self.recovery_timeout - (self.clock() - (self._opened_at or 0.0))
            raise CircuitOpenError(
                self.name,
                f"Circuit open after {self._failure_count} failures, retry in {remaining:.1f}s",
            )

        if state == CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                raise CircuitOpenError(self.name, "Recovery probe already in flight")
            self._probe_in_flight = True
            logger.info(f"[{self.name}] Circuit half-open, allowing probe request")

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info(f"[{self.name}] Circuit closed after successful recovery")
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._probe_in_flight = False

    def record_failure(self, error: Exception | None = None) -> None:
        if error is not None and isinstance(error, self.excluded_exceptions):
            self._probe_in_flight = False
            return

        was_probe = self._probe_in_flight
        self._probe_in_flight = False
        self._failure_count += 1

        if was_probe or self._failure_count >= self.failure_threshold:
            if self._state != CircuitState.OPEN or was_probe:
                logger.warning(
                    f"[{self.name}] Circuit OPEN after {self._failure_count} failures"
                )
            self._state = CircuitState.OPEN
            self._opened_at = self.clock()
        else:
            logger.debug(f"[{self.name}] Failure {self._failure_count}/{self.failure_threshold}")

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._probe_in_flight = False

    def get_stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
        }


@dataclass
class CallStats:
    """Success/failure counters and a rolling latency window."""

    window: int = 200
    successes: int = 0
    failures: int = 0
    latencies_ms: deque = field(default_factory=deque)

    def record(self, latency_ms: float, ok: bool) -> None:
        if ok:
            self.successes += 1
        else:
            self.failures += 1
        self.latencies_ms.append(latency_ms)
        while len(self.latencies_ms) > self.window:
            self.latencies_ms.popleft()

    def percentile(self, q: float) -> float | None:
        if not self.latencies_ms:
            return None
        return float(np.percentile(np.fromiter(self.latencies_ms, dtype=float), q))

    def to_dict(self) -> dict[str, Any]:
        total = self.successes + self.failures
        return {
            "successes": self.successes,
            "failures": self.failures,
            "success_rate": round(self.successes / total, 4) if total else None,
            "latency_p50_ms": self.percentile(50),
            "latency_p95_ms": self.percentile(95),
        }
