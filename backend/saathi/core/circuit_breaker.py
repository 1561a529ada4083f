"""
Circuit breaker for the answer generator.

- Opens when the failure rate over the sliding window reaches the threshold
  (only once at least `min_calls` results are in the window)
- Stays open for `open_seconds`, rejecting calls immediately
- Then half-opens: every `probe_every`-th call is let through as a probe;
  `close_after` consecutive successful probes close it, any failed probe
  reopens it
"""
import time
from collections import deque
from enum import Enum
from threading import Lock
from typing import Any, Awaitable, Callable, Deque, Optional, Tuple

from saathi.core.logging import get_logger

logger = get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenError(Exception):
    """Raised when a call is rejected without reaching the protected service."""


class CircuitBreaker:
    """Failure-rate circuit breaker guarding an async dependency."""

    def __init__(
        self,
        name: str,
        failure_threshold: float = 0.5,
        window_seconds: float = 60.0,
        open_seconds: float = 30.0,
        min_calls: int = 10,
        probe_every: int = 5,
        close_after: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.window_seconds = window_seconds
        self.open_seconds = open_seconds
        self.min_calls = min_calls
        self.probe_every = max(1, probe_every)
        self.close_after = close_after
        self._clock = clock

        self._lock = Lock()
        self._state = CircuitState.CLOSED
        self._results: Deque[Tuple[float, bool]] = deque()
        self._opened_at: Optional[float] = None
        self._half_open_calls = 0
        self._probe_successes = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh(self._clock())
            return self._state

    def _refresh(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._results and self._results[0][0] < cutoff:
            self._results.popleft()

        if self._state is CircuitState.OPEN and self._opened_at is not None:
            if now - self._opened_at >= self.open_seconds:
                self._state = CircuitState.HALF_OPEN
                self._half_open_calls = 0
                self._probe_successes = 0
                logger.info("circuit_breaker_half_open", circuit_breaker=self.name)

    def _open(self, now: float, reason: str) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._results.clear()
        logger.warning("circuit_breaker_opened", circuit_breaker=self.name, reason=reason)

    def _admit(self) -> None:
        with self._lock:
            now = self._clock()
            self._refresh(now)
            if self._state is CircuitState.OPEN:
                raise CircuitBreakerOpenError(f"circuit {self.name} is open")
            if self._state is CircuitState.HALF_OPEN:
                self._half_open_calls += 1
                if self._half_open_calls % self.probe_every != 0:
                    raise CircuitBreakerOpenError(f"circuit {self.name} is half-open")

    def _record(self, success: bool) -> None:
        with self._lock:
            now = self._clock()
            if self._state is CircuitState.HALF_OPEN:
                if not success:
                    self._open(now, reason="probe_failed")
                    return
                self._probe_successes += 1
                if self._probe_successes >= self.close_after:
                    self._state = CircuitState.CLOSED
                    self._opened_at = None
                    logger.info("circuit_breaker_closed", circuit_breaker=self.name)
                return

            self._results.append((now, success))
            self._refresh(now)
            total = len(self._results)
            if total >= self.min_calls:
                failures = sum(1 for _, ok in self._results if not ok)
                if failures / total >= self.failure_threshold:
                    self._open(now, reason="failure_rate")

    async def call_async(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run `func` under breaker protection; raises CircuitBreakerOpenError when rejected."""
        self._admit()
        try:
            result = await func(*args, **kwargs)
        except Exception:
            self._record(False)
            raise
        self._record(True)
        return result

    def get_metrics(self) -> dict:
        with self._lock:
            self._refresh(self._clock())
            failures = sum(1 for _, ok in self._results if not ok)
            return {
                "name": self.name,
                "circuit_state": self._state.value,
                "recent_calls": len(self._results),
                "recent_failures": failures,
                "opened_at": self._opened_at,
            }
