"""
Image Batch — Per-Backend Circuit Breaker

Isolates a systemically failing backend so healthy backends keep making
progress, and stops hammering a backend that is already returning errors.
Complements the retry executor: retry absorbs per-call noise, the breaker
handles sustained backend-wide outages.

States:
  CLOSED    — normal operation; failures counted (consecutive, or within
              window_seconds when configured)
  OPEN      — every call rejected with CircuitBreakerOpen until reset_timeout
  HALF_OPEN — up to half_open_max_calls probes in flight;
              success_threshold consecutive successes → CLOSED,
              any failure → OPEN

One breaker per backend, owned by the orchestrator through a
BreakerRegistry. No module-level state: a tripped breaker for backend A
never blocks backend B.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from batch_engine.errors import CircuitBreakerOpen, classify_error
from batch_engine.types import ErrorClass

logger = logging.getLogger("image_batch.circuit_breaker")

T = TypeVar("T")


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


# Per-item faults say nothing about backend health
NEUTRAL_ERROR_CLASSES = frozenset({ErrorClass.VALIDATION, ErrorClass.CANCELLED})


@dataclass
class BreakerConfig:
    """Configuration for a backend circuit breaker."""
    failure_threshold: int = 5
    success_threshold: int = 2
    reset_timeout: float = 60.0          # seconds in OPEN before probing
    window_seconds: float | None = None  # None = consecutive failures
    half_open_max_calls: int = 1

    @staticmethod
    def from_dict(cfg: dict[str, Any]) -> BreakerConfig:
        d = BreakerConfig()
        window = cfg.get("window_seconds", d.window_seconds)
        return BreakerConfig(
            failure_threshold=int(cfg.get("failure_threshold", d.failure_threshold)),
            success_threshold=int(cfg.get("success_threshold", d.success_threshold)),
            reset_timeout=float(cfg.get("reset_timeout", d.reset_timeout)),
            window_seconds=float(window) if window is not None else None,
            half_open_max_calls=int(cfg.get("half_open_max_calls", d.half_open_max_calls)),
        )


class CircuitBreaker:
    """
    Thread-safe circuit breaker for one backend.

    Every state transition happens under a single lock; the wrapped
    function itself runs outside the lock.
    """

    def __init__(
        self,
        name: str,
        config: BreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_transition: Callable[[str, CircuitState, CircuitState], None] | None = None,
    ):
        self.name = name
        self.config = config or BreakerConfig()
        self._clock = clock
        self._on_transition = on_transition
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._failure_times: deque[float] = deque()
        self._last_failure_time: float | None = None
        self._opened_at: float | None = None
        self._probes_in_flight = 0
        self._trip_count = 0

    # ── State ────────────────────────────────────────────────

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def _maybe_half_open(self) -> None:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self._clock() - self._opened_at >= self.config.reset_timeout:
                self._transition(CircuitState.HALF_OPEN)
                self._successes = 0
                self._probes_in_flight = 0

    def _transition(self, new_state: CircuitState) -> None:
        old = self._state
        if old == new_state:
            return
        self._state = new_state
        if new_state == CircuitState.OPEN:
            logger.warning(
                "Circuit breaker OPEN: backend=%s failures=%d retry_in=%.1fs",
                self.name, self._failures, self.config.reset_timeout,
            )
        elif new_state == CircuitState.HALF_OPEN:
            logger.info("Circuit breaker HALF-OPEN: backend=%s, probing", self.name)
        else:
            logger.info("Circuit breaker CLOSED: backend=%s recovered", self.name)
        if self._on_transition is not None:
            try:
                self._on_transition(self.name, old, new_state)
            except Exception:
                logger.exception("Breaker transition callback failed (backend=%s)", self.name)

    def _retry_after(self) -> float:
        if self._opened_at is None:
            return 0.0
        return self.config.reset_timeout - (self._clock() - self._opened_at)

    def _trip(self) -> None:
        self._opened_at = self._clock()
        self._successes = 0
        self._trip_count += 1
        self._transition(CircuitState.OPEN)

    # ── Execution ────────────────────────────────────────────

    def _before_call(self) -> bool:
        """Admit or reject a call. Returns True if the call is a half-open probe."""
        with self._lock:
            self._maybe_half_open()
            if self._state == CircuitState.OPEN:
                raise CircuitBreakerOpen(self.name, self._retry_after())
            if self._state == CircuitState.HALF_OPEN:
                if self._probes_in_flight >= self.config.half_open_max_calls:
                    raise CircuitBreakerOpen(self.name, 0.0)
                self._probes_in_flight += 1
                return True
            return False

    def execute(self, fn: Callable[[], T]) -> T:
        """
        Invoke fn through the breaker.

        Raises CircuitBreakerOpen without invoking fn when open.
        """
        is_probe = self._before_call()
        try:
            result = fn()
        except Exception as e:
            if classify_error(e) in NEUTRAL_ERROR_CLASSES:
                self._record_neutral(is_probe)
            else:
                self.record_failure(is_probe)
            raise
        self.record_success(is_probe)
        return result

    def _record_neutral(self, is_probe: bool) -> None:
        if is_probe:
            with self._lock:
                self._probes_in_flight = max(0, self._probes_in_flight - 1)

    def record_success(self, is_probe: bool = False) -> None:
        with self._lock:
            if is_probe:
                self._probes_in_flight = max(0, self._probes_in_flight - 1)
            if self._state == CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.config.success_threshold:
                    self._failures = 0
                    self._successes = 0
                    self._failure_times.clear()
                    self._opened_at = None
                    self._transition(CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                if self.config.window_seconds is None:
                    self._failures = 0

    def record_failure(self, is_probe: bool = False) -> None:
        with self._lock:
            now = self._clock()
            if is_probe:
                self._probes_in_flight = max(0, self._probes_in_flight - 1)
            self._last_failure_time = time.time()

            if self._state == CircuitState.HALF_OPEN:
                self._failures += 1
                self._trip()
                return
            if self._state == CircuitState.OPEN:
                # late completion of a call admitted before the trip
                return

            if self.config.window_seconds is not None:
                self._failure_times.append(now)
                horizon = now - self.config.window_seconds
                while self._failure_times and self._failure_times[0] < horizon:
                    self._failure_times.popleft()
                self._failures = len(self._failure_times)
            else:
                self._failures += 1

            if self._failures >= self.config.failure_threshold:
                self._trip()

    # ── Inspection ───────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        with self._lock:
            self._maybe_half_open()
            next_retry = None
            if self._state == CircuitState.OPEN:
                next_retry = time.time() + max(0.0, self._retry_after())
            return {
                "backend": self.name,
                "state": self._state.value,
                "failures": self._failures,
                "successes": self._successes,
                "last_failure_time": self._last_failure_time,
                "next_retry_time": next_retry,
                "trip_count": self._trip_count,
            }

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        with self._lock:
            self._failures = 0
            self._successes = 0
            self._failure_times.clear()
            self._opened_at = None
            self._probes_in_flight = 0
            self._transition(CircuitState.CLOSED)
        logger.info("Circuit breaker force reset: backend=%s", self.name)


# ═══════════════════════════════════════════════════════════════════
# Registry
# ═══════════════════════════════════════════════════════════════════

class BreakerRegistry:
    """One circuit breaker per backend, created on first use."""

    def __init__(
        self,
        default_config: BreakerConfig | None = None,
        overrides: dict[str, BreakerConfig] | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_transition: Callable[[str, CircuitState, CircuitState], None] | None = None,
    ):
        self.default_config = default_config or BreakerConfig()
        self._overrides = dict(overrides or {})
        self._clock = clock
        self._on_transition = on_transition
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, backend: str) -> CircuitBreaker:
        with self._lock:
            if backend not in self._breakers:
                self._breakers[backend] = CircuitBreaker(
                    backend,
                    self._overrides.get(backend, self.default_config),
                    clock=self._clock,
                    on_transition=self._on_transition,
                )
            return self._breakers[backend]

    def all_stats(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.name: b.stats() for b in breakers}

    def reset_all(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for b in breakers:
            b.reset()
