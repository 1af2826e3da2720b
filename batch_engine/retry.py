"""
Image Batch — Retry Executor with Exponential Backoff

Wraps a single unit of work with:
  - Bounded attempts (max_attempts)
  - Exponential backoff: delay = min(max_delay, initial_delay * multiplier^(attempt-1))
  - Retry only for transient error classes (rate limit, timeout, network)
  - Retry-After from the backend honoured (capped by max_delay)
  - Cancellable backoff sleep (waits on the batch cancel event)
  - Structured logging of every attempt

Non-retryable errors (authentication, validation, circuit open) propagate
on the first attempt. Every error leaving execute() carries an
`attempts` attribute with the number of attempts made.

Usage:
    from batch_engine.retry import RetryExecutor, RetryPolicy

    executor = RetryExecutor(RetryPolicy(max_attempts=3), cancel_event=cancel)
    result = executor.execute(lambda: backend.classify(item), label=item.id)
    # result.value, result.attempts
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, TypeVar

from batch_engine.errors import BatchCancelled, classify_error
from batch_engine.types import ErrorClass, TRANSIENT_ERROR_CLASSES

logger = logging.getLogger("image_batch.retry")

T = TypeVar("T")


# ═══════════════════════════════════════════════════════════════════
# Retry Policy
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    initial_delay: float = 1.0      # seconds before the second attempt
    max_delay: float = 30.0         # cap on delay between attempts
    multiplier: float = 2.0
    jitter: float = 0.0             # ±fraction randomization on each delay

    # What counts as retryable
    retryable: frozenset = field(default_factory=lambda: TRANSIENT_ERROR_CLASSES)

    def delay_for(self, attempt: int, error: BaseException | None = None) -> float:
        """
        Backoff after the given (1-based) failed attempt.

        A server-supplied Retry-After on the error raises the delay to at
        least that value, still capped by max_delay.
        """
        base = self.initial_delay * (self.multiplier ** (attempt - 1))
        capped = min(self.max_delay, base)
        if self.jitter:
            spread = capped * self.jitter
            capped += random.uniform(-spread, spread)
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            capped = min(self.max_delay, max(capped, float(retry_after)))
        return max(0.0, capped)

    def is_retryable(self, error: BaseException) -> bool:
        return classify_error(error) in self.retryable

    @staticmethod
    def from_dict(cfg: dict[str, Any]) -> RetryPolicy:
        defaults = RetryPolicy()
        retryable = cfg.get("retryable")
        return RetryPolicy(
            max_attempts=int(cfg.get("max_attempts", defaults.max_attempts)),
            initial_delay=float(cfg.get("initial_delay", defaults.initial_delay)),
            max_delay=float(cfg.get("max_delay", defaults.max_delay)),
            multiplier=float(cfg.get("multiplier", defaults.multiplier)),
            jitter=float(cfg.get("jitter", defaults.jitter)),
            retryable=(
                frozenset(ErrorClass(c) for c in retryable)
                if retryable else defaults.retryable
            ),
        )


DEFAULT_POLICY = RetryPolicy()


# ═══════════════════════════════════════════════════════════════════
# Retry Result
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RetryResult(Generic[T]):
    """Result of a unit of work executed with retry."""
    value: T
    attempts: int                     # 1 = first try succeeded
    elapsed: float                    # wall time including backoff
    attempt_log: list[dict[str, Any]] = field(default_factory=list)


def _annotate(error: BaseException, attempts: int) -> BaseException:
    try:
        error.attempts = attempts  # type: ignore[attr-defined]
    except AttributeError:
        pass
    return error


# ═══════════════════════════════════════════════════════════════════
# Retry Executor
# ═══════════════════════════════════════════════════════════════════

class RetryExecutor:
    """
    Executes callables with bounded exponential-backoff retry.

    Stateless apart from its configuration; safe to share across worker
    threads. Backoff sleeps wait on cancel_event so a shutdown interrupts
    them immediately and raises BatchCancelled.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        cancel_event: threading.Event | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ):
        self.policy = policy or DEFAULT_POLICY
        self.cancel_event = cancel_event or threading.Event()
        self._sleep_fn = sleep_fn

    def _sleep(self, delay: float) -> None:
        if self.cancel_event.is_set():
            raise BatchCancelled("Batch cancelled before backoff")
        if self._sleep_fn is not None:
            self._sleep_fn(delay)
            if self.cancel_event.is_set():
                raise BatchCancelled("Batch cancelled during backoff")
            return
        if self.cancel_event.wait(delay):
            raise BatchCancelled("Batch cancelled during backoff")

    def execute(self, fn: Callable[[], T], label: str = "") -> RetryResult[T]:
        """
        Run fn until it succeeds, a non-retryable error occurs, or
        max_attempts is exhausted.

        Raises:
            BatchCancelled: cancel_event set before an attempt or during backoff
            Exception: the last error, annotated with .attempts
        """
        policy = self.policy
        attempt_log: list[dict[str, Any]] = []
        total_t0 = time.monotonic()

        for attempt in range(1, policy.max_attempts + 1):
            if self.cancel_event.is_set():
                raise _annotate(BatchCancelled("Batch cancelled before attempt"), attempt - 1)

            entry: dict[str, Any] = {"attempt": attempt, "label": label}
            t0 = time.monotonic()
            try:
                value = fn()
            except BatchCancelled as e:
                raise _annotate(e, attempt)
            except Exception as e:
                error_class = classify_error(e)
                entry["latency_s"] = round(time.monotonic() - t0, 3)
                entry["error"] = str(e)[:200]
                entry["error_class"] = error_class.value
                attempt_log.append(entry)

                if error_class not in policy.retryable:
                    entry["status"] = "non_retryable"
                    logger.debug(
                        "Non-retryable error (item=%s, class=%s): %s",
                        label, error_class.value, str(e)[:100],
                    )
                    raise _annotate(e, attempt)

                entry["status"] = "retryable_error"
                if attempt >= policy.max_attempts:
                    logger.warning(
                        "All retry attempts exhausted (item=%s, attempts=%d): %s",
                        label, attempt, str(e)[:100],
                    )
                    raise _annotate(e, attempt)

                delay = policy.delay_for(attempt, e)
                entry["backoff_s"] = round(delay, 3)
                logger.warning(
                    "Retryable error (attempt %d/%d, item=%s, class=%s), retrying in %.2fs: %s",
                    attempt, policy.max_attempts, label, error_class.value, delay, str(e)[:100],
                )
                try:
                    self._sleep(delay)
                except BatchCancelled as cancelled:
                    raise _annotate(cancelled, attempt) from e
                continue

            entry["status"] = "success"
            entry["latency_s"] = round(time.monotonic() - t0, 3)
            attempt_log.append(entry)
            if attempt > 1:
                logger.info("Retry succeeded (item=%s, attempt=%d)", label, attempt)
            return RetryResult(
                value=value,
                attempts=attempt,
                elapsed=time.monotonic() - total_t0,
                attempt_log=attempt_log,
            )

        # max_attempts < 1
        raise ValueError(f"max_attempts must be >= 1, got {policy.max_attempts}")
