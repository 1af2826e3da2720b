"""
Image Batch — Backend Dispatch Queues

Bounded-concurrency worker pool per classification backend:
  - At most `concurrency` tasks in flight per backend (OS threads)
  - Optional request rate per minute (token bucket)
  - pause()/resume() stop and restart dispatch without touching in-flight work
  - drain() blocks until nothing is queued or running
  - Cancellation: once the cancel event is set, queued tasks are never started

Design: threading.Condition guarding a FIFO of pending tasks; worker
threads are started lazily up to the concurrency limit. submit() returns
a concurrent.futures.Future. A task raising is not retried here; the
exception lands on the future (retry is composed around the task).

Config in batch_config.yaml:
    dispatch:
      default:
        concurrency: 5
      gemini:
        concurrency: 10
        requests_per_minute: 360

Usage:
    queues = DispatchQueues(configs, cancel_event=cancel)
    future = queues.get("gemini").submit(lambda: classify(item))
    queues.get("gemini").drain()
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable

from batch_engine.errors import QueueClosedError

logger = logging.getLogger("image_batch.dispatch")


# Backend-specific defaults reflecting each service's rate tolerance
DEFAULT_CONCURRENCY: dict[str, int] = {
    "gemini": 10,
    "claude": 5,
    "openai": 5,
    "bedrock": 8,
}
FALLBACK_CONCURRENCY = 5


# ═══════════════════════════════════════════════════════════════════
# Dispatch Config
# ═══════════════════════════════════════════════════════════════════

@dataclass
class DispatchConfig:
    """Configuration for a backend's dispatch queue."""
    concurrency: int = FALLBACK_CONCURRENCY
    requests_per_minute: int | None = None

    @staticmethod
    def for_backend(backend: str, cfg: dict[str, Any] | None = None) -> DispatchConfig:
        cfg = cfg or {}
        rpm = cfg.get("requests_per_minute")
        return DispatchConfig(
            concurrency=int(cfg.get(
                "concurrency", DEFAULT_CONCURRENCY.get(backend, FALLBACK_CONCURRENCY))),
            requests_per_minute=int(rpm) if rpm else None,
        )


# ═══════════════════════════════════════════════════════════════════
# Token Bucket Rate Limiter
# ═══════════════════════════════════════════════════════════════════

class TokenBucket:
    """
    Token bucket algorithm for rate limiting.

    Tokens replenish at a fixed rate. Each dispatch consumes one token.
    """

    def __init__(self, rate_per_minute: int):
        self.rate = rate_per_minute / 60.0  # tokens per second
        self.max_tokens = float(rate_per_minute)
        self._tokens = float(rate_per_minute)  # start full
        self._last_refill = time.monotonic()
        self._lock = threading.Lock()

    def _refill(self):
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(self.max_tokens, self._tokens + elapsed * self.rate)
        self._last_refill = now

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    def wait_for_token(self, cancel_event: threading.Event, timeout: float | None = None) -> bool:
        """
        Wait until a token is available.

        Returns False if cancel_event is set or the timeout expires first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while not cancel_event.is_set():
            if self.try_acquire():
                return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            wait_time = min(1.0 / self.rate if self.rate > 0 else 1.0, 0.1)
            cancel_event.wait(wait_time)
        return False

    @property
    def available_tokens(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens


# ═══════════════════════════════════════════════════════════════════
# Dispatch Queue
# ═══════════════════════════════════════════════════════════════════

@dataclass
class _Task:
    fn: Callable[[], Any]
    future: Future
    submitted_at: float


class DispatchQueue:
    """
    Bounded-concurrency worker pool for one backend.

    The orchestrator is the single submitter; workers pull from a FIFO.
    All bookkeeping (pending, active, paused, closed) lives under one
    Condition so pause/drain/cancel observe a consistent view.
    """

    def __init__(
        self,
        backend: str,
        config: DispatchConfig | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.backend = backend
        self.config = config or DispatchConfig.for_backend(backend)
        if self.config.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.config.concurrency}")
        self.cancel_event = cancel_event or threading.Event()
        self._bucket = (
            TokenBucket(self.config.requests_per_minute)
            if self.config.requests_per_minute else None
        )

        self._cond = threading.Condition()
        self._pending: deque[_Task] = deque()
        self._workers: list[threading.Thread] = []
        self._active = 0
        self._paused = False
        self._closed = False

        # metrics
        self._submitted = 0
        self._completed = 0
        self._failed = 0
        self._cancelled = 0
        self._peak_active = 0
        self._total_wait_ms = 0.0

    # ── Properties ───────────────────────────────────────────

    @property
    def concurrency(self) -> int:
        return self.config.concurrency

    @property
    def is_paused(self) -> bool:
        with self._cond:
            return self._paused

    @property
    def pending(self) -> int:
        with self._cond:
            return len(self._pending)

    @property
    def active(self) -> int:
        with self._cond:
            return self._active

    # ── Submission ───────────────────────────────────────────

    def submit(self, fn: Callable[[], Any]) -> Future:
        """Queue fn for execution. Returns a Future for its result."""
        future: Future = Future()
        with self._cond:
            if self._closed:
                raise QueueClosedError(f"Dispatch queue '{self.backend}' is closed")
            if self.cancel_event.is_set():
                raise QueueClosedError(f"Dispatch queue '{self.backend}' is cancelled")
            self._pending.append(_Task(fn=fn, future=future, submitted_at=time.monotonic()))
            self._submitted += 1
            self._ensure_workers()
            self._cond.notify()
        return future

    def _ensure_workers(self) -> None:
        # Caller holds self._cond
        self._workers = [w for w in self._workers if w.is_alive()]
        while len(self._workers) < min(self.config.concurrency, self._active + len(self._pending)):
            worker = threading.Thread(
                target=self._worker_loop,
                name=f"dispatch-{self.backend}-{len(self._workers)}",
                daemon=True,
            )
            self._workers.append(worker)
            worker.start()

    # ── Worker ───────────────────────────────────────────────

    def _can_start(self) -> bool:
        return (
            bool(self._pending)
            and not self._paused
            and self._active < self.config.concurrency
        )

    def _worker_loop(self) -> None:
        while True:
            with self._cond:
                while not self._closed and not self._can_start():
                    if not self._pending and self._idle_exit():
                        self._workers.remove(threading.current_thread())
                        return
                    self._cond.wait(timeout=0.5)
                if self._closed and not self._can_start():
                    return
                task = self._pending.popleft()
                if self.cancel_event.is_set() or not task.future.set_running_or_notify_cancel():
                    self._cancel_task(task)
                    self._cond.notify_all()
                    continue
                self._active += 1
                self._peak_active = max(self._peak_active, self._active)
                self._total_wait_ms += (time.monotonic() - task.submitted_at) * 1000

            self._run(task)

            with self._cond:
                self._active -= 1
                self._cond.notify_all()

    def _idle_exit(self) -> bool:
        # Surplus workers (after a concurrency decrease) exit when idle
        return len(self._workers) > self.config.concurrency

    def _cancel_task(self, task: _Task) -> None:
        # Caller holds self._cond
        if not task.future.done():
            task.future.cancel()
        self._cancelled += 1

    def _run(self, task: _Task) -> None:
        if self._bucket is not None and not self._bucket.wait_for_token(self.cancel_event):
            task.future.set_exception(QueueClosedError(
                f"Dispatch queue '{self.backend}' cancelled while waiting for a rate token"))
            with self._cond:
                self._cancelled += 1
            return
        try:
            result = task.fn()
        except BaseException as e:
            task.future.set_exception(e)
            with self._cond:
                self._failed += 1
            logger.debug("Task failed on backend %s: %s", self.backend, e)
        else:
            task.future.set_result(result)
            with self._cond:
                self._completed += 1

    # ── Control ──────────────────────────────────────────────

    def pause(self) -> None:
        """Stop starting queued tasks. In-flight tasks keep running."""
        with self._cond:
            self._paused = True
        logger.info("Paused dispatch queue for %s", self.backend)

    def resume(self) -> None:
        with self._cond:
            self._paused = False
            self._ensure_workers()
            self._cond.notify_all()
        logger.info("Resumed dispatch queue for %s", self.backend)

    def set_concurrency(self, concurrency: int) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        with self._cond:
            self.config.concurrency = concurrency
            self._ensure_workers()
            self._cond.notify_all()
        logger.info("Adjusted concurrency for %s: %d", self.backend, concurrency)

    def drain(self, timeout: float | None = None) -> bool:
        """Block until nothing is queued or running. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._pending or self._active:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(timeout=remaining if remaining is not None else 0.5)
        return True

    def wait_in_flight(self, timeout: float | None = None) -> bool:
        """Block until no task is running (queued tasks are ignored)."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._active:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(timeout=remaining if remaining is not None else 0.5)
        return True

    def wait_for_capacity(self, max_pending: int, timeout: float | None = None) -> bool:
        """Backpressure for the submitter: block while the queue is at max_pending."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while len(self._pending) >= max_pending and not self.cancel_event.is_set():
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(timeout=min(remaining, 0.5) if remaining is not None else 0.5)
            return not self.cancel_event.is_set()

    def cancel_pending(self) -> int:
        """Cancel every queued (not yet started) task. Returns how many."""
        with self._cond:
            tasks = list(self._pending)
            self._pending.clear()
            for task in tasks:
                self._cancel_task(task)
            self._cond.notify_all()
        if tasks:
            logger.info("Cancelled %d queued tasks for %s", len(tasks), self.backend)
        return len(tasks)

    def close(self, cancel_pending: bool = True) -> None:
        if cancel_pending:
            self.cancel_pending()
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def stats(self) -> dict[str, Any]:
        with self._cond:
            started = self._completed + self._failed + self._active
            return {
                "backend": self.backend,
                "concurrency": self.config.concurrency,
                "pending": len(self._pending),
                "active": self._active,
                "paused": self._paused,
                "submitted": self._submitted,
                "completed": self._completed,
                "failed": self._failed,
                "cancelled": self._cancelled,
                "peak_active": self._peak_active,
                "avg_wait_ms": round(self._total_wait_ms / started, 1) if started else 0.0,
            }


# ═══════════════════════════════════════════════════════════════════
# Registry
# ═══════════════════════════════════════════════════════════════════

class DispatchQueues:
    """One dispatch queue per backend, sized independently."""

    def __init__(
        self,
        configs: dict[str, DispatchConfig] | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self._configs = dict(configs or {})
        self.cancel_event = cancel_event or threading.Event()
        self._queues: dict[str, DispatchQueue] = {}
        self._lock = threading.Lock()

    def get(self, backend: str, concurrency: int | None = None) -> DispatchQueue:
        with self._lock:
            queue = self._queues.get(backend)
            if queue is None:
                base = self._configs.get(backend) or DispatchConfig.for_backend(backend)
                config = DispatchConfig(
                    concurrency=concurrency or base.concurrency,
                    requests_per_minute=base.requests_per_minute,
                )
                queue = DispatchQueue(backend, config, cancel_event=self.cancel_event)
                self._queues[backend] = queue
                logger.info("Created dispatch queue for %s (concurrency=%d)",
                            backend, config.concurrency)
                return queue
        if concurrency and concurrency != queue.concurrency:
            queue.set_concurrency(concurrency)
        return queue

    def all(self) -> list[DispatchQueue]:
        with self._lock:
            return list(self._queues.values())

    def pause_all(self) -> None:
        for q in self.all():
            q.pause()

    def resume_all(self) -> None:
        for q in self.all():
            q.resume()

    def wait_in_flight(self, timeout: float | None = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        for q in self.all():
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not q.wait_in_flight(remaining):
                return False
        return True

    def drain_all(self, timeout: float | None = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        for q in self.all():
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not q.drain(remaining):
                return False
        return True

    def cancel_pending(self) -> int:
        return sum(q.cancel_pending() for q in self.all())

    def close_all(self) -> None:
        for q in self.all():
            q.close()

    def stats(self) -> dict[str, dict[str, Any]]:
        return {q.backend: q.stats() for q in self.all()}
