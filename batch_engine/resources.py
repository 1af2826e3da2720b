"""
Image Batch — Resource Guard

Watches the process and owns the shutdown sequence:
  - Samples process RSS (psutil) every `interval` seconds
  - Above memory_warning_percent of max_memory_mb: gc.collect() hint
  - Above max_memory_mb: policy "refuse" stops new dispatch until memory
    drops again; policy "shutdown" triggers a fatal shutdown
  - Queue depth ceiling for submissions
  - Shutdown hooks run once, in registration order, on SIGINT/SIGTERM
    or a fatal resource condition. A second signal during shutdown is
    a no-op.

Signal handlers only start the shutdown thread; hooks never run inside
the handler itself.

Usage:
    guard = ResourceGuard(ResourceLimits(max_memory_mb=2048))
    guard.on_shutdown("pause_dispatch", queues.pause_all)
    guard.on_shutdown("finalize_ledger", ledger.finalize)
    guard.install_signal_handlers()
    guard.start()
    ...
    if not guard.can_dispatch():
        ...
"""

from __future__ import annotations

import gc
import logging
import os
import signal
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

import psutil

logger = logging.getLogger("image_batch.resources")

POLICY_REFUSE = "refuse"
POLICY_SHUTDOWN = "shutdown"


@dataclass
class ResourceLimits:
    max_memory_mb: float = 2048.0
    memory_warning_percent: float = 80.0
    max_queue_depth: int = 10000
    interval: float = 5.0
    enable_gc: bool = True
    policy: str = POLICY_REFUSE
    shutdown_timeout: float = 30.0

    @staticmethod
    def from_dict(cfg: dict[str, Any]) -> ResourceLimits:
        d = ResourceLimits()
        policy = str(cfg.get("policy", d.policy))
        if policy not in (POLICY_REFUSE, POLICY_SHUTDOWN):
            raise ValueError(f"Unknown resource policy '{policy}' (expected refuse|shutdown)")
        return ResourceLimits(
            max_memory_mb=float(cfg.get("max_memory_mb", d.max_memory_mb)),
            memory_warning_percent=float(cfg.get("memory_warning_percent", d.memory_warning_percent)),
            max_queue_depth=int(cfg.get("max_queue_depth", d.max_queue_depth)),
            interval=float(cfg.get("interval", d.interval)),
            enable_gc=bool(cfg.get("enable_gc", d.enable_gc)),
            policy=policy,
            shutdown_timeout=float(cfg.get("shutdown_timeout", d.shutdown_timeout)),
        )


@dataclass
class MemorySample:
    rss_mb: float
    limit_mb: float
    timestamp: float

    @property
    def percent(self) -> float:
        if self.limit_mb <= 0:
            return 0.0
        return self.rss_mb / self.limit_mb * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "rss_mb": round(self.rss_mb, 1),
            "limit_mb": self.limit_mb,
            "percent": round(self.percent, 1),
            "timestamp": self.timestamp,
        }


def process_rss_mb() -> float:
    return psutil.Process(os.getpid()).memory_info().rss / (1024 * 1024)


ShutdownHook = Callable[[], Any]


class ResourceGuard:

    def __init__(
        self,
        limits: ResourceLimits | None = None,
        sampler: Callable[[], float] = process_rss_mb,
        on_warning: Callable[[MemorySample], None] | None = None,
    ):
        self.limits = limits or ResourceLimits()
        self._sampler = sampler
        self._on_warning = on_warning
        self._lock = threading.Lock()

        self._hooks: list[tuple[str, ShutdownHook]] = []
        self._shutdown_started = False
        self._shutdown_done = threading.Event()
        self._shutdown_reason = ""
        self._shutdown_thread: threading.Thread | None = None
        self.fatal = False

        self._refusing = False
        self._last_sample: MemorySample | None = None
        self._stop = threading.Event()
        self._monitor: threading.Thread | None = None
        self._previous_handlers: dict[int, Any] = {}

    # ── Memory ───────────────────────────────────────────────

    def check(self) -> MemorySample:
        """Take one sample and apply the warning and ceiling policies."""
        sample = MemorySample(
            rss_mb=self._sampler(),
            limit_mb=self.limits.max_memory_mb,
            timestamp=time.time(),
        )
        with self._lock:
            self._last_sample = sample

        if sample.percent >= self.limits.memory_warning_percent:
            logger.warning(
                "High memory usage: rss=%.1fMB limit=%.0fMB (%.0f%%)",
                sample.rss_mb, sample.limit_mb, sample.percent,
            )
            if self.limits.enable_gc:
                collected = gc.collect()
                logger.info("Garbage collection hint: collected=%d", collected)
            if self._on_warning is not None:
                try:
                    self._on_warning(sample)
                except Exception:
                    logger.exception("Resource warning callback failed")

        over = sample.rss_mb >= sample.limit_mb
        with self._lock:
            was_refusing = self._refusing
            self._refusing = over and self.limits.policy == POLICY_REFUSE
        if over:
            logger.error(
                "Memory limit exceeded: rss=%.1fMB limit=%.0fMB policy=%s",
                sample.rss_mb, sample.limit_mb, self.limits.policy,
            )
            if self.limits.policy == POLICY_SHUTDOWN:
                self.fatal = True
                self.request_shutdown("memory limit exceeded")
        elif was_refusing:
            logger.info("Memory back under limit, dispatch resumed: rss=%.1fMB", sample.rss_mb)
        return sample

    def can_dispatch(self) -> bool:
        with self._lock:
            return not self._refusing and not self._shutdown_started

    def is_queue_depth_valid(self, depth: int) -> bool:
        if depth > self.limits.max_queue_depth:
            logger.warning(
                "Queue depth limit exceeded: depth=%d max=%d",
                depth, self.limits.max_queue_depth,
            )
            return False
        return True

    @property
    def last_sample(self) -> MemorySample | None:
        with self._lock:
            return self._last_sample

    # ── Monitor thread ───────────────────────────────────────

    def start(self) -> None:
        if self._monitor is not None:
            return
        logger.info(
            "Resource monitoring started: max_memory_mb=%.0f interval=%.1fs policy=%s",
            self.limits.max_memory_mb, self.limits.interval, self.limits.policy,
        )
        self._stop.clear()
        self._monitor = threading.Thread(target=self._monitor_loop, name="resource-guard", daemon=True)
        self._monitor.start()

    def _monitor_loop(self) -> None:
        while not self._stop.wait(self.limits.interval):
            try:
                self.check()
            except (psutil.Error, OSError) as e:
                logger.error("Memory sample failed: %s", e)

    def stop(self) -> None:
        self._stop.set()
        monitor = self._monitor
        if monitor is not None and monitor is not threading.current_thread():
            monitor.join(timeout=self.limits.interval + 1.0)
        self._monitor = None

    # ── Shutdown ─────────────────────────────────────────────

    def on_shutdown(self, name: str, hook: ShutdownHook) -> None:
        """Register a hook; hooks run in registration order."""
        with self._lock:
            self._hooks.append((name, hook))

    @property
    def shutdown_requested(self) -> bool:
        with self._lock:
            return self._shutdown_started

    @property
    def shutdown_reason(self) -> str:
        return self._shutdown_reason

    def request_shutdown(self, reason: str) -> bool:
        """
        Start the shutdown sequence on a background thread.

        Safe to call from a signal handler. Returns False if shutdown
        was already in progress.
        """
        with self._lock:
            if self._shutdown_started:
                logger.info("Shutdown already in progress, ignoring: %s", reason)
                return False
            self._shutdown_started = True
            self._shutdown_reason = reason
            self._shutdown_thread = threading.Thread(
                target=self._run_hooks, name="shutdown", daemon=True,
            )
            self._shutdown_thread.start()
        return True

    def shutdown(self, reason: str = "requested", timeout: float | None = None) -> bool:
        """Run the shutdown sequence and wait for it. Idempotent."""
        started = self.request_shutdown(reason)
        self.wait_for_shutdown(timeout)
        return started

    def wait_for_shutdown(self, timeout: float | None = None) -> bool:
        return self._shutdown_done.wait(timeout)

    @property
    def shutdown_complete(self) -> bool:
        return self._shutdown_done.is_set()

    def _run_hooks(self) -> None:
        logger.warning("Shutdown started: reason=%s fatal=%s", self._shutdown_reason, self.fatal)
        with self._lock:
            hooks = list(self._hooks)
        try:
            for name, hook in hooks:
                t0 = time.monotonic()
                try:
                    hook()
                except Exception:
                    logger.exception("Shutdown hook failed: %s", name)
                    continue
                logger.info("Shutdown hook completed: %s (%.2fs)", name, time.monotonic() - t0)
        finally:
            self.stop()
            self._shutdown_done.set()
            logger.warning("Shutdown complete: reason=%s", self._shutdown_reason)

    # ── Signals ──────────────────────────────────────────────

    def _handle_signal(self, signum: int, frame: Any) -> None:
        name = signal.Signals(signum).name
        logger.warning("Received %s", name)
        self.request_shutdown(f"signal {name}")

    def install_signal_handlers(self) -> bool:
        """Install SIGINT/SIGTERM handlers. Only possible on the main thread."""
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not on the main thread, signal handlers not installed")
            return False
        for sig in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[sig] = signal.getsignal(sig)
            signal.signal(sig, self._handle_signal)
        return True

    def restore_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._previous_handlers.clear()

    def status(self) -> dict[str, Any]:
        sample = self.last_sample
        return {
            "memory": sample.to_dict() if sample else None,
            "limits": {
                "max_memory_mb": self.limits.max_memory_mb,
                "memory_warning_percent": self.limits.memory_warning_percent,
                "max_queue_depth": self.limits.max_queue_depth,
                "policy": self.limits.policy,
            },
            "accepting": self.can_dispatch(),
            "shutdown_requested": self.shutdown_requested,
            "shutdown_reason": self._shutdown_reason,
            "fatal": self.fatal,
        }
