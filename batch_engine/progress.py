"""
Image Batch — Progress Reporter

Derives live statistics purely from ITEM_COMPLETED events:
completed/total, success/fail/skip counts, items per second and ETA.
It never feeds back into control flow.

Rate is smoothed: items completed in this run divided by elapsed time
since start, so one slow item does not swing the ETA. With zero
completions the rate is 0 and the ETA is None.

An optional renderer is called every `interval` seconds from a
background thread (the CLI uses it to draw a single stderr line).
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable

from batch_engine.events import EventBus, EventType, PipelineEvent
from batch_engine.types import ItemStatus

logger = logging.getLogger("image_batch.progress")


@dataclass
class ProgressStats:
    total: int = 0
    completed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    elapsed_s: float = 0.0
    items_per_second: float = 0.0
    eta_s: float | None = None
    cost_usd: float = 0.0

    @property
    def percent(self) -> float:
        if not self.total:
            return 0.0
        return self.completed / self.total * 100

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["percent"] = round(self.percent, 1)
        return data


def format_progress(stats: ProgressStats) -> str:
    """[#####.....]  50.0%  50/100  ok=48 fail=1 skip=1  2.50/s  eta 20s"""
    width = 20
    filled = int(width * stats.percent / 100)
    bar = "#" * filled + "." * (width - filled)
    eta = f"{stats.eta_s:.0f}s" if stats.eta_s is not None else "--"
    return (
        f"[{bar}] {stats.percent:5.1f}%  {stats.completed}/{stats.total}  "
        f"ok={stats.successful} fail={stats.failed} skip={stats.skipped}  "
        f"{stats.items_per_second:.2f}/s  eta {eta}  ${stats.cost_usd:.4f}"
    )


class ProgressReporter:

    def __init__(
        self,
        total: int = 0,
        renderer: Callable[[ProgressStats], None] | None = None,
        interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self._renderer = renderer
        self._interval = interval
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._unsubscribe: Callable[[], None] | None = None

        self._total = total
        self._completed = 0
        self._counts = {ItemStatus.SUCCESS: 0, ItemStatus.FAILED: 0, ItemStatus.SKIPPED: 0}
        self._run_completed = 0
        self._cost = 0.0
        self._started_at: float | None = None
        self._stopped_at: float | None = None

    def start(
        self,
        total: int | None = None,
        already_completed: dict[ItemStatus, int] | None = None,
    ) -> None:
        """
        Begin timing. `already_completed` seeds the counters from a
        resumed log; those items do not count toward the rate.
        """
        with self._lock:
            if total is not None:
                self._total = total
            for status, n in (already_completed or {}).items():
                self._counts[status] = self._counts.get(status, 0) + n
                self._completed += n
            self._started_at = self._clock()
            self._stopped_at = None

        if self._renderer is not None and self._thread is None:
            self._stop.clear()
            self._thread = threading.Thread(target=self._render_loop, name="progress", daemon=True)
            self._thread.start()

    def attach(self, bus: EventBus) -> None:
        self._unsubscribe = bus.subscribe(self.handle, types={EventType.ITEM_COMPLETED})

    def handle(self, event: PipelineEvent) -> None:
        if event.type != EventType.ITEM_COMPLETED:
            return
        try:
            status = ItemStatus(event.payload["status"])
        except (KeyError, ValueError):
            logger.warning("Ignoring completion event without a terminal status: %s", event.payload)
            return
        with self._lock:
            self._counts[status] = self._counts.get(status, 0) + 1
            self._completed += 1
            self._run_completed += 1
            self._cost += float(event.payload.get("cost_usd") or 0.0)

    def stats(self) -> ProgressStats:
        with self._lock:
            if self._started_at is None:
                elapsed = 0.0
            else:
                end = self._stopped_at if self._stopped_at is not None else self._clock()
                elapsed = max(0.0, end - self._started_at)

            rate = self._run_completed / elapsed if self._run_completed and elapsed > 0 else 0.0
            remaining = max(0, self._total - self._completed)
            if remaining == 0:
                eta = 0.0 if self._completed else None
            elif rate > 0:
                eta = remaining / rate
            else:
                eta = None

            return ProgressStats(
                total=self._total,
                completed=self._completed,
                successful=self._counts[ItemStatus.SUCCESS],
                failed=self._counts[ItemStatus.FAILED],
                skipped=self._counts[ItemStatus.SKIPPED],
                elapsed_s=round(elapsed, 3),
                items_per_second=rate,
                eta_s=eta,
                cost_usd=round(self._cost, 6),
            )

    def _render_loop(self) -> None:
        while not self._stop.wait(self._interval):
            self._render()

    def _render(self) -> None:
        try:
            self._renderer(self.stats())
        except Exception:
            logger.exception("Progress renderer failed")

    def stop(self) -> ProgressStats:
        """Freeze the clock, stop the renderer and render once more. Idempotent."""
        with self._lock:
            if self._started_at is not None and self._stopped_at is None:
                self._stopped_at = self._clock()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self._interval + 1.0)
            self._thread = None
            self._render()
        return self.stats()

    def summary(self) -> dict[str, Any]:
        return self.stats().to_dict()
