"""
Image Batch — Typed Event Channel

Decouples the pipeline from whoever watches it. The orchestrator
publishes PipelineEvents; the progress reporter, the structured batch
logger and any external notifier subscribe. Publishing never blocks on
a subscriber: events go onto a queue drained by one delivery thread, in
publish order. A failing subscriber is logged and skipped.

Usage:
    bus = EventBus()
    bus.subscribe(progress.handle, types={EventType.ITEM_COMPLETED})
    bus.publish(PipelineEvent(EventType.ITEM_COMPLETED, session_id, {...}))
    bus.close()   # delivers everything still queued
"""

from __future__ import annotations

import enum
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

logger = logging.getLogger("image_batch.events")


class EventType(str, enum.Enum):
    BATCH_STARTED = "batch_started"
    ITEM_COMPLETED = "item_completed"
    BUDGET_ALERT = "budget_alert"
    BREAKER_STATE = "breaker_state"
    RESOURCE_WARNING = "resource_warning"
    SHUTDOWN_REQUESTED = "shutdown_requested"
    BATCH_FINISHED = "batch_finished"


@dataclass
class PipelineEvent:
    type: EventType
    session_id: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "session_id": self.session_id,
            "timestamp": self.timestamp,
            **self.payload,
        }


Handler = Callable[[PipelineEvent], None]

_STOP = object()


@dataclass
class _Subscription:
    handler: Handler
    types: frozenset | None


class EventBus:
    """Single-dispatcher fan-out channel."""

    def __init__(self):
        self._queue: queue.Queue = queue.Queue()
        self._subs: list[_Subscription] = []
        self._lock = threading.Lock()
        self._closed = False
        self._thread = threading.Thread(target=self._run, name="event-bus", daemon=True)
        self._thread.start()

    def subscribe(self, handler: Handler, types: Iterable[EventType] | None = None) -> Callable[[], None]:
        """Register a handler. Returns an unsubscribe function."""
        sub = _Subscription(handler, frozenset(types) if types is not None else None)
        with self._lock:
            self._subs.append(sub)

        def unsubscribe() -> None:
            with self._lock:
                if sub in self._subs:
                    self._subs.remove(sub)

        return unsubscribe

    def publish(self, event: PipelineEvent) -> bool:
        """Queue an event for delivery. Returns False once the bus is closed."""
        with self._lock:
            if self._closed:
                logger.debug("Event dropped, bus closed: %s", event.type.value)
                return False
            self._queue.put(event)
        return True

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is _STOP:
                    return
                self._deliver(event)
            finally:
                self._queue.task_done()

    def _deliver(self, event: PipelineEvent) -> None:
        with self._lock:
            subs = list(self._subs)
        for sub in subs:
            if sub.types is not None and event.type not in sub.types:
                continue
            try:
                sub.handler(event)
            except Exception:
                logger.exception("Event subscriber failed (event=%s)", event.type.value)

    def flush(self) -> None:
        """Block until every event published so far has been delivered."""
        if self._thread.is_alive():
            self._queue.join()

    def close(self, timeout: float | None = 5.0) -> None:
        """Deliver queued events, then stop the dispatcher. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._queue.put(_STOP)
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning("Event bus dispatcher did not stop within %.1fs", timeout or 0)
