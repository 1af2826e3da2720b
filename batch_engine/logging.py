"""
Image Batch — Structured Logging

JSON line logging for the image_batch logger namespace, plus BatchLogger,
an event-channel consumer that turns pipeline events into structured
records carrying the session id.

Design decisions:
  - Transport: Python logging with a JSON formatter
  - Every record has timestamp, level, logger, message, service.name
  - Structured fields ride on the record as `structured` and are merged
    into the JSON object
  - Human-readable text format available for interactive runs

Usage:
    from batch_engine.logging import BatchLogger, configure_logging

    configure_logging(level="INFO")
    batch_log = BatchLogger(session_id)
    batch_log.attach(bus)
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Callable

from batch_engine.events import EventBus, EventType, PipelineEvent

NAMESPACE = "image_batch"

_TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """Formats log records as JSON lines."""

    def __init__(self, service_name: str = NAMESPACE):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("IB_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    json_format: bool = True,
    service_name: str = NAMESPACE,
) -> logging.Logger:
    """
    Configure the image_batch logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        json_format: JSON lines (default) or plain text
    """
    logger = logging.getLogger(NAMESPACE)
    numeric = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(numeric)

    # Avoid duplicate handlers on reconfigure
    logger.handlers.clear()
    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(NAMESPACE + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    if json_format:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))
    handler.setLevel(numeric)
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the image_batch namespace."""
    if name:
        return logging.getLogger(f"{NAMESPACE}.{name}")
    return logging.getLogger(NAMESPACE)


# ═══════════════════════════════════════════════════════════════════
# Batch Logger (event consumer)
# ═══════════════════════════════════════════════════════════════════

class BatchLogger:
    """
    Emits one structured record per pipeline event.

    Item outcomes log at DEBUG for success and INFO otherwise, so a
    large batch at INFO level only shows what needs attention.
    """

    def __init__(self, session_id: str = "", backend: str = ""):
        self.session_id = session_id
        self.backend = backend
        self._logger = get_logger("batch")
        self._unsubscribe: Callable[[], None] | None = None

    def attach(self, bus: EventBus) -> None:
        self._unsubscribe = bus.subscribe(self.handle)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _emit(self, level: int, action: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        structured = {"session_id": self.session_id, "action": action, **fields}
        if self.backend and "backend" not in structured:
            structured["backend"] = self.backend
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    def handle(self, event: PipelineEvent) -> None:
        if event.session_id:
            self.session_id = event.session_id
        payload = dict(event.payload)

        if event.type == EventType.BATCH_STARTED:
            self._emit(logging.INFO, "batch_start", **payload)
        elif event.type == EventType.ITEM_COMPLETED:
            level = logging.DEBUG if payload.get("status") == "success" else logging.INFO
            self._emit(level, "item_outcome", **payload)
        elif event.type == EventType.BUDGET_ALERT:
            self._emit(logging.WARNING, "budget_alert", **payload)
        elif event.type == EventType.BREAKER_STATE:
            self._emit(logging.WARNING, "breaker_state", **payload)
        elif event.type == EventType.RESOURCE_WARNING:
            self._emit(logging.WARNING, "resource_warning", **payload)
        elif event.type == EventType.SHUTDOWN_REQUESTED:
            self._emit(logging.WARNING, "shutdown_requested", **payload)
        elif event.type == EventType.BATCH_FINISHED:
            self._emit(logging.INFO, "batch_end", **payload)
