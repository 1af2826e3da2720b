"""
Image Batch — Pipeline Type Definitions

Data structures shared by every pipeline component: work items,
per-item outcomes, the classification result contract and the
session record persisted by the result ledger.
"""

from __future__ import annotations

import enum
import hashlib
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union


# ─── Work Items ─────────────────────────────────────────────────────

class ItemStatus(str, enum.Enum):
    """Lifecycle states for a work item."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    UNPROCESSED = "unprocessed"   # left untouched by a shutdown; resumable


TERMINAL_STATUSES = frozenset({ItemStatus.SUCCESS, ItemStatus.FAILED, ItemStatus.SKIPPED})


def derive_item_id(source: str) -> str:
    """Stable id for a source reference (path or URL)."""
    return hashlib.sha256(source.encode("utf-8")).hexdigest()[:16]


@dataclass
class WorkItem:
    """
    One image to classify.

    The id is stable across runs so a resumed batch can reconcile
    against the result log. Status moves from PENDING to exactly one
    terminal state per session.
    """
    id: str
    source: str
    hints: dict[str, Any] = field(default_factory=dict)
    status: ItemStatus = ItemStatus.PENDING

    @staticmethod
    def create(source: str, hints: dict[str, Any] | None = None,
               item_id: str | None = None) -> WorkItem:
        return WorkItem(
            id=item_id or derive_item_id(source),
            source=source,
            hints=dict(hints or {}),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# ─── Classification Contract ────────────────────────────────────────

class ErrorClass(str, enum.Enum):
    """Classification of backend and pipeline errors."""
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    NETWORK = "network"
    AUTHENTICATION = "authentication"
    VALIDATION = "validation"
    CIRCUIT_OPEN = "circuit_open"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


TRANSIENT_ERROR_CLASSES = frozenset({
    ErrorClass.RATE_LIMITED,
    ErrorClass.TIMEOUT,
    ErrorClass.NETWORK,
})


@dataclass
class ClassificationResult:
    """
    What a backend returns for one image.

    The pipeline only reads cost_usd (budget) and the fact that the
    call succeeded; everything else is carried into the log verbatim.
    """
    category: str
    confidence: float
    cost_usd: float = 0.0
    latency_ms: float = 0.0
    tokens: dict[str, int] = field(default_factory=dict)
    model: str = ""
    raw: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "confidence": self.confidence,
            "costUsd": self.cost_usd,
            "latencyMs": self.latency_ms,
            "tokens": dict(self.tokens),
            "model": self.model,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ClassificationResult:
        return ClassificationResult(
            category=data.get("category", ""),
            confidence=float(data.get("confidence", 0.0)),
            cost_usd=float(data.get("costUsd", 0.0)),
            latency_ms=float(data.get("latencyMs", 0.0)),
            tokens=dict(data.get("tokens") or {}),
            model=data.get("model", ""),
        )


# ─── Outcomes ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class Success:
    result: ClassificationResult
    cost_usd: float
    latency_ms: float
    attempts: int = 1
    recorded_at: datetime | None = None   # set when read back from a result log

    @property
    def status(self) -> ItemStatus:
        return ItemStatus.SUCCESS


@dataclass(frozen=True)
class Failure:
    message: str
    error_class: ErrorClass
    attempts: int = 1

    @property
    def status(self) -> ItemStatus:
        return ItemStatus.FAILED


@dataclass(frozen=True)
class Skipped:
    reason: str

    @property
    def status(self) -> ItemStatus:
        return ItemStatus.SKIPPED

    @property
    def attempts(self) -> int:
        return 0


Outcome = Union[Success, Failure, Skipped]

BUDGET_EXCEEDED_REASON = "budget exceeded"


# ─── Session ────────────────────────────────────────────────────────

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_session_id() -> str:
    return f"batch-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


@dataclass
class Session:
    """
    Aggregate counters for one batch run.

    Invariant: successful + failed + skipped == completed <= total.
    """
    session_id: str
    start_time: str
    end_time: str | None = None
    total_items: int = 0
    completed_items: int = 0
    successful_items: int = 0
    failed_items: int = 0
    skipped_items: int = 0

    @staticmethod
    def create(session_id: str | None = None, total_items: int = 0) -> Session:
        return Session(
            session_id=session_id or generate_session_id(),
            start_time=utc_now_iso(),
            total_items=total_items,
        )

    def count(self, status: ItemStatus) -> None:
        if status == ItemStatus.SUCCESS:
            self.successful_items += 1
        elif status == ItemStatus.FAILED:
            self.failed_items += 1
        elif status == ItemStatus.SKIPPED:
            self.skipped_items += 1
        else:
            raise ValueError(f"Not a terminal status: {status}")
        self.completed_items += 1

    @property
    def is_consistent(self) -> bool:
        return (
            self.successful_items + self.failed_items + self.skipped_items
            == self.completed_items
            and self.completed_items <= self.total_items
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sessionId": self.session_id,
            "startTime": self.start_time,
            "totalItems": self.total_items,
            "completedItems": self.completed_items,
            "successfulItems": self.successful_items,
            "failedItems": self.failed_items,
            "skippedItems": self.skipped_items,
        }
        if self.end_time:
            data["endTime"] = self.end_time
        return data

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Session:
        return Session(
            session_id=data["sessionId"],
            start_time=data.get("startTime", ""),
            end_time=data.get("endTime"),
            total_items=int(data.get("totalItems", 0)),
            completed_items=int(data.get("completedItems", 0)),
            successful_items=int(data.get("successfulItems", 0)),
            failed_items=int(data.get("failedItems", 0)),
            skipped_items=int(data.get("skippedItems", 0)),
        )
