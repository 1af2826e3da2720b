"""
Image Batch — Budget Ledger

Gate-keeps spend before it happens:
  - Ceilings per scope: daily, weekly, monthly, per-request, per-backend
  - Atomic reserve-then-confirm: reserve() checks every ceiling and
    records the reservation under one lock, so concurrent dispatch can
    never let accepted spend pass a ceiling
  - confirm() replaces the reservation with the actual cost;
    release() drops it (a rejected or failed request costs nothing)
  - Alerts at a warning threshold (percent of a ceiling) and on breach

Windows open on calendar boundaries computed once at open time (local
midnight, week start, first of the month) and roll over when the clock
passes their end. Accepted spend is never reduced.

Pricing table lives in batch_config.yaml:
    pricing:
      gemini:
        input_per_million: 0.075
        output_per_million: 0.30

Usage:
    ledger = BudgetLedger(BudgetLimits(daily=10.0))
    reservation = ledger.reserve("gemini", estimated_cost=0.30)
    if reservation is None:
        ...  # skipped: budget exceeded
    ledger.confirm(reservation, actual_cost=0.28)
"""

from __future__ import annotations

import enum
import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

logger = logging.getLogger("image_batch.budget")

# Float tolerance for ceiling comparisons ($1e-9)
EPSILON = 1e-9

# datetime.weekday() of the first day of a budget week (Sunday)
WEEK_START = 6


# ═══════════════════════════════════════════════════════════════════
# Pricing
# ═══════════════════════════════════════════════════════════════════

@dataclass
class BackendPricing:
    """Pricing per million tokens plus a per-image token estimate."""
    backend: str
    input_per_million: float
    output_per_million: float
    estimated_input_tokens: int = 1500
    estimated_output_tokens: int = 300
    per_image: float | None = None   # flat estimate overrides tokens

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        input_cost = (input_tokens / 1_000_000) * self.input_per_million
        output_cost = (output_tokens / 1_000_000) * self.output_per_million
        return input_cost + output_cost

    def estimate(self) -> float:
        if self.per_image is not None:
            return self.per_image
        return self.cost(self.estimated_input_tokens, self.estimated_output_tokens)


DEFAULT_PRICING: dict[str, BackendPricing] = {
    "gemini": BackendPricing("gemini", 0.075, 0.30),
    "claude": BackendPricing("claude", 3.0, 15.0),
    "openai": BackendPricing("openai", 10.0, 30.0),
    "bedrock": BackendPricing("bedrock", 3.0, 15.0),
}

# Conservative estimate for backends without pricing (per million tokens)
UNKNOWN_BACKEND_PRICING = BackendPricing("unknown", 1.00, 3.00)


def load_pricing(cfg: dict[str, Any] | None) -> dict[str, BackendPricing]:
    """Build the pricing table from the `pricing` config section."""
    result = dict(DEFAULT_PRICING)
    for backend, prices in (cfg or {}).items():
        prices = prices or {}
        per_image = prices.get("per_image")
        result[backend] = BackendPricing(
            backend=backend,
            input_per_million=float(prices.get("input_per_million", 0.0)),
            output_per_million=float(prices.get("output_per_million", 0.0)),
            estimated_input_tokens=int(prices.get("estimated_input_tokens", 1500)),
            estimated_output_tokens=int(prices.get("estimated_output_tokens", 300)),
            per_image=float(per_image) if per_image is not None else None,
        )
    return result


def pricing_for(backend: str, pricing: dict[str, BackendPricing]) -> BackendPricing:
    found = pricing.get(backend)
    if found is None:
        logger.warning(
            "No pricing for backend '%s', using conservative estimate "
            "($%.2f/M input, $%.2f/M output). Add it to batch_config.yaml -> pricing.",
            backend, UNKNOWN_BACKEND_PRICING.input_per_million,
            UNKNOWN_BACKEND_PRICING.output_per_million,
        )
        found = BackendPricing(
            backend, UNKNOWN_BACKEND_PRICING.input_per_million,
            UNKNOWN_BACKEND_PRICING.output_per_million,
        )
        pricing[backend] = found
    return found


# ═══════════════════════════════════════════════════════════════════
# Limits, Windows, Alerts
# ═══════════════════════════════════════════════════════════════════

class BudgetScope(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    PER_REQUEST = "per-request"
    BACKEND = "per-backend"


@dataclass
class BudgetLimits:
    """Ceilings in USD. None means no ceiling for that scope."""
    daily: float | None = None
    weekly: float | None = None
    monthly: float | None = None
    per_request: float | None = None
    backend_limits: dict[str, float] = field(default_factory=dict)

    @staticmethod
    def from_dict(cfg: dict[str, Any]) -> BudgetLimits:
        def _opt(key: str) -> float | None:
            value = cfg.get(key)
            return float(value) if value is not None else None

        return BudgetLimits(
            daily=_opt("daily"),
            weekly=_opt("weekly"),
            monthly=_opt("monthly"),
            per_request=_opt("per_request"),
            backend_limits={k: float(v) for k, v in (cfg.get("backends") or {}).items()},
        )


@dataclass
class BudgetWindow:
    """Spend accumulator for one scope (and backend, for per-backend)."""
    scope: BudgetScope
    limit: float | None
    start: datetime | None = None
    end: datetime | None = None       # None = never rolls over
    backend: str | None = None
    spent: float = 0.0
    reserved: float = 0.0

    @property
    def committed(self) -> float:
        return self.spent + self.reserved

    def would_exceed(self, amount: float) -> bool:
        return self.limit is not None and self.committed + amount > self.limit + EPSILON

    def percentage(self, extra: float = 0.0) -> float | None:
        if not self.limit:
            return None
        return (self.committed + extra) / self.limit * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope.value,
            "backend": self.backend,
            "spent": round(self.spent, 6),
            "reserved": round(self.reserved, 6),
            "limit": self.limit,
            "remaining": round(self.limit - self.committed, 6) if self.limit is not None else None,
            "percentage": round(self.percentage(), 1) if self.limit else None,
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
        }


def _align(when: datetime, now: datetime) -> datetime:
    """Express `when` the way the clock does (naive local or aware)."""
    if when.tzinfo is not None and now.tzinfo is None:
        return when.astimezone().replace(tzinfo=None)
    if when.tzinfo is None and now.tzinfo is not None:
        return when.replace(tzinfo=now.tzinfo)
    return when


def window_bounds(scope: BudgetScope, now: datetime) -> tuple[datetime, datetime]:
    """Calendar boundaries of the window containing `now`."""
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if scope == BudgetScope.DAILY:
        return midnight, midnight + timedelta(days=1)
    if scope == BudgetScope.WEEKLY:
        start = midnight - timedelta(days=(now.weekday() - WEEK_START) % 7)
        return start, start + timedelta(days=7)
    if scope == BudgetScope.MONTHLY:
        start = midnight.replace(day=1)
        if start.month == 12:
            end = start.replace(year=start.year + 1, month=1)
        else:
            end = start.replace(month=start.month + 1)
        return start, end
    raise ValueError(f"Scope {scope} has no calendar window")


@dataclass
class BudgetAlert:
    type: str                      # "warning" | "exceeded"
    scope: BudgetScope
    current_spend: float
    limit: float
    percentage: float
    message: str
    timestamp: datetime
    backend: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "scope": self.scope.value,
            "backend": self.backend,
            "currentSpend": round(self.current_spend, 6),
            "limit": self.limit,
            "percentage": round(self.percentage, 1),
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class Reservation:
    """Provisional spend held against every applicable window."""
    id: int
    backend: str
    amount: float
    created_at: datetime
    settled: bool = False


# ═══════════════════════════════════════════════════════════════════
# Budget Ledger
# ═══════════════════════════════════════════════════════════════════

_CALENDAR_SCOPES = (BudgetScope.DAILY, BudgetScope.WEEKLY, BudgetScope.MONTHLY)


class BudgetLedger:
    """
    Thread-safe budget ledger. One instance per batch, injected by the
    orchestrator.

    All reads and writes of window state happen under self._lock;
    reserve() is the atomic check-and-update.
    """

    def __init__(
        self,
        limits: BudgetLimits | None = None,
        warning_threshold: float = 80.0,
        clock: Callable[[], datetime] = datetime.now,
        on_alert: Callable[[BudgetAlert], None] | None = None,
    ):
        self.limits = limits or BudgetLimits()
        self.warning_threshold = warning_threshold
        self._clock = clock
        self.on_alert = on_alert
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

        now = self._clock()
        self._windows: dict[BudgetScope, BudgetWindow] = {}
        for scope in _CALENDAR_SCOPES:
            self._windows[scope] = self._open_window(scope, now)
        self._backend_windows: dict[str, BudgetWindow] = {}
        self._outstanding: dict[int, Reservation] = {}
        self._alerts: list[BudgetAlert] = []
        self._alerted: set[tuple] = set()

    # ── Windows ──────────────────────────────────────────────

    def _limit_for(self, scope: BudgetScope) -> float | None:
        return {
            BudgetScope.DAILY: self.limits.daily,
            BudgetScope.WEEKLY: self.limits.weekly,
            BudgetScope.MONTHLY: self.limits.monthly,
        }[scope]

    def _open_window(self, scope: BudgetScope, now: datetime) -> BudgetWindow:
        start, end = window_bounds(scope, now)
        return BudgetWindow(scope=scope, limit=self._limit_for(scope), start=start, end=end)

    def _roll_windows(self, now: datetime) -> None:
        # Caller holds self._lock
        for scope in _CALENDAR_SCOPES:
            window = self._windows[scope]
            if window.end is not None and now >= window.end:
                fresh = self._open_window(scope, now)
                # Outstanding reservations move with the calendar
                fresh.reserved = window.reserved
                self._windows[scope] = fresh
                logger.info(
                    "Budget window rolled over: scope=%s spent=%.4f new_start=%s",
                    scope.value, window.spent, fresh.start.isoformat(),
                )

    def _backend_window(self, backend: str) -> BudgetWindow:
        # Caller holds self._lock
        window = self._backend_windows.get(backend)
        if window is None:
            window = BudgetWindow(
                scope=BudgetScope.BACKEND,
                limit=self.limits.backend_limits.get(backend),
                backend=backend,
            )
            self._backend_windows[backend] = window
        return window

    def _applicable(self, backend: str) -> list[BudgetWindow]:
        return [*(self._windows[s] for s in _CALENDAR_SCOPES), self._backend_window(backend)]

    # ── Alerts ───────────────────────────────────────────────

    def _alert(self, kind: str, window: BudgetWindow, amount: float, now: datetime) -> None:
        # Caller holds self._lock; one alert per kind per window
        key = (kind, window.scope, window.backend, window.start)
        if key in self._alerted:
            return
        self._alerted.add(key)
        current = window.committed + amount
        pct = current / window.limit * 100 if window.limit else 100.0
        label = f"{window.backend} budget" if window.backend else f"{window.scope.value.capitalize()} budget"
        if kind == "exceeded":
            message = f"{label} exceeded: ${current:.2f} > ${window.limit}"
        else:
            message = f"{label} at {pct:.0f}%: ${current:.2f} of ${window.limit}"
        alert = BudgetAlert(
            type=kind,
            scope=window.scope,
            backend=window.backend,
            current_spend=current,
            limit=window.limit,
            percentage=pct,
            message=message,
            timestamp=now,
        )
        self._alerts.append(alert)
        logger.warning("Budget alert: type=%s scope=%s %s", kind, window.scope.value, message)
        if self.on_alert is not None:
            try:
                self.on_alert(alert)
            except Exception:
                logger.exception("Budget alert callback failed")

    def _check_warnings(self, windows: list[BudgetWindow], now: datetime) -> None:
        for window in windows:
            pct = window.percentage()
            if pct is not None and self.warning_threshold <= pct:
                if window.limit is not None and window.committed >= window.limit - EPSILON:
                    self._alert("exceeded", window, 0.0, now)
                else:
                    self._alert("warning", window, 0.0, now)

    # ── Queries ──────────────────────────────────────────────

    def _denial(self, backend: str, amount: float, now: datetime) -> BudgetWindow | None:
        # Caller holds self._lock
        if self.limits.per_request is not None and amount > self.limits.per_request + EPSILON:
            return BudgetWindow(scope=BudgetScope.PER_REQUEST, limit=self.limits.per_request)
        for window in self._applicable(backend):
            if window.would_exceed(amount):
                return window
        return None

    def can_afford(self, backend: str, estimated_cost: float) -> bool:
        """Check-only: would a request of this size fit every ceiling right now?"""
        with self._lock:
            now = self._clock()
            self._roll_windows(now)
            return self._denial(backend, estimated_cost, now) is None

    # ── Reserve / Confirm / Release ──────────────────────────

    def reserve(self, backend: str, estimated_cost: float) -> Reservation | None:
        """
        Atomically check every ceiling and hold estimated_cost against them.

        Returns None (and records an "exceeded" alert) when any ceiling
        would be breached; nothing is reserved in that case.
        """
        if estimated_cost < 0:
            raise ValueError(f"estimated_cost must be >= 0, got {estimated_cost}")
        with self._lock:
            now = self._clock()
            self._roll_windows(now)
            denied = self._denial(backend, estimated_cost, now)
            if denied is not None:
                self._alert("exceeded", denied, estimated_cost, now)
                logger.debug(
                    "Budget denied: backend=%s cost=%.6f scope=%s",
                    backend, estimated_cost, denied.scope.value,
                )
                return None

            windows = self._applicable(backend)
            for window in windows:
                window.reserved += estimated_cost
            reservation = Reservation(
                id=next(self._ids), backend=backend,
                amount=estimated_cost, created_at=now,
            )
            self._outstanding[reservation.id] = reservation
            self._check_warnings(windows, now)
            return reservation

    def _settle(self, reservation: Reservation) -> list[BudgetWindow]:
        # Caller holds self._lock
        if reservation.settled or reservation.id not in self._outstanding:
            raise ValueError(f"Reservation {reservation.id} already settled")
        reservation.settled = True
        del self._outstanding[reservation.id]
        windows = self._applicable(reservation.backend)
        for window in windows:
            window.reserved = max(0.0, window.reserved - reservation.amount)
        return windows

    def confirm(self, reservation: Reservation, actual_cost: float) -> None:
        """Replace the reservation with the actual cost."""
        with self._lock:
            now = self._clock()
            self._roll_windows(now)
            windows = self._settle(reservation)
            for window in windows:
                window.spent += max(0.0, actual_cost)
            self._check_warnings(windows, now)

    def release(self, reservation: Reservation) -> None:
        """Drop a reservation without spending anything."""
        with self._lock:
            self._roll_windows(self._clock())
            self._settle(reservation)

    def record_prior_spend(self, backend: str, amount: float, when: datetime | None = None) -> None:
        """Account spend from an earlier run (e.g. a resumed log)."""
        with self._lock:
            now = self._clock()
            self._roll_windows(now)
            when = _align(when, now) if when is not None else now
            for window in self._applicable(backend):
                in_window = window.start is None or (window.start <= when < window.end)
                if in_window:
                    window.spent += max(0.0, amount)

    # ── Configuration ────────────────────────────────────────

    def update_limits(self, **changes: Any) -> None:
        """Raise or lower ceilings; a raised ceiling re-opens denied scopes."""
        with self._lock:
            for key, value in changes.items():
                if not hasattr(self.limits, key):
                    raise ValueError(f"Unknown budget limit: {key}")
                setattr(self.limits, key, value)
            for scope in _CALENDAR_SCOPES:
                self._windows[scope].limit = self._limit_for(scope)
            for backend, window in self._backend_windows.items():
                window.limit = self.limits.backend_limits.get(backend)
            self._alerted.clear()
        logger.info("Budget limits updated: %s", changes)

    def set_warning_threshold(self, threshold: float) -> None:
        with self._lock:
            self.warning_threshold = max(0.0, min(100.0, threshold))
        logger.info("Budget warning threshold updated: %.0f%%", self.warning_threshold)

    # ── Inspection ───────────────────────────────────────────

    @property
    def alerts(self) -> list[BudgetAlert]:
        with self._lock:
            return list(self._alerts)

    def recent_alerts(self, count: int = 10) -> list[BudgetAlert]:
        with self._lock:
            return self._alerts[-count:]

    def clear_alerts(self) -> None:
        with self._lock:
            self._alerts.clear()
            self._alerted.clear()

    def spent(self, scope: BudgetScope = BudgetScope.DAILY, backend: str | None = None) -> float:
        with self._lock:
            self._roll_windows(self._clock())
            if scope == BudgetScope.BACKEND:
                return self._backend_window(backend or "").spent
            return self._windows[scope].spent

    def status(self) -> dict[str, Any]:
        with self._lock:
            self._roll_windows(self._clock())
            return {
                "daily": self._windows[BudgetScope.DAILY].to_dict(),
                "weekly": self._windows[BudgetScope.WEEKLY].to_dict(),
                "monthly": self._windows[BudgetScope.MONTHLY].to_dict(),
                "per_request_limit": self.limits.per_request,
                "by_backend": {b: w.to_dict() for b, w in self._backend_windows.items()},
                "outstanding_reservations": len(self._outstanding),
                "alerts": [a.to_dict() for a in self._alerts],
            }
