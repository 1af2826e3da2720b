"""
Image Batch — Pipeline Orchestrator

Runs one batch end to end:

    items ──► DispatchQueue(backend) ──► task:
                                          budget.reserve()
                                          RetryExecutor(CircuitBreaker(classify))
                                          budget.confirm() / release()
                                          ResultLedger.append_outcome()
                                          EventBus ──► ProgressReporter, BatchLogger

The orchestrator is the single submitter. It owns (creates or is handed)
every stateful component; nothing lives at module level.

Resume: outcomes already in the log are reconciled by item id and those
items are not resubmitted; the log ends with exactly one record per item.

Shutdown (signal, fatal resource condition, or fatal ledger error) runs
the ResourceGuard hooks in order:
    cancel + pause dispatch → wait for in-flight (bounded) →
    cancel queued → finalize ledger → stop progress
Items that never completed are reported as unprocessed and resume later.

Usage:
    orch = PipelineOrchestrator(settings, log_path="results.jsonl")
    report = orch.run(items, backend, resume=True)
    print(report.summary())
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Sequence

from batch_engine.backends import Backend
from batch_engine.budget import BudgetAlert, BudgetLedger, pricing_for
from batch_engine.circuit_breaker import BreakerRegistry, CircuitState
from batch_engine.config import PipelineSettings
from batch_engine.dispatch import DispatchQueues
from batch_engine.errors import (
    BatchCancelled,
    BatchSetupError,
    LedgerClosedError,
    LedgerWriteError,
    QueueClosedError,
    ResourceExhausted,
    classify_error,
)
from batch_engine.events import EventBus, EventType, PipelineEvent
from batch_engine.ledger import ResultLedger
from batch_engine.logging import BatchLogger
from batch_engine.progress import ProgressReporter, ProgressStats
from batch_engine.resources import MemorySample, ResourceGuard
from batch_engine.retry import RetryExecutor
from batch_engine.types import (
    BUDGET_EXCEEDED_REASON,
    Failure,
    ItemStatus,
    Outcome,
    Session,
    Skipped,
    Success,
    WorkItem,
)

logger = logging.getLogger("image_batch.orchestrator")

STATUS_COMPLETED = "completed"
STATUS_SHUTDOWN = "shutdown"


# ═══════════════════════════════════════════════════════════════════
# Report
# ═══════════════════════════════════════════════════════════════════

@dataclass
class BatchReport:
    """What happened in one run of the orchestrator."""
    session: Session
    status: str
    backend: str
    submitted: int
    previously_recorded: int
    outcomes: dict[str, Outcome] = field(default_factory=dict)
    unprocessed: list[str] = field(default_factory=list)
    progress: ProgressStats | None = None
    elapsed_s: float = 0.0
    shutdown_reason: str = ""
    breakers: dict[str, dict[str, Any]] = field(default_factory=dict)
    budget: dict[str, Any] = field(default_factory=dict)

    @property
    def total_cost(self) -> float:
        return sum(o.cost_usd for o in self.outcomes.values() if isinstance(o, Success))

    @property
    def is_complete(self) -> bool:
        return self.status == STATUS_COMPLETED and not self.unprocessed

    def summary(self) -> dict[str, Any]:
        return {
            "session_id": self.session.session_id,
            "status": self.status,
            "backend": self.backend,
            "total": self.session.total_items,
            "completed": self.session.completed_items,
            "successful": self.session.successful_items,
            "failed": self.session.failed_items,
            "skipped": self.session.skipped_items,
            "unprocessed": len(self.unprocessed),
            "submitted": self.submitted,
            "previously_recorded": self.previously_recorded,
            "cost_usd": round(self.total_cost, 6),
            "elapsed_s": round(self.elapsed_s, 2),
            "shutdown_reason": self.shutdown_reason or None,
        }


# ═══════════════════════════════════════════════════════════════════
# Orchestrator
# ═══════════════════════════════════════════════════════════════════

class PipelineOrchestrator:
    """
    One orchestrator per batch run.

    Components left as None are built from settings. An injected
    ResourceGuard must not be shared between runs (hooks accumulate).
    """

    def __init__(
        self,
        settings: PipelineSettings | None = None,
        log_path: str | Path = "results.jsonl",
        budget: BudgetLedger | None = None,
        breakers: BreakerRegistry | None = None,
        guard: ResourceGuard | None = None,
        sleep_fn: Callable[[float], None] | None = None,
        renderer: Callable[[ProgressStats], None] | None = None,
        install_signal_handlers: bool = False,
        subscribers: Sequence[Callable[[PipelineEvent], None]] = (),
    ):
        self.settings = settings or PipelineSettings()
        self.log_path = Path(log_path)
        self.cancel_event = threading.Event()
        self.bus = EventBus()

        self.budget = budget or BudgetLedger(
            self.settings.budget,
            warning_threshold=self.settings.budget_warning_threshold,
        )
        if self.budget.on_alert is None:
            self.budget.on_alert = self._on_budget_alert

        self.breakers = breakers or BreakerRegistry(
            self.settings.breaker,
            overrides=self.settings.breaker_overrides,
            on_transition=self._on_breaker_transition,
        )
        self.queues = DispatchQueues(self.settings.dispatch, cancel_event=self.cancel_event)
        self.retry = RetryExecutor(self.settings.retry, cancel_event=self.cancel_event, sleep_fn=sleep_fn)
        self.guard = guard or ResourceGuard(self.settings.resources, on_warning=self._on_memory_warning)
        self.progress = ProgressReporter(renderer=renderer, interval=self.settings.progress_interval)
        self.ledger: ResultLedger | None = None

        self._install_signals = install_signal_handlers
        self._subscribers = list(subscribers)
        self._session_id = ""
        self._outcomes: dict[str, Outcome] = {}
        self._outcomes_lock = threading.Lock()
        self._fatal: BaseException | None = None
        self._ran = False

    # ── Event bridges ────────────────────────────────────────

    def _publish(self, event_type: EventType, **payload: Any) -> None:
        self.bus.publish(PipelineEvent(event_type, self._session_id, payload))

    def _on_budget_alert(self, alert: BudgetAlert) -> None:
        payload = alert.to_dict()
        payload["alert_type"] = payload.pop("type")
        self._publish(EventType.BUDGET_ALERT, **payload)

    def _on_breaker_transition(self, backend: str, old: CircuitState, new: CircuitState) -> None:
        self._publish(EventType.BREAKER_STATE, backend=backend, previous=old.value, state=new.value)

    def _on_memory_warning(self, sample: MemorySample) -> None:
        self._publish(EventType.RESOURCE_WARNING, **sample.to_dict())

    # ── Per-item task ────────────────────────────────────────

    def _classify(self, item: WorkItem, backend: Backend) -> Outcome:
        """Budget gate + retry(breaker(classify)) for one item. Never records."""
        pricing = pricing_for(backend.name, self.settings.pricing)
        reservation = self.budget.reserve(backend.name, pricing.estimate())
        if reservation is None:
            return Skipped(BUDGET_EXCEEDED_REASON)

        breaker = self.breakers.get(backend.name)
        timeout = self.settings.item_timeout
        try:
            result = self.retry.execute(
                lambda: breaker.execute(lambda: backend.classify(item, timeout)),
                label=item.id,
            )
        except BatchCancelled:
            self.budget.release(reservation)
            raise
        except Exception as e:
            self.budget.release(reservation)
            return Failure(
                message=str(e)[:500],
                error_class=classify_error(e),
                attempts=getattr(e, "attempts", 1),
            )

        value = result.value
        self.budget.confirm(reservation, value.cost_usd)
        return Success(
            result=value,
            cost_usd=value.cost_usd,
            latency_ms=value.latency_ms,
            attempts=result.attempts,
        )

    def _process(self, item: WorkItem, backend: Backend) -> Outcome | None:
        """Runs on a dispatch worker. Returns None when the item stays unprocessed."""
        if self.cancel_event.is_set():
            return None
        try:
            outcome = self._classify(item, backend)
        except BatchCancelled:
            logger.debug("Item %s cancelled, left unprocessed", item.id)
            return None

        try:
            self.ledger.append_outcome(item, outcome)
        except LedgerClosedError:
            logger.warning("Ledger closed before item %s was recorded, left unprocessed", item.id)
            return None
        except LedgerWriteError as e:
            self._fail(e, f"ledger write failed for item {item.id}")
            raise

        with self._outcomes_lock:
            self._outcomes[item.id] = outcome
        payload: dict[str, Any] = {
            "id": item.id,
            "source": item.source,
            "status": outcome.status.value,
            "attempts": outcome.attempts,
            "backend": backend.name,
        }
        if isinstance(outcome, Success):
            payload["cost_usd"] = outcome.cost_usd
            payload["category"] = outcome.result.category
        elif isinstance(outcome, Failure):
            payload["error_class"] = outcome.error_class.value
            payload["error"] = outcome.message[:200]
        else:
            payload["reason"] = outcome.reason
        self._publish(EventType.ITEM_COMPLETED, **payload)
        return outcome

    def _fail(self, error: BaseException, reason: str) -> None:
        if self._fatal is None:
            self._fatal = error
        self.guard.fatal = True
        logger.error("Fatal batch error: %s", reason)
        self.guard.request_shutdown(reason)

    # ── Shutdown sequence ────────────────────────────────────

    def _register_shutdown_hooks(self) -> None:
        timeout = self.settings.resources.shutdown_timeout

        def cancel_dispatch():
            self.cancel_event.set()
            self.queues.pause_all()
            self._publish(EventType.SHUTDOWN_REQUESTED, reason=self.guard.shutdown_reason)

        def wait_in_flight():
            if not self.queues.wait_in_flight(timeout):
                logger.warning("In-flight tasks still running after %.1fs, left unprocessed", timeout)

        def cancel_queued():
            self.queues.cancel_pending()

        def finalize_ledger():
            self.ledger.finalize()

        def stop_progress():
            self.bus.flush()
            self.progress.stop()

        self.guard.on_shutdown("cancel_dispatch", cancel_dispatch)
        self.guard.on_shutdown("wait_in_flight", wait_in_flight)
        self.guard.on_shutdown("cancel_queued", cancel_queued)
        self.guard.on_shutdown("finalize_ledger", finalize_ledger)
        self.guard.on_shutdown("stop_progress", stop_progress)

    # ── Run ──────────────────────────────────────────────────

    def _prepare(self, items: Sequence[WorkItem]) -> list[WorkItem]:
        unique: dict[str, WorkItem] = {}
        for item in items:
            if item.id in unique:
                logger.warning("Duplicate work item id %s (%s), keeping the first", item.id, item.source)
                continue
            unique[item.id] = item
        return list(unique.values())

    def _submit_all(self, items: list[WorkItem], backend: Backend, concurrency: int | None) -> dict[str, Future]:
        queue = self.queues.get(backend.name, concurrency)
        max_depth = self.settings.resources.max_queue_depth
        futures: dict[str, Future] = {}

        for item in items:
            while not self.guard.can_dispatch() and not self.cancel_event.is_set():
                if self.guard.shutdown_requested:
                    break
                self.cancel_event.wait(0.2)
            if self.cancel_event.is_set() or self.guard.shutdown_requested:
                break
            if not self.guard.is_queue_depth_valid(queue.pending + 1):
                queue.wait_for_capacity(max_depth)
            try:
                futures[item.id] = queue.submit(lambda item=item: self._process(item, backend))
            except QueueClosedError:
                break
        return futures

    def _await(self, futures: dict[str, Future]) -> None:
        outstanding = set(futures.values())
        while outstanding:
            done, outstanding = wait(outstanding, timeout=0.5, return_when=FIRST_COMPLETED)
            if self.guard.shutdown_complete:
                return
            for future in done:
                if future.cancelled():
                    continue
                error = future.exception()
                if error is None or isinstance(error, (BatchCancelled, QueueClosedError)):
                    continue
                if isinstance(error, LedgerWriteError):
                    continue
                # unexpected task crash; the item stays unprocessed
                logger.error("Task crashed: %s", error, exc_info=error)

    def run(
        self,
        items: Sequence[WorkItem],
        backend: Backend | None,
        resume: bool = False,
        overwrite: bool = False,
        concurrency: int | None = None,
    ) -> BatchReport:
        """
        Process every item through the pipeline.

        Raises:
            BatchSetupError: no backend, no items, unusable log path
            LedgerWriteError: an outcome could not be recorded (after shutdown)
            ResourceExhausted: memory ceiling hit under the shutdown policy
        """
        if self._ran:
            raise BatchSetupError("PipelineOrchestrator.run() can only be called once")
        self._ran = True
        t0 = time.monotonic()
        try:
            items, previous, session = self._open(items, backend, resume, overwrite)
        except BatchSetupError:
            self.bus.close()
            self.queues.close_all()
            raise
        self._session_id = session.session_id

        for item in items:
            if item.id in previous:
                item.status = previous[item.id].status
        to_submit = [item for item in items if item.id not in previous]

        batch_logger = BatchLogger(session.session_id, backend.name)
        batch_logger.attach(self.bus)
        self.progress.attach(self.bus)
        for handler in self._subscribers:
            self.bus.subscribe(handler)

        already: dict[ItemStatus, int] = {}
        for outcome in previous.values():
            already[outcome.status] = already.get(outcome.status, 0) + 1
        self.progress.start(total=len(items), already_completed=already)

        self._register_shutdown_hooks()
        if self._install_signals:
            self.guard.install_signal_handlers()
        self.guard.start()

        self._publish(
            EventType.BATCH_STARTED,
            backend=backend.name,
            total=len(items),
            to_submit=len(to_submit),
            previously_recorded=len(previous),
            resume=resume,
        )
        logger.info(
            "Batch started: session=%s backend=%s total=%d submitting=%d resumed=%d",
            session.session_id, backend.name, len(items), len(to_submit), len(previous),
        )

        try:
            futures = self._submit_all(to_submit, backend, concurrency)
            self._await(futures)
        finally:
            if self.guard.shutdown_requested:
                self.guard.wait_for_shutdown()
            else:
                self._complete()
            if self._install_signals:
                self.guard.restore_signal_handlers()

        report = self._build_report(items, backend, len(to_submit), len(previous), time.monotonic() - t0)
        self._publish(EventType.BATCH_FINISHED, **report.summary())
        self.bus.close()
        batch_logger.detach()
        self.queues.close_all()

        if self._fatal is not None:
            self.ledger.flush_checkpoint()
            raise self._fatal
        if self.guard.fatal:
            raise ResourceExhausted(f"Batch aborted: {self.guard.shutdown_reason}")
        return report

    def _open(
        self,
        items: Sequence[WorkItem],
        backend: Backend | None,
        resume: bool,
        overwrite: bool,
    ) -> tuple[list[WorkItem], dict[str, Outcome], Session]:
        """Validate the inputs, load previous outcomes and open the result log."""
        if backend is None:
            raise BatchSetupError("No classification backend configured")
        items = self._prepare(items)
        if not items:
            raise BatchSetupError("No work items found")

        previous: dict[str, Outcome] = {}
        if resume:
            all_previous = ResultLedger.load_previous_outcomes(self.log_path)
            ids = {item.id for item in items}
            previous = {k: v for k, v in all_previous.items() if k in ids}
            if len(previous) != len(all_previous):
                logger.warning(
                    "Log has %d records for items not in this batch; they are ignored",
                    len(all_previous) - len(previous),
                )
            for outcome in previous.values():
                if isinstance(outcome, Success):
                    self.budget.record_prior_spend(backend.name, outcome.cost_usd, when=outcome.recorded_at)

        self.ledger = ResultLedger(
            self.log_path,
            backend=backend.name,
            write_retries=self.settings.ledger_write_retries,
            fsync=self.settings.ledger_fsync,
        )
        session = self.ledger.open(len(items), previous=previous, resume=resume, overwrite=overwrite)
        return items, previous, session

    def _complete(self) -> None:
        """Normal end of batch: the same teardown as shutdown, minus cancellation."""
        self.guard.stop()
        self.ledger.finalize()
        self.bus.flush()
        self.progress.stop()

    def _build_report(
        self,
        items: list[WorkItem],
        backend: Backend,
        submitted: int,
        previously_recorded: int,
        elapsed: float,
    ) -> BatchReport:
        session = self.ledger.snapshot()
        unprocessed = []
        for item in items:
            if not self.ledger.has_recorded(item.id):
                item.status = ItemStatus.UNPROCESSED
                unprocessed.append(item.id)

        status = STATUS_SHUTDOWN if self.guard.shutdown_requested else STATUS_COMPLETED
        with self._outcomes_lock:
            outcomes = dict(self._outcomes)

        report = BatchReport(
            session=session,
            status=status,
            backend=backend.name,
            submitted=submitted,
            previously_recorded=previously_recorded,
            outcomes=outcomes,
            unprocessed=unprocessed,
            progress=self.progress.stats(),
            elapsed_s=elapsed,
            shutdown_reason=self.guard.shutdown_reason,
            breakers=self.breakers.all_stats(),
            budget=self.budget.status(),
        )
        logger.info(
            "Batch finished: session=%s status=%s completed=%d/%d success=%d failed=%d "
            "skipped=%d unprocessed=%d cost=$%.4f",
            session.session_id, status, session.completed_items, session.total_items,
            session.successful_items, session.failed_items, session.skipped_items,
            len(unprocessed), report.total_cost,
        )
        return report

    def request_shutdown(self, reason: str = "requested") -> bool:
        """Programmatic equivalent of SIGINT."""
        return self.guard.request_shutdown(reason)
