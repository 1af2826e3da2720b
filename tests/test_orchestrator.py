"""
Image Batch — Pipeline Orchestrator Tests

End-to-end runs against scripted in-process backends.

Tests:
  - Every item recorded exactly once; checkpoint matches the log
  - Retry, terminal failures and attempt counts reach the log
  - Resume submits only the items missing from the log
  - Budget ceiling turns the remainder into skipped items
  - A tripped breaker fails fast without calling the backend,
    and never affects another backend
  - Shutdown mid-batch: recorded + unprocessed == total, log consistent
  - Ledger write failure is fatal and raised to the caller
  - Memory ceiling under the shutdown policy raises ResourceExhausted
"""

import json
import os
import shutil
import sys
import tempfile
import threading
import time
import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from batch_coordinator.orchestrator import STATUS_COMPLETED, STATUS_SHUTDOWN, PipelineOrchestrator
from batch_engine.budget import BackendPricing, BudgetLimits
from batch_engine.circuit_breaker import BreakerConfig, BreakerRegistry, CircuitState
from batch_engine.config import PipelineSettings
from batch_engine.errors import (
    BatchSetupError, LedgerWriteError, NetworkError, ResourceExhausted, ValidationError,
)
from batch_engine.events import EventType, PipelineEvent
from batch_engine.ledger import ResultLedger, checkpoint_path_for
from batch_engine.resources import POLICY_SHUTDOWN, ResourceGuard, ResourceLimits
from batch_engine.retry import RetryPolicy
from batch_engine.types import ClassificationResult, ErrorClass, Failure, ItemStatus, Skipped, Success, WorkItem


class ScriptedBackend:
    """
    In-process backend. `errors` maps a source to the exceptions raised
    on successive calls; once exhausted the call succeeds.
    """
    def __init__(self, name="fake", errors=None, cost=0.01, on_call=None, always_fail=None):
        self.name = name
        self.errors = {k: list(v) for k, v in (errors or {}).items()}
        self.cost = cost
        self.on_call = on_call
        self.always_fail = always_fail
        self.calls = []
        self._lock = threading.Lock()

    def classify(self, item, timeout=None):
        with self._lock:
            self.calls.append(item.id)
            n = len(self.calls)
            pending = self.errors.get(item.source)
            error = pending.pop(0) if pending else None
        if self.on_call is not None:
            self.on_call(item, n)
        if self.always_fail is not None:
            raise self.always_fail
        if error is not None:
            raise error
        return ClassificationResult(category="Art", confidence=0.9, cost_usd=self.cost, latency_ms=5.0)


def make_items(n, prefix="img"):
    return [WorkItem.create(f"/data/{prefix}-{i:03d}.jpg") for i in range(n)]


def make_settings(**overrides):
    settings = PipelineSettings(
        retry=RetryPolicy(max_attempts=3, initial_delay=0.01),
        breaker=BreakerConfig(failure_threshold=100),
        ledger_fsync=False,
        resources=ResourceLimits(interval=60, shutdown_timeout=5),
    )
    for backend in ("fake", "down", "up"):
        settings.pricing[backend] = BackendPricing(backend, 0.0, 0.0, per_image=0.01)
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


def read_log(path):
    with open(path, encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]


def read_checkpoint(path):
    with open(checkpoint_path_for(path), encoding="utf-8") as f:
        return json.load(f)


class OrchestratorTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.log_path = os.path.join(self.tmp, "results.jsonl")
        self.events = []

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def make_orchestrator(self, settings=None, **kwargs):
        kwargs.setdefault("sleep_fn", lambda s: None)
        kwargs.setdefault("subscribers", [self.events.append])
        return PipelineOrchestrator(settings or make_settings(), log_path=self.log_path, **kwargs)

    def assertLogConsistent(self, report, total):
        records = read_log(self.log_path)
        ids = [r["id"] for r in records]
        self.assertEqual(len(ids), len(set(ids)))
        checkpoint = read_checkpoint(self.log_path)
        self.assertEqual(checkpoint["completedItems"], len(records))
        self.assertEqual(report.session.completed_items, len(records))
        self.assertTrue(report.session.is_consistent)
        self.assertEqual(len(records) + len(report.unprocessed), total)
        return records


class TestExactlyOnce(OrchestratorTestCase):

    def test_all_items_recorded_once(self):
        items = make_items(25)
        backend = ScriptedBackend()
        report = self.make_orchestrator().run(items, backend, concurrency=4)

        self.assertEqual(report.status, STATUS_COMPLETED)
        self.assertTrue(report.is_complete)
        records = self.assertLogConsistent(report, 25)
        self.assertEqual({r["id"] for r in records}, {i.id for i in items})
        self.assertEqual(sorted(backend.calls), sorted(i.id for i in items))
        self.assertTrue(all(i.status == ItemStatus.SUCCESS for i in items))
        self.assertAlmostEqual(report.total_cost, 0.25)
        self.assertIn("endTime", read_checkpoint(self.log_path))

    def test_duplicate_items_collapsed(self):
        item = WorkItem.create("/data/same.jpg")
        twin = WorkItem.create("/data/same.jpg")
        backend = ScriptedBackend()
        report = self.make_orchestrator().run([item, twin], backend)
        self.assertEqual(len(read_log(self.log_path)), 1)
        self.assertEqual(report.session.total_items, 1)
        self.assertEqual(len(backend.calls), 1)

    def test_events_published(self):
        self.make_orchestrator().run(make_items(3), ScriptedBackend())
        types = [e.type for e in self.events]
        self.assertEqual(types[0], EventType.BATCH_STARTED)
        self.assertEqual(types[-1], EventType.BATCH_FINISHED)
        self.assertEqual(types.count(EventType.ITEM_COMPLETED), 3)
        self.assertEqual(self.events[-1].payload["completed"], 3)


class TestOutcomes(OrchestratorTestCase):

    def test_retry_and_failures(self):
        items = make_items(4)
        backend = ScriptedBackend(errors={
            items[0].source: [NetworkError("reset")],
            items[1].source: [NetworkError("reset")] * 3,
            items[2].source: [ValidationError("unsupported format")],
        })
        report = self.make_orchestrator().run(items, backend, concurrency=2)
        outcomes = report.outcomes

        self.assertIsInstance(outcomes[items[0].id], Success)
        self.assertEqual(outcomes[items[0].id].attempts, 2)
        self.assertIsInstance(outcomes[items[1].id], Failure)
        self.assertEqual(outcomes[items[1].id].error_class, ErrorClass.NETWORK)
        self.assertEqual(outcomes[items[1].id].attempts, 3)
        self.assertEqual(outcomes[items[2].id].error_class, ErrorClass.VALIDATION)
        self.assertEqual(outcomes[items[2].id].attempts, 1)
        self.assertIsInstance(outcomes[items[3].id], Success)

        by_id = {r["id"]: r for r in self.assertLogConsistent(report, 4)}
        self.assertEqual(by_id[items[1].id]["error"]["code"], "network")
        self.assertEqual(by_id[items[1].id]["attempts"], 3)
        self.assertEqual(report.session.failed_items, 2)


class TestResume(OrchestratorTestCase):

    def test_resume_submits_only_missing(self):
        items = make_items(10)
        first = self.make_orchestrator().run(items[:4], ScriptedBackend())

        backend = ScriptedBackend()
        report = self.make_orchestrator().run(make_items(10), backend, resume=True)

        self.assertEqual(report.previously_recorded, 4)
        self.assertEqual(report.submitted, 6)
        self.assertEqual(len(backend.calls), 6)
        self.assertNotIn(items[0].id, backend.calls)
        self.assertEqual(report.session.session_id, first.session.session_id)
        self.assertEqual(report.session.completed_items, 10)
        self.assertEqual(report.progress.completed, 10)
        self.assertLogConsistent(report, 10)

    def test_existing_log_needs_resume_or_overwrite(self):
        self.make_orchestrator().run(make_items(2), ScriptedBackend())
        with self.assertRaises(BatchSetupError):
            self.make_orchestrator().run(make_items(2), ScriptedBackend())
        report = self.make_orchestrator().run(make_items(2), ScriptedBackend(), overwrite=True)
        self.assertEqual(report.submitted, 2)
        self.assertEqual(len(read_log(self.log_path)), 2)

    def test_resume_counts_prior_spend(self):
        items = make_items(6)
        self.make_orchestrator().run(items[:3], ScriptedBackend())
        settings = make_settings(budget=BudgetLimits(daily=0.04))
        backend = ScriptedBackend()
        report = self.make_orchestrator(settings).run(make_items(6), backend, resume=True, concurrency=1)
        self.assertEqual(len(backend.calls), 1)
        self.assertEqual(report.session.skipped_items, 2)

    def test_resume_spend_from_earlier_window_not_charged_today(self):
        items = make_items(2)
        self.make_orchestrator().run(items[:1], ScriptedBackend())
        old = (datetime.now(timezone.utc) - timedelta(days=40)).isoformat()
        records = read_log(self.log_path)
        for record in records:
            record["timestamp"] = old
        with open(self.log_path, "w", encoding="utf-8") as f:
            f.writelines(json.dumps(r) + "\n" for r in records)

        settings = make_settings(budget=BudgetLimits(daily=0.01, weekly=0.01, monthly=0.01))
        backend = ScriptedBackend()
        report = self.make_orchestrator(settings).run(make_items(2), backend, resume=True, concurrency=1)
        self.assertEqual(len(backend.calls), 1)
        self.assertEqual(report.session.successful_items, 2)
        self.assertEqual(report.session.skipped_items, 0)


class TestBudget(OrchestratorTestCase):

    def test_ceiling_skips_remainder(self):
        settings = make_settings(budget=BudgetLimits(daily=0.05))
        backend = ScriptedBackend()
        report = self.make_orchestrator(settings).run(make_items(10), backend, concurrency=3)

        self.assertEqual(report.session.successful_items, 5)
        self.assertEqual(report.session.skipped_items, 5)
        self.assertEqual(len(backend.calls), 5)
        self.assertLessEqual(report.total_cost, 0.05 + 1e-9)
        skipped = [o for o in report.outcomes.values() if isinstance(o, Skipped)]
        self.assertTrue(all(o.reason == "budget exceeded" for o in skipped))
        records = self.assertLogConsistent(report, 10)
        self.assertTrue(all(r["attempts"] == 0 for r in records if r["status"] == "skipped"))
        self.assertIn(EventType.BUDGET_ALERT, [e.type for e in self.events])

    def test_failed_call_costs_nothing(self):
        settings = make_settings(budget=BudgetLimits(daily=0.02))
        items = make_items(3)
        backend = ScriptedBackend(errors={items[0].source: [ValidationError("bad image")]})
        report = self.make_orchestrator(settings).run(items, backend, concurrency=1)
        self.assertEqual(report.session.failed_items, 1)
        self.assertEqual(report.session.successful_items, 2)


class TestBreakerIsolation(OrchestratorTestCase):

    def test_open_breaker_fails_fast_and_is_isolated(self):
        registry = BreakerRegistry(BreakerConfig(failure_threshold=2, reset_timeout=60))
        settings = make_settings(retry=RetryPolicy(max_attempts=1))
        down = ScriptedBackend(name="down", always_fail=NetworkError("503 unavailable"))
        report = self.make_orchestrator(settings, breakers=registry).run(make_items(6), down, concurrency=1)

        self.assertEqual(len(down.calls), 2)
        classes = [o.error_class for o in report.outcomes.values()]
        self.assertEqual(classes.count(ErrorClass.NETWORK), 2)
        self.assertEqual(classes.count(ErrorClass.CIRCUIT_OPEN), 4)
        self.assertEqual(registry.get("down").state, CircuitState.OPEN)

        os.remove(self.log_path)
        up = ScriptedBackend(name="up")
        report = self.make_orchestrator(settings, breakers=registry).run(make_items(6, "other"), up)
        self.assertEqual(report.session.successful_items, 6)
        self.assertEqual(registry.get("up").state, CircuitState.CLOSED)


class TestShutdown(OrchestratorTestCase):

    def test_shutdown_mid_batch(self):
        holder = {}

        def on_call(item, n):
            if n == 3:
                orch = holder["orch"]
                self.assertTrue(orch.request_shutdown("test interrupt"))
                orch.cancel_event.wait(5)

        backend = ScriptedBackend(on_call=on_call)
        orch = self.make_orchestrator()
        holder["orch"] = orch
        items = make_items(12)
        report = orch.run(items, backend, concurrency=1)

        self.assertEqual(report.status, STATUS_SHUTDOWN)
        self.assertEqual(report.shutdown_reason, "test interrupt")
        self.assertFalse(report.is_complete)
        self.assertEqual(report.session.completed_items, 3)
        self.assertEqual(len(report.unprocessed), 9)
        self.assertLogConsistent(report, 12)
        self.assertTrue(all(
            i.status == ItemStatus.UNPROCESSED for i in items if i.id in report.unprocessed
        ))
        self.assertIn(EventType.SHUTDOWN_REQUESTED, [e.type for e in self.events])

        resumed = self.make_orchestrator().run(make_items(12), ScriptedBackend(), resume=True)
        self.assertTrue(resumed.is_complete)
        self.assertEqual(resumed.submitted, 9)
        self.assertLogConsistent(resumed, 12)

    def test_ledger_write_failure_is_fatal(self):
        def broken(self, item_id, line):
            raise LedgerWriteError(item_id, OSError(28, "No space left on device"))

        with mock.patch.object(ResultLedger, "_write_line", broken):
            with self.assertRaises(LedgerWriteError):
                self.make_orchestrator().run(make_items(5), ScriptedBackend(), concurrency=1)
        self.assertEqual(read_log(self.log_path), [])
        self.assertEqual(read_checkpoint(self.log_path)["completedItems"], 0)

    def test_memory_ceiling_shutdown(self):
        settings = make_settings()
        guard = ResourceGuard(
            ResourceLimits(max_memory_mb=100, policy=POLICY_SHUTDOWN, interval=0.02,
                           enable_gc=False, shutdown_timeout=5),
            sampler=lambda: 500.0,
        )
        backend = ScriptedBackend(on_call=lambda item, n: time.sleep(0.02))
        with self.assertRaises(ResourceExhausted):
            self.make_orchestrator(settings, guard=guard).run(make_items(200), backend, concurrency=1)
        records = read_log(self.log_path)
        self.assertLess(len(records), 200)
        self.assertEqual(read_checkpoint(self.log_path)["completedItems"], len(records))


class TestSetup(OrchestratorTestCase):

    def assertBusClosed(self, orch):
        self.assertFalse(orch.bus.publish(PipelineEvent(EventType.BATCH_STARTED, "", {})))

    def test_no_backend(self):
        orch = self.make_orchestrator()
        with self.assertRaises(BatchSetupError):
            orch.run(make_items(1), None)
        self.assertBusClosed(orch)

    def test_no_items(self):
        orch = self.make_orchestrator()
        with self.assertRaises(BatchSetupError):
            orch.run([], ScriptedBackend())
        self.assertBusClosed(orch)

    def test_existing_log_closes_bus(self):
        self.make_orchestrator().run(make_items(1), ScriptedBackend())
        orch = self.make_orchestrator()
        with self.assertRaises(BatchSetupError):
            orch.run(make_items(1), ScriptedBackend())
        self.assertBusClosed(orch)

    def test_single_use(self):
        orch = self.make_orchestrator()
        orch.run(make_items(1), ScriptedBackend())
        with self.assertRaises(BatchSetupError):
            orch.run(make_items(1), ScriptedBackend())


if __name__ == "__main__":
    unittest.main()
