"""
Image Batch — Circuit Breaker Tests

Tests:
  - F consecutive failures open the breaker; next call rejected without invoking fn
  - Success resets the consecutive failure count
  - Reset timeout → half-open; H successes → closed
  - Failure in half-open re-opens
  - Half-open admits at most half_open_max_calls probes
  - Validation errors do not count as failures
  - Sliding window mode
  - Registry isolates backends
  - Transition callback and stats
"""

import os
import sys
import threading
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from batch_engine.circuit_breaker import (
    BreakerConfig, BreakerRegistry, CircuitBreaker, CircuitState,
)
from batch_engine.errors import CircuitBreakerOpen, NetworkError, ValidationError


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def failing():
    raise NetworkError("connection reset")


def ok():
    return "ok"


class CountingFn:
    def __init__(self):
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return "ok"


class TestTripping(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.breaker = CircuitBreaker(
            "gemini",
            BreakerConfig(failure_threshold=3, success_threshold=2, reset_timeout=30),
            clock=self.clock,
        )

    def _fail(self, n):
        for _ in range(n):
            with self.assertRaises(NetworkError):
                self.breaker.execute(failing)

    def test_opens_after_threshold(self):
        self._fail(3)
        self.assertEqual(self.breaker.state, CircuitState.OPEN)

    def test_open_rejects_without_invoking(self):
        self._fail(3)
        fn = CountingFn()
        with self.assertRaises(CircuitBreakerOpen) as ctx:
            self.breaker.execute(fn)
        self.assertEqual(fn.calls, 0)
        self.assertEqual(ctx.exception.backend, "gemini")
        self.assertAlmostEqual(ctx.exception.retry_after, 30.0)

    def test_below_threshold_stays_closed(self):
        self._fail(2)
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)

    def test_success_resets_consecutive_count(self):
        self._fail(2)
        self.breaker.execute(ok)
        self._fail(2)
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)

    def test_validation_errors_are_neutral(self):
        def invalid():
            raise ValidationError("unsupported format")
        for _ in range(10):
            with self.assertRaises(ValidationError):
                self.breaker.execute(invalid)
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)
        self.assertEqual(self.breaker.stats()["failures"], 0)


class TestRecovery(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.breaker = CircuitBreaker(
            "claude",
            BreakerConfig(failure_threshold=2, success_threshold=2, reset_timeout=10),
            clock=self.clock,
        )
        for _ in range(2):
            with self.assertRaises(NetworkError):
                self.breaker.execute(failing)

    def test_half_open_after_timeout(self):
        self.clock.advance(9.9)
        self.assertEqual(self.breaker.state, CircuitState.OPEN)
        self.clock.advance(0.2)
        self.assertEqual(self.breaker.state, CircuitState.HALF_OPEN)

    def test_closes_after_success_threshold(self):
        self.clock.advance(10)
        self.breaker.execute(ok)
        self.assertEqual(self.breaker.state, CircuitState.HALF_OPEN)
        self.breaker.execute(ok)
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)

    def test_failure_in_half_open_reopens(self):
        self.clock.advance(10)
        with self.assertRaises(NetworkError):
            self.breaker.execute(failing)
        self.assertEqual(self.breaker.state, CircuitState.OPEN)
        self.assertEqual(self.breaker.stats()["trip_count"], 2)

    def test_half_open_limits_probes(self):
        self.clock.advance(10)
        entered = threading.Event()
        release = threading.Event()

        def slow_probe():
            entered.set()
            release.wait(5)
            return "ok"

        t = threading.Thread(target=self.breaker.execute, args=(slow_probe,))
        t.start()
        self.assertTrue(entered.wait(5))
        fn = CountingFn()
        with self.assertRaises(CircuitBreakerOpen):
            self.breaker.execute(fn)
        self.assertEqual(fn.calls, 0)
        release.set()
        t.join(5)

    def test_force_reset(self):
        self.breaker.reset()
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)
        self.assertEqual(self.breaker.execute(ok), "ok")


class TestWindowMode(unittest.TestCase):

    def test_failures_outside_window_expire(self):
        clock = FakeClock()
        breaker = CircuitBreaker(
            "openai",
            BreakerConfig(failure_threshold=3, window_seconds=60),
            clock=clock,
        )
        for _ in range(2):
            with self.assertRaises(NetworkError):
                breaker.execute(failing)
        clock.advance(61)
        with self.assertRaises(NetworkError):
            breaker.execute(failing)
        self.assertEqual(breaker.state, CircuitState.CLOSED)

    def test_success_does_not_reset_window(self):
        clock = FakeClock()
        breaker = CircuitBreaker(
            "openai",
            BreakerConfig(failure_threshold=3, window_seconds=60),
            clock=clock,
        )
        for _ in range(2):
            with self.assertRaises(NetworkError):
                breaker.execute(failing)
        breaker.execute(ok)
        with self.assertRaises(NetworkError):
            breaker.execute(failing)
        self.assertEqual(breaker.state, CircuitState.OPEN)


class TestRegistry(unittest.TestCase):

    def test_backends_are_isolated(self):
        registry = BreakerRegistry(BreakerConfig(failure_threshold=1))
        with self.assertRaises(NetworkError):
            registry.get("a").execute(failing)
        self.assertEqual(registry.get("a").state, CircuitState.OPEN)
        self.assertEqual(registry.get("b").state, CircuitState.CLOSED)
        self.assertEqual(registry.get("b").execute(ok), "ok")

    def test_same_instance_per_backend(self):
        registry = BreakerRegistry()
        self.assertIs(registry.get("x"), registry.get("x"))

    def test_overrides(self):
        registry = BreakerRegistry(
            BreakerConfig(failure_threshold=5),
            overrides={"claude": BreakerConfig(failure_threshold=2)},
        )
        self.assertEqual(registry.get("claude").config.failure_threshold, 2)
        self.assertEqual(registry.get("gemini").config.failure_threshold, 5)

    def test_transition_callback(self):
        transitions = []
        registry = BreakerRegistry(
            BreakerConfig(failure_threshold=1),
            on_transition=lambda name, old, new: transitions.append((name, old, new)),
        )
        with self.assertRaises(NetworkError):
            registry.get("gemini").execute(failing)
        self.assertEqual(transitions, [("gemini", CircuitState.CLOSED, CircuitState.OPEN)])

    def test_all_stats_and_reset(self):
        registry = BreakerRegistry(BreakerConfig(failure_threshold=1))
        with self.assertRaises(NetworkError):
            registry.get("a").execute(failing)
        stats = registry.all_stats()
        self.assertEqual(stats["a"]["state"], "open")
        self.assertIsNotNone(stats["a"]["next_retry_time"])
        registry.reset_all()
        self.assertEqual(registry.get("a").state, CircuitState.CLOSED)


class TestConfig(unittest.TestCase):

    def test_from_dict(self):
        cfg = BreakerConfig.from_dict({"failure_threshold": 7, "window_seconds": 30})
        self.assertEqual(cfg.failure_threshold, 7)
        self.assertEqual(cfg.window_seconds, 30.0)
        self.assertEqual(cfg.success_threshold, 2)


if __name__ == "__main__":
    unittest.main()
