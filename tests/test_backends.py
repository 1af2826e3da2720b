"""
Image Batch — Backend Tests

Tests:
  - HTTP backend: request body, response shapes, cost from tokens or costUsd
  - HTTP status and transport errors map onto the error taxonomy
  - Local files are validated and sent inline; URLs pass through
  - Simulated backend is deterministic per (seed, item, call)
  - Registry lookup and build_registry() from settings
"""

import json
import os
import shutil
import sys
import tempfile
import unittest

import httpx

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from batch_engine.backends import (
    Backend, BackendRegistry, HTTPBackend, SimulatedBackend,
    build_registry, normalize_confidence, top_category,
)
from batch_engine.budget import BackendPricing
from batch_engine.config import load_settings
from batch_engine.errors import (
    AuthenticationError, BackendTimeoutError, ClassificationError,
    NetworkError, RateLimitedError, ValidationError,
)
from batch_engine.types import ErrorClass, WorkItem

URL_ITEM = WorkItem.create("https://img.example.com/chair.jpg", hints={"title": "Oak chair"})


def make_backend(handler, **kwargs):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    kwargs.setdefault("pricing", BackendPricing("gemini", 0.075, 0.30))
    return HTTPBackend("gemini", "https://classifier.test/v1/classify",
                       api_key="secret", model="gemini-test", client=client, **kwargs)


class TestHTTPBackend(unittest.TestCase):

    def test_success_with_token_cost(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "category": "Furniture", "confidence": "92%",
                "tokens": {"input": 1000, "output": 200},
            })

        result = make_backend(handler).classify(URL_ITEM)
        self.assertEqual(result.category, "Furniture")
        self.assertAlmostEqual(result.confidence, 0.92)
        self.assertAlmostEqual(result.cost_usd, 1000 / 1e6 * 0.075 + 200 / 1e6 * 0.30)
        self.assertEqual(result.model, "gemini-test")
        self.assertEqual(seen["auth"], "Bearer secret")
        self.assertEqual(seen["body"]["image"], {"url": URL_ITEM.source})
        self.assertEqual(seen["body"]["hints"], {"title": "Oak chair"})

    def test_categories_list_and_explicit_cost(self):
        def handler(request):
            return httpx.Response(200, json={
                "categories": [
                    {"category": "Art", "confidence": 0.4},
                    {"category": "Collectibles", "confidence": 0.7},
                ],
                "costUsd": 0.002,
            })

        result = make_backend(handler).classify(URL_ITEM)
        self.assertEqual(result.category, "Collectibles")
        self.assertEqual(result.cost_usd, 0.002)

    def test_rate_limited_with_retry_after(self):
        backend = make_backend(lambda r: httpx.Response(429, headers={"Retry-After": "7"}, text="slow"))
        with self.assertRaises(RateLimitedError) as ctx:
            backend.classify(URL_ITEM)
        self.assertEqual(ctx.exception.retry_after, 7.0)
        self.assertEqual(ctx.exception.status_code, 429)

    def test_status_mapping(self):
        cases = {401: AuthenticationError, 415: ValidationError, 500: NetworkError, 504: BackendTimeoutError}
        for status, error_type in cases.items():
            backend = make_backend(lambda r, s=status: httpx.Response(s, text="nope"))
            with self.assertRaises(error_type):
                backend.classify(URL_ITEM)

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)
        with self.assertRaises(BackendTimeoutError):
            make_backend(handler).classify(URL_ITEM)

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)
        with self.assertRaises(NetworkError):
            make_backend(handler).classify(URL_ITEM)

    def test_non_json_body(self):
        backend = make_backend(lambda r: httpx.Response(200, text="<html>"))
        with self.assertRaises(ClassificationError):
            backend.classify(URL_ITEM)


class TestLocalFiles(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_inline_image(self):
        path = os.path.join(self.tmp, "lamp.png")
        with open(path, "wb") as f:
            f.write(b"\x89PNG fake")
        seen = {}

        def handler(request):
            seen["image"] = json.loads(request.content)["image"]
            return httpx.Response(200, json={"category": "Household", "confidence": 0.8})

        make_backend(handler).classify(WorkItem.create(path))
        self.assertEqual(seen["image"]["mimeType"], "image/png")
        self.assertIn("data", seen["image"])

    def test_missing_file(self):
        backend = make_backend(lambda r: httpx.Response(200, json={}))
        with self.assertRaises(ValidationError):
            backend.classify(WorkItem.create(os.path.join(self.tmp, "gone.jpg")))

    def test_not_an_image(self):
        path = os.path.join(self.tmp, "notes.txt")
        with open(path, "w") as f:
            f.write("hello")
        backend = make_backend(lambda r: httpx.Response(200, json={}))
        with self.assertRaises(ValidationError):
            backend.classify(WorkItem.create(path))


class TestNormalization(unittest.TestCase):

    def test_confidence(self):
        self.assertAlmostEqual(normalize_confidence("85%"), 0.85)
        self.assertAlmostEqual(normalize_confidence(85), 0.85)
        self.assertAlmostEqual(normalize_confidence("0.4"), 0.4)
        self.assertEqual(normalize_confidence(-2), 0.0)

    def test_top_category_bare_list(self):
        self.assertEqual(top_category([{"category": "  Art  ", "confidence": 0.5}]), ("Art", 0.5))

    def test_top_category_empty(self):
        with self.assertRaises(ClassificationError):
            top_category({"categories": []})


class TestSimulatedBackend(unittest.TestCase):

    def test_deterministic(self):
        items = [WorkItem.create(f"/img/{i}.jpg") for i in range(50)]
        a = SimulatedBackend(failure_rate=0.3, seed=11)
        b = SimulatedBackend(failure_rate=0.3, seed=11)

        def run(backend):
            out = []
            for item in items:
                try:
                    out.append(backend.classify(item).category)
                except NetworkError:
                    out.append("failed")
            return out

        first = run(a)
        self.assertEqual(first, run(b))
        self.assertIn("failed", first)
        self.assertEqual(a.calls_for(items[0].id), 1)

    def test_failure_class(self):
        backend = SimulatedBackend(failure_rate=1.0, failure_class=ErrorClass.RATE_LIMITED)
        with self.assertRaises(RateLimitedError):
            backend.classify(URL_ITEM)

    def test_latency_beyond_timeout(self):
        sleeps = []
        backend = SimulatedBackend(latency=5.0, sleep_fn=sleeps.append)
        with self.assertRaises(BackendTimeoutError):
            backend.classify(URL_ITEM, timeout=1.0)
        self.assertEqual(sleeps, [1.0])

    def test_result_shape(self):
        result = SimulatedBackend(cost_usd=0.001).classify(URL_ITEM)
        self.assertEqual(result.cost_usd, 0.001)
        self.assertGreaterEqual(result.confidence, 0.5)
        self.assertEqual(result.model, "simulated-sim")

    def test_satisfies_protocol(self):
        self.assertIsInstance(SimulatedBackend(), Backend)


class TestRegistry(unittest.TestCase):

    def test_unknown_backend_lists_available(self):
        registry = BackendRegistry()
        registry.register("simulated", SimulatedBackend())
        with self.assertRaises(KeyError) as ctx:
            registry.get("gemini")
        self.assertIn("simulated", str(ctx.exception))

    def test_factory_called_once(self):
        calls = []

        def factory():
            calls.append(1)
            return SimulatedBackend()

        registry = BackendRegistry()
        registry.register("sim", factory)
        self.assertIs(registry.get("sim"), registry.get("sim"))
        self.assertEqual(len(calls), 1)
        self.assertIn("sim", registry)
        self.assertEqual(len(registry), 1)

    def test_build_registry(self):
        settings = load_settings({
            "backends": {
                "gemini": {"type": "http", "endpoint": "https://x/classify", "api_key_env": "GEMINI_API_KEY"},
                "claude": {"type": "http", "endpoint": "https://y/classify", "api_key_env": "ANTHROPIC_API_KEY"},
                "flaky": {"type": "simulated", "failure_rate": 0.5, "seed": 3},
                "weird": {"type": "carrier-pigeon"},
            },
        })
        registry = build_registry(settings, environ={"GEMINI_API_KEY": "k"})
        self.assertEqual(registry.names(), ["flaky", "gemini", "simulated"])
        self.assertIsInstance(registry.get("gemini"), HTTPBackend)
        self.assertEqual(registry.get("flaky").failure_rate, 0.5)
        registry.close()


if __name__ == "__main__":
    unittest.main()
