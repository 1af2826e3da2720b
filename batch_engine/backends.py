"""
Image Batch — Classification Backends

The pipeline is parameterized over one capability:

    backend.classify(item, timeout) -> ClassificationResult   (or raises)

Backends are looked up by name in a BackendRegistry. The core never
branches on backend identity except for config lookup (concurrency,
pricing, breaker overrides).

Two implementations:
  1. HTTPBackend — JSON-over-HTTP classification endpoint (httpx)
  2. SimulatedBackend — deterministic offline backend for dry runs and tests

Config in batch_config.yaml:
    backends:
      gemini:
        type: http
        endpoint: https://classifier.internal/v1/gemini/classify
        api_key_env: GEMINI_API_KEY
        model: gemini-2.0-flash
      simulated:
        type: simulated
        failure_rate: 0.05
"""

from __future__ import annotations

import base64
import hashlib
import logging
import mimetypes
import os
import random
import threading
import time
from pathlib import Path
from typing import Any, Callable, Protocol, runtime_checkable

import httpx

from batch_engine.budget import BackendPricing, DEFAULT_PRICING, pricing_for
from batch_engine.errors import (
    AuthenticationError,
    BackendTimeoutError,
    ClassificationError,
    NetworkError,
    RateLimitedError,
    ValidationError,
    classify_status_code,
)
from batch_engine.types import ClassificationResult, ErrorClass, WorkItem

logger = logging.getLogger("image_batch.backends")


@runtime_checkable
class Backend(Protocol):
    name: str

    def classify(self, item: WorkItem, timeout: float | None = None) -> ClassificationResult:
        ...


# ═══════════════════════════════════════════════════════════════════
# Registry
# ═══════════════════════════════════════════════════════════════════

BackendFactory = Callable[[], Backend]


class BackendRegistry:
    """Backend factories keyed by name; instances created once on first use."""

    def __init__(self):
        self._factories: dict[str, BackendFactory] = {}
        self._instances: dict[str, Backend] = {}
        self._lock = threading.Lock()

    def register(self, name: str, factory: BackendFactory | Backend) -> None:
        with self._lock:
            if callable(factory) and not isinstance(factory, Backend):
                self._factories[name] = factory
            else:
                self._factories[name] = lambda b=factory: b
            self._instances.pop(name, None)
        logger.debug("Registered backend: %s", name)

    def get(self, name: str) -> Backend:
        with self._lock:
            if name not in self._factories:
                available = ", ".join(sorted(self._factories)) or "none"
                raise KeyError(f"Unknown backend '{name}' (available: {available})")
            if name not in self._instances:
                self._instances[name] = self._factories[name]()
            return self._instances[name]

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._factories)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._factories

    def __len__(self) -> int:
        with self._lock:
            return len(self._factories)

    def close(self) -> None:
        with self._lock:
            instances = list(self._instances.values())
            self._instances.clear()
        for backend in instances:
            close = getattr(backend, "close", None)
            if close is not None:
                close()


# ═══════════════════════════════════════════════════════════════════
# Response normalization
# ═══════════════════════════════════════════════════════════════════

def normalize_confidence(value: Any) -> float:
    """0.85, "0.85", "85%", 85 → 0.85 (clamped to [0, 1])."""
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("%"):
            text = text[:-1]
            value = float(text) / 100
        else:
            value = float(text)
    value = float(value)
    if value > 1.0:
        value = value / 100
    return max(0.0, min(1.0, value))


def normalize_category(value: Any) -> str:
    return " ".join(str(value).split())


def top_category(payload: Any) -> tuple[str, float]:
    """
    Pick the highest-confidence category from any of the accepted shapes:
      {"category", "confidence"}, {"categories": [...]}, or [...].
    """
    if isinstance(payload, dict) and "category" in payload:
        return normalize_category(payload["category"]), normalize_confidence(payload.get("confidence", 0.0))

    candidates = payload.get("categories") if isinstance(payload, dict) else payload
    if not isinstance(candidates, list) or not candidates:
        raise ClassificationError("Response contains no categories")

    best = None
    for entry in candidates:
        if not isinstance(entry, dict) or "category" not in entry:
            continue
        confidence = normalize_confidence(entry.get("confidence", 0.0))
        if best is None or confidence > best[1]:
            best = (normalize_category(entry["category"]), confidence)
    if best is None:
        raise ClassificationError("Response contains no usable categories")
    return best


# ═══════════════════════════════════════════════════════════════════
# 1. HTTP Backend
# ═══════════════════════════════════════════════════════════════════

def _retry_after(response: httpx.Response) -> float | None:
    header = response.headers.get("retry-after")
    if not header:
        return None
    try:
        return max(0.0, float(header))
    except ValueError:
        return None


_ERRORS_BY_CLASS: dict[ErrorClass, type[ClassificationError]] = {
    ErrorClass.RATE_LIMITED: RateLimitedError,
    ErrorClass.AUTHENTICATION: AuthenticationError,
    ErrorClass.VALIDATION: ValidationError,
    ErrorClass.TIMEOUT: BackendTimeoutError,
    ErrorClass.NETWORK: NetworkError,
}


class HTTPBackend:
    """
    Classifies images through a JSON HTTP endpoint.

    Request:  POST {endpoint}  {"image": {"url"} | {"data", "mimeType"}, "hints", "model"}
    Response: {"category", "confidence"} | {"categories": [...]},
              optional "tokens": {"input", "output"}, "costUsd", "model"

    One httpx.Client per backend, shared by all worker threads.
    """

    def __init__(
        self,
        name: str,
        endpoint: str,
        api_key: str | None = None,
        model: str = "",
        pricing: BackendPricing | None = None,
        timeout: float = 60.0,
        client: httpx.Client | None = None,
    ):
        self.name = name
        self.endpoint = endpoint
        self.model = model
        self.pricing = pricing or pricing_for(name, dict(DEFAULT_PRICING))
        self.timeout = timeout
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.Client(timeout=timeout)
        self._headers = headers

    def _image_payload(self, item: WorkItem) -> dict[str, Any]:
        if item.source.startswith(("http://", "https://")):
            return {"url": item.source}
        path = Path(item.source)
        if not path.is_file():
            raise ValidationError(f"Image not found: {item.source}", backend=self.name)
        mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        if not mime.startswith("image/"):
            raise ValidationError(f"Unsupported image type {mime}: {item.source}", backend=self.name)
        data = base64.b64encode(path.read_bytes()).decode("ascii")
        return {"data": data, "mimeType": mime}

    def classify(self, item: WorkItem, timeout: float | None = None) -> ClassificationResult:
        body = {"image": self._image_payload(item), "hints": item.hints}
        if self.model:
            body["model"] = self.model

        t0 = time.monotonic()
        try:
            resp = self._client.post(
                self.endpoint,
                json=body,
                headers=self._headers,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except httpx.TimeoutException as e:
            raise BackendTimeoutError(f"{self.name} request timed out: {e}", backend=self.name) from e
        except httpx.TransportError as e:
            raise NetworkError(f"{self.name} transport error: {e}", backend=self.name) from e
        latency_ms = (time.monotonic() - t0) * 1000

        if resp.status_code >= 400:
            error_class = classify_status_code(resp.status_code)
            error_type = _ERRORS_BY_CLASS.get(error_class, ClassificationError)
            raise error_type(
                f"{self.name} returned HTTP {resp.status_code}: {resp.text[:200]}",
                backend=self.name,
                status_code=resp.status_code,
                retry_after=_retry_after(resp),
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise ClassificationError(f"{self.name} returned a non-JSON body", backend=self.name) from e

        category, confidence = top_category(data)
        raw_tokens = data.get("tokens") or {} if isinstance(data, dict) else {}
        tokens = {
            "input": int(raw_tokens.get("input", 0) or 0),
            "output": int(raw_tokens.get("output", 0) or 0),
        }
        cost = data.get("costUsd") if isinstance(data, dict) else None
        if cost is None:
            cost = self.pricing.cost(tokens["input"], tokens["output"])

        return ClassificationResult(
            category=category,
            confidence=confidence,
            cost_usd=float(cost),
            latency_ms=round(latency_ms, 1),
            tokens=tokens,
            model=(data.get("model") if isinstance(data, dict) else None) or self.model,
            raw=data if isinstance(data, dict) else {"categories": data},
        )

    def close(self) -> None:
        self._client.close()


# ═══════════════════════════════════════════════════════════════════
# 2. Simulated Backend
# ═══════════════════════════════════════════════════════════════════

_SIMULATED_CATEGORIES = (
    "Furniture", "Jewelry", "Art", "Collectibles", "Electronics",
    "Tools", "Clothing", "Books", "Toys", "Household",
)


class SimulatedBackend:
    """
    Offline backend with reproducible behavior.

    Whether a given call fails is a pure function of (seed, item id,
    call number for that item), so a seeded run fails the same items
    the same way every time.
    """

    def __init__(
        self,
        name: str = "simulated",
        failure_rate: float = 0.0,
        failure_class: ErrorClass = ErrorClass.NETWORK,
        latency: float = 0.0,
        cost_usd: float = 0.0005,
        seed: int = 0,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.name = name
        self.failure_rate = failure_rate
        self.failure_class = failure_class
        self.latency = latency
        self.cost_usd = cost_usd
        self.seed = seed
        self._sleep = sleep_fn
        self._calls: dict[str, int] = {}
        self._lock = threading.Lock()

    def _roll(self, item: WorkItem) -> tuple[random.Random, int]:
        with self._lock:
            call = self._calls.get(item.id, 0) + 1
            self._calls[item.id] = call
        digest = hashlib.sha256(f"{self.seed}:{item.id}:{call}".encode()).hexdigest()
        return random.Random(int(digest[:16], 16)), call

    def classify(self, item: WorkItem, timeout: float | None = None) -> ClassificationResult:
        rng, call = self._roll(item)
        if self.latency:
            if timeout is not None and self.latency > timeout:
                self._sleep(timeout)
                raise BackendTimeoutError(
                    f"{self.name} timed out after {timeout:.1f}s", backend=self.name,
                )
            self._sleep(self.latency)

        if rng.random() < self.failure_rate:
            error_type = _ERRORS_BY_CLASS.get(self.failure_class, ClassificationError)
            raise error_type(
                f"{self.name} simulated {self.failure_class.value} failure (call {call})",
                backend=self.name,
            )

        return ClassificationResult(
            category=rng.choice(_SIMULATED_CATEGORIES),
            confidence=round(0.5 + rng.random() * 0.5, 3),
            cost_usd=self.cost_usd,
            latency_ms=self.latency * 1000,
            tokens={"input": 1500, "output": 120},
            model=f"{self.name}-sim",
        )

    def calls_for(self, item_id: str) -> int:
        with self._lock:
            return self._calls.get(item_id, 0)


# ═══════════════════════════════════════════════════════════════════
# Factory
# ═══════════════════════════════════════════════════════════════════

def build_registry(settings: Any, environ: dict[str, str] | None = None) -> BackendRegistry:
    """
    Register every backend configured under `backends`.

    HTTP backends whose api_key_env is unset are skipped with a warning.
    A "simulated" backend is always available.
    """
    environ = os.environ if environ is None else environ
    registry = BackendRegistry()
    pricing = dict(settings.pricing)

    for name, cfg in settings.backends.items():
        kind = cfg.get("type", "http")
        if kind == "simulated":
            registry.register(name, lambda n=name, c=cfg: SimulatedBackend(
                name=n,
                failure_rate=float(c.get("failure_rate", 0.0)),
                failure_class=ErrorClass(c.get("failure_class", ErrorClass.NETWORK.value)),
                latency=float(c.get("latency", 0.0)),
                cost_usd=float(c.get("cost_usd", 0.0005)),
                seed=int(c.get("seed", 0)),
            ))
        elif kind == "http":
            endpoint = cfg.get("endpoint")
            if not endpoint:
                logger.warning("Backend %s has no endpoint configured, skipping", name)
                continue
            key_env = cfg.get("api_key_env")
            api_key = environ.get(key_env) if key_env else None
            if key_env and not api_key:
                logger.warning("Backend %s skipped: %s is not set", name, key_env)
                continue
            backend_pricing = pricing_for(name, pricing)
            registry.register(name, lambda n=name, c=cfg, k=api_key, p=backend_pricing: HTTPBackend(
                name=n,
                endpoint=c["endpoint"],
                api_key=k,
                model=c.get("model", ""),
                pricing=p,
                timeout=float(c.get("timeout", settings.item_timeout)),
            ))
        else:
            logger.warning("Backend %s has unknown type '%s', skipping", name, kind)

    if "simulated" not in registry:
        registry.register("simulated", lambda: SimulatedBackend())

    logger.info("Backends available: %s", ", ".join(registry.names()))
    return registry
