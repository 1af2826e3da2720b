"""
Image Batch — Error Taxonomy

Every error the pipeline reasons about, and classify_error() which maps
an arbitrary exception to an ErrorClass. The retry executor and the
circuit breaker decide what to do from the class alone; they never look
at backend identity.

Taxonomy:
  - Transient (rate_limited, timeout, network): retried, counted by the breaker
  - Terminal-per-item (validation, authentication, unknown): recorded at once
  - circuit_open: backend-systemic, recorded without further attempts
  - cancelled: batch shutdown; the item stays resumable
  - Fatal (LedgerWriteError, resource exhaustion): aborts the batch
"""

from __future__ import annotations

import errno

import httpx

from batch_engine.types import ErrorClass, TRANSIENT_ERROR_CLASSES


# ═══════════════════════════════════════════════════════════════════
# Backend Errors
# ═══════════════════════════════════════════════════════════════════

class ClassificationError(Exception):
    """Base class for errors raised by a classification backend."""
    error_class = ErrorClass.UNKNOWN

    def __init__(
        self,
        message: str,
        backend: str = "",
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        self.backend = backend
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(message)


class RateLimitedError(ClassificationError):
    error_class = ErrorClass.RATE_LIMITED


class BackendTimeoutError(ClassificationError):
    error_class = ErrorClass.TIMEOUT


class NetworkError(ClassificationError):
    error_class = ErrorClass.NETWORK


class AuthenticationError(ClassificationError):
    error_class = ErrorClass.AUTHENTICATION


class ValidationError(ClassificationError):
    error_class = ErrorClass.VALIDATION


# ═══════════════════════════════════════════════════════════════════
# Pipeline Errors
# ═══════════════════════════════════════════════════════════════════

class CircuitBreakerOpen(Exception):
    """Raised when a backend's breaker is open; fn was not invoked."""
    error_class = ErrorClass.CIRCUIT_OPEN

    def __init__(self, backend: str, retry_after: float):
        self.backend = backend
        self.retry_after = max(0.0, retry_after)
        super().__init__(
            f"Circuit breaker open for '{backend}', retry after {self.retry_after:.1f}s"
        )


class BatchCancelled(Exception):
    """Raised at a suspension point when the batch has been cancelled."""
    error_class = ErrorClass.CANCELLED


class QueueClosedError(Exception):
    """Raised when submitting to a closed or cancelled dispatch queue."""


class LedgerWriteError(Exception):
    """A result could not be made durable. Fatal for the batch."""

    def __init__(self, item_id: str, cause: Exception):
        self.item_id = item_id
        self.cause = cause
        super().__init__(f"Failed to append outcome for item {item_id}: {cause}")


class LedgerClosedError(Exception):
    """Raised when appending to a finalized result ledger."""


class BatchSetupError(Exception):
    """Fatal setup problem: no backend, no work items, bad output path."""


class ResourceExhausted(Exception):
    """Raised when the resource guard shut the batch down on a hard limit."""


# ═══════════════════════════════════════════════════════════════════
# Classification
# ═══════════════════════════════════════════════════════════════════

_NETWORK_ERRNOS = {
    errno.ECONNRESET, errno.ECONNREFUSED, errno.ECONNABORTED,
    errno.EPIPE, errno.ETIMEDOUT, errno.EHOSTUNREACH, errno.ENETUNREACH,
}


def classify_error(error: BaseException) -> ErrorClass:
    """Map an exception to an ErrorClass."""
    explicit = getattr(error, "error_class", None)
    if isinstance(explicit, ErrorClass):
        return explicit

    if isinstance(error, httpx.TimeoutException):
        return ErrorClass.TIMEOUT
    if isinstance(error, httpx.TransportError):
        return ErrorClass.NETWORK
    if isinstance(error, httpx.HTTPStatusError):
        return classify_status_code(error.response.status_code)

    if isinstance(error, TimeoutError):
        return ErrorClass.TIMEOUT
    if isinstance(error, ConnectionError):
        return ErrorClass.NETWORK
    if isinstance(error, OSError) and error.errno in _NETWORK_ERRNOS:
        return ErrorClass.NETWORK

    return _classify_message(str(error))


def classify_status_code(status_code: int) -> ErrorClass:
    if status_code == 429:
        return ErrorClass.RATE_LIMITED
    if status_code in (401, 403):
        return ErrorClass.AUTHENTICATION
    if status_code in (400, 404, 413, 415, 422):
        return ErrorClass.VALIDATION
    if status_code == 408 or status_code == 504:
        return ErrorClass.TIMEOUT
    if status_code >= 500:
        return ErrorClass.NETWORK
    return ErrorClass.UNKNOWN


def _classify_message(message: str) -> ErrorClass:
    msg = message.lower()

    # Auth first: "401 ... timeout" is still an auth failure
    if "401" in msg or "403" in msg or "unauthorized" in msg or "forbidden" in msg:
        return ErrorClass.AUTHENTICATION
    if "429" in msg or "rate limit" in msg or "too many requests" in msg:
        return ErrorClass.RATE_LIMITED
    if "timeout" in msg or "timed out" in msg or "etimedout" in msg:
        return ErrorClass.TIMEOUT
    if any(term in msg for term in ("econnreset", "connection reset", "network", "unavailable")):
        return ErrorClass.NETWORK
    if "invalid" in msg or "unsupported" in msg or "validation" in msg:
        return ErrorClass.VALIDATION
    return ErrorClass.UNKNOWN


def is_transient(error_class: ErrorClass) -> bool:
    return error_class in TRANSIENT_ERROR_CLASSES
