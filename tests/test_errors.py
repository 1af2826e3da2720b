"""
Image Batch — Error Classification Tests
"""

import errno
import os
import sys
import unittest

import httpx

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from batch_engine.errors import (
    AuthenticationError, BatchCancelled, CircuitBreakerOpen, LedgerWriteError,
    RateLimitedError, classify_error, classify_status_code, is_transient,
)
from batch_engine.types import ErrorClass


class TestClassifyError(unittest.TestCase):

    def test_explicit_class_wins(self):
        self.assertEqual(classify_error(RateLimitedError("slow down")), ErrorClass.RATE_LIMITED)
        self.assertEqual(classify_error(AuthenticationError("timeout while authorizing")),
                         ErrorClass.AUTHENTICATION)
        self.assertEqual(classify_error(CircuitBreakerOpen("gemini", 5)), ErrorClass.CIRCUIT_OPEN)
        self.assertEqual(classify_error(BatchCancelled()), ErrorClass.CANCELLED)

    def test_httpx_errors(self):
        request = httpx.Request("POST", "https://example.com")
        self.assertEqual(classify_error(httpx.ReadTimeout("slow", request=request)), ErrorClass.TIMEOUT)
        self.assertEqual(classify_error(httpx.ConnectError("refused", request=request)), ErrorClass.NETWORK)
        response = httpx.Response(429, request=request)
        error = httpx.HTTPStatusError("429", request=request, response=response)
        self.assertEqual(classify_error(error), ErrorClass.RATE_LIMITED)

    def test_builtin_errors(self):
        self.assertEqual(classify_error(TimeoutError()), ErrorClass.TIMEOUT)
        self.assertEqual(classify_error(ConnectionResetError()), ErrorClass.NETWORK)
        self.assertEqual(classify_error(OSError(errno.EHOSTUNREACH, "unreachable")), ErrorClass.NETWORK)

    def test_message_heuristics(self):
        cases = {
            "HTTP 401 Unauthorized": ErrorClass.AUTHENTICATION,
            "401 after timeout": ErrorClass.AUTHENTICATION,
            "Too Many Requests": ErrorClass.RATE_LIMITED,
            "request timed out": ErrorClass.TIMEOUT,
            "ECONNRESET": ErrorClass.NETWORK,
            "Unsupported image format": ErrorClass.VALIDATION,
            "the model refused": ErrorClass.UNKNOWN,
        }
        for message, expected in cases.items():
            self.assertEqual(classify_error(RuntimeError(message)), expected, message)

    def test_status_codes(self):
        self.assertEqual(classify_status_code(429), ErrorClass.RATE_LIMITED)
        self.assertEqual(classify_status_code(403), ErrorClass.AUTHENTICATION)
        self.assertEqual(classify_status_code(415), ErrorClass.VALIDATION)
        self.assertEqual(classify_status_code(504), ErrorClass.TIMEOUT)
        self.assertEqual(classify_status_code(503), ErrorClass.NETWORK)
        self.assertEqual(classify_status_code(418), ErrorClass.UNKNOWN)

    def test_transient(self):
        self.assertTrue(is_transient(ErrorClass.NETWORK))
        self.assertFalse(is_transient(ErrorClass.CIRCUIT_OPEN))
        self.assertFalse(is_transient(ErrorClass.UNKNOWN))

    def test_breaker_open_clamps_retry_after(self):
        self.assertEqual(CircuitBreakerOpen("claude", -3).retry_after, 0.0)

    def test_ledger_write_error(self):
        cause = OSError(28, "No space left on device")
        error = LedgerWriteError("abc", cause)
        self.assertIs(error.cause, cause)
        self.assertIn("abc", str(error))


if __name__ == "__main__":
    unittest.main()
