"""
Error taxonomy shared by every component of the core.

Every failure that leaves the core is one of these kinds, so the HTTP layer
can map them to responses without inspecting transport errors.
"""

from typing import Any, Dict, Optional


class CoreError(Exception):
    """Base class for all errors surfaced by the core"""

    code = "core_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_payload(self) -> Dict[str, Any]:
        """Serializable error body"""
        payload = {"ok": False, "error_code": self.code, "error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(CoreError):
    """Malformed input. Never retried automatically."""

    code = "validation_error"
    status_code = 400


class SessionNotFound(CoreError):
    code = "not_found"
    status_code = 404

    def __init__(self, session_key: str):
        super().__init__(f"No context stored for session '{session_key}'")
        self.session_key = session_key


class StaleVersion(CoreError):
    """Raised when an optimistic update observed an outdated version"""

    code = "stale_version"
    status_code = 409

    def __init__(self, session_key: str, expected: int, actual: int):
        super().__init__(
            f"Session '{session_key}' is at version {actual}, expected {expected}",
            details={"expected_version": expected, "actual_version": actual},
        )
        self.expected = expected
        self.actual = actual


class RateLimited(CoreError):
    """Transient rejection; the caller may retry after retry_after_ms"""

    code = "rate_limited"
    status_code = 429

    def __init__(self, purpose: str, retry_after_ms: int):
        super().__init__(
            f"Rate limit exceeded for '{purpose}', try again later",
            details={"retry_after_ms": retry_after_ms},
        )
        self.purpose = purpose
        self.retry_after_ms = retry_after_ms


class BudgetExceeded(CoreError):
    """Quota exhausted for the current budget window"""

    code = "budget_exceeded"
    status_code = 402

    def __init__(self, reason: str, suggested_model: Optional[str] = None):
        details: Dict[str, Any] = {"quota": "exhausted"}
        if suggested_model:
            details["suggested_model"] = suggested_model
        super().__init__(f"Usage quota exhausted: {reason}", details=details)
        self.reason = reason
        self.suggested_model = suggested_model


class ProviderError(CoreError):
    """Upstream failure in the language model or a tool back-end"""

    code = "provider_error"
    status_code = 502


class CancelledByCaller(CoreError):
    """The caller went away. Not an error for retry purposes."""

    code = "cancelled"
    status_code = 499
