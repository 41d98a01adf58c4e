"""
Failure taxonomy for upstream calls and orchestration outcomes.

Two families live here:

- ``UpstreamCallError`` and its subclasses are raised by a single call to a
  provider (transport failure, non-2xx response, unusable body). They are
  the raw material the classifier inspects.
- ``OrchestrationError`` and its subclasses are the terminal outcomes of a
  logical operation. Each carries a stable ``ErrorCode`` so that a
  presentation layer can localize it; raw upstream text is kept in
  ``details["upstream"]`` for diagnostics only.
"""

from enum import Enum
from typing import Any, Dict, Optional


class FailureKind(Enum):
    """Classification of a single failed upstream call."""
    QUOTA = "quota"
    AUTH = "auth"
    TRANSIENT = "transient"
    FATAL = "fatal"


class ErrorCode(Enum):
    """Stable reason codes for terminal failures."""
    NO_CREDENTIAL_CONFIGURED = "no_credential_configured"
    ALL_CREDENTIALS_EXHAUSTED = "all_credentials_exhausted"
    MAX_ATTEMPTS_REACHED = "max_attempts_reached"
    AUTH_REJECTED = "auth_rejected"
    UPSTREAM_QUOTA = "upstream_quota"
    UPSTREAM_TRANSIENT = "upstream_transient"
    UPSTREAM_FATAL = "upstream_fatal"
    MALFORMED_RESPONSE = "malformed_response"
    SECONDARY_OPERATION_FAILED = "secondary_operation_failed"
    INTERNAL_ERROR = "internal_error"


# ---------------------------------------------------------------------------
# Raw call failures
# ---------------------------------------------------------------------------

class UpstreamCallError(Exception):
    """Base class for a failed call to an upstream provider."""

    @property
    def upstream_message(self) -> str:
        return str(self)


class TransportError(UpstreamCallError):
    """Network-level failure: connection refused, reset, DNS, timeout."""

    def __init__(self, message: str, timeout: bool = False):
        super().__init__(message)
        self.timeout = timeout


class UpstreamResponseError(UpstreamCallError):
    """Upstream answered with a non-success status code.

    Attributes:
        status_code: HTTP status returned by the upstream
        code: Error code field from the JSON body, if any
        payload: Decoded JSON body (or None when it was not JSON)
    """

    def __init__(self, status_code: int, payload: Any = None, message: Optional[str] = None):
        self.status_code = status_code
        self.payload = payload
        self.code: Optional[str] = None
        self.details: Dict[str, Any] = {}
        if isinstance(payload, dict):
            code = payload.get("code")
            self.code = code if isinstance(code, str) else None
            details = payload.get("details")
            if isinstance(details, dict):
                self.details = details
            if message is None and isinstance(payload.get("error"), str):
                message = payload["error"]
        super().__init__(message or f"Upstream request failed with status {status_code}")

    @property
    def upstream_message(self) -> str:
        upstream = self.details.get("upstream")
        if isinstance(upstream, str) and upstream:
            return upstream
        return str(self)


class InvalidResponseBody(UpstreamCallError):
    """Upstream answered but the body was empty, not JSON, or missing fields."""


# ---------------------------------------------------------------------------
# Orchestration outcomes
# ---------------------------------------------------------------------------

class OrchestrationError(Exception):
    """Terminal failure of a logical operation.

    Attributes:
        code: Stable, classifiable reason
        provider: Provider id the operation ran against
        details: Diagnostic data; ``details["upstream"]`` holds raw upstream text
    """
    code = ErrorCode.INTERNAL_ERROR
    default_message = "Operation failed"

    def __init__(
        self,
        provider: Optional[str] = None,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message or self.default_message)
        self.provider = provider
        self.details: Dict[str, Any] = dict(details or {})
        if provider is not None:
            self.details.setdefault("provider", provider)

    @property
    def reason(self) -> str:
        return self.code.value

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form for API responses and logs."""
        return {
            "code": self.reason,
            "error": str(self),
            "details": dict(self.details),
        }


class NoCredentialConfigured(OrchestrationError):
    code = ErrorCode.NO_CREDENTIAL_CONFIGURED
    default_message = "No credential configured for provider"


class AllCredentialsExhausted(OrchestrationError):
    code = ErrorCode.ALL_CREDENTIALS_EXHAUSTED
    default_message = "All credentials exhausted; quota resets with the next window"


class MaxAttemptsReached(OrchestrationError):
    code = ErrorCode.MAX_ATTEMPTS_REACHED
    default_message = "Maximum retry attempts reached"


class AuthRejected(OrchestrationError):
    code = ErrorCode.AUTH_REJECTED
    default_message = "Credential rejected by provider"


class UpstreamError(OrchestrationError):
    """Upstream failure surfaced without recovery; carries its FailureKind."""
    default_message = "Upstream provider error"

    _CODES = {
        FailureKind.QUOTA: ErrorCode.UPSTREAM_QUOTA,
        FailureKind.TRANSIENT: ErrorCode.UPSTREAM_TRANSIENT,
        FailureKind.FATAL: ErrorCode.UPSTREAM_FATAL,
        FailureKind.AUTH: ErrorCode.AUTH_REJECTED,
    }

    def __init__(
        self,
        kind: FailureKind,
        provider: Optional[str] = None,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(provider, message, details)
        self.kind = kind
        self.code = self._CODES[kind]
        self.details.setdefault("kind", kind.value)


class MalformedResponse(OrchestrationError):
    code = ErrorCode.MALFORMED_RESPONSE
    default_message = "Malformed response from upstream"


class SecondaryOperationFailed(OrchestrationError):
    """Advisory attached to a successful result; never a unit failure."""
    code = ErrorCode.SECONDARY_OPERATION_FAILED
    default_message = "Secondary operation failed"

    def __init__(
        self,
        operation: str,
        cause: Optional[OrchestrationError] = None,
        provider: Optional[str] = None,
        message: Optional[str] = None,
    ):
        details: Dict[str, Any] = {"operation": operation}
        if cause is not None:
            details["cause"] = cause.reason
            if "upstream" in cause.details:
                details["upstream"] = cause.details["upstream"]
        super().__init__(provider, message or f"{operation} failed", details)
        self.operation = operation
        self.cause = cause


def upstream_details(error: UpstreamCallError) -> Dict[str, Any]:
    """Collect diagnostic details from a raw call failure."""
    details: Dict[str, Any] = {"upstream": error.upstream_message}
    if isinstance(error, UpstreamResponseError):
        details["status"] = error.status_code
        if error.code:
            details["upstream_code"] = error.code
        retry_after = error.details.get("retryAfter")
        if retry_after is not None:
            details["retry_after"] = retry_after
    elif isinstance(error, TransportError) and error.timeout:
        details["timeout"] = True
    return details
