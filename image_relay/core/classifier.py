"""
Failure classification for upstream calls.

Pure function with no side effects: the orchestrator decides what to do
with the label.

Precedence:
1. Quota - rate/usage limit exceeded, recovered by rotating credentials
2. Auth - credential rejected, may fall back to anonymous access
3. Transient - network failures, unusable bodies, 5xx; retried in place
4. Fatal - everything else, surfaced immediately
"""

from typing import Optional

from .errors import (
    FailureKind,
    InvalidResponseBody,
    TransportError,
    UpstreamCallError,
    UpstreamResponseError,
)

QUOTA_STATUS_CODES = frozenset({429})
AUTH_STATUS_CODES = frozenset({401, 403})
TRANSIENT_STATUS_CODES = frozenset({408, 425})

QUOTA_ERROR_CODES = frozenset({"QUOTA_EXCEEDED", "RATE_LIMITED"})
AUTH_ERROR_CODES = frozenset({"AUTH_REQUIRED", "AUTH_INVALID", "AUTH_EXPIRED"})
TRANSIENT_ERROR_CODES = frozenset({"TIMEOUT"})

# Phrases providers use for usage limits when the status code is generic
QUOTA_PATTERNS = (
    "quota",
    "rate limit",
    "rate_limit",
    "too many requests",
    "usage limit",
    "limit exceeded",
    "limit reached",
    "resource_exhausted",
    "insufficient credits",
    "exceeded your",
)


def _matches_quota_text(message: Optional[str]) -> bool:
    if not message:
        return False
    lowered = message.lower()
    return any(pattern in lowered for pattern in QUOTA_PATTERNS)


def classify_failure(error: UpstreamCallError) -> FailureKind:
    """Label a failed upstream call.

    Args:
        error: Raw failure raised by the transport or API layer

    Returns:
        FailureKind for the failure
    """
    if isinstance(error, TransportError):
        return FailureKind.TRANSIENT
    if isinstance(error, InvalidResponseBody):
        return FailureKind.TRANSIENT
    if not isinstance(error, UpstreamResponseError):
        return FailureKind.FATAL

    status = error.status_code
    code = (error.code or "").upper()

    # 1. Quota
    if status in QUOTA_STATUS_CODES or code in QUOTA_ERROR_CODES:
        return FailureKind.QUOTA

    # 2. Auth
    if status in AUTH_STATUS_CODES or code in AUTH_ERROR_CODES:
        # Some providers report exhausted credits as 403 with a quota message
        if _matches_quota_text(error.upstream_message):
            return FailureKind.QUOTA
        return FailureKind.AUTH

    # 3. Transient
    if status >= 500 or status in TRANSIENT_STATUS_CODES or code in TRANSIENT_ERROR_CODES:
        if _matches_quota_text(error.upstream_message):
            return FailureKind.QUOTA
        return FailureKind.TRANSIENT

    if _matches_quota_text(error.upstream_message):
        return FailureKind.QUOTA

    # 4. Fatal
    return FailureKind.FATAL


def is_quota_error(error: UpstreamCallError) -> bool:
    """True when the failure should trigger credential rotation."""
    return classify_failure(error) is FailureKind.QUOTA
