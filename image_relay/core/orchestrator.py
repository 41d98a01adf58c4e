"""
Credential rotation and failover for a single logical operation.

One loop serves every operation (generate, upscale, optimize, translate);
only the operation closure and the consulted pool differ.

Decision order for each failed call:
1. Transient - retried in place with the same credential, bounded
2. Quota - credential marked exhausted, next credential tried
3. Auth - anonymous fallback once if the provider allows it
4. Anything else - surfaced immediately
"""

import asyncio
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from .classifier import classify_failure
from .errors import (
    AllCredentialsExhausted,
    AuthRejected,
    FailureKind,
    InvalidResponseBody,
    MalformedResponse,
    MaxAttemptsReached,
    NoCredentialConfigured,
    OrchestrationError,
    UpstreamCallError,
    UpstreamError,
    upstream_details,
)
from .logger import logger, mask_secret
from .token_pool import TokenPool

T = TypeVar("T")

Operation = Callable[[Optional[str]], Awaitable[T]]
Classifier = Callable[[UpstreamCallError], FailureKind]

DEFAULT_MAX_ATTEMPTS = 10
DEFAULT_TRANSIENT_RETRIES = 1
DEFAULT_TRANSIENT_BACKOFF = 0.5


def _to_orchestration_error(
    error: UpstreamCallError,
    kind: FailureKind,
    provider: str,
) -> OrchestrationError:
    """Map a raw call failure to its terminal outcome."""
    details = upstream_details(error)
    if isinstance(error, InvalidResponseBody):
        return MalformedResponse(provider, str(error), details)
    if kind is FailureKind.AUTH:
        return AuthRejected(provider, details=details)
    return UpstreamError(kind, provider, str(error), details)


class RequestOrchestrator:
    """Drives the retry/failover loop against a shared TokenPool."""

    def __init__(
        self,
        pool: TokenPool,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        transient_retries: int = DEFAULT_TRANSIENT_RETRIES,
        transient_backoff: float = DEFAULT_TRANSIENT_BACKOFF,
        classifier: Classifier = classify_failure,
    ):
        """Initialize the orchestrator.

        Args:
            pool: Credential exhaustion state shared across runs
            max_attempts: Rotation budget per run
            transient_retries: Extra same-credential calls after a transient failure
            transient_backoff: Seconds to wait before each transient retry
            classifier: Failure labelling function
        """
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if transient_retries < 0:
            raise ValueError("transient_retries must be >= 0")
        self.pool = pool
        self.max_attempts = max_attempts
        self.transient_retries = transient_retries
        self.transient_backoff = transient_backoff
        self.classifier = classifier

    async def _call_anonymous(self, operation: Operation, provider: str) -> T:
        """Exactly one call without credentials; its outcome is returned as is."""
        logger.info("Calling {} anonymously", provider)
        try:
            return await operation(None)
        except UpstreamCallError as e:
            kind = self.classifier(e)
            raise _to_orchestration_error(e, kind, provider) from e

    async def _call_with_secret(self, operation: Operation, secret: str) -> T:
        """Call with one credential, retrying transient failures in place."""
        retries_left = self.transient_retries
        while True:
            try:
                return await operation(secret)
            except UpstreamCallError as e:
                if retries_left <= 0 or self.classifier(e) is not FailureKind.TRANSIENT:
                    raise
                retries_left -= 1
                logger.debug(
                    "Transient failure with {}: {}; retrying same credential",
                    mask_secret(secret),
                    e,
                )
                if self.transient_backoff > 0:
                    await asyncio.sleep(self.transient_backoff)

    async def execute(
        self,
        operation: Operation,
        provider: str,
        credentials: Sequence[str],
        requires_auth: bool,
        max_attempts: Optional[int] = None,
    ) -> T:
        """Run an operation with credential rotation.

        Args:
            operation: Awaitable factory taking a secret (None for anonymous)
            provider: Pool namespace to consult
            credentials: Ordered secrets for the provider
            requires_auth: Whether anonymous access is forbidden
            max_attempts: Override of the rotation budget

        Returns:
            The operation's result

        Raises:
            NoCredentialConfigured: Auth required and no credentials given
            AllCredentialsExhausted: Every credential hit its quota
            MaxAttemptsReached: Rotation budget spent
            AuthRejected: Credential rejected and anonymous access forbidden
            UpstreamError: Transient or fatal upstream failure
            MalformedResponse: Upstream body unusable
        """
        budget = max_attempts if max_attempts is not None else self.max_attempts
        credentials = list(credentials)

        # 1. Nothing configured
        if not credentials:
            if requires_auth:
                raise NoCredentialConfigured(provider)
            return await self._call_anonymous(operation, provider)

        # 2. Rotation loop
        attempts = 0
        while attempts < budget:
            secret = self.pool.next_available(provider, credentials)
            if secret is None:
                if not requires_auth:
                    logger.info("All credentials for {} exhausted; falling back to anonymous", provider)
                    return await self._call_anonymous(operation, provider)
                raise AllCredentialsExhausted(provider, details={"tried": attempts})

            try:
                return await self._call_with_secret(operation, secret)
            except UpstreamCallError as e:
                kind = self.classifier(e)
                if kind is FailureKind.QUOTA:
                    self.pool.mark_exhausted(provider, secret)
                    attempts += 1
                    logger.info(
                        "Quota exceeded for {} on {} (attempt {}/{})",
                        mask_secret(secret),
                        provider,
                        attempts,
                        budget,
                    )
                    continue
                if kind is FailureKind.AUTH and not requires_auth:
                    logger.warning(
                        "Credential {} rejected by {}; falling back to anonymous",
                        mask_secret(secret),
                        provider,
                    )
                    return await self._call_anonymous(operation, provider)
                logger.error("{} call failed ({}): {}", provider, kind.value, e)
                raise _to_orchestration_error(e, kind, provider) from e

        # 3. Budget spent
        raise MaxAttemptsReached(provider, details={"tried": attempts})
