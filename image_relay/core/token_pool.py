"""
Per-provider credential pools with quota-exhaustion tracking.

Exhaustion is keyed by secret inside each provider's namespace, so writes
from concurrent orchestration runs are idempotent and never lose updates.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence

from .logger import logger, mask_secret


@dataclass(frozen=True)
class Credential:
    """Snapshot of one secret's state in its provider pool."""
    provider: str
    secret: str
    exhausted: bool = False
    exhausted_at: Optional[datetime] = None


_TOKEN_SEPARATORS = re.compile(r"[,\n\r]+")


def parse_tokens(raw: Optional[str]) -> List[str]:
    """Split a stored token string into an ordered list of secrets.

    Tokens are separated by commas or newlines. Blank entries are dropped
    and duplicates keep their first position.
    """
    if not raw:
        return []
    tokens: List[str] = []
    for part in _TOKEN_SEPARATORS.split(raw):
        token = part.strip()
        if token and token not in tokens:
            tokens.append(token)
    return tokens


class TokenPool:
    """Exhaustion state for the credentials of every provider.

    The caller supplies the ordered credential list on each lookup; the pool
    only remembers which secrets are exhausted and since when.
    """

    def __init__(
        self,
        reset_after: Optional[timedelta] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize an empty pool.

        Args:
            reset_after: How long an exhausted credential stays ineligible.
                None keeps exhaustion for the lifetime of the pool.
            clock: Source of the current time
        """
        if reset_after is not None and reset_after <= timedelta(0):
            raise ValueError("reset_after must be positive")
        self.reset_after = reset_after
        self._clock = clock
        self._exhausted: Dict[str, Dict[str, datetime]] = {}

    def _is_effective(self, exhausted_at: datetime) -> bool:
        if self.reset_after is None:
            return True
        return self._clock() < exhausted_at + self.reset_after

    def is_exhausted(self, provider: str, secret: str) -> bool:
        exhausted_at = self._exhausted.get(provider, {}).get(secret)
        return exhausted_at is not None and self._is_effective(exhausted_at)

    def next_available(self, provider: str, credentials: Sequence[str]) -> Optional[str]:
        """Return the first secret, in caller order, that is not exhausted.

        Args:
            provider: Pool namespace
            credentials: Ordered secrets; must be stable within one run

        Returns:
            The secret to try next, or None when every secret is exhausted
        """
        for secret in credentials:
            if not self.is_exhausted(provider, secret):
                return secret
        return None

    def mark_exhausted(self, provider: str, secret: str) -> None:
        """Record that a secret hit its quota. Idempotent."""
        bucket = self._exhausted.setdefault(provider, {})
        current = bucket.get(secret)
        if current is not None and self._is_effective(current):
            return
        bucket[secret] = self._clock()
        logger.info("Credential {} for {} marked exhausted", mask_secret(secret), provider)

    def reset(self, provider: Optional[str] = None) -> None:
        """Clear exhaustion for one provider, or for every provider."""
        if provider is None:
            self._exhausted.clear()
        else:
            self._exhausted.pop(provider, None)

    def snapshot(self, provider: str, credentials: Sequence[str]) -> List[Credential]:
        """Describe the state of each given secret."""
        snapshot = []
        for secret in credentials:
            exhausted_at = self._exhausted.get(provider, {}).get(secret)
            exhausted = exhausted_at is not None and self._is_effective(exhausted_at)
            snapshot.append(Credential(
                provider=provider,
                secret=secret,
                exhausted=exhausted,
                exhausted_at=exhausted_at if exhausted else None,
            ))
        return snapshot
