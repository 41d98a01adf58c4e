"""
Durable credential lists per pool.

Secrets are stored as a comma-separated string per pool. Encryption at rest
is the concern of the surrounding deployment, not of this module.

Resolution order for ``load``:
    1. Environment variable ``<POOL>_TOKENS`` (``gitee`` -> ``GITEE_TOKENS``)
    2. Stored value
"""

import os
import re
from typing import List, Optional, Sequence

from image_relay.core.token_pool import parse_tokens

from .kv import KeyValueStore

TOKEN_KEY_PREFIX = "tokens:"


def env_var_for(pool: str) -> str:
    """Environment variable consulted for a pool's tokens."""
    return re.sub(r"[^A-Z0-9]+", "_", pool.upper()).strip("_") + "_TOKENS"


class CredentialStore:
    """Reads and writes the ordered secrets of each credential pool."""

    def __init__(self, store: KeyValueStore, use_env: bool = True):
        self.store = store
        self.use_env = use_env

    def _key(self, pool: str) -> str:
        return f"{TOKEN_KEY_PREFIX}{pool}"

    def raw(self, pool: str) -> Optional[str]:
        if self.use_env:
            env_value = os.getenv(env_var_for(pool))
            if env_value:
                return env_value
        return self.store.read(self._key(pool))

    def load(self, pool: str) -> List[str]:
        """Return the pool's secrets in declaration order."""
        return parse_tokens(self.raw(pool))

    def save(self, pool: str, tokens: Sequence[str]) -> List[str]:
        """Replace the pool's secrets.

        Args:
            pool: Credential pool name
            tokens: Secrets, or raw strings holding comma/newline separated secrets

        Returns:
            The normalized list that was stored
        """
        normalized = parse_tokens("\n".join(tokens))
        if normalized:
            self.store.write(self._key(pool), ",".join(normalized))
        else:
            self.store.remove(self._key(pool))
        return normalized

    def clear(self, pool: str) -> None:
        self.store.remove(self._key(pool))
