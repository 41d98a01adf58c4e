"""
History ledger of completed generations.

Append-only, most-recent-first, bounded in size and expiring by TTL.
Expired entries are swept lazily whenever the ledger is listed. The ledger
is a best-effort cache, not a system of record: unreadable data degrades to
an empty history instead of raising.
"""

import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from image_relay.core.logger import logger

from .kv import KeyValueStore
from .models import HistoryEntry

HISTORY_STORAGE_KEY = "image_history"
HISTORY_TTL = timedelta(hours=24)
MAX_HISTORY_ITEMS = 200


@dataclass(frozen=True)
class HistoryStats:
    """Counts of stored entries split by expiry."""
    total: int
    valid: int
    expired: int


def _new_id() -> str:
    return uuid.uuid4().hex


class HistoryLedger:
    """Ledger of generation metadata over a key/value store."""

    def __init__(
        self,
        store: KeyValueStore,
        ttl: timedelta = HISTORY_TTL,
        max_items: int = MAX_HISTORY_ITEMS,
        clock: Callable[[], datetime] = datetime.now,
        id_factory: Callable[[], str] = _new_id,
        key: str = HISTORY_STORAGE_KEY,
    ):
        """Initialize the ledger.

        Args:
            store: Persistence backend
            ttl: Lifetime of each entry, fixed at creation
            max_items: Maximum number of retained entries
            clock: Source of the current time
            id_factory: Generator of unique entry ids
            key: Storage key holding the serialized entries
        """
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")
        if max_items <= 0:
            raise ValueError("max_items must be > 0")
        self.store = store
        self.ttl = ttl
        self.max_items = max_items
        self.key = key
        self._clock = clock
        self._id_factory = id_factory

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def _parse(self, raw: Optional[str]) -> List[HistoryEntry]:
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Stored history is not valid JSON; treating as empty")
            return []
        if not isinstance(data, list):
            return []

        entries = []
        for item in data:
            if not isinstance(item, dict):
                continue
            try:
                entries.append(HistoryEntry.from_dict(item))
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping malformed history entry")
        return entries

    @staticmethod
    def _dump(entries: List[HistoryEntry]) -> str:
        return json.dumps([entry.to_dict() for entry in entries])

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def append(
        self,
        url: str,
        prompt: str,
        provider_id: str,
        provider_name: str,
        model_id: str,
        model_name: str,
        width: int,
        height: int,
        steps: int,
        seed: int,
        negative_prompt: str = "",
        duration: str = "",
        source: Optional[str] = None,
    ) -> str:
        """Record a completed generation.

        The entry gets a fresh id, ``timestamp = now`` and
        ``expires_at = now + ttl``; it is placed first and the ledger is
        truncated to ``max_items``. Expired entries are dropped on the way.

        Returns:
            The id of the new entry
        """
        now = self._clock()
        entry = HistoryEntry(
            id=self._id_factory(),
            url=url,
            prompt=prompt,
            negative_prompt=negative_prompt,
            provider_id=provider_id,
            provider_name=provider_name,
            model_id=model_id,
            model_name=model_name,
            width=width,
            height=height,
            steps=steps,
            seed=seed,
            duration=duration,
            timestamp=now,
            expires_at=now + self.ttl,
            source=source,
        )

        def _prepend(raw: Optional[str]) -> str:
            valid = [e for e in self._parse(raw) if not e.is_expired(now)]
            return self._dump([entry] + valid[:self.max_items - 1])

        self.store.update(self.key, _prepend)
        logger.debug("Recorded history entry {}", entry.id)
        return entry.id

    def list(self) -> List[HistoryEntry]:
        """Return unexpired entries, most recent first.

        Expired entries found along the way are removed from the store.
        """
        now = self._clock()
        valid: List[HistoryEntry] = []

        def _sweep(raw: Optional[str]) -> Optional[str]:
            entries = self._parse(raw)
            valid.extend(e for e in entries if not e.is_expired(now))
            if raw is not None and len(valid) != len(entries):
                logger.debug("Swept {} expired history entries", len(entries) - len(valid))
                return self._dump(valid)
            return raw

        self.store.update(self.key, _sweep)
        return valid

    def list_all(self) -> List[HistoryEntry]:
        """Return every stored entry, expired ones included."""
        return self._parse(self.store.read(self.key))

    def get(self, entry_id: str) -> Optional[HistoryEntry]:
        """Find an entry by id, expired or not."""
        for entry in self.list_all():
            if entry.id == entry_id:
                return entry
        return None

    def remove(self, entry_id: str) -> None:
        """Delete one entry regardless of expiry. Idempotent."""

        def _without(raw: Optional[str]) -> Optional[str]:
            entries = self._parse(raw)
            kept = [e for e in entries if e.id != entry_id]
            if raw is not None and len(kept) != len(entries):
                return self._dump(kept)
            return raw

        self.store.update(self.key, _without)

    def clear(self) -> None:
        """Delete every entry."""
        self.store.remove(self.key)

    def clear_expired(self) -> int:
        """Sweep expired entries now.

        Returns:
            Number of entries removed
        """
        removed = 0

        def _sweep(raw: Optional[str]) -> Optional[str]:
            nonlocal removed
            now = self._clock()
            entries = self._parse(raw)
            valid = [e for e in entries if not e.is_expired(now)]
            removed = len(entries) - len(valid)
            if raw is not None and removed:
                return self._dump(valid)
            return raw

        self.store.update(self.key, _sweep)
        return removed

    def stats(self) -> HistoryStats:
        entries = self.list_all()
        now = self._clock()
        valid = sum(1 for e in entries if not e.is_expired(now))
        return HistoryStats(total=len(entries), valid=valid, expired=len(entries) - valid)
