"""
Key/value persistence used by the history ledger and the credential store.

Values are opaque strings. ``update`` is the only read-modify-write entry
point and is serialized: within a process by a lock, and for the SQLite
store across processes by an immediate transaction.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, Optional

from .db import DEFAULT_DB_PATH, get_connection, initialize_schema

Updater = Callable[[Optional[str]], Optional[str]]


class KeyValueStore(ABC):
    """String storage keyed by name."""

    @abstractmethod
    def read(self, key: str) -> Optional[str]:
        """Return the stored value, or None when absent."""

    @abstractmethod
    def write(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Delete a value. Idempotent."""

    @abstractmethod
    def update(self, key: str, updater: Updater) -> Optional[str]:
        """Atomically replace a value with ``updater(old)``.

        The value is written only when it changes; a None result deletes
        the key.

        Returns:
            The new value
        """


class MemoryKeyValueStore(KeyValueStore):
    """In-process store, used for tests and ephemeral sessions."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.RLock()

    def read(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def write(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def update(self, key: str, updater: Updater) -> Optional[str]:
        with self._lock:
            old = self._data.get(key)
            new = updater(old)
            if new != old:
                if new is None:
                    self._data.pop(key, None)
                else:
                    self._data[key] = new
            return new


class SqliteKeyValueStore(KeyValueStore):
    """Durable store in a single SQLite table."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the store and create its table if needed.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._lock = threading.RLock()
        initialize_schema(db_path)

    def read(self, key: str) -> Optional[str]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
            return row[0] if row else None
        finally:
            conn.close()

    def write(self, key: str, value: str) -> None:
        with self._lock:
            conn = get_connection(self.db_path)
            try:
                self._upsert(conn, key, value)
            finally:
                conn.close()

    def remove(self, key: str) -> None:
        with self._lock:
            conn = get_connection(self.db_path)
            try:
                conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            finally:
                conn.close()

    def update(self, key: str, updater: Updater) -> Optional[str]:
        with self._lock:
            conn = get_connection(self.db_path)
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = conn.execute(
                        "SELECT value FROM kv_store WHERE key = ?", (key,)
                    ).fetchone()
                    old = row[0] if row else None
                    new = updater(old)
                    if new != old:
                        if new is None:
                            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                        else:
                            self._upsert(conn, key, new)
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
                return new
            finally:
                conn.close()

    @staticmethod
    def _upsert(conn, key: str, value: str) -> None:
        conn.execute(
            """
            INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (key, value, datetime.now().isoformat()),
        )
