"""
Unit tests for the history ledger.

Tests ordering, bounding, TTL expiry, idempotent removal and tolerance of
corrupt stored data.
"""

import json
import os
import shutil
import tempfile
import threading
from datetime import timedelta
from itertools import count

import pytest

from image_relay.storage.history import HISTORY_STORAGE_KEY, HistoryLedger
from image_relay.storage.kv import MemoryKeyValueStore, SqliteKeyValueStore

from helpers import FakeClock


def _append(ledger, url="https://cdn.example.com/a.png", **overrides):
    values = dict(
        url=url,
        prompt="a lighthouse at dusk",
        provider_id="huggingface",
        provider_name="HuggingFace",
        model_id="z-image-turbo",
        model_name="Z-Image Turbo",
        width=1024,
        height=1024,
        steps=9,
        seed=42,
    )
    values.update(overrides)
    return ledger.append(**values)


class TestHistoryLedger:
    """Test ledger operations over an in-memory store."""

    def setup_method(self):
        self.store = MemoryKeyValueStore()
        self.clock = FakeClock()
        ids = count(1)
        self.ledger = HistoryLedger(
            self.store,
            ttl=timedelta(hours=24),
            max_items=3,
            clock=self.clock,
            id_factory=lambda: f"e{next(ids)}",
        )

    def test_append_returns_id_and_sets_expiry(self):
        entry_id = _append(self.ledger, source="flow")
        entry = self.ledger.get(entry_id)

        assert entry_id == "e1"
        assert entry.timestamp == self.clock.now
        assert entry.expires_at == self.clock.now + timedelta(hours=24)
        assert entry.source == "flow"

    def test_list_is_most_recent_first(self):
        _append(self.ledger, url="u1")
        self.clock.advance(minutes=1)
        _append(self.ledger, url="u2")

        assert [e.url for e in self.ledger.list()] == ["u2", "u1"]

    def test_bounded_to_max_items(self):
        for i in range(5):
            _append(self.ledger, url=f"u{i}")

        assert [e.url for e in self.ledger.list()] == ["u4", "u3", "u2"]
        assert len(self.ledger.list_all()) == 3

    def test_expired_entries_hidden_and_swept(self):
        _append(self.ledger, url="old")
        self.clock.advance(hours=23)
        _append(self.ledger, url="new")
        self.clock.advance(hours=1)

        assert [e.url for e in self.ledger.list()] == ["new"]
        stored = json.loads(self.store.read(HISTORY_STORAGE_KEY))
        assert [item["url"] for item in stored] == ["new"]

    def test_entry_expires_exactly_at_ttl(self):
        _append(self.ledger)
        self.clock.advance(hours=24)
        assert self.ledger.list() == []

    def test_append_drops_expired_entries(self):
        _append(self.ledger, url="old")
        self.clock.advance(hours=25)
        _append(self.ledger, url="new")

        assert [e.url for e in self.ledger.list_all()] == ["new"]

    def test_remove_is_idempotent(self):
        first = _append(self.ledger, url="u1")
        _append(self.ledger, url="u2")

        self.ledger.remove(first)
        self.ledger.remove(first)
        self.ledger.remove("unknown")

        assert [e.url for e in self.ledger.list()] == ["u2"]

    def test_get_returns_expired_entry(self):
        entry_id = _append(self.ledger)
        self.clock.advance(hours=30)
        assert self.ledger.get(entry_id) is not None
        assert self.ledger.get("missing") is None

    def test_clear(self):
        _append(self.ledger)
        self.ledger.clear()
        assert self.ledger.list() == []
        assert self.store.read(HISTORY_STORAGE_KEY) is None

    def test_clear_expired_and_stats(self):
        _append(self.ledger, url="old")
        self.clock.advance(hours=23)
        _append(self.ledger, url="new")
        self.clock.advance(hours=2)

        stats = self.ledger.stats()
        assert (stats.total, stats.valid, stats.expired) == (2, 1, 1)

        assert self.ledger.clear_expired() == 1
        assert self.ledger.clear_expired() == 0
        assert self.ledger.stats().total == 1

    def test_default_capacity_drops_oldest(self):
        ledger = HistoryLedger(MemoryKeyValueStore(), clock=self.clock)
        for i in range(201):
            _append(ledger, url=f"u{i}")

        entries = ledger.list()
        assert len(entries) == 200
        assert entries[0].url == "u200"
        assert entries[-1].url == "u1"

    def test_invalid_arguments(self):
        with pytest.raises(ValueError, match="ttl must be positive"):
            HistoryLedger(self.store, ttl=timedelta(0))
        with pytest.raises(ValueError, match="max_items must be > 0"):
            HistoryLedger(self.store, max_items=0)


class TestCorruptHistory:
    """Test that unreadable stored data degrades to an empty history."""

    @pytest.mark.parametrize("raw", ["not json", "{\"a\": 1}", "42", ""])
    def test_unreadable_data_lists_empty(self, raw):
        ledger = HistoryLedger(MemoryKeyValueStore({HISTORY_STORAGE_KEY: raw}))
        assert ledger.list() == []

    def test_append_replaces_unreadable_data(self):
        store = MemoryKeyValueStore({HISTORY_STORAGE_KEY: "not json"})
        ledger = HistoryLedger(store)
        _append(ledger)
        assert len(ledger.list()) == 1

    def test_malformed_entries_skipped(self):
        clock = FakeClock()
        ledger = HistoryLedger(MemoryKeyValueStore(), clock=clock)
        _append(ledger, url="good")
        raw = json.loads(ledger.store.read(HISTORY_STORAGE_KEY))
        raw.append({"id": "broken"})
        raw.append("not an object")
        ledger.store.write(HISTORY_STORAGE_KEY, json.dumps(raw))

        assert [e.url for e in ledger.list()] == ["good"]

    def test_entries_with_utc_offset_skipped(self):
        clock = FakeClock()
        ledger = HistoryLedger(MemoryKeyValueStore(), clock=clock)
        _append(ledger, url="good")
        raw = json.loads(ledger.store.read(HISTORY_STORAGE_KEY))
        aware = dict(raw[0], id="aware", url="aware", expires_at="2026-10-19T00:00:00+00:00")
        ledger.store.write(HISTORY_STORAGE_KEY, json.dumps([aware] + raw))

        assert [e.url for e in ledger.list()] == ["good"]
        assert ledger.stats().total == 1
        assert ledger.clear_expired() == 0
        _append(ledger, url="newer")
        assert [e.url for e in ledger.list()] == ["newer", "good"]


class TestSqliteHistory:
    """Test the ledger against the durable store."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "history.db")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_entries_survive_reopen(self):
        clock = FakeClock()
        entry_id = _append(HistoryLedger(SqliteKeyValueStore(self.db_path), clock=clock))

        reopened = HistoryLedger(SqliteKeyValueStore(self.db_path), clock=clock)
        entries = reopened.list()
        assert [e.id for e in entries] == [entry_id]
        assert entries[0].width == 1024

    def test_concurrent_appends_keep_every_entry(self):
        workers = 8
        appends_per_worker = 5
        ids = []
        errors = []
        ids_lock = threading.Lock()

        def _worker():
            ledger = HistoryLedger(SqliteKeyValueStore(self.db_path))
            try:
                for _ in range(appends_per_worker):
                    entry_id = _append(ledger)
                    with ids_lock:
                        ids.append(entry_id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=_worker) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        stored = HistoryLedger(SqliteKeyValueStore(self.db_path)).list_all()
        assert len(stored) == workers * appends_per_worker
        assert len({e.id for e in stored}) == workers * appends_per_worker
        assert {e.id for e in stored} == set(ids)
