"""
Unit tests for credential pools.

Tests rotation order, idempotent exhaustion and the optional reset window.
"""

from datetime import timedelta

import pytest

from image_relay.core.token_pool import TokenPool, parse_tokens

from helpers import FakeClock


class TestParseTokens:
    """Test splitting of stored token strings."""

    def test_comma_and_newline_separated(self):
        assert parse_tokens("a, b\nc\r\nd") == ["a", "b", "c", "d"]

    def test_blank_and_duplicate_entries_dropped(self):
        assert parse_tokens(" a ,, b ,a,\n\n") == ["a", "b"]

    def test_empty_input(self):
        assert parse_tokens("") == []
        assert parse_tokens(None) == []


class TestNextAvailable:
    """Test selection of the next usable secret."""

    def test_returns_first_in_caller_order(self):
        pool = TokenPool()
        assert pool.next_available("p1", ["a", "b", "c"]) == "a"

    def test_skips_exhausted_secrets_in_order(self):
        pool = TokenPool()
        pool.mark_exhausted("p1", "a")
        assert pool.next_available("p1", ["a", "b", "c"]) == "b"

        pool.mark_exhausted("p1", "b")
        assert pool.next_available("p1", ["a", "b", "c"]) == "c"

    def test_none_when_all_exhausted(self):
        pool = TokenPool()
        for secret in ["a", "b"]:
            pool.mark_exhausted("p1", secret)
        assert pool.next_available("p1", ["a", "b"]) is None

    def test_empty_credentials(self):
        assert TokenPool().next_available("p1", []) is None

    def test_providers_do_not_share_state(self):
        pool = TokenPool()
        pool.mark_exhausted("p1", "shared")
        assert pool.next_available("p2", ["shared"]) == "shared"
        assert pool.is_exhausted("p1", "shared")
        assert not pool.is_exhausted("p2", "shared")


class TestMarkExhausted:
    """Test exhaustion bookkeeping."""

    def test_idempotent_keeps_first_timestamp(self):
        clock = FakeClock()
        pool = TokenPool(clock=clock)
        pool.mark_exhausted("p1", "a")
        first = pool.snapshot("p1", ["a"])[0].exhausted_at

        clock.advance(minutes=5)
        pool.mark_exhausted("p1", "a")
        pool.mark_exhausted("p1", "a")

        snapshot = pool.snapshot("p1", ["a"])
        assert snapshot[0].exhausted
        assert snapshot[0].exhausted_at == first

    def test_sticky_without_reset_policy(self):
        clock = FakeClock()
        pool = TokenPool(clock=clock)
        pool.mark_exhausted("p1", "a")
        clock.advance(days=30)
        assert pool.next_available("p1", ["a"]) is None

    def test_reset_policy_restores_eligibility(self):
        clock = FakeClock()
        pool = TokenPool(reset_after=timedelta(hours=24), clock=clock)
        pool.mark_exhausted("p1", "a")

        clock.advance(hours=23, minutes=59)
        assert pool.next_available("p1", ["a"]) is None

        clock.advance(minutes=1)
        assert pool.next_available("p1", ["a"]) == "a"

    def test_mark_after_lapsed_window_records_new_time(self):
        clock = FakeClock()
        pool = TokenPool(reset_after=timedelta(hours=1), clock=clock)
        pool.mark_exhausted("p1", "a")
        clock.advance(hours=2)
        pool.mark_exhausted("p1", "a")
        assert pool.snapshot("p1", ["a"])[0].exhausted_at == clock.now

    def test_invalid_reset_window(self):
        with pytest.raises(ValueError, match="reset_after must be positive"):
            TokenPool(reset_after=timedelta(0))

    def test_manual_reset(self):
        pool = TokenPool()
        pool.mark_exhausted("p1", "a")
        pool.mark_exhausted("p2", "b")

        pool.reset("p1")
        assert pool.next_available("p1", ["a"]) == "a"
        assert pool.next_available("p2", ["b"]) is None

        pool.reset()
        assert pool.next_available("p2", ["b"]) == "b"
