"""Sliding-window counting, blocks, clearing and purging on the in-memory store.

Window convention: a failure counts while ``now - window < timestamp``, so a
row stamped exactly ``now - window`` is already outside.
"""

from datetime import datetime, timedelta, timezone

import pytest

from bureauguard.storage.memory import MemoryRateLimitStore

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    return MemoryRateLimitStore()


class TestCountRecentFailures:
    def test_empty_store_counts_zero(self, store):
        counts = store.count_recent_failures("a@example.com", "10.0.0.1", T0, 10)
        assert counts.account == 0
        assert counts.origin == 0

    def test_eleven_failures_one_per_minute_counts_ten(self, store):
        for minute in range(11):
            store.record_failure("a@example.com", "10.0.0.1", T0 + timedelta(minutes=minute))

        now = T0 + timedelta(minutes=10)
        counts = store.count_recent_failures("a@example.com", "10.0.0.1", now, 10)

        assert counts.account == 10
        assert counts.origin == 10

    def test_row_exactly_at_window_start_is_excluded(self, store):
        store.record_failure("a@example.com", "10.0.0.1", T0)
        now = T0 + timedelta(minutes=10)
        assert store.count_recent_failures("a@example.com", "10.0.0.1", now, 10).account == 0
        just_inside = T0 + timedelta(minutes=10) - timedelta(microseconds=1)
        assert store.count_recent_failures("a@example.com", "10.0.0.1", just_inside, 10).account == 1

    def test_account_and_origin_counted_independently(self, store):
        store.record_failure("a@example.com", "10.0.0.1", T0)
        store.record_failure("b@example.com", "10.0.0.1", T0)
        store.record_failure("a@example.com", "10.0.0.2", T0)
        store.record_failure(None, "10.0.0.1", T0)

        counts = store.count_recent_failures("a@example.com", "10.0.0.1", T0, 10)

        assert counts.account == 2
        assert counts.origin == 3

    def test_repeated_failures_accumulate(self, store):
        for _ in range(3):
            store.record_failure("a@example.com", "10.0.0.1", T0)
        assert store.count_recent_failures("a@example.com", "10.0.0.1", T0, 10).account == 3

    def test_non_positive_window_rejected(self, store):
        with pytest.raises(ValueError):
            store.count_recent_failures("a@example.com", "10.0.0.1", T0, 0)
        with pytest.raises(ValueError):
            store.purge_expired(T0, -5)


class TestBlockStatus:
    def test_no_blocks_means_not_blocked(self, store):
        status = store.get_block_status("a@example.com", "10.0.0.1", T0)
        assert status.blocked is False
        assert status.expires_at is None

    def test_account_block_matches_from_any_origin(self, store):
        store.create_block("a@example.com", None, T0 + timedelta(minutes=10), now=T0)

        status = store.get_block_status("a@example.com", "192.168.1.1", T0)

        assert status.blocked is True
        assert status.account == "a@example.com"
        assert status.expires_at == T0 + timedelta(minutes=10)

    def test_origin_block_matches_any_account(self, store):
        store.create_block(None, "10.0.0.1", T0 + timedelta(minutes=10), now=T0)
        assert store.get_block_status("other@example.com", "10.0.0.1", T0).blocked is True
        assert store.get_block_status("other@example.com", "10.0.0.2", T0).blocked is False

    def test_block_inactive_at_expiry(self, store):
        expires = T0 + timedelta(minutes=10)
        store.create_block("a@example.com", None, expires, now=T0)
        assert store.get_block_status("a@example.com", "x", expires - timedelta(seconds=1)).blocked
        assert not store.get_block_status("a@example.com", "x", expires).blocked

    def test_latest_expiry_reported_when_several_match(self, store):
        store.create_block("a@example.com", None, T0 + timedelta(minutes=5), now=T0)
        store.create_block(None, "10.0.0.1", T0 + timedelta(minutes=30), now=T0)

        status = store.get_block_status("a@example.com", "10.0.0.1", T0)

        assert status.expires_at == T0 + timedelta(minutes=30)
        assert status.origin == "10.0.0.1"


class TestClearAccountFailures:
    def test_clears_account_but_keeps_origin_counts(self, store):
        for _ in range(4):
            store.record_failure("a@example.com", "10.0.0.1", T0)
        before = store.count_recent_failures("a@example.com", "10.0.0.1", T0, 10)

        cleared = store.clear_account_failures("a@example.com")
        after = store.count_recent_failures("a@example.com", "10.0.0.1", T0, 10)

        assert cleared == 4
        assert after.account == 0
        assert after.origin == before.origin == 4

    def test_other_accounts_untouched(self, store):
        store.record_failure("a@example.com", "10.0.0.1", T0)
        store.record_failure("b@example.com", "10.0.0.1", T0)
        store.clear_account_failures("a@example.com")
        assert store.count_recent_failures("b@example.com", "10.0.0.1", T0, 10).account == 1


class TestPurgeExpired:
    def test_removes_only_rows_no_longer_counted(self, store):
        for minute in range(11):
            store.record_failure("a@example.com", "10.0.0.1", T0 + timedelta(minutes=minute))
        store.create_block("a@example.com", None, T0 + timedelta(minutes=10), now=T0)
        store.create_block(None, "10.0.0.1", T0 + timedelta(minutes=20), now=T0)
        now = T0 + timedelta(minutes=10)

        counts_before = store.count_recent_failures("a@example.com", "10.0.0.1", now, 10)
        status_before = store.get_block_status("a@example.com", "10.0.0.1", now)

        removed = store.purge_expired(now, 10)

        assert removed == 2  # attempt at T0 and the block expiring at now
        assert store.count_recent_failures("a@example.com", "10.0.0.1", now, 10) == counts_before
        assert store.get_block_status("a@example.com", "10.0.0.1", now) == status_before

    def test_purge_on_empty_store(self, store):
        assert store.purge_expired(T0, 10) == 0
