"""
Unit tests for database module.
"""

from datetime import datetime, timedelta

import pytest

from questledger.database import (
    DuplicateKeyError,
    MemoryIdentityStore,
    SqlIdentityStore,
    StorageConflict,
    VersionConflict,
    format_timestamp,
    new_identity_document,
    parse_timestamp,
    retry_on_conflict,
    utc_now,
)


@pytest.fixture(params=['memory', 'sql'])
def store(request, tmp_path):
    """Each store test runs against both store implementations."""
    if request.param == 'memory':
        instance = MemoryIdentityStore()
    else:
        instance = SqlIdentityStore.from_url(f"sqlite:///{tmp_path / 'ledger.db'}")
    yield instance
    instance.close()


def make_document(wallet, code=None):
    return new_identity_document(wallet, code or f"CODE{wallet.upper()}", '2024-01-01T00:00:00Z')


class TestRetryOnConflict:
    """Test optimistic-concurrency retry."""

    def test_success_first_attempt(self):
        """A call that succeeds runs exactly once."""
        call_count = [0]

        def success_func():
            call_count[0] += 1
            return "success"

        assert retry_on_conflict(success_func) == "success"
        assert call_count[0] == 1

    def test_success_after_conflict(self, monkeypatch):
        """Version conflicts are retried until the call succeeds."""
        monkeypatch.setattr('questledger.database.time.sleep', lambda seconds: None)
        call_count = [0]

        def conflict_then_success():
            call_count[0] += 1
            if call_count[0] < 3:
                raise VersionConflict("wallet")
            return "success"

        assert retry_on_conflict(conflict_then_success) == "success"
        assert call_count[0] == 3

    def test_exhausted(self, monkeypatch):
        """Conflicts past the attempt limit raise StorageConflict."""
        monkeypatch.setattr('questledger.database.time.sleep', lambda seconds: None)

        def always_conflict():
            raise VersionConflict("wallet")

        with pytest.raises(StorageConflict):
            retry_on_conflict(always_conflict, max_attempts=3)

    def test_other_errors_propagate_immediately(self):
        """Errors other than version conflicts are not retried."""
        call_count = [0]

        def failing():
            call_count[0] += 1
            raise KeyError("boom")

        with pytest.raises(KeyError):
            retry_on_conflict(failing)
        assert call_count[0] == 1


class TestTimestamps:
    """Test timestamp helpers."""

    def test_format_has_z_suffix(self):
        """Formatted timestamps carry a Z suffix."""
        stamp = format_timestamp(utc_now())
        assert stamp.endswith('Z')

    def test_round_trip(self):
        """Parsing a formatted timestamp gives back the same moment."""
        moment = utc_now()
        assert parse_timestamp(format_timestamp(moment)) == moment

    def test_naive_is_utc(self):
        """Naive datetimes are treated as UTC."""
        assert format_timestamp(datetime(2024, 1, 2, 3, 4, 5)) == '2024-01-02T03:04:05Z'

    def test_parse_empty(self):
        """Missing timestamps parse to None."""
        assert parse_timestamp(None) is None
        assert parse_timestamp('') is None


class TestInsertAndGet:
    """Test identity creation and lookup."""

    def test_get_unknown(self, store):
        """An unknown wallet has no document."""
        assert store.get('nobody') is None

    def test_insert_new(self, store):
        """A new identity starts at version 1 with no progress."""
        stored, created = store.insert(make_document('alice'))
        assert created is True
        assert stored['version'] == 1
        assert stored['xp'] == 0
        assert stored['completed_quests'] == {}
        assert stored['pending_referral_bonuses'] == []
        assert store.get('alice')['wallet_address'] == 'alice'

    def test_insert_existing_returns_stored(self, store):
        """Inserting an existing wallet returns the stored document unchanged."""
        store.insert(make_document('alice', 'CODE1'))
        stored, created = store.insert(make_document('alice', 'CODE2'))
        assert created is False
        assert stored['referral_code'] == 'CODE1'

    def test_creation_order_increases(self, store):
        """Later identities get a higher creation sequence."""
        first, _ = store.insert(make_document('alice'))
        second, _ = store.insert(make_document('bob'))
        assert second['created_seq'] > first['created_seq']

    def test_referral_code_unique(self, store):
        """Two identities cannot share a referral code."""
        store.insert(make_document('alice', 'SAME'))
        with pytest.raises(DuplicateKeyError) as exc_info:
            store.insert(make_document('bob', 'SAME'))
        assert exc_info.value.field == 'referral_code'

    def test_get_returns_copy(self, store):
        """Mutating a fetched document does not touch the store."""
        store.insert(make_document('alice'))
        document = store.get('alice')
        document['xp'] = 999
        assert store.get('alice')['xp'] == 0

    def test_find_by_referral_code(self, store):
        """Identities can be looked up by referral code."""
        store.insert(make_document('alice', 'ALICE1'))
        assert store.find_by_referral_code('ALICE1')['wallet_address'] == 'alice'
        assert store.find_by_referral_code('MISSING') is None


class TestCompareAndSwap:
    """Test version-guarded writes."""

    def test_swap_with_current_version(self, store):
        """A write at the current version is stored and bumps the version."""
        stored, _ = store.insert(make_document('alice'))
        stored['xp'] = 10
        stored['completed_quests']['q1'] = '2024-01-02T00:00:00Z'

        updated = store.compare_and_swap('alice', 1, stored)

        assert updated['version'] == 2
        assert store.get('alice')['xp'] == 10
        assert store.get('alice')['completed_quests'] == {'q1': '2024-01-02T00:00:00Z'}

    def test_swap_with_stale_version(self, store):
        """A write at a stale version is refused."""
        stored, _ = store.insert(make_document('alice'))
        first = dict(stored, xp=5)
        second = dict(stored, xp=7)

        assert store.compare_and_swap('alice', 1, first) is not None
        assert store.compare_and_swap('alice', 1, second) is None
        assert store.get('alice')['xp'] == 5

    def test_swap_unknown_wallet(self, store):
        """A write for an unknown wallet is refused."""
        assert store.compare_and_swap('ghost', 1, make_document('ghost')) is None

    def test_display_name_unique_case_insensitive(self, store):
        """Display names clash regardless of case."""
        alice, _ = store.insert(make_document('alice'))
        bob, _ = store.insert(make_document('bob'))
        store.compare_and_swap('alice', alice['version'], dict(alice, display_name='Solana'))

        with pytest.raises(DuplicateKeyError) as exc_info:
            store.compare_and_swap('bob', bob['version'], dict(bob, display_name='SOLANA'))
        assert exc_info.value.field == 'display_name'
        assert store.get('bob')['display_name'] is None

    def test_same_identity_may_keep_its_name(self, store):
        """An identity may re-case its own display name."""
        alice, _ = store.insert(make_document('alice'))
        renamed = store.compare_and_swap('alice', 1, dict(alice, display_name='Alice'))
        again = store.compare_and_swap('alice', 2, dict(renamed, display_name='ALICE'))
        assert again['display_name'] == 'ALICE'

    def test_store_keys_not_persisted_in_body(self, store):
        """Version and creation sequence are owned by the store."""
        alice, _ = store.insert(make_document('alice'))
        store.compare_and_swap('alice', 1, dict(alice, created_seq=999, version=999))
        fetched = store.get('alice')
        assert fetched['version'] == 2
        assert fetched['created_seq'] == alice['created_seq']


class TestTopByXp:
    """Test leaderboard query."""

    def test_sorted_by_xp_then_creation(self, store):
        """The leaderboard orders by XP, ties by creation order."""
        for wallet, xp in [('a', 10), ('b', 30), ('c', 10), ('d', 0)]:
            stored, _ = store.insert(make_document(wallet))
            store.compare_and_swap(wallet, 1, dict(stored, xp=xp))

        top = store.top_by_xp(3)

        assert [e['wallet_address'] for e in top] == ['b', 'a', 'c']
        assert set(top[0]) == {'wallet_address', 'display_name', 'xp', 'owns_reward_boost_asset', 'created_seq'}

    def test_empty(self, store):
        """An empty store has an empty leaderboard."""
        assert store.top_by_xp(10) == []


class TestClaimNonce:
    """Test one-time challenge nonces."""

    def test_first_claim_wins(self, store):
        """A nonce can be claimed only once."""
        expires = utc_now() + timedelta(minutes=10)
        assert store.claim_nonce('n1', expires) is True
        assert store.claim_nonce('n1', expires) is False

    def test_distinct_nonces(self, store):
        """Different nonces are claimed independently."""
        expires = utc_now() + timedelta(minutes=10)
        assert store.claim_nonce('n1', expires) is True
        assert store.claim_nonce('n2', expires) is True

    def test_expired_nonces_are_purged(self, store):
        """Expired nonces are purged and become claimable again."""
        assert store.claim_nonce('old', utc_now() - timedelta(minutes=1)) is True
        assert store.claim_nonce('trigger', utc_now() + timedelta(minutes=10)) is True
        assert store.claim_nonce('old', utc_now() + timedelta(minutes=10)) is True


class TestSqlStoreFromUrl:
    """Test engine construction."""

    def test_in_memory_url_shares_one_database(self):
        """An in-memory SQLite URL keeps one database across connections."""
        store = SqlIdentityStore.from_url('sqlite://')
        try:
            store.insert(make_document('alice'))
            assert store.get('alice') is not None
        finally:
            store.close()
