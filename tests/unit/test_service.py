"""Unit tests for the service facade."""

from unittest.mock import patch

import base58
import pytest
from nacl.signing import SigningKey

from questledger.auth import InvalidSignature, SessionInvalid
from questledger.config import Settings
from questledger.database import MemoryIdentityStore, SqlIdentityStore
from questledger.ledger import DisplayNameTaken
from questledger.oracles import RewardAssetOracle, SolanaBalanceOracle
from questledger.progression import AlreadyCheckedInToday
from questledger.service import QuestLedgerService

SECRET = "service-test-secret-0123456789abcdef"


class MockBalanceOracle:
    """Balance oracle returning a fixed SOL balance."""

    def __init__(self, balance):
        self.balance = balance

    def query(self, wallet_address):
        return self.balance


def new_wallet():
    signing_key = SigningKey.generate()
    return signing_key, base58.b58encode(bytes(signing_key.verify_key)).decode()


@pytest.fixture
def settings():
    return Settings(session_secret=SECRET)


@pytest.fixture
def service(settings):
    with QuestLedgerService(settings, MemoryIdentityStore(), balance_oracle=MockBalanceOracle(1.0)) as svc:
        yield svc


def sign_in(service, referral_code=None):
    signing_key, address = new_wallet()
    message = service.issue_challenge(address)
    signature = signing_key.sign(message.encode('utf-8')).signature
    result = service.verify_and_authenticate(address, message, signature, referral_code=referral_code)
    return address, result


class TestServiceFlow:
    """Test operations end to end through the facade."""

    def test_sign_in_then_profile(self, service):
        """A fresh session token reads back the new profile."""
        address, result = sign_in(service)
        profile = service.get_profile(result['token'])
        assert profile['wallet_address'] == address
        assert profile['xp'] == 10

    def test_complete_quests(self, service):
        """Quest completions accumulate XP and resubmissions award nothing."""
        _, result = sign_in(service)
        token = result['token']

        assert service.complete_quest(token, 'fund-wallet')['xp_awarded'] == 20
        assert service.complete_quest(token, 'explore-transaction-1', '150')['total_xp'] == 60
        assert service.complete_quest(token, 'explore-transaction-1', '150')['already_completed'] is True

    def test_check_in_once_per_day(self, service):
        """A second check-in on the same day is refused."""
        _, result = sign_in(service)
        assert service.check_in(result['token'])['streak'] == 1
        with pytest.raises(AlreadyCheckedInToday):
            service.check_in(result['token'])

    def test_invalid_session_rejected(self, service):
        """Operations refuse a token that does not decode."""
        with pytest.raises(SessionInvalid):
            service.check_in("not-a-token")

    def test_bad_signature(self, service):
        """Sign-in refuses a signature that does not verify."""
        _, address = new_wallet()
        message = service.issue_challenge(address)
        with pytest.raises(InvalidSignature):
            service.verify_and_authenticate(address, message, b"\x01" * 64)

    def test_display_names(self, service):
        """Display names are unique regardless of case."""
        _, first = sign_in(service)
        _, second = sign_in(service)
        profile = service.set_display_name(first['token'], 'Explorer')
        assert profile['display_name'] == 'Explorer'
        with pytest.raises(DisplayNameTaken):
            service.set_display_name(second['token'], 'EXPLORER')

    def test_leaderboard(self, service):
        """The leaderboard ranks identities by XP."""
        leader, result = sign_in(service)
        sign_in(service)
        service.complete_quest(result['token'], 'visit-x-og', 'action_confirmed')

        board = service.get_leaderboard(10)

        assert board[0]['wallet_address'] == leader
        assert [entry['rank'] for entry in board] == [1, 2]

    def test_referral_through_sign_in(self, service):
        """A referral code at sign-in links the new identity to its referrer."""
        referrer, result = sign_in(service)
        code = result['identity']['referral_code']
        _, referred = sign_in(service, referral_code=code)
        assert referred['identity']['referrer'] == referrer
        assert referred['referral_bonus'] == 1

    def test_list_paths(self, service):
        """Path summaries total the XP of their quests."""
        paths = {p['id']: p for p in service.list_paths()}
        assert paths['solana-foundations']['total_xp'] == 175


class TestServiceMetrics:
    """XP metrics are only sent when an API key is configured."""

    def test_no_key_no_metric(self, service):
        """Without an API key nothing is reported."""
        with patch('questledger.service.send_xp_metrics') as mock_send:
            _, result = sign_in(service)
            service.check_in(result['token'])
        mock_send.assert_not_called()

    def test_metrics_sent_with_key(self):
        """Each awarding request reports once and resubmissions report nothing."""
        settings = Settings(session_secret=SECRET, datadog_api_key='dd-key')
        service = QuestLedgerService(settings, MemoryIdentityStore())
        with patch('questledger.service.send_xp_metrics') as mock_send:
            _, result = sign_in(service)
            service.check_in(result['token'])
            service.complete_quest(result['token'], 'visit-x-se', 'action_confirmed')
            service.complete_quest(result['token'], 'visit-x-se', 'action_confirmed')

        calls = [c.args for c in mock_send.call_args_list]
        assert calls == [
            ([('quest', 10), ('referral', 0)], 'dd-key'),
            ([('check-in', 1), ('referral', 0)], 'dd-key'),
            ([('quest', 10), ('referral', 0)], 'dd-key'),
        ]

    def test_referral_bonus_reported(self):
        """The referrer's bonus is reported with the referred wallet's award."""
        settings = Settings(session_secret=SECRET, datadog_api_key='dd-key')
        service = QuestLedgerService(settings, MemoryIdentityStore())
        _, result = sign_in(service)
        with patch('questledger.service.send_xp_metrics') as mock_send:
            sign_in(service, referral_code=result['identity']['referral_code'])

        mock_send.assert_called_once_with([('quest', 10), ('referral', 1)], 'dd-key')


class TestServiceOpen:
    """Test building the service from settings."""

    def test_open_builds_collaborators(self):
        """A SQL store and both oracles are built when configured."""
        settings = Settings(
            session_secret=SECRET,
            database_url='sqlite://',
            reward_asset_rpc_url='https://das.example.test',
            reward_collection_mint='Mint111',
        )
        with QuestLedgerService.open(settings) as service:
            assert isinstance(service.store, SqlIdentityStore)
            assert isinstance(service.balance_oracle, SolanaBalanceOracle)
            assert isinstance(service.reward_asset_oracle, RewardAssetOracle)

    def test_open_without_reward_oracle(self):
        """The reward-asset oracle is skipped when its settings are missing."""
        with QuestLedgerService.open(Settings(session_secret=SECRET, database_url='sqlite://')) as service:
            assert service.reward_asset_oracle is None
