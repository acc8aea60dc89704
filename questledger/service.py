"""
Service facade for questledger.

Wires settings, the identity store, the quest catalog, oracles and analytics
together and exposes one method per public operation. Construct it once at
process start and close it at shutdown; it holds no per-request state.
"""

import logging

from questledger.analytics import send_xp_metrics
from questledger.auth import (
    authenticate_wallet,
    decode_session_token,
    issue_challenge,
)
from questledger.config import Settings
from questledger.database import IdentityStore, SqlIdentityStore
from questledger.ledger import (
    check_in,
    complete_quest,
    get_leaderboard,
    get_profile,
    profile_projection,
    set_display_name,
)
from questledger.oracles import RewardAssetOracle, SolanaBalanceOracle
from questledger.quests import QuestCatalog, default_catalog

logger = logging.getLogger(__name__)


class QuestLedgerService:

    def __init__(self, settings: Settings, store: IdentityStore, catalog: QuestCatalog | None = None,
                 balance_oracle=None, reward_asset_oracle=None):
        self.settings = settings
        self.store = store
        self.catalog = catalog or default_catalog()
        self.balance_oracle = balance_oracle
        self.reward_asset_oracle = reward_asset_oracle

    @classmethod
    def open(cls, settings: Settings) -> "QuestLedgerService":
        """Build the service and its collaborators from settings."""
        store = SqlIdentityStore.from_url(settings.database_url)
        balance_oracle = SolanaBalanceOracle(settings.solana_rpc_url, settings.oracle_timeout_seconds)
        reward_asset_oracle = None
        if settings.reward_asset_rpc_url and settings.reward_collection_mint:
            reward_asset_oracle = RewardAssetOracle(
                settings.reward_asset_rpc_url,
                settings.reward_collection_mint,
                settings.oracle_timeout_seconds,
            )
        logger.info("Quest ledger service opened")
        return cls(settings, store, balance_oracle=balance_oracle, reward_asset_oracle=reward_asset_oracle)

    def close(self) -> None:
        self.store.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _subject(self, session_token: str) -> str:
        return decode_session_token(session_token, self.settings.session_secret)['subject']

    def _report(self, event_type: str, result: dict) -> None:
        awards = [(event_type, result['xp_awarded']), ('referral', result['referral_bonus'])]
        if self.settings.datadog_api_key and any(amount > 0 for _, amount in awards):
            send_xp_metrics(awards, self.settings.datadog_api_key)

    def issue_challenge(self, wallet_address: str) -> str:
        return issue_challenge(wallet_address)

    def verify_and_authenticate(self, wallet_address: str, message: str, signature,
                                referral_code: str | None = None) -> dict:
        result = authenticate_wallet(
            wallet_address,
            message,
            signature,
            store=self.store,
            catalog=self.catalog,
            secret=self.settings.session_secret,
            session_ttl_seconds=self.settings.session_ttl_seconds,
            challenge_ttl_seconds=self.settings.challenge_ttl_seconds,
            referral_code=referral_code,
            reward_asset_oracle=self.reward_asset_oracle,
        )
        self._report('quest', result)
        return result

    def complete_quest(self, session_token: str, quest_id: str, answer: str | None = None) -> dict:
        wallet_address = self._subject(session_token)
        result = complete_quest(
            self.store,
            self.catalog,
            wallet_address,
            quest_id,
            answer=answer,
            balance_oracle=self.balance_oracle,
        )
        self._report('quest', result)
        return result

    def check_in(self, session_token: str) -> dict:
        result = check_in(self.store, self._subject(session_token))
        self._report('check-in', result)
        return result

    def get_leaderboard(self, limit: int = 20) -> list[dict]:
        return get_leaderboard(self.store, limit)

    def get_profile(self, session_token: str) -> dict:
        return get_profile(self.store, self._subject(session_token), self.catalog)

    def set_display_name(self, session_token: str, display_name: str) -> dict:
        document = set_display_name(self.store, self._subject(session_token), display_name)
        return profile_projection(document, self.catalog)

    def list_paths(self) -> list[dict]:
        return self.catalog.path_summaries()
