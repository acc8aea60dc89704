"""
Progression ledger for questledger.

Every mutation here follows the same shape: read the identity document, decide
and apply the change in memory, then write it back with compare_and_swap
against the version that was read. A lost race re-runs the whole step on fresh
data, so guards such as "already completed" and "already checked in today" are
always evaluated against the version being replaced.

XP only ever moves through _award_xp, which appends the matching event.

A referral bonus is written as a pending entry on the referred identity in the
same compare_and_swap as the gain that earns it, then settled onto the
referrer. Settling is keyed by the entry's event id, so an entry left pending
by a failed write is applied exactly once by a later request.
"""

import logging
import secrets
from datetime import datetime
from typing import Callable, Optional

from questledger.database import (
    DuplicateKeyError,
    IdentityStore,
    PersistenceError,
    StorageConflict,
    VersionConflict,
    format_timestamp,
    new_identity_document,
    parse_timestamp,
    retry_on_conflict,
    utc_now,
)
from questledger.oracles import OracleUnavailable
from questledger.progression import apply_boost, next_streak, rank_leaderboard, referral_bonus
from questledger.quests import AnswerIncorrect, BalanceThresholdRule, Quest, QuestCatalog, check_answer

logger = logging.getLogger(__name__)

DISPLAY_NAME_MIN_LENGTH = 3
DISPLAY_NAME_MAX_LENGTH = 15
MAX_LEADERBOARD_LIMIT = 100


class IdentityNotFound(Exception):
    """Raised when no identity exists for a wallet address."""
    pass


class InvalidDisplayName(Exception):
    """Raised when a display name is outside the allowed length."""
    pass


class DisplayNameTaken(Exception):
    """Raised when another identity already uses the display name."""
    pass


def _mutate(store: IdentityStore, wallet_address: str, change: Callable[[dict], tuple]) -> tuple:
    """Apply `change` to the current document under optimistic concurrency.

    `change` mutates the document in place and returns (changed, result).
    Returns (document, result) where document is the stored version.
    """
    def _attempt():
        document = store.get(wallet_address)
        if document is None:
            raise IdentityNotFound(f"No identity for wallet {wallet_address}")
        changed, result = change(document)
        if not changed:
            return document, result
        stored = store.compare_and_swap(wallet_address, document['version'], document)
        if stored is None:
            raise VersionConflict(wallet_address)
        return stored, result

    return retry_on_conflict(_attempt)


def _award_xp(document: dict, event_type: str, amount: int, description: str, timestamp: str,
              event_id: Optional[str] = None) -> None:
    document['xp'] += amount
    event = {
        'type': event_type,
        'amount': amount,
        'description': description,
        'timestamp': timestamp,
    }
    if event_id:
        event['event_id'] = event_id
    document['xp_events'].append(event)


def _queue_referral_bonus(document: dict, gained_xp: int, timestamp: str) -> None:
    bonus = referral_bonus(gained_xp)
    if not document['referrer'] or bonus == 0:
        return
    document['pending_referral_bonuses'].append({
        'event_id': secrets.token_hex(8),
        'amount': bonus,
        'timestamp': timestamp,
    })


def _new_referral_code() -> str:
    return secrets.token_hex(4).upper()


def get_or_create_identity(store: IdentityStore, wallet_address: str,
                           referral_code: Optional[str] = None,
                           now: Optional[datetime] = None) -> tuple[dict, bool]:
    """
    Fetch the identity for a wallet, creating it on first sight.

    A referral code is only honoured when this call creates the identity; it
    links the new identity to the code's owner and bumps the owner's
    referred_count. Unknown codes and self-referral are ignored.

    Args:
        store: Identity store
        wallet_address: Verified wallet address
        referral_code: Optional code of the identity that referred this wallet
        now: Creation time (defaults to the current UTC time)

    Returns:
        Tuple of (document, created)

    Raises:
        StorageConflict: If a unique referral code could not be allocated
    """
    existing = store.get(wallet_address)
    if existing is not None:
        return existing, False

    now = now or utc_now()
    referrer_wallet = None
    if referral_code:
        referrer = store.find_by_referral_code(referral_code.strip().upper())
        if referrer is None:
            logger.warning(f"Unknown referral code {referral_code!r} for new wallet {wallet_address}")
        elif referrer['wallet_address'] != wallet_address:
            referrer_wallet = referrer['wallet_address']

    for _ in range(5):
        document = new_identity_document(wallet_address, _new_referral_code(), format_timestamp(now))
        document['referrer'] = referrer_wallet
        try:
            stored, created = store.insert(document)
            break
        except DuplicateKeyError:
            continue
    else:
        raise StorageConflict("Could not allocate a unique referral code")

    if created:
        logger.info(f"Created identity for wallet {wallet_address}")
        if referrer_wallet:
            _record_referral(store, referrer_wallet, wallet_address)
    return stored, created


def _record_referral(store: IdentityStore, referrer_wallet: str, referred_wallet: str) -> None:
    def _bump(document):
        document['referred_count'] += 1
        return True, None

    try:
        _mutate(store, referrer_wallet, _bump)
        logger.info(f"Wallet {referrer_wallet} referred {referred_wallet}")
    except (IdentityNotFound, StorageConflict, PersistenceError) as e:
        logger.error(f"Failed to count referral of {referred_wallet} for {referrer_wallet}: {e}")


def _credit_referrer(store: IdentityStore, referrer_wallet: str, referred_wallet: str, entry: dict) -> int:
    def _credit(document):
        if any(event.get('event_id') == entry['event_id'] for event in document['xp_events']):
            return False, 0
        _award_xp(document, 'referral', entry['amount'], f"Referral bonus from {referred_wallet}",
                  entry['timestamp'], event_id=entry['event_id'])
        document['xp_from_referrals'] += entry['amount']
        return True, entry['amount']

    _, credited = _mutate(store, referrer_wallet, _credit)
    return credited


def _clear_pending_bonus(store: IdentityStore, wallet_address: str, event_id: str) -> None:
    def _clear(document):
        pending = document['pending_referral_bonuses']
        remaining = [entry for entry in pending if entry['event_id'] != event_id]
        if len(remaining) == len(pending):
            return False, None
        document['pending_referral_bonuses'] = remaining
        return True, None

    _mutate(store, wallet_address, _clear)


def settle_referral_bonuses(store: IdentityStore, wallet_address: str) -> int:
    """
    Credit the referrer with every pending bonus earned by `wallet_address`.

    Each entry is applied to the referrer at most once, keyed by its event
    id, and only then removed from the referred identity. An entry whose
    write fails stays pending for the next call; the ledger settles after
    every gain, on quest resubmission and at sign-in.

    Args:
        store: Identity store
        wallet_address: The referred identity

    Returns:
        Bonus XP credited to the referrer by this call
    """
    document = store.get(wallet_address)
    if document is None or not document['pending_referral_bonuses']:
        return 0

    referrer_wallet = document['referrer']
    settled = 0
    for entry in document['pending_referral_bonuses']:
        try:
            credited = _credit_referrer(store, referrer_wallet, wallet_address, entry)
        except IdentityNotFound:
            logger.error(f"Referrer {referrer_wallet} of {wallet_address} is gone, dropping bonus {entry['event_id']}")
            credited = 0
        except (StorageConflict, PersistenceError) as e:
            logger.warning(f"Referral bonus {entry['event_id']} for {referrer_wallet} stays pending: {e}")
            break

        if credited:
            settled += credited
            logger.info(f"Awarded {credited} referral XP to {referrer_wallet} (referrer of {wallet_address})")

        try:
            _clear_pending_bonus(store, wallet_address, entry['event_id'])
        except (StorageConflict, PersistenceError) as e:
            logger.warning(f"Settled referral bonus {entry['event_id']} not cleared from {wallet_address}: {e}")
            break

    return settled


def _completion_result(quest: Quest, total_xp: int, awarded: Optional[int], bonus: int) -> dict:
    return {
        'quest_id': quest.id,
        'xp_awarded': awarded or 0,
        'total_xp': total_xp,
        'already_completed': awarded is None,
        'referral_bonus': bonus,
    }


def record_quest_completion(store: IdentityStore, quest: Quest, wallet_address: str,
                            now: Optional[datetime] = None) -> dict:
    """
    Mark a quest completed and award its boosted XP, at most once per identity.

    The caller must already have checked the quest's verification rule.

    Returns:
        {'quest_id', 'xp_awarded', 'total_xp', 'already_completed',
        'referral_bonus'} where referral_bonus is the XP credited to the
        referrer during this call
    """
    timestamp = format_timestamp(now or utc_now())

    def _complete(document):
        if quest.id in document['completed_quests']:
            return False, None
        final_xp = apply_boost(quest.xp_reward, document['owns_reward_boost_asset'])
        document['completed_quests'][quest.id] = timestamp
        _award_xp(document, 'quest', final_xp, f"Completed quest: {quest.title}", timestamp)
        _queue_referral_bonus(document, final_xp, timestamp)
        return True, final_xp

    document, awarded = _mutate(store, wallet_address, _complete)

    if awarded is None:
        logger.info(f"Quest {quest.id} already completed by {wallet_address}")
    else:
        logger.info(f"Wallet {wallet_address} completed quest {quest.id} (+{awarded} XP)")

    bonus = settle_referral_bonuses(store, wallet_address)
    return _completion_result(quest, document['xp'], awarded, bonus)


def complete_quest(store: IdentityStore, catalog: QuestCatalog, wallet_address: str,
                   quest_id: str, answer: Optional[str] = None,
                   balance_oracle=None, now: Optional[datetime] = None) -> dict:
    """
    Verify and record a quest completion submitted by a caller.

    Resubmitting a completed quest succeeds with xp_awarded = 0 and does not
    re-run the verification rule.

    Args:
        store: Identity store
        catalog: Quest catalog
        wallet_address: Authenticated wallet
        quest_id: Quest being completed
        answer: Free-form answer for answer and link-click quests
        balance_oracle: Object with query(wallet_address) -> SOL balance
        now: Completion time

    Returns:
        {'quest_id', 'xp_awarded', 'total_xp', 'already_completed',
        'referral_bonus'}

    Raises:
        QuestNotFound: If the quest id is unknown
        IdentityNotFound: If the wallet has no identity
        AnswerIncorrect: If the verification rule is not satisfied
        OracleUnavailable: If the balance could not be read; nothing is written
        StorageConflict: If the record kept changing on every retry
    """
    quest = catalog.lookup(quest_id)

    document = store.get(wallet_address)
    if document is None:
        raise IdentityNotFound(f"No identity for wallet {wallet_address}")
    if quest.id in document['completed_quests']:
        bonus = settle_referral_bonuses(store, wallet_address)
        return _completion_result(quest, document['xp'], None, bonus)

    if isinstance(quest.rule, BalanceThresholdRule):
        if balance_oracle is None:
            raise OracleUnavailable("No balance oracle configured")
        balance = balance_oracle.query(wallet_address)
        if balance < quest.rule.threshold:
            raise AnswerIncorrect(
                f"Balance {balance} SOL is below the required {quest.rule.threshold} SOL"
            )
    else:
        check_answer(quest, answer)

    return record_quest_completion(store, quest, wallet_address, now)


def check_in(store: IdentityStore, wallet_address: str, now: Optional[datetime] = None) -> dict:
    """
    Record the daily check-in and award streak XP.

    Returns:
        {'xp_awarded', 'streak', 'total_xp', 'referral_bonus'}

    Raises:
        AlreadyCheckedInToday: If a check-in already happened this UTC day
        IdentityNotFound: If the wallet has no identity
        StorageConflict: If the record kept changing on every retry
    """
    now = now or utc_now()
    timestamp = format_timestamp(now)

    def _check_in(document):
        last = parse_timestamp(document['last_check_in_at'])
        new_streak, base_xp = next_streak(now, last, document['check_in_streak'])
        final_xp = apply_boost(base_xp, document['owns_reward_boost_asset'])
        document['last_check_in_at'] = timestamp
        document['check_in_streak'] = new_streak
        _award_xp(document, 'check-in', final_xp, f"Daily check-in (streak: {new_streak})", timestamp)
        _queue_referral_bonus(document, final_xp, timestamp)
        return True, final_xp

    document, awarded = _mutate(store, wallet_address, _check_in)
    logger.info(
        f"Wallet {wallet_address} checked in. Streak: {document['check_in_streak']}. "
        f"Boost: {document['owns_reward_boost_asset']}. XP: {awarded}"
    )

    return {
        'xp_awarded': awarded,
        'streak': document['check_in_streak'],
        'total_xp': document['xp'],
        'referral_bonus': settle_referral_bonuses(store, wallet_address),
    }


def set_display_name(store: IdentityStore, wallet_address: str, display_name: str) -> dict:
    """
    Change an identity's display name.

    Raises:
        InvalidDisplayName: If the trimmed name is not 3-15 characters
        DisplayNameTaken: If another identity uses the name, ignoring case
    """
    name = (display_name or "").strip()
    if not DISPLAY_NAME_MIN_LENGTH <= len(name) <= DISPLAY_NAME_MAX_LENGTH:
        raise InvalidDisplayName(
            f"Display name must be between {DISPLAY_NAME_MIN_LENGTH} and {DISPLAY_NAME_MAX_LENGTH} characters"
        )

    def _rename(document):
        if document['display_name'] == name:
            return False, None
        document['display_name'] = name
        return True, None

    try:
        document, _ = _mutate(store, wallet_address, _rename)
    except DuplicateKeyError as e:
        if e.field != 'display_name':
            raise
        raise DisplayNameTaken(f"Display name '{name}' is already taken") from e
    return document


def set_reward_asset_flag(store: IdentityStore, wallet_address: str, owns_asset: bool) -> dict:
    """Cache the reward-asset oracle's answer on the identity."""
    def _flag(document):
        if document['owns_reward_boost_asset'] == owns_asset:
            return False, None
        document['owns_reward_boost_asset'] = owns_asset
        return True, None

    document, _ = _mutate(store, wallet_address, _flag)
    return document


def profile_projection(document: dict, catalog: Optional[QuestCatalog] = None) -> dict:
    """Public view of an identity document, without store bookkeeping."""
    profile = {
        'wallet_address': document['wallet_address'],
        'display_name': document['display_name'],
        'xp': document['xp'],
        'completed_quest_ids': list(document['completed_quests']),
        'check_in_streak': document['check_in_streak'],
        'last_check_in_at': document['last_check_in_at'],
        'owns_reward_boost_asset': document['owns_reward_boost_asset'],
        'referral_code': document['referral_code'],
        'referrer': document['referrer'],
        'referred_count': document['referred_count'],
        'xp_from_referrals': document['xp_from_referrals'],
        'xp_events': [dict(event) for event in document['xp_events']],
        'created_at': document['created_at'],
    }
    if catalog is not None:
        profile['path_progress'] = catalog.path_progress(profile['completed_quest_ids'])
    return profile


def get_profile(store: IdentityStore, wallet_address: str, catalog: Optional[QuestCatalog] = None) -> dict:
    document = store.get(wallet_address)
    if document is None:
        raise IdentityNotFound(f"No identity for wallet {wallet_address}")
    return profile_projection(document, catalog)


def get_leaderboard(store: IdentityStore, limit: int = 20) -> list[dict]:
    """
    Top identities by XP with dense ranks.

    Returns:
        List of {'rank', 'wallet_address', 'display_name', 'xp',
        'owns_reward_boost_asset'}

    Raises:
        ValueError: If limit is not between 1 and 100
    """
    if not 1 <= limit <= MAX_LEADERBOARD_LIMIT:
        raise ValueError(f"limit must be between 1 and {MAX_LEADERBOARD_LIMIT}, got {limit}")

    ranked = rank_leaderboard(store.top_by_xp(limit), limit)
    return [
        {
            'rank': entry['rank'],
            'wallet_address': entry['wallet_address'],
            'display_name': entry['display_name'],
            'xp': entry['xp'],
            'owns_reward_boost_asset': entry['owns_reward_boost_asset'],
        }
        for entry in ranked
    ]
