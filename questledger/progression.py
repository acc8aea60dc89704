"""Pure progression rules: streaks, boosts, referral bonuses and ranking.

Nothing here touches storage. The ledger feeds these functions the current
record and applies what they return.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional, Tuple

BOOST_MULTIPLIER = Decimal("1.2")
REFERRAL_BONUS_RATE = Decimal("0.01")
STREAK_XP_CAP = 30


class AlreadyCheckedInToday(Exception):
    """Raised when a check-in was already recorded for the current day."""
    pass


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def apply_boost(base_xp: int, owns_reward_boost_asset: bool) -> int:
    """Apply the reward-asset multiplier to an XP gain.

    Args:
        base_xp: XP before the boost
        owns_reward_boost_asset: Whether the identity holds the boost asset

    Returns:
        round_half_up(base_xp * 1.2) for holders, base_xp otherwise

    Example:
        >>> apply_boost(10, True)
        12
        >>> apply_boost(1, True)
        1
    """
    multiplier = BOOST_MULTIPLIER if owns_reward_boost_asset else Decimal(1)
    return round_half_up(Decimal(base_xp) * multiplier)


def referral_bonus(gained_xp: int) -> int:
    """Bonus credited to a referrer when the referred identity gains XP.

    One percent of the gain, rounded half up, never below 1 for a positive
    gain. A zero gain earns nothing.
    """
    if gained_xp <= 0:
        return 0
    return max(1, round_half_up(Decimal(gained_xp) * REFERRAL_BONUS_RATE))


def _utc_day(moment: datetime):
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).date()


def next_streak(now: datetime, last_check_in_at: Optional[datetime], current_streak: int) -> Tuple[int, int]:
    """Compute the streak and base XP for a check-in at `now`.

    Calendar days are UTC days.

    Args:
        now: Time of the check-in
        last_check_in_at: Time of the previous check-in, if any
        current_streak: Streak recorded with the previous check-in

    Returns:
        Tuple of (new_streak, base_xp) where base_xp = min(new_streak, 30)

    Raises:
        AlreadyCheckedInToday: If last_check_in_at falls on the same day as now
    """
    today = _utc_day(now)
    if last_check_in_at is not None:
        last_day = _utc_day(last_check_in_at)
        if last_day >= today:
            raise AlreadyCheckedInToday("Already checked in today")
        if last_day == today - timedelta(days=1):
            new_streak = current_streak + 1
        else:
            new_streak = 1
    else:
        new_streak = 1

    return new_streak, min(new_streak, STREAK_XP_CAP)


def rank_leaderboard(entries: Iterable[dict], limit: Optional[int] = None) -> List[dict]:
    """Order entries by XP and assign dense 1-based ranks.

    Ties keep creation order (`created_seq` ascending), so the same data always
    yields the same order.

    Args:
        entries: Dicts with at least 'xp' and 'created_seq'
        limit: Keep only the first `limit` entries after sorting

    Returns:
        New dicts, each a copy of the entry with a 'rank' key added
    """
    ordered = sorted(entries, key=lambda e: (-e['xp'], e['created_seq']))
    if limit is not None:
        ordered = ordered[:limit]

    ranked = []
    rank = 0
    previous_xp = None
    for entry in ordered:
        if entry['xp'] != previous_xp:
            rank += 1
            previous_xp = entry['xp']
        ranked.append({**entry, 'rank': rank})
    return ranked
