"""Quest catalog and answer checking for questledger.

This module holds the read-only quest definitions, the verification rule
attached to each quest, and the checks for rules that can be decided from the
submitted answer alone. Balance checks need an oracle and are decided by the
ledger.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Union

# Sentinel a client sends to confirm it followed a community link.
LINK_CLICK_SENTINEL = "action_confirmed"

VERIFY_WALLET_QUEST_ID = "verify-wallet"
FUND_WALLET_QUEST_ID = "fund-wallet"

SOLANA_FOUNDATIONS_PATH_ID = "solana-foundations"
SOLQUEST_OG_PATH_ID = "solquest-og"


class QuestNotFound(Exception):
    """Raised when a quest id does not resolve in the catalog."""
    pass


class AnswerIncorrect(Exception):
    """Raised when a submitted answer does not satisfy the quest rule."""
    pass


@dataclass(frozen=True)
class SignatureRule:
    """Satisfied by proving wallet ownership during authentication."""


@dataclass(frozen=True)
class BalanceThresholdRule:
    """Satisfied when the wallet holds at least `threshold` SOL."""
    threshold: float


@dataclass(frozen=True)
class ExactAnswerRule:
    """Satisfied by the expected answer, trimmed and case-insensitive."""
    answer: str


@dataclass(frozen=True)
class LinkClickConfirmRule:
    """Satisfied by the link-click confirmation sentinel."""


VerificationRule = Union[SignatureRule, BalanceThresholdRule, ExactAnswerRule, LinkClickConfirmRule]


@dataclass(frozen=True)
class Quest:
    id: str
    title: str
    path_id: str
    order: int
    xp_reward: int
    rule: VerificationRule

    def __post_init__(self):
        if self.xp_reward < 0:
            raise ValueError(f"Quest {self.id} has negative xp_reward {self.xp_reward}")


@dataclass(frozen=True)
class QuestPath:
    id: str
    title: str


def check_answer(quest: Quest, answer: Optional[str]) -> None:
    """Check a submitted answer against an answer-decidable quest rule.

    Args:
        quest: The quest being completed
        answer: The free-form answer from the caller, if any

    Raises:
        AnswerIncorrect: If the rule is not satisfied, or the rule cannot be
            satisfied by a caller-submitted answer at all (signature quests)

    Example:
        >>> check_answer(Quest("q", "Q", "p", 1, 5, ExactAnswerRule("150")), " 150 ")
    """
    rule = quest.rule
    candidate = (answer or "").strip()

    if isinstance(rule, ExactAnswerRule):
        if not candidate or candidate.lower() != rule.answer.strip().lower():
            raise AnswerIncorrect(f"Incorrect answer for quest '{quest.id}'")
    elif isinstance(rule, LinkClickConfirmRule):
        if candidate.lower() != LINK_CLICK_SENTINEL:
            raise AnswerIncorrect(f"Action not confirmed for quest '{quest.id}'")
    elif isinstance(rule, SignatureRule):
        raise AnswerIncorrect(f"Quest '{quest.id}' is completed by signing in, not by submission")
    # BalanceThresholdRule is decided by the balance oracle, not the answer.


class QuestCatalog:
    """Read-only lookup over a fixed set of quests."""

    def __init__(self, quests: Iterable[Quest], paths: Iterable[QuestPath] = ()):
        self._quests: Dict[str, Quest] = {}
        for quest in quests:
            if quest.id in self._quests:
                raise ValueError(f"Duplicate quest id: {quest.id}")
            self._quests[quest.id] = quest
        self._paths = list(paths)

    def lookup(self, quest_id: str) -> Quest:
        try:
            return self._quests[quest_id]
        except KeyError:
            raise QuestNotFound(f"Quest '{quest_id}' not found") from None

    def signature_quest(self) -> Optional[Quest]:
        for quest in self._quests.values():
            if isinstance(quest.rule, SignatureRule):
                return quest
        return None

    def quests_in_path(self, path_id: str) -> List[Quest]:
        return sorted(
            (q for q in self._quests.values() if q.path_id == path_id),
            key=lambda q: q.order,
        )

    def path_summaries(self) -> List[dict]:
        """Summarize each path with its quest count and total XP.

        Returns:
            List of dicts: {'id', 'title', 'quest_count', 'total_xp'}
        """
        summaries = []
        for path in self._paths:
            quests = self.quests_in_path(path.id)
            summaries.append({
                'id': path.id,
                'title': path.title,
                'quest_count': len(quests),
                'total_xp': sum(q.xp_reward for q in quests),
            })
        return summaries

    def path_progress(self, completed_quest_ids: Iterable[str]) -> List[dict]:
        """Count completed quests per path for a profile view."""
        completed = set(completed_quest_ids)
        progress = []
        for path in self._paths:
            quests = self.quests_in_path(path.id)
            done = [q for q in quests if q.id in completed]
            remaining = [q for q in quests if q.id not in completed]
            progress.append({
                'path_id': path.id,
                'completed': len(done),
                'total': len(quests),
                'next_quest_id': remaining[0].id if remaining else None,
            })
        return progress

    def __contains__(self, quest_id: str) -> bool:
        return quest_id in self._quests

    def __len__(self) -> int:
        return len(self._quests)


PATHS = [
    QuestPath(SOLANA_FOUNDATIONS_PATH_ID, "Solana Explorer Path"),
    QuestPath(SOLQUEST_OG_PATH_ID, "SolQuest OG Path"),
]

QUESTS = [
    Quest("visit-x-se", "Visit Solana on X", SOLANA_FOUNDATIONS_PATH_ID, 1, 10, LinkClickConfirmRule()),
    Quest("join-discord-se", "Join the Solana Discord", SOLANA_FOUNDATIONS_PATH_ID, 2, 15, LinkClickConfirmRule()),
    Quest(VERIFY_WALLET_QUEST_ID, "Verify Wallet Ownership", SOLANA_FOUNDATIONS_PATH_ID, 3, 10, SignatureRule()),
    Quest(FUND_WALLET_QUEST_ID, "Fund Your Wallet", SOLANA_FOUNDATIONS_PATH_ID, 4, 20, BalanceThresholdRule(0.01)),
    Quest("explore-transaction-1", "Explore a Transaction", SOLANA_FOUNDATIONS_PATH_ID, 5, 30,
          ExactAnswerRule("150")),
    Quest("find-nft-authority-1", "Find NFT Collection Authority", SOLANA_FOUNDATIONS_PATH_ID, 6, 40,
          ExactAnswerRule("2RtGg6fsFiiF1EQzHqbd66AhW7R5bWeQGpTbv2UMkCdW")),
    Quest("find-first-tx-1", "Find First Transaction", SOLANA_FOUNDATIONS_PATH_ID, 7, 50,
          ExactAnswerRule("2rNSt8n54Y7cF5o3FGU8Wdqac9TzgdiyMErq1ns9g7L8o1M1N1aH4B99RnHvjcF1SbCHHsmWw4h51W8s1t1F7tLz")),
    Quest("visit-x-og", "Visit SolQuest on X", SOLQUEST_OG_PATH_ID, 1, 10, LinkClickConfirmRule()),
    Quest("join-discord-og", "Join the SolQuest Discord", SOLQUEST_OG_PATH_ID, 2, 15, LinkClickConfirmRule()),
]


def default_catalog() -> QuestCatalog:
    return QuestCatalog(QUESTS, PATHS)
