"""Datadog reporting for XP awards.

One ledger request can award XP of more than one kind, such as a quest and
the referral bonus it settles for the referrer, so a request's awards are
folded into one series submission. Reporting is fail-open: a batch that
cannot be delivered is logged and dropped and never fails the ledger
operation that produced it.
"""

import logging
import time
from typing import Iterable, Tuple

import requests

logger = logging.getLogger(__name__)

DATADOG_API_URL = "https://api.datadoghq.com/api/v1/series"
XP_METRIC_NAME = "questledger.xp_awarded"


def build_xp_series(awards: Iterable[Tuple[str, int]], timestamp: int) -> list[dict]:
    """Fold (event_type, amount) pairs into one count series per event type.

    Amounts of zero or less are skipped. Series keep the order in which their
    event type first appeared.

    Example:
        >>> build_xp_series([("quest", 10), ("referral", 0)], 1700000000)
        [{'metric': 'questledger.xp_awarded', 'type': 'count', 'points': [[1700000000, 10]], 'tags': ['event:quest']}]
    """
    totals: dict[str, int] = {}
    for event_type, amount in awards:
        if amount > 0:
            totals[event_type] = totals.get(event_type, 0) + amount

    return [
        {
            "metric": XP_METRIC_NAME,
            "type": "count",
            "points": [[timestamp, total]],
            "tags": [f"event:{event_type}"],
        }
        for event_type, total in totals.items()
    ]


def send_xp_metrics(awards: Iterable[Tuple[str, int]], datadog_api_key: str, timeout: float = 5) -> bool:
    """Submit a request's XP awards to Datadog in a single call.

    Args:
        awards: (event_type, amount) pairs, event_type being one of
            quest, check-in or referral
        datadog_api_key: Datadog API key for authentication
        timeout: Request timeout in seconds

    Returns:
        True if a batch was delivered, False if there was nothing to send or
        delivery failed
    """
    series = build_xp_series(awards, int(time.time()))
    if not series:
        return False

    try:
        response = requests.post(
            DATADOG_API_URL,
            json={"series": series},
            headers={
                "Content-Type": "application/json",
                "DD-API-KEY": datadog_api_key,
            },
            timeout=timeout,
        )
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        logger.error(f"Failed to send {len(series)} XP series to Datadog: {e}")
        return False
    except Exception as e:
        logger.error(f"Unexpected error sending XP series to Datadog: {e}")
        return False

    sent = ", ".join(f"{s['tags'][0]}={s['points'][0][1]}" for s in series)
    logger.info(f"Sent XP metrics: {sent}")
    return True
