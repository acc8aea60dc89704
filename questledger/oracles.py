"""Blockchain oracles used by the ledger.

Both oracles speak JSON-RPC over HTTP. Any transport or protocol failure is
reported as OracleUnavailable so callers can retry; no oracle failure is ever
treated as a negative answer.
"""

import logging

import requests

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000


class OracleUnavailable(Exception):
    """Raised when an oracle could not produce an answer; safe to retry."""
    pass


def _json_rpc(url: str, method: str, params, timeout: float):
    payload = {
        "jsonrpc": "2.0",
        "id": "questledger",
        "method": method,
        "params": params,
    }
    try:
        response = requests.post(url, json=payload, timeout=timeout)
        response.raise_for_status()
        body = response.json()
    except requests.exceptions.RequestException as e:
        logger.error(f"RPC {method} to {url} failed: {e}")
        raise OracleUnavailable(f"RPC {method} failed: {e}") from e
    except ValueError as e:
        logger.error(f"RPC {method} returned a non-JSON body: {e}")
        raise OracleUnavailable(f"RPC {method} returned invalid JSON") from e

    if not isinstance(body, dict) or body.get("error") or "result" not in body:
        error = body.get("error") if isinstance(body, dict) else body
        logger.error(f"RPC {method} returned an error: {error}")
        raise OracleUnavailable(f"RPC {method} returned an error: {error}")
    return body["result"]


class SolanaBalanceOracle:
    """Reads a wallet's SOL balance through the getBalance RPC."""

    def __init__(self, rpc_url: str, timeout: float = 5.0):
        self.rpc_url = rpc_url
        self.timeout = timeout

    def query(self, wallet_address: str) -> float:
        """
        Return the wallet's balance in SOL.

        Raises:
            OracleUnavailable: If the RPC call fails or returns no balance
        """
        result = _json_rpc(
            self.rpc_url,
            "getBalance",
            [wallet_address, {"commitment": "confirmed"}],
            self.timeout,
        )
        try:
            lamports = int(result["value"])
        except (KeyError, TypeError, ValueError) as e:
            raise OracleUnavailable(f"Unexpected getBalance result: {result!r}") from e
        return lamports / LAMPORTS_PER_SOL


class RewardAssetOracle:
    """Checks whether a wallet holds an asset from the boost collection.

    Uses the DAS getAssetsByOwner method and matches the asset's collection
    grouping against the configured collection mint.
    """

    def __init__(self, rpc_url: str, collection_mint: str, timeout: float = 5.0, page_limit: int = 1000):
        self.rpc_url = rpc_url
        self.collection_mint = collection_mint
        self.timeout = timeout
        self.page_limit = page_limit

    def query(self, wallet_address: str) -> bool:
        page = 1
        while True:
            result = _json_rpc(
                self.rpc_url,
                "getAssetsByOwner",
                {"ownerAddress": wallet_address, "page": page, "limit": self.page_limit},
                self.timeout,
            )
            items = result.get("items", []) if isinstance(result, dict) else []
            for item in items:
                for group in item.get("grouping", []):
                    if group.get("group_key") == "collection" and group.get("group_value") == self.collection_mint:
                        return True
            if len(items) < self.page_limit:
                return False
            page += 1
