"""
Configuration for questledger.

Settings are read from QUESTLEDGER_* environment variables once at process
start. The session signing secret has no default: a missing or short secret
stops the process before any credential can be minted.
"""

import os
from dataclasses import dataclass
from typing import Mapping

MIN_SECRET_LENGTH = 32
DEFAULT_SESSION_TTL_SECONDS = 60 * 60 * 24 * 7
DEFAULT_CHALLENGE_TTL_SECONDS = 600


class ConfigurationError(Exception):
    """Raised when a required setting is missing or invalid."""
    pass


@dataclass(frozen=True)
class Settings:
    session_secret: str
    database_url: str = "sqlite:///questledger.db"
    solana_rpc_url: str = "https://api.mainnet-beta.solana.com"
    reward_asset_rpc_url: str | None = None
    reward_collection_mint: str | None = None
    datadog_api_key: str | None = None
    session_ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS
    challenge_ttl_seconds: int = DEFAULT_CHALLENGE_TTL_SECONDS
    oracle_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from the environment.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            A validated Settings instance

        Raises:
            ConfigurationError: If QUESTLEDGER_SESSION_SECRET is unset or too
                short, or a numeric setting cannot be parsed
        """
        env = os.environ if environ is None else environ

        secret = (env.get("QUESTLEDGER_SESSION_SECRET") or "").strip()
        if len(secret) < MIN_SECRET_LENGTH:
            raise ConfigurationError(
                f"QUESTLEDGER_SESSION_SECRET must be set and at least {MIN_SECRET_LENGTH} characters"
            )

        def _optional(name: str) -> str | None:
            value = (env.get(name) or "").strip()
            return value or None

        def _number(name: str, default, cast):
            raw = _optional(name)
            if raw is None:
                return default
            try:
                value = cast(raw)
            except ValueError as e:
                raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e
            if value <= 0:
                raise ConfigurationError(f"{name} must be positive, got {raw!r}")
            return value

        return cls(
            session_secret=secret,
            database_url=_optional("QUESTLEDGER_DATABASE_URL") or cls.database_url,
            solana_rpc_url=_optional("QUESTLEDGER_SOLANA_RPC_URL") or cls.solana_rpc_url,
            reward_asset_rpc_url=_optional("QUESTLEDGER_REWARD_ASSET_RPC_URL"),
            reward_collection_mint=_optional("QUESTLEDGER_REWARD_COLLECTION_MINT"),
            datadog_api_key=_optional("QUESTLEDGER_DATADOG_API_KEY"),
            session_ttl_seconds=_number("QUESTLEDGER_SESSION_TTL_SECONDS", DEFAULT_SESSION_TTL_SECONDS, int),
            challenge_ttl_seconds=_number("QUESTLEDGER_CHALLENGE_TTL_SECONDS", DEFAULT_CHALLENGE_TTL_SECONDS, int),
            oracle_timeout_seconds=_number("QUESTLEDGER_ORACLE_TIMEOUT_SECONDS", 5.0, float),
        )
