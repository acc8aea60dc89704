"""
Authentication module for questledger.

Handles wallet challenge/response sign-in: a one-time challenge message, an
Ed25519 detached-signature check over it, and a signed session token.
"""

import logging
import re
import secrets
from datetime import datetime, timedelta

import base58
import jwt
from nacl.exceptions import CryptoError
from nacl.signing import VerifyKey

from questledger.database import IdentityStore, format_timestamp, parse_timestamp, utc_now
from questledger.ledger import (
    get_or_create_identity,
    profile_projection,
    record_quest_completion,
    set_reward_asset_flag,
    settle_referral_bonuses,
)
from questledger.oracles import OracleUnavailable
from questledger.quests import QuestCatalog

logger = logging.getLogger(__name__)

PUBLIC_KEY_LENGTH = 32
SIGNATURE_LENGTH = 64
SESSION_ALGORITHM = "HS256"
# Allowed clock drift for challenges stamped slightly in the future.
CHALLENGE_CLOCK_SKEW = timedelta(seconds=60)

CHALLENGE_TEMPLATE = (
    "Sign this message to authenticate with SolQuest.io. "
    "Wallet: {wallet}. Timestamp: {timestamp}. Nonce: {nonce}"
)
CHALLENGE_PATTERN = re.compile(
    r"^Sign this message to authenticate with SolQuest\.io\. "
    r"Wallet: (?P<wallet>[1-9A-HJ-NP-Za-km-z]+)\. "
    r"Timestamp: (?P<timestamp>[0-9T:.\-]+Z)\. "
    r"Nonce: (?P<nonce>[0-9a-f]{32})$"
)


class InvalidIdentityFormat(Exception):
    """Raised when a wallet address is not a base58 Ed25519 public key."""
    pass


class InvalidSignature(Exception):
    """Raised when a challenge signature is wrong, stale, mismatched or replayed."""
    pass


class SessionExpired(Exception):
    """Raised when a session token is past its expiry."""
    pass


class SessionInvalid(Exception):
    """Raised when a session token is malformed or not signed by this service."""
    pass


def decode_wallet_address(wallet_address: str) -> bytes:
    """
    Decode a base58 wallet address into its 32 public-key bytes.

    Raises:
        InvalidIdentityFormat: If the address is not base58 or not 32 bytes
    """
    if not isinstance(wallet_address, str) or not wallet_address:
        raise InvalidIdentityFormat("Wallet address is required")
    try:
        key_bytes = base58.b58decode(wallet_address)
    except ValueError as e:
        raise InvalidIdentityFormat(f"Wallet address is not valid base58: {wallet_address!r}") from e
    if len(key_bytes) != PUBLIC_KEY_LENGTH:
        raise InvalidIdentityFormat(
            f"Wallet address must decode to {PUBLIC_KEY_LENGTH} bytes, got {len(key_bytes)}"
        )
    return key_bytes


def issue_challenge(wallet_address: str, now: datetime | None = None) -> str:
    """
    Build the one-time message a wallet must sign to sign in.

    Args:
        wallet_address: The base58 wallet address signing in
        now: Issuance time (defaults to the current UTC time)

    Returns:
        Challenge message embedding the wallet, the issuance time and a nonce

    Raises:
        InvalidIdentityFormat: If the wallet address cannot be parsed

    Example:
        >>> message = issue_challenge("11111111111111111111111111111111")
        >>> "Wallet: 11111111111111111111111111111111." in message
        True
    """
    decode_wallet_address(wallet_address)
    return CHALLENGE_TEMPLATE.format(
        wallet=wallet_address,
        timestamp=format_timestamp(now or utc_now()),
        nonce=secrets.token_hex(16),
    )


def parse_challenge(message: str) -> dict:
    """
    Split a challenge message back into its parts.

    Returns:
        {'wallet_address': str, 'issued_at': datetime, 'nonce': str}

    Raises:
        InvalidSignature: If the message is not a challenge issued by this service
    """
    match = CHALLENGE_PATTERN.match(message or "")
    if not match:
        raise InvalidSignature("Message is not a recognised challenge")
    try:
        issued_at = parse_timestamp(match.group("timestamp"))
    except ValueError as e:
        raise InvalidSignature("Challenge timestamp is malformed") from e
    return {
        'wallet_address': match.group("wallet"),
        'issued_at': issued_at,
        'nonce': match.group("nonce"),
    }


def verify_signature(wallet_address: str, message: str | bytes, signature: str | bytes) -> bool:
    """
    Check an Ed25519 detached signature over a message.

    Args:
        wallet_address: Base58 public key of the claimed signer
        message: The signed message (str is UTF-8 encoded)
        signature: 64 raw signature bytes, or their base58 encoding

    Returns:
        True if the signature is valid for exactly this message and key,
        False for any malformed input or mismatch
    """
    try:
        key_bytes = decode_wallet_address(wallet_address)
    except InvalidIdentityFormat:
        return False

    if isinstance(signature, str):
        try:
            signature = base58.b58decode(signature)
        except ValueError:
            return False
    if not isinstance(signature, (bytes, bytearray)) or len(signature) != SIGNATURE_LENGTH:
        return False

    message_bytes = message.encode('utf-8') if isinstance(message, str) else bytes(message)

    try:
        VerifyKey(key_bytes).verify(message_bytes, bytes(signature))
        return True
    except (CryptoError, ValueError, TypeError):
        return False


def create_session_token(wallet_address: str, secret: str, ttl_seconds: int,
                         now: datetime | None = None) -> tuple[str, datetime]:
    """
    Mint a signed session token for a verified wallet.

    Returns:
        Tuple of (token, expires_at)
    """
    issued_at = now or utc_now()
    expires_at = issued_at + timedelta(seconds=ttl_seconds)
    payload = {
        "sub": wallet_address,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
        "type": "access",
    }
    return jwt.encode(payload, secret, algorithm=SESSION_ALGORITHM), expires_at


def decode_session_token(token: str, secret: str) -> dict:
    """
    Validate a session token and return its claims.

    Returns:
        {'subject': str, 'issued_at': int, 'expires_at': int}

    Raises:
        SessionExpired: If the token has expired
        SessionInvalid: If the token is malformed, tampered with or not a
            session token
    """
    if not token:
        raise SessionInvalid("Session token is required")
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[SESSION_ALGORITHM],
            options={"require": ["sub", "iat", "exp"]},
        )
    except jwt.ExpiredSignatureError as e:
        raise SessionExpired("Session has expired, sign in again") from e
    except jwt.InvalidTokenError as e:
        raise SessionInvalid(f"Invalid session token: {e}") from e

    if payload.get("type") != "access":
        raise SessionInvalid("Token is not a session token")
    return {
        'subject': payload["sub"],
        'issued_at': payload["iat"],
        'expires_at': payload["exp"],
    }


def get_bearer_token(auth_header: str | None) -> str | None:
    if not auth_header:
        return None
    parts = auth_header.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def authenticate_wallet(wallet_address: str, message: str, signature: str | bytes,
                        store: IdentityStore, catalog: QuestCatalog, secret: str,
                        session_ttl_seconds: int, challenge_ttl_seconds: int,
                        referral_code: str | None = None, reward_asset_oracle=None,
                        now: datetime | None = None) -> dict:
    """
    Verify a signed challenge and sign the wallet in, creating its identity on
    first sight.

    Flow:
    1. Parse the challenge and claim its nonce; a challenge is used up by any
       attempt, including one rejected in the next two steps
    2. Check the challenge names this wallet and is within its TTL
    3. Verify the signature; failure rejects with InvalidSignature
    4. Look up or create the identity (a referral code only counts on creation)
    5. Refresh the reward-asset flag when an oracle is configured
    6. Complete the wallet-signature quest if it is not completed yet, and
       settle any referral bonus still pending for this wallet
    7. Mint the session token

    Args:
        wallet_address: Wallet signing in
        message: Challenge message from issue_challenge
        signature: Detached signature over the message (bytes or base58)
        store: Identity store
        catalog: Quest catalog
        secret: Session signing secret
        session_ttl_seconds: Session lifetime
        challenge_ttl_seconds: How long a challenge stays valid
        referral_code: Optional referral code for a new identity
        reward_asset_oracle: Optional object with query(wallet) -> bool
        now: Current time

    Returns:
        {'token': str, 'expires_at': str, 'created': bool, 'identity': dict,
        'xp_awarded': int, 'referral_bonus': int}

    Raises:
        InvalidSignature: On any challenge or signature failure
    """
    now = now or utc_now()

    challenge = parse_challenge(message)
    issued_at = challenge['issued_at']
    expires_at = issued_at + timedelta(seconds=challenge_ttl_seconds)

    if not store.claim_nonce(challenge['nonce'], max(expires_at, now)):
        logger.warning(f"Replayed challenge for wallet {wallet_address}")
        raise InvalidSignature("Challenge has already been used")

    if challenge['wallet_address'] != wallet_address:
        logger.warning(f"Challenge for {challenge['wallet_address']} submitted by {wallet_address}")
        raise InvalidSignature("Challenge was issued for a different wallet")

    if issued_at > now + CHALLENGE_CLOCK_SKEW or expires_at < now:
        raise InvalidSignature("Challenge has expired, request a new one")

    if not verify_signature(wallet_address, message, signature):
        logger.warning(f"Signature verification failed for {wallet_address}")
        raise InvalidSignature("Invalid signature")

    logger.info(f"Signature verified for {wallet_address}")

    document, created = get_or_create_identity(store, wallet_address, referral_code, now)

    if reward_asset_oracle is not None:
        try:
            owns_asset = bool(reward_asset_oracle.query(wallet_address))
            document = set_reward_asset_flag(store, wallet_address, owns_asset)
        except OracleUnavailable as e:
            logger.warning(f"Keeping cached reward-asset flag for {wallet_address}: {e}")

    xp_awarded = 0
    signature_quest = catalog.signature_quest()
    if signature_quest is not None and signature_quest.id not in document['completed_quests']:
        completion = record_quest_completion(store, signature_quest, wallet_address, now)
        xp_awarded = completion['xp_awarded']
        bonus = completion['referral_bonus']
    else:
        bonus = settle_referral_bonuses(store, wallet_address)
    document = store.get(wallet_address)

    token, token_expires_at = create_session_token(wallet_address, secret, session_ttl_seconds, now)

    return {
        'token': token,
        'expires_at': format_timestamp(token_expires_at),
        'created': created,
        'identity': profile_projection(document, catalog),
        'xp_awarded': xp_awarded,
        'referral_bonus': bonus,
    }
