"""
Storage layer for questledger.

Identity records are plain dict documents keyed by wallet address. Every write
after creation goes through compare_and_swap, which only succeeds when the
stored version still matches the version the caller read. Callers wrap their
read-modify-write in retry_on_conflict.

Two stores implement the same interface: MemoryIdentityStore for tests and
single-process development, SqlIdentityStore on SQLAlchemy for everything else.
"""

import copy
import logging
import random
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, UTC
from typing import Callable, Any

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

# Keys owned by the store, never persisted inside the document body.
STORE_KEYS = ('version', 'created_seq')


class PersistenceError(Exception):
    """Raised when a storage operation fails."""
    pass


class StorageConflict(Exception):
    """Raised when a record kept changing underneath every retry attempt."""
    pass


class DuplicateKeyError(Exception):
    """Raised when a write would break a unique index."""

    def __init__(self, field: str):
        super().__init__(f"Duplicate value for unique field '{field}'")
        self.field = field


class VersionConflict(Exception):
    """Raised inside a retried operation when compare_and_swap lost a race."""
    pass


def format_timestamp(moment: datetime) -> str:
    """Render a datetime as an ISO8601 UTC string with a Z suffix."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat().replace('+00:00', 'Z')


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace('Z', '+00:00'))


def utc_now() -> datetime:
    return datetime.now(UTC)


def retry_on_conflict(func: Callable, max_attempts: int = 5) -> Any:
    """
    Retry an optimistic read-modify-write until its compare-and-swap wins.

    Waits a short, jittered, doubling delay between attempts.

    Args:
        func: Callable with no arguments; raises VersionConflict when its
            compare_and_swap found a newer version
        max_attempts: Maximum number of attempts (default: 5)

    Returns:
        The return value of the first attempt that did not conflict

    Raises:
        StorageConflict: If every attempt conflicted

    Example:
        >>> retry_on_conflict(lambda: ledger_step(store, wallet))
    """
    for attempt in range(max_attempts):
        try:
            return func()
        except VersionConflict:
            if attempt == max_attempts - 1:
                break
            wait_time = 0.005 * (2 ** attempt) * (1 + random.random())
            time.sleep(wait_time)

    raise StorageConflict(f"Record update conflicted {max_attempts} times, retry the request")


def new_identity_document(wallet_address: str, referral_code: str, created_at: str) -> dict:
    """
    Build the initial document for a wallet seen for the first time.

    Document structure:
        {
            'wallet_address': str,
            'display_name': str | None,
            'xp': int,
            'completed_quests': {quest_id: completed_at},  # insertion ordered
            'check_in_streak': int,
            'last_check_in_at': str | None,
            'owns_reward_boost_asset': bool,
            'referral_code': str,
            'referrer': str | None,              # referrer's wallet address
            'referred_count': int,
            'xp_from_referrals': int,
            'xp_events': [{'type', 'amount', 'description', 'timestamp'}],  # referral events add 'event_id'
            'pending_referral_bonuses': [{'event_id', 'amount', 'timestamp'}],
            'created_at': str
        }

    Stores add 'version' and 'created_seq' when returning documents.
    """
    return {
        'wallet_address': wallet_address,
        'display_name': None,
        'xp': 0,
        'completed_quests': {},
        'check_in_streak': 0,
        'last_check_in_at': None,
        'owns_reward_boost_asset': False,
        'referral_code': referral_code,
        'referrer': None,
        'referred_count': 0,
        'xp_from_referrals': 0,
        'xp_events': [],
        'pending_referral_bonuses': [],
        'created_at': created_at,
    }


def _body(document: dict) -> dict:
    return {k: v for k, v in document.items() if k not in STORE_KEYS}


def _display_name_key(document: dict) -> str | None:
    name = document.get('display_name')
    return name.lower() if name else None


def _leaderboard_entry(document: dict) -> dict:
    return {
        'wallet_address': document['wallet_address'],
        'display_name': document.get('display_name'),
        'xp': document['xp'],
        'owns_reward_boost_asset': document.get('owns_reward_boost_asset', False),
        'created_seq': document['created_seq'],
    }


class IdentityStore(ABC):
    """Storage collaborator for identity documents and consumed challenge nonces.

    Lifecycle: construct once at process start, share across requests, call
    close() at shutdown.
    """

    @abstractmethod
    def get(self, wallet_address: str) -> dict | None:
        """Return a copy of the document, or None if the wallet is unknown."""

    @abstractmethod
    def insert(self, document: dict) -> tuple[dict, bool]:
        """Insert a document unless the wallet already exists.

        Returns:
            (stored document, created) where created is False when an existing
            document was returned instead

        Raises:
            DuplicateKeyError: If another unique field collides
        """

    @abstractmethod
    def compare_and_swap(self, wallet_address: str, expected_version: int, document: dict) -> dict | None:
        """Replace the document if its version still equals expected_version.

        Returns:
            The stored document with its new version, or None if the version
            moved on (or the wallet is unknown)

        Raises:
            DuplicateKeyError: If the new display name or referral code is taken
        """

    @abstractmethod
    def find_by_referral_code(self, referral_code: str) -> dict | None:
        """Return the document owning a referral code, if any."""

    @abstractmethod
    def top_by_xp(self, limit: int) -> list[dict]:
        """Return leaderboard entries sorted by xp desc, then creation order."""

    @abstractmethod
    def claim_nonce(self, nonce: str, expires_at: datetime) -> bool:
        """Mark a challenge nonce as used. False if it was already used."""

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class MemoryIdentityStore(IdentityStore):
    """Process-local store guarded by a single lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self._documents: dict[str, dict] = {}
        self._nonces: dict[str, datetime] = {}
        self._next_seq = 1

    def get(self, wallet_address):
        with self._lock:
            document = self._documents.get(wallet_address)
            return copy.deepcopy(document) if document else None

    def insert(self, document):
        with self._lock:
            wallet = document['wallet_address']
            existing = self._documents.get(wallet)
            if existing is not None:
                return copy.deepcopy(existing), False
            self._check_unique(document, exclude=wallet)

            stored = copy.deepcopy(_body(document))
            stored['version'] = 1
            stored['created_seq'] = self._next_seq
            self._next_seq += 1
            self._documents[wallet] = stored
            return copy.deepcopy(stored), True

    def compare_and_swap(self, wallet_address, expected_version, document):
        with self._lock:
            current = self._documents.get(wallet_address)
            if current is None or current['version'] != expected_version:
                return None
            self._check_unique(document, exclude=wallet_address)

            stored = copy.deepcopy(_body(document))
            stored['version'] = expected_version + 1
            stored['created_seq'] = current['created_seq']
            self._documents[wallet_address] = stored
            return copy.deepcopy(stored)

    def find_by_referral_code(self, referral_code):
        with self._lock:
            for document in self._documents.values():
                if document.get('referral_code') == referral_code:
                    return copy.deepcopy(document)
            return None

    def top_by_xp(self, limit):
        with self._lock:
            ordered = sorted(self._documents.values(), key=lambda d: (-d['xp'], d['created_seq']))
            return [_leaderboard_entry(d) for d in ordered[:limit]]

    def claim_nonce(self, nonce, expires_at):
        with self._lock:
            now = utc_now()
            for used, expiry in list(self._nonces.items()):
                if expiry < now:
                    del self._nonces[used]
            if nonce in self._nonces:
                return False
            self._nonces[nonce] = expires_at
            return True

    def _check_unique(self, document, exclude):
        name_key = _display_name_key(document)
        code = document.get('referral_code')
        for wallet, other in self._documents.items():
            if wallet == exclude:
                continue
            if name_key and _display_name_key(other) == name_key:
                raise DuplicateKeyError('display_name')
            if code and other.get('referral_code') == code:
                raise DuplicateKeyError('referral_code')


metadata = sa.MetaData()

identities = sa.Table(
    'identities',
    metadata,
    sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
    sa.Column('wallet_address', sa.String(64), nullable=False, unique=True),
    sa.Column('display_name_key', sa.String(32), nullable=True, unique=True),
    sa.Column('referral_code', sa.String(32), nullable=True, unique=True),
    sa.Column('xp', sa.Integer, nullable=False, index=True),
    sa.Column('version', sa.Integer, nullable=False),
    sa.Column('document', sa.JSON, nullable=False),
)

used_nonces = sa.Table(
    'used_nonces',
    metadata,
    sa.Column('nonce', sa.String(64), primary_key=True),
    sa.Column('expires_at', sa.DateTime, nullable=False, index=True),
)


class SqlIdentityStore(IdentityStore):
    """SQLAlchemy-backed store.

    compare_and_swap is a single UPDATE guarded by the version column, so the
    database decides which concurrent writer wins.
    """

    def __init__(self, engine: sa.engine.Engine):
        self.engine = engine
        metadata.create_all(engine)

    @classmethod
    def from_url(cls, database_url: str) -> "SqlIdentityStore":
        if database_url in ('sqlite://', 'sqlite:///:memory:'):
            # One shared connection, otherwise every checkout sees an empty database.
            engine = sa.create_engine(
                database_url,
                connect_args={'check_same_thread': False},
                poolclass=StaticPool,
            )
        else:
            engine = sa.create_engine(database_url, pool_pre_ping=True)
        return cls(engine)

    def _run(self, operation: str, func: Callable) -> Any:
        try:
            return func()
        except (DuplicateKeyError, IntegrityError):
            raise
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database operation '{operation}' failed: {e}") from e

    @staticmethod
    def _from_row(row) -> dict:
        document = dict(row.document)
        document['version'] = row.version
        document['created_seq'] = row.id
        return document

    def get(self, wallet_address):
        def _get():
            with self.engine.connect() as conn:
                row = conn.execute(
                    sa.select(identities).where(identities.c.wallet_address == wallet_address)
                ).first()
            return self._from_row(row) if row else None

        return self._run('get', _get)

    def insert(self, document):
        body = _body(document)

        def _insert():
            try:
                with self.engine.begin() as conn:
                    result = conn.execute(identities.insert().values(
                        wallet_address=body['wallet_address'],
                        display_name_key=_display_name_key(body),
                        referral_code=body.get('referral_code'),
                        xp=body['xp'],
                        version=1,
                        document=body,
                    ))
                    seq = result.inserted_primary_key[0]
            except IntegrityError:
                existing = self.get(body['wallet_address'])
                if existing is not None:
                    return existing, False
                raise DuplicateKeyError('referral_code')

            stored = dict(body)
            stored['version'] = 1
            stored['created_seq'] = seq
            return stored, True

        return self._run('insert', _insert)

    def compare_and_swap(self, wallet_address, expected_version, document):
        body = _body(document)

        def _swap():
            try:
                with self.engine.begin() as conn:
                    result = conn.execute(
                        identities.update()
                        .where(identities.c.wallet_address == wallet_address)
                        .where(identities.c.version == expected_version)
                        .values(
                            display_name_key=_display_name_key(body),
                            referral_code=body.get('referral_code'),
                            xp=body['xp'],
                            version=expected_version + 1,
                            document=body,
                        )
                    )
                    if result.rowcount != 1:
                        return None
                    seq = conn.execute(
                        sa.select(identities.c.id).where(identities.c.wallet_address == wallet_address)
                    ).scalar_one()
            except IntegrityError as e:
                field = 'display_name' if 'display_name' in str(e) else 'referral_code'
                raise DuplicateKeyError(field) from e

            stored = dict(body)
            stored['version'] = expected_version + 1
            stored['created_seq'] = seq
            return stored

        return self._run('compare_and_swap', _swap)

    def find_by_referral_code(self, referral_code):
        def _find():
            with self.engine.connect() as conn:
                row = conn.execute(
                    sa.select(identities).where(identities.c.referral_code == referral_code)
                ).first()
            return self._from_row(row) if row else None

        return self._run('find_by_referral_code', _find)

    def top_by_xp(self, limit):
        def _top():
            with self.engine.connect() as conn:
                rows = conn.execute(
                    sa.select(identities)
                    .order_by(identities.c.xp.desc(), identities.c.id.asc())
                    .limit(limit)
                ).all()
            return [_leaderboard_entry(self._from_row(row)) for row in rows]

        return self._run('top_by_xp', _top)

    def claim_nonce(self, nonce, expires_at):
        expiry = expires_at.astimezone(UTC).replace(tzinfo=None)
        now = utc_now().replace(tzinfo=None)

        def _claim():
            try:
                with self.engine.begin() as conn:
                    conn.execute(used_nonces.delete().where(used_nonces.c.expires_at < now))
                    conn.execute(used_nonces.insert().values(nonce=nonce, expires_at=expiry))
            except IntegrityError:
                return False
            return True

        return self._run('claim_nonce', _claim)

    def close(self):
        self.engine.dispose()
        logger.info("Identity store closed")
