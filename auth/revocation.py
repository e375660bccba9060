"""
auth/revocation.py -- Durable record of revoked tokens, keyed by HMAC hash.

Bearer tokens are stateless, so the only way to kill one before its exp is to
remember it here. AuthService.verify_bearer() consults is_revoked() on every
authenticated request; logout and refresh-token reuse write to it.

Records carry their own expiry. Once a token would have expired anyway the
record is pointless: is_revoked() ignores expired rows immediately, and
sweep_expired() deletes them on the periodic maintenance schedule (see the
lifespan task in api/main.py). The request path never deletes.

Usage:
    store = RevocationStore("sqlite:///:memory:")
    store.revoke(token, TokenClass.ACCESS, owner_id=7)
    store.is_revoked(token)          # True
    store.sweep_expired()            # call periodically

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, select
from sqlalchemy.engine import Engine

from auth.models import RevocationRecord, TokenClass
from auth.store import make_engine
from auth.tokens import hash_token
from core.config import get_settings

logger = logging.getLogger("gatehouse.revocation")

DEFAULT_REASON = "User-initiated logout"

# How long a record is kept when the caller does not know the token's expiry.
_DEFAULT_TTL: dict[TokenClass, timedelta] = {
    TokenClass.ACCESS: timedelta(minutes=60),
    TokenClass.REFRESH: timedelta(days=30),
    TokenClass.MAGIC_LINK: timedelta(minutes=30),
    TokenClass.RESET_PASSWORD: timedelta(minutes=30),
}
_FALLBACK_TTL = timedelta(hours=24)

_metadata = MetaData()

_revoked = Table(
    "revoked_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False),  # HMAC-SHA256 hex
    Column("token_class", String(20), nullable=False),
    Column("owner_id", Integer),
    # ISO 8601 UTC; lexical order == chronological order for a fixed format
    Column("expires_at", String(32), nullable=False),
    Column("reason", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
    Index("ix_revoked_tokens_hash", "token_hash"),
    Index("ix_revoked_tokens_owner", "owner_id"),
    Index("ix_revoked_tokens_expires", "expires_at"),
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    # Normalized to UTC with a fixed offset so string comparison in SQL is safe.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def default_expiry(token_class: TokenClass | str | None, now: datetime) -> datetime:
    """Return now + the default lifetime for token_class (24h for unknown classes)."""
    try:
        ttl = _DEFAULT_TTL[TokenClass(token_class)]
    except (KeyError, ValueError):
        ttl = _FALLBACK_TTL
    return now + ttl


class RevocationStore:
    """Repository for RevocationRecord rows."""

    def __init__(
        self,
        db_url: str | None = None,
        clock: Callable[[], datetime] = _utcnow,
        secret_key: str | None = None,
    ) -> None:
        settings = get_settings()
        self.engine: Engine = make_engine(db_url or settings.database_url)
        _metadata.create_all(self.engine)
        self._clock = clock
        self._secret_key = secret_key or settings.secret_key

    def revoke(
        self,
        token: str,
        token_class: TokenClass,
        owner_id: int | None = None,
        expires_at: datetime | None = None,
        reason: str | None = None,
    ) -> RevocationRecord:
        """Record token as revoked until expires_at (class default if omitted)."""
        now = self._clock()
        token_class = TokenClass(token_class)
        record = RevocationRecord(
            token_hash=hash_token(token, self._secret_key),
            token_class=token_class,
            owner_id=owner_id,
            expires_at=expires_at or default_expiry(token_class, now),
            reason=reason or DEFAULT_REASON,
            created_at=_iso(now),
        )
        with self.engine.begin() as conn:
            result = conn.execute(
                _revoked.insert().values(
                    token_hash=record.token_hash,
                    token_class=record.token_class.value,
                    owner_id=record.owner_id,
                    expires_at=_iso(record.expires_at),
                    reason=record.reason,
                    created_at=record.created_at,
                )
            )
        record.id = result.inserted_primary_key[0]
        logger.info("Revoked %s token (owner=%s, reason=%s)", token_class.value, owner_id, record.reason)
        return record

    def is_revoked(self, token: str) -> bool:
        """True if a live (not yet expired) record exists for token."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_revoked.c.id)
                .where(
                    (_revoked.c.token_hash == hash_token(token, self._secret_key))
                    & (_revoked.c.expires_at > _iso(self._clock()))
                )
                .limit(1)
            ).first()
        return row is not None

    def revoke_all_for_owner(self, owner_id: int, reason: str = "Security measure") -> int:
        """Stamp reason on every live record owned by owner_id. Returns how many.

        This only annotates tokens already on file. It cannot reach tokens it
        has never seen -- callers must also clear the owner's refresh hash
        (AuthService.revoke_all_sessions does both).
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _revoked.update()
                .where((_revoked.c.owner_id == owner_id) & (_revoked.c.expires_at > _iso(self._clock())))
                .values(reason=reason)
            )
        return result.rowcount

    def list_for_owner(self, owner_id: int) -> list[RevocationRecord]:
        """Live records for owner_id, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _revoked.select()
                .where((_revoked.c.owner_id == owner_id) & (_revoked.c.expires_at > _iso(self._clock())))
                .order_by(_revoked.c.created_at.desc())
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def sweep_expired(self) -> int:
        """Delete records past their expiry. Returns number of rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_revoked.delete().where(_revoked.c.expires_at <= _iso(self._clock())))
        if result.rowcount:
            logger.info("Swept %d expired revocation records", result.rowcount)
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


def _row_to_record(row) -> RevocationRecord:
    return RevocationRecord(
        id=row.id,
        token_hash=row.token_hash,
        token_class=TokenClass(row.token_class),
        owner_id=row.owner_id,
        expires_at=datetime.fromisoformat(row.expires_at),
        reason=row.reason,
        created_at=row.created_at,
    )
