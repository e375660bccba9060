"""
auth/tokens.py -- JWT, password hashing, and opaque-secret utilities.

Security design decisions:
  JWT: python-jose with HS256. Bearer tokens are signed with SECRET_KEY and
       carry email, subject id, legacy role, a snapshot of the effective
       permissions, and expiry. They are stateless: validity is signature +
       expiry, plus the revocation-store check done by AuthService. Decoding
       returns None on any failure -- callers turn that into a 401.

  Passwords: bcrypt directly. Bcrypt is the right choice for low-entropy
       secrets because its cost factor makes brute force expensive. The
       _DUMMY_HASH constant lets authenticate() burn the same bcrypt work for
       unknown emails so response time does not reveal account existence.

  Refresh secrets and link tokens: secrets.token_hex() gives 320 / 256 bits
       of entropy. Refresh secrets are stored as HMAC-SHA256(SECRET_KEY, raw)
       -- bcrypt's slowness buys nothing for values this long, and bcrypt
       would silently ignore everything past byte 72 of the 80-char hex.
       The same HMAC identifies revoked tokens in the revocation store.
       Comparisons use hmac.compare_digest.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton. These are
# only defaults: AuthService passes its own secret_key, lifetime and clock.
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

REFRESH_SECRET_BYTES = 40
LINK_TOKEN_BYTES = 32

# bcrypt rejects (5.x) or truncates (4.x) input beyond this
MAX_PASSWORD_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Callers validate length first (see AuthService.check_password_policy);
    bcrypt only looks at the first 72 bytes.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # malformed stored hash or over-long candidate
        return False


# Timing equalization dummy hash. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("gatehouse_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt check that cannot succeed, to equalize response time."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(
    user_id: int,
    email: str,
    role: str,
    permissions: Iterable[str] = (),
    expire_seconds: int = 0,
    secret_key: str | None = None,
    now: datetime | None = None,
) -> str:
    """Encode a signed bearer token.

    Args:
        user_id:        Numeric user id, stored as the "sub" claim (string,
                        per RFC 7519).
        email:          The user's email.
        role:           Legacy single role ("user", "admin", "editor").
        permissions:    Effective permission snapshot at issue time. Guards
                        re-resolve from the store; the snapshot is for clients.
        expire_seconds: Lifetime in seconds. 0 means
                        Settings.access_token_expire_seconds.
        secret_key:     Signing key. None means Settings.secret_key.
        now:            Issue time (iat). None means the current UTC time.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.access_token_expire_seconds
    now = now or datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "email": email,
        "role": role,
        "permissions": sorted(permissions),
        "iat": now,
        "exp": now + timedelta(seconds=duration),
        # unique per token so two tokens minted in the same second hash differently
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(payload, secret_key or _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str, secret_key: str | None = None, now: datetime | None = None) -> dict | None:
    """Decode and verify a bearer token. Returns the payload dict or None on any failure.

    Expiry is checked here against `now` (default: current UTC time) rather
    than by jose, so callers with their own clock get consistent answers.
    """
    try:
        payload = jwt.decode(
            token,
            secret_key or _settings.secret_key,
            algorithms=[_ALGORITHM],
            options={"verify_exp": False},
        )
    except JWTError:
        return None
    if "sub" not in payload or "role" not in payload or not isinstance(payload.get("exp"), (int, float)):
        return None
    now = now or datetime.now(timezone.utc)
    if payload["exp"] <= now.timestamp():
        return None
    try:
        payload["user_id"] = int(payload["sub"])
    except (TypeError, ValueError):
        return None
    return payload


def token_expiry(payload: dict) -> datetime:
    """Return the exp claim of a decoded token as an aware UTC datetime."""
    return datetime.fromtimestamp(payload["exp"], tz=timezone.utc)


# ---------------------------------------------------------------------------
# Opaque secrets
# ---------------------------------------------------------------------------


def generate_refresh_secret() -> str:
    """Return 40 random bytes as 80 hex chars."""
    return secrets.token_hex(REFRESH_SECRET_BYTES)


def generate_link_token() -> str:
    """Return 32 random bytes as 64 hex chars, for emailed single-use links."""
    return secrets.token_hex(LINK_TOKEN_BYTES)


def hash_token(raw: str, secret_key: str | None = None) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw) as a hex string.

    Deterministic, so stores can look records up by hash. An attacker who
    reads the DB cannot replay anything without also knowing SECRET_KEY.
    secret_key overrides Settings.secret_key.
    """
    return hmac.new(
        (secret_key or _settings.secret_key).encode(),
        raw.encode(),
        hashlib.sha256,
    ).hexdigest()


def token_matches(raw: str, stored_hash: str, secret_key: str | None = None) -> bool:
    """Constant-time check of a raw secret against its stored HMAC."""
    return hmac.compare_digest(hash_token(raw, secret_key), stored_hash)
