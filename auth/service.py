"""
auth/service.py -- Login, session lifecycle, and single-use link flows.

AuthService is the one object request handlers talk to. It owns no storage
of its own; it coordinates:

  LockoutTracker     -- brute-force counters (in-memory, per process)
  UserStore          -- principals, refresh hash, pending link token
  RoleStore          -- via PermissionResolver, for the token snapshot
  RevocationStore    -- bearer tokens killed before their exp
  EmailSender        -- delivery of single-use links

Flows:
  login        authenticate() -> issue_session()
  refresh      rotate(): match stored hash -> new bearer + new refresh secret
  logout       end_session(): clear refresh hash, optionally revoke bearer
  links        issue_single_use_link() / redeem_single_use_link()

Failure policy: every domain failure is an AuthError subclass raised to the
caller; nothing is retried. Store errors (sqlalchemy.exc.SQLAlchemyError)
are not caught here -- an unreachable database is an infrastructure
failure, not "invalid credentials".

Secrets are never logged. Log lines carry user ids and emails only.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

from auth.errors import (
    InvalidCredentials,
    InvalidOrExpiredLink,
    InvalidRefreshToken,
    RegistrationError,
    WeakPassword,
)
from auth.lockout import LockoutTracker
from auth.models import LegacyRole, LinkOutcome, LinkPurpose, Session, TokenClass, User
from auth.permissions import PermissionResolver
from auth.revocation import RevocationStore
from auth.store import RoleStore, UserStore
from auth.tokens import (
    MAX_PASSWORD_BYTES,
    burn_password_check,
    create_access_token,
    decode_access_token,
    generate_link_token,
    generate_refresh_secret,
    hash_password,
    hash_token,
    token_expiry,
    token_matches,
    verify_password,
)
from core.config import Settings, get_settings
from core.mailer import EmailMessage, EmailSender

logger = logging.getLogger("gatehouse.auth")

_SPECIAL_CHARS = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")

# The response to a link request is identical whether or not the account
# exists. Keep these per-purpose strings free of any user data.
LINK_SENT_MESSAGES: dict[LinkPurpose, str] = {
    LinkPurpose.MAGIC_LINK: "If your email is registered, you will receive a magic link",
    LinkPurpose.VERIFY_EMAIL: "If your email is registered, you will receive a verification link",
    LinkPurpose.RESET_PASSWORD: "If your email is registered, you will receive a password reset link",
}

# (url path, subject, heading, call to action)
_LINK_TEMPLATES: dict[LinkPurpose, tuple[str, str, str, str]] = {
    LinkPurpose.MAGIC_LINK: (
        "/auth/verify-magic-link",
        "Login to Your Account",
        "Login to Your Account",
        "log in to your account",
    ),
    LinkPurpose.VERIFY_EMAIL: (
        "/auth/verify-email",
        "Verify Your Email",
        "Verify Your Email",
        "verify your email address",
    ),
    LinkPurpose.RESET_PASSWORD: (
        "/auth/reset-password",
        "Reset Your Password",
        "Reset Your Password",
        "reset your password",
    ),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthService:
    """Authentication and session engine.

    Usage:
        service = AuthService(UserStore(), RoleStore(), RevocationStore(), build_sender())
        session = service.login("a@x.com", "Secret-123")
        session = service.rotate(user_id, session.refresh_token)
        service.end_session(user_id, bearer=session.access_token)
    """

    def __init__(
        self,
        users: UserStore,
        roles: RoleStore,
        revocations: RevocationStore,
        mailer: EmailSender,
        settings: Settings | None = None,
        lockout: LockoutTracker | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self.users = users
        self.roles = roles
        self.revocations = revocations
        self.mailer = mailer
        self.resolver = PermissionResolver(roles)
        self.lockout = lockout or LockoutTracker(
            max_attempts=self.settings.password_max_attempts,
            lockout_minutes=self.settings.lockout_minutes,
            clock=clock,
        )
        self._clock = clock

    # ------------------------------------------------------------------
    # Credential verification
    # ------------------------------------------------------------------

    def authenticate(self, email: str, password: str) -> User | None:
        """Verify email + password under the lockout policy.

        Raises AccountLocked while the email is inside its lockout window, or
        when enough checks for it are already running to reach the limit.
        Returns the user (secrets stripped) on success, None on any mismatch.
        Unknown email, passwordless account, wrong password and inactive
        account all look the same to the caller, and all count as failures.

        bcrypt runs on every path, including unknown emails, so response
        time does not reveal whether the account exists.
        """
        self.lockout.begin_attempt(email)
        verdict: bool | None = None
        try:
            user = self.users.get_by_email(email)
            if user is None or user.hashed_password is None:
                burn_password_check(password)
                verdict = False
                return None
            verdict = verify_password(password, user.hashed_password) and user.is_active
            return user.public() if verdict else None
        finally:
            # a store error leaves verdict None: the slot is released, nothing counted
            self.lockout.end_attempt(email, verdict)

    def login(self, email: str, password: str) -> Session:
        """authenticate() + issue_session(); raises InvalidCredentials on no match."""
        user = self.authenticate(email, password)
        if user is None:
            raise InvalidCredentials()
        logger.info("User %s logged in", user.id)
        return self.issue_session(user)

    # ------------------------------------------------------------------
    # Bearer / refresh lifecycle
    # ------------------------------------------------------------------

    def issue_session(self, user: User) -> Session:
        """Mint a bearer token and a fresh refresh secret for user.

        The refresh secret's HMAC overwrites whatever was stored, so any
        previously issued refresh secret stops working.
        """
        refresh = generate_refresh_secret()
        self.users.save_refresh_token(user.id, self._hash(refresh), self._refresh_expiry())
        return Session(
            access_token=self._bearer_for(user),
            refresh_token=refresh,
            expires_in=self.settings.access_token_expire_seconds,
        )

    def rotate(self, subject_id: int, candidate: str) -> Session:
        """Exchange a refresh secret for a new bearer + refresh pair.

        A candidate that does not match the stored hash is treated as replay
        of a stolen or rotated-out secret: the stored hash is wiped (so the
        legitimate holder is logged out too) and the candidate is recorded
        in the revocation store. Both happen before the error is raised.
        """
        user = self.users.get_by_id(subject_id)
        if user is None or not user.refresh_token_hash:
            raise InvalidRefreshToken()

        if not self._matches(candidate, user.refresh_token_hash):
            self._revoke_refresh(user, candidate)
            raise InvalidRefreshToken()

        now = self._clock()
        if (user.refresh_token_expires is not None and now >= user.refresh_token_expires) or not user.is_active:
            self.users.clear_refresh_token(user.id)
            raise InvalidRefreshToken()

        refresh = generate_refresh_secret()
        if not self.users.swap_refresh_token(
            user.id, user.refresh_token_hash, self._hash(refresh), self._refresh_expiry()
        ):
            # Another request rotated this secret between our read and write.
            self._revoke_refresh(user, candidate)
            raise InvalidRefreshToken()

        return Session(
            access_token=self._bearer_for(user),
            refresh_token=refresh,
            expires_in=self.settings.access_token_expire_seconds,
        )

    def end_session(self, subject_id: int, bearer: str | None = None) -> None:
        """Log out: no further refreshes for subject_id.

        If the caller passes the bearer token in use, it is revoked for the
        rest of its lifetime as well. A bearer belonging to someone else is
        ignored.
        """
        self.users.clear_refresh_token(subject_id)
        if bearer:
            payload = self._decode(bearer)
            if payload is not None and payload["user_id"] == subject_id:
                self.revocations.revoke(
                    bearer,
                    TokenClass.ACCESS,
                    owner_id=subject_id,
                    expires_at=token_expiry(payload),
                )
        logger.info("User %s logged out", subject_id)

    def revoke_all_sessions(self, subject_id: int, reason: str = "Security measure") -> int:
        """Clear the refresh hash and re-stamp every revocation record on file.

        Bearer tokens already handed out stay valid until their exp unless
        they were individually revoked. Returns the number of records stamped.
        """
        self.users.clear_refresh_token(subject_id)
        count = self.revocations.revoke_all_for_owner(subject_id, reason)
        logger.warning("All sessions revoked for user %s (%s)", subject_id, reason)
        return count

    def verify_bearer(self, token: str) -> dict | None:
        """Return the claims of a valid, unrevoked bearer token, else None."""
        payload = self._decode(token)
        if payload is None or self.revocations.is_revoked(token):
            return None
        return payload

    def _bearer_for(self, user: User) -> str:
        return create_access_token(
            user_id=user.id,
            email=user.email,
            role=LegacyRole(user.role).value,
            permissions=self.resolver.effective_permissions(user),
            expire_seconds=self.settings.access_token_expire_seconds,
            secret_key=self.settings.secret_key,
            now=self._clock(),
        )

    def _decode(self, token: str) -> dict | None:
        return decode_access_token(token, secret_key=self.settings.secret_key, now=self._clock())

    def _hash(self, raw: str) -> str:
        return hash_token(raw, secret_key=self.settings.secret_key)

    def _matches(self, raw: str, stored_hash: str) -> bool:
        return token_matches(raw, stored_hash, secret_key=self.settings.secret_key)

    def _refresh_expiry(self) -> datetime:
        return self._clock() + timedelta(days=self.settings.refresh_token_expire_days)

    def _revoke_refresh(self, user: User, candidate: str) -> None:
        self.users.clear_refresh_token(user.id)
        self.revocations.revoke(
            candidate,
            TokenClass.REFRESH,
            owner_id=user.id,
            reason="Refresh token reuse detected",
        )
        logger.warning("Refresh token mismatch for user %s; stored refresh token revoked", user.id)

    # ------------------------------------------------------------------
    # Single-use links
    # ------------------------------------------------------------------

    def issue_single_use_link(self, email: str, purpose: LinkPurpose) -> str:
        """Store a fresh link token for email and mail it out.

        Always returns the same message for a given purpose, whether or not
        the email belongs to an account, and whether or not delivery worked.
        A new link supersedes any pending one.
        """
        purpose = LinkPurpose(purpose)
        message = LINK_SENT_MESSAGES[purpose]
        user = self.users.get_by_email(email)
        if user is None or not user.is_active:
            logger.info("Link request (%s) for unknown or inactive account", purpose.value)
            return message

        token = generate_link_token()
        expires = self._clock() + timedelta(minutes=self.settings.single_use_link_expire_minutes)
        self.users.save_link_token(user.id, self._hash(token), purpose, expires)

        if not self.mailer.send(self._link_email(user.email, token, purpose)):
            logger.warning("Could not deliver %s link to user %s", purpose.value, user.id)
        return message

    def redeem_single_use_link(
        self,
        email: str,
        token: str,
        purpose: LinkPurpose,
        new_password: str | None = None,
    ) -> LinkOutcome:
        """Consume a pending link and perform its side effect.

        Raises InvalidOrExpiredLink if there is no pending link, the token or
        purpose does not match, the link has expired, or it was consumed by a
        concurrent request. The stored token is cleared before the side
        effect runs, so a link can never be used twice.

        RESET_PASSWORD requires new_password; it is checked against the
        password policy before the link is touched.
        """
        purpose = LinkPurpose(purpose)
        if purpose is LinkPurpose.RESET_PASSWORD:
            if new_password is None:
                raise WeakPassword("A new password is required.")
            self.check_password_policy(new_password)

        user = self.users.get_by_email(email)
        if (
            user is None
            or not user.link_token_hash
            or user.link_purpose is not purpose
            or not self._matches(token, user.link_token_hash)
        ):
            raise InvalidOrExpiredLink()
        if user.link_expires is None or self._clock() > user.link_expires:
            raise InvalidOrExpiredLink()
        if not self.users.consume_link_token(user.id, user.link_token_hash):
            raise InvalidOrExpiredLink()

        if purpose is LinkPurpose.VERIFY_EMAIL:
            self.users.update_user(user.id, is_email_verified=True)
            user.is_email_verified = True
            logger.info("User %s verified email", user.id)
            return LinkOutcome(purpose=purpose, user=user.public())

        if purpose is LinkPurpose.RESET_PASSWORD:
            self.users.update_user(user.id, hashed_password=hash_password(new_password))
            # a reset means the old password may be known to someone else
            self.users.clear_refresh_token(user.id)
            self.lockout.clear(user.email)
            logger.info("User %s reset password", user.id)
            return LinkOutcome(purpose=purpose, user=user.public())

        if not user.is_active:
            raise InvalidOrExpiredLink()
        # following the emailed link proves control of the mailbox
        if not user.is_email_verified:
            self.users.update_user(user.id, is_email_verified=True)
            user.is_email_verified = True
        logger.info("User %s logged in via magic link", user.id)
        return LinkOutcome(purpose=purpose, user=user.public(), session=self.issue_session(user))

    def _link_email(self, email: str, token: str, purpose: LinkPurpose) -> EmailMessage:
        path, subject, heading, action = _LINK_TEMPLATES[purpose]
        expire = self.settings.single_use_link_expire_minutes
        link = f"{self.settings.app_url.rstrip('/')}{path}?{urlencode({'token': token, 'email': email})}"
        html = (
            f"<h1>{heading}</h1>"
            f"<p>Click the link below to {action}. This link will expire in {expire} minutes.</p>"
            f'<a href="{link}">{heading}</a>'
            "<p>If you did not request this, please ignore this email.</p>"
        )
        text = (
            f"{heading}\n\nOpen the link below to {action}. This link will expire in {expire} minutes.\n\n"
            f"{link}\n\nIf you did not request this, please ignore this email."
        )
        return EmailMessage(to=email, subject=subject, html=html, text=text)

    # ------------------------------------------------------------------
    # Registration and account creation
    # ------------------------------------------------------------------

    def check_password_policy(self, password: str) -> None:
        """Raise WeakPassword unless password is long enough and mixes
        upper case, lower case, digits and special characters."""
        min_length = self.settings.password_min_length
        if len(password) < min_length:
            raise WeakPassword(f"Password must be at least {min_length} characters long")
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise WeakPassword(f"Password must be at most {MAX_PASSWORD_BYTES} bytes long")
        if not (
            re.search(r"[A-Z]", password)
            and re.search(r"[a-z]", password)
            and re.search(r"[0-9]", password)
            and _SPECIAL_CHARS.search(password)
        ):
            raise WeakPassword(
                "Password must include at least one uppercase letter, one lowercase letter, "
                "one number, and one special character"
            )

    def create_user(
        self,
        email: str,
        password: str | None = None,
        name: str = "",
        role: LegacyRole = LegacyRole.USER,
        role_ids: Iterable[int] | None = None,
        permissions: Iterable[str] = (),
        is_email_verified: bool = False,
    ) -> User:
        """Create a principal. With no role_ids, the current default role is assigned.

        password=None creates a passwordless (magic-link only) account. The
        password is hashed here; policy checks are the caller's choice.
        """
        if role_ids is None:
            default = self.roles.get_default()
            role_ids = {default.id} if default is not None else set()
        user = User(
            email=email,
            name=name,
            role=LegacyRole(role),
            hashed_password=hash_password(password) if password is not None else None,
            role_ids=set(role_ids),
            permissions=set(permissions),
            is_email_verified=is_email_verified,
        )
        user.id = self.users.create_user(user)
        return self.users.get_by_id(user.id).public()

    def register(self, name: str, email: str, password: str) -> User:
        """Self-service sign-up: policy check, create, send a verification link.

        Raises RegistrationError if the email is taken, WeakPassword if the
        password fails the policy.
        """
        if self.users.get_by_email(email) is not None:
            raise RegistrationError("User with this email already exists")
        self.check_password_policy(password)
        user = self.create_user(email=email, password=password, name=name)
        self.issue_single_use_link(user.email, LinkPurpose.VERIFY_EMAIL)
        logger.info("Registered user %s", user.id)
        return user

