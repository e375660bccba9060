"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores and services do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum


class LegacyRole(str, Enum):
    """The single role field every principal carries.

    Predates assigned roles. ADMIN bypasses all permission checks.
    """

    USER = "user"
    ADMIN = "admin"
    EDITOR = "editor"


class TokenClass(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    MAGIC_LINK = "magic-link"
    RESET_PASSWORD = "reset-password"


class LinkPurpose(str, Enum):
    """What redeeming a single-use link does."""

    MAGIC_LINK = "magic-link"
    VERIFY_EMAIL = "verify-email"
    RESET_PASSWORD = "reset-password"


# Permission catalogue. The resolver accepts any string; these are the ones
# the default roles are built from.
READ_USERS = "read:users"
CREATE_USERS = "create:users"
UPDATE_USERS = "update:users"
DELETE_USERS = "delete:users"
READ_OWN = "read:own"
UPDATE_OWN = "update:own"
DELETE_OWN = "delete:own"
READ_ROLES = "read:roles"
CREATE_ROLES = "create:roles"
UPDATE_ROLES = "update:roles"
DELETE_ROLES = "delete:roles"
ASSIGN_ROLES = "assign:roles"

ALL_PERMISSIONS: frozenset[str] = frozenset(
    {
        READ_USERS,
        CREATE_USERS,
        UPDATE_USERS,
        DELETE_USERS,
        READ_OWN,
        UPDATE_OWN,
        DELETE_OWN,
        READ_ROLES,
        CREATE_ROLES,
        UPDATE_ROLES,
        DELETE_ROLES,
        ASSIGN_ROLES,
    }
)


@dataclass
class User:
    """A principal: someone who can authenticate and hold permissions.

    email is stored lower-cased; UserStore normalizes on write and lookup.

    hashed_password is None for passwordless accounts (magic-link only).
    role_ids holds weak references to Role rows -- a user never owns a role.
    permissions are direct grants, independent of any role.

    refresh_token_hash and link_token_hash are HMACs of secrets; link_purpose
    binds the pending link to one flow so a magic-link token cannot reset a
    password. public() returns a copy with them (and the password hash)
    stripped for handing to callers.
    """

    email: str
    name: str = ""
    role: LegacyRole = LegacyRole.USER
    id: int | None = None
    hashed_password: str | None = None
    role_ids: set[int] = field(default_factory=set)
    permissions: set[str] = field(default_factory=set)
    refresh_token_hash: str | None = None
    refresh_token_expires: datetime | None = None
    link_token_hash: str | None = None
    link_purpose: LinkPurpose | None = None
    link_expires: datetime | None = None
    is_active: bool = True
    is_email_verified: bool = False
    created_at: str | None = None

    def public(self) -> User:
        return replace(
            self,
            hashed_password=None,
            refresh_token_hash=None,
            refresh_token_expires=None,
            link_token_hash=None,
            link_purpose=None,
            link_expires=None,
            role_ids=set(self.role_ids),
            permissions=set(self.permissions),
        )


@dataclass
class Role:
    """A named, shareable bundle of permissions.

    At most one role has is_default=True; RoleStore enforces it. The default
    role is assigned to new users created without explicit roles and cannot
    be deleted. is_system marks the seeded roles.
    """

    name: str
    key: str
    permissions: set[str] = field(default_factory=set)
    description: str | None = None
    is_default: bool = False
    is_system: bool = False
    id: int | None = None
    created_at: str | None = None


@dataclass
class RevocationRecord:
    """A revoked token, identified by its HMAC hash -- never the raw value."""

    token_hash: str
    token_class: TokenClass
    expires_at: datetime
    reason: str
    owner_id: int | None = None
    id: int | None = None
    created_at: str | None = None


@dataclass
class Session:
    """Credentials handed to the client after login, rotation or magic link.

    refresh_token is the plaintext secret. It exists only in this object;
    the store keeps an HMAC of it.
    """

    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password


@dataclass
class LinkOutcome:
    """Result of redeeming a single-use link.

    session is set only for MAGIC_LINK redemptions.
    """

    purpose: LinkPurpose
    user: User
    session: Session | None = None
