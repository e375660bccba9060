"""
auth/permissions.py -- Effective-permission resolution and access checks.

A principal draws authority from three independent sources:

  1. the legacy single role field (User.role) -- ADMIN bypasses every
     permission check, and a literal match satisfies a role check;
  2. assigned roles (User.role_ids), each a bundle of permissions;
  3. direct grants (User.permissions).

resolve() is the one place the permission sources are merged. It takes the
direct grants and the already-materialized roles as explicit inputs, so each
source can be tested on its own. PermissionResolver is the only code path
that turns role ids into Role objects (RoleStore.get_many), and the only
place the ADMIN bypass lives.

Nothing here is cached: every call re-reads roles, so a permission removed
from a role takes effect on the next request.

Layer rule: no imports from api/. auth/dependencies.py wraps the require_*
methods as FastAPI dependencies.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

from auth.errors import Forbidden
from auth.models import LegacyRole, Role, User

if TYPE_CHECKING:
    from auth.store import RoleStore


def resolve(direct: Iterable[str], roles: Iterable[Role]) -> frozenset[str]:
    """Return direct grants union every role's permissions.

    >>> sorted(resolve({"a", "b"}, [Role("R1", "r1", {"b", "c"}), Role("R2", "r2", {"c", "d"})]))
    ['a', 'b', 'c', 'd']
    """
    effective = set(direct)
    for role in roles:
        effective.update(role.permissions)
    return frozenset(effective)


def is_admin(user: User) -> bool:
    return LegacyRole(user.role) is LegacyRole.ADMIN


def _as_list(required: Iterable[str] | str) -> list[str]:
    # a bare string is one name, not a sequence of characters to match against
    if isinstance(required, str):
        return [required]
    return list(dict.fromkeys(required))


class PermissionResolver:
    """Answers "may this user do X?" against live role data."""

    def __init__(self, roles: RoleStore) -> None:
        self.roles = roles

    def assigned_roles(self, user: User) -> list[Role]:
        return self.roles.get_many(user.role_ids)

    def effective_permissions(self, user: User) -> frozenset[str]:
        return resolve(user.permissions, self.assigned_roles(user))

    def authorize_role(self, user: User, required: Iterable[str] | str) -> bool:
        """True if user holds at least one of the required role keys.

        An empty requirement allows. The legacy role is checked first and a
        literal match allows without touching the role store. ADMIN holds
        every role.
        """
        required = _as_list(required)
        if not required:
            return True
        legacy = LegacyRole(user.role)
        if legacy.value in required or legacy is LegacyRole.ADMIN:
            return True
        keys = {role.key for role in self.assigned_roles(user)}
        return not keys.isdisjoint(required)

    def missing_permissions(self, user: User, required: Iterable[str] | str) -> list[str]:
        """Required permissions the user lacks, in request order. ADMIN lacks nothing."""
        required = _as_list(required)
        if not required or is_admin(user):
            return []
        effective = self.effective_permissions(user)
        return [p for p in required if p not in effective]

    def authorize_permissions(self, user: User, required: Iterable[str] | str) -> bool:
        return not self.missing_permissions(user, required)

    # ------------------------------------------------------------------
    # Raising variants used by request guards
    # ------------------------------------------------------------------

    def require_any_role(self, user: User | None, required: Iterable[str] | str) -> None:
        required = _as_list(required)
        if not required:
            return
        if user is None:
            raise Forbidden()
        if not self.authorize_role(user, required):
            raise Forbidden(f"Requires one of these roles: {', '.join(required)}")

    def require_all_permissions(self, user: User | None, required: Iterable[str] | str) -> None:
        required = _as_list(required)
        if not required:
            return
        if user is None:
            raise Forbidden()
        missing = self.missing_permissions(user, required)
        if missing:
            raise Forbidden(f"Missing required permissions: {', '.join(missing)}")
