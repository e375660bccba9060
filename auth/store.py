"""
auth/store.py -- SQLAlchemy Core persistence layer for principals and roles.

Pattern: Repository + Data Mapper. UserStore and RoleStore are the
repositories; _row_to_user / _row_to_role are the mappers. Services and
dependencies never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Refresh and link secrets are stored as HMACs only (see auth/tokens.py).
  Rotation and link redemption go through compare-and-swap updates
  (swap_refresh_token, consume_link_token): the UPDATE only matches when the
  stored hash is still the one the caller verified, so two concurrent
  requests presenting the same secret cannot both win.

Multi-valued fields:
  A user's assigned roles and direct permissions, and a role's permissions,
  live in link tables. Replacing a set is a delete + insert inside one
  engine.begin() transaction so readers never see a half-written set.

Default role invariant:
  At most one role has is_default=1. create() and update() clear the flag on
  every other role in the same transaction that sets it.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Connection, Engine

from auth.models import (
    ALL_PERMISSIONS,
    READ_OWN,
    READ_USERS,
    UPDATE_OWN,
    LegacyRole,
    LinkPurpose,
    Role,
    User,
)
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),  # lower-cased on write
    Column("name", String(255), nullable=False, server_default=""),
    Column("hashed_password", Text),  # NULL for passwordless accounts
    Column("role", String(30), nullable=False, server_default="user"),
    Column("refresh_token_hash", String(64)),  # HMAC-SHA256 hex
    Column("refresh_token_expires", String(32)),
    Column("link_token_hash", String(64)),  # HMAC-SHA256 hex
    Column("link_purpose", String(30)),
    Column("link_expires", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_email_verified", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", Integer, nullable=False, index=True),
    Column("role_id", Integer, nullable=False),
    UniqueConstraint("user_id", "role_id"),
)

_user_permissions = Table(
    "user_permissions",
    _metadata,
    Column("user_id", Integer, nullable=False, index=True),
    Column("permission", String(100), nullable=False),
    UniqueConstraint("user_id", "permission"),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("key", String(100), nullable=False, unique=True),
    Column("description", Text),
    Column("is_default", Integer, nullable=False, server_default="0"),
    Column("is_system", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_id", Integer, nullable=False, index=True),
    Column("permission", String(100), nullable=False),
    UniqueConstraint("role_id", "permission"),
)

# Seeded into an empty roles table by RoleStore.ensure_default_roles().
DEFAULT_ROLES: tuple[Role, ...] = (
    Role(
        name="User",
        key="user",
        description="Default role for all users",
        permissions={READ_OWN, UPDATE_OWN},
        is_default=True,
        is_system=True,
    ),
    Role(
        name="Admin",
        key="admin",
        description="Administrator with full access",
        permissions=set(ALL_PERMISSIONS),
        is_system=True,
    ),
    Role(
        name="Editor",
        key="editor",
        description="Can edit content but not manage users",
        permissions={READ_OWN, UPDATE_OWN, READ_USERS},
        is_system=True,
    ),
)


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    """Create an engine and make sure every auth table exists."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    # rows written by other tools may be naive; treat them as UTC
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities and their role / permission links.

    Usage:
        store = UserStore("sqlite:///:memory:")
        uid = store.create_user(User(email="a@x.com", hashed_password=hash_password("secret")))
        user = store.get_by_email("A@X.com")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(_users.c.id).limit(1)).first()
        return row is not None

    def create_user(self, user: User) -> int:
        """Insert a user with its role and permission links; return the new id.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=normalize_email(user.email),
                    name=user.name,
                    hashed_password=user.hashed_password,
                    role=LegacyRole(user.role).value,
                    is_active=1 if user.is_active else 0,
                    is_email_verified=1 if user.is_email_verified else 0,
                    created_at=_now_iso(),
                )
            )
            user_id = result.inserted_primary_key[0]
            _insert_links(conn, _user_roles, "user_id", user_id, "role_id", user.role_ids)
            _insert_links(conn, _user_permissions, "user_id", user_id, "permission", user.permissions)
        return user_id

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email, case-insensitively. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
            return self._load(conn, row)

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            return self._load(conn, row)

    def list_users(self) -> list[User]:
        """Return all users ordered by email."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.email)).fetchall()
            return [self._load(conn, r) for r in rows]

    def _load(self, conn: Connection, row) -> User | None:
        if row is None:
            return None
        role_ids = conn.execute(select(_user_roles.c.role_id).where(_user_roles.c.user_id == row.id)).scalars()
        perms = conn.execute(
            select(_user_permissions.c.permission).where(_user_permissions.c.user_id == row.id)
        ).scalars()
        return _row_to_user(row, set(role_ids), set(perms))

    # ------------------------------------------------------------------
    # Profile / flags
    # ------------------------------------------------------------------

    def update_user(self, user_id: int, **fields) -> bool:
        """Update plain columns on an existing user.

        Accepted fields: name, role, is_active, is_email_verified,
        hashed_password. Booleans are converted to int for SQLite.
        Returns True if a row was updated.
        """
        unknown = set(fields) - {"name", "role", "is_active", "is_email_verified", "hashed_password"}
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        for flag in ("is_active", "is_email_verified"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        if "role" in fields:
            fields["role"] = LegacyRole(fields["role"]).value
        if not fields:
            return False
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def set_role(self, user_id: int, role: LegacyRole | str) -> bool:
        return self.update_user(user_id, role=role)

    # ------------------------------------------------------------------
    # Refresh token
    # ------------------------------------------------------------------

    def save_refresh_token(self, user_id: int, token_hash: str | None, expires: datetime | None = None) -> bool:
        """Overwrite the stored refresh hash. None clears it (logout / revoke)."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    refresh_token_hash=token_hash,
                    refresh_token_expires=_to_iso(expires) if token_hash else None,
                )
            )
        return result.rowcount > 0

    def clear_refresh_token(self, user_id: int) -> bool:
        return self.save_refresh_token(user_id, None)

    def swap_refresh_token(self, user_id: int, expected_hash: str, new_hash: str, expires: datetime) -> bool:
        """Replace the refresh hash only if it still equals expected_hash.

        Returns False when another request rotated or cleared it first.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.refresh_token_hash == expected_hash))
                .values(refresh_token_hash=new_hash, refresh_token_expires=_to_iso(expires))
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Single-use link token
    # ------------------------------------------------------------------

    def save_link_token(self, user_id: int, token_hash: str, purpose: LinkPurpose, expires: datetime) -> bool:
        """Store a pending link, replacing any previous one for this user."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    link_token_hash=token_hash,
                    link_purpose=LinkPurpose(purpose).value,
                    link_expires=_to_iso(expires),
                )
            )
        return result.rowcount > 0

    def consume_link_token(self, user_id: int, expected_hash: str) -> bool:
        """Clear the pending link if it still equals expected_hash.

        Returns False if it was already consumed or superseded, which makes
        redemption single-use even under concurrent requests.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.link_token_hash == expected_hash))
                .values(link_token_hash=None, link_purpose=None, link_expires=None)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Assigned roles
    # ------------------------------------------------------------------

    def add_roles(self, user_id: int, role_ids: Iterable[int]) -> None:
        with self.engine.begin() as conn:
            current = set(
                conn.execute(select(_user_roles.c.role_id).where(_user_roles.c.user_id == user_id)).scalars()
            )
            _insert_links(conn, _user_roles, "user_id", user_id, "role_id", set(role_ids) - current)

    def remove_roles(self, user_id: int, role_ids: Iterable[int]) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _user_roles.delete().where(
                    (_user_roles.c.user_id == user_id) & (_user_roles.c.role_id.in_(list(role_ids)))
                )
            )

    def set_roles(self, user_id: int, role_ids: Iterable[int]) -> None:
        with self.engine.begin() as conn:
            conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
            _insert_links(conn, _user_roles, "user_id", user_id, "role_id", set(role_ids))

    # ------------------------------------------------------------------
    # Direct permissions
    # ------------------------------------------------------------------

    def add_permissions(self, user_id: int, permissions: Iterable[str]) -> None:
        with self.engine.begin() as conn:
            current = set(
                conn.execute(
                    select(_user_permissions.c.permission).where(_user_permissions.c.user_id == user_id)
                ).scalars()
            )
            _insert_links(conn, _user_permissions, "user_id", user_id, "permission", set(permissions) - current)

    def remove_permissions(self, user_id: int, permissions: Iterable[str]) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _user_permissions.delete().where(
                    (_user_permissions.c.user_id == user_id)
                    & (_user_permissions.c.permission.in_(list(permissions)))
                )
            )

    def set_permissions(self, user_id: int, permissions: Iterable[str]) -> None:
        with self.engine.begin() as conn:
            conn.execute(_user_permissions.delete().where(_user_permissions.c.user_id == user_id))
            _insert_links(conn, _user_permissions, "user_id", user_id, "permission", set(permissions))

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


class RoleStore:
    """Repository for Role entities.

    Usage:
        roles = RoleStore("sqlite:///:memory:")
        roles.ensure_default_roles()
        default = roles.get_default()
    """

    _UPDATABLE = {"name", "key", "description", "is_default"}

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)

    def ensure_default_roles(self) -> int:
        """Seed DEFAULT_ROLES if the roles table is empty. Returns the number created.

        Idempotent -- safe to call on every startup.
        """
        with self.engine.connect() as conn:
            existing = conn.execute(select(_roles.c.id).limit(1)).first()
        if existing is not None:
            return 0
        for role in DEFAULT_ROLES:
            self.create(replace(role, permissions=set(role.permissions)))
        return len(DEFAULT_ROLES)

    def create(self, role: Role) -> int:
        """Insert a role and return its id.

        If role.is_default, every other role loses its default flag in the
        same transaction. Raises IntegrityError on duplicate name or key.
        """
        with self.engine.begin() as conn:
            if role.is_default:
                conn.execute(_roles.update().where(_roles.c.is_default == 1).values(is_default=0))
            result = conn.execute(
                _roles.insert().values(
                    name=role.name,
                    key=role.key,
                    description=role.description,
                    is_default=1 if role.is_default else 0,
                    is_system=1 if role.is_system else 0,
                    created_at=_now_iso(),
                )
            )
            role_id = result.inserted_primary_key[0]
            _insert_links(conn, _role_permissions, "role_id", role_id, "permission", role.permissions)
        return role_id

    def get(self, role_id: int) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
            return self._load(conn, row)

    def get_by_key(self, key: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c["key"] == key)).fetchone()
            return self._load(conn, row)

    def get_default(self) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.is_default == 1)).fetchone()
            return self._load(conn, row)

    def get_many(self, role_ids: Iterable[int]) -> list[Role]:
        """Materialize roles by id. Unknown ids are skipped, not errors --
        a user may still reference a role an admin has since deleted."""
        ids = list(set(role_ids))
        if not ids:
            return []
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().where(_roles.c.id.in_(ids))).fetchall()
            perms: dict[int, set[str]] = {r.id: set() for r in rows}
            for role_id, permission in conn.execute(
                select(_role_permissions.c.role_id, _role_permissions.c.permission).where(
                    _role_permissions.c.role_id.in_(list(perms))
                )
            ):
                perms[role_id].add(permission)
        return [_row_to_role(r, perms[r.id]) for r in rows]

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.name)).fetchall()
            return [self._load(conn, r) for r in rows]

    def _load(self, conn: Connection, row) -> Role | None:
        if row is None:
            return None
        perms = conn.execute(
            select(_role_permissions.c.permission).where(_role_permissions.c.role_id == row.id)
        ).scalars()
        return _row_to_role(row, set(perms))

    def update(self, role_id: int, **fields) -> bool:
        """Update name, key, description or is_default.

        Setting is_default=True clears it on every other role first.
        Returns True if the role exists.
        """
        unknown = set(fields) - self._UPDATABLE
        if unknown:
            raise ValueError(f"Unknown role fields: {unknown!r}")
        if "is_default" in fields:
            fields["is_default"] = 1 if fields["is_default"] else 0
        with self.engine.begin() as conn:
            if fields.get("is_default"):
                conn.execute(
                    _roles.update().where((_roles.c.id != role_id) & (_roles.c.is_default == 1)).values(is_default=0)
                )
            if not fields:
                return conn.execute(select(_roles.c.id).where(_roles.c.id == role_id)).first() is not None
            result = conn.execute(_roles.update().where(_roles.c.id == role_id).values(**fields))
        return result.rowcount > 0

    def delete(self, role_id: int) -> bool:
        """Delete a role and its permission links. Returns False if not found.

        Raises ValueError for the default role -- new users would otherwise be
        created with no role at all. User links to the deleted role are left
        dangling; get_many() skips them.
        """
        with self.engine.begin() as conn:
            row = conn.execute(select(_roles.c.is_default).where(_roles.c.id == role_id)).first()
            if row is None:
                return False
            if row.is_default:
                raise ValueError("Cannot delete the default role")
            conn.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role_id))
            conn.execute(_roles.delete().where(_roles.c.id == role_id))
        return True

    def add_permissions(self, role_id: int, permissions: Iterable[str]) -> None:
        with self.engine.begin() as conn:
            current = set(
                conn.execute(
                    select(_role_permissions.c.permission).where(_role_permissions.c.role_id == role_id)
                ).scalars()
            )
            _insert_links(conn, _role_permissions, "role_id", role_id, "permission", set(permissions) - current)

    def remove_permissions(self, role_id: int, permissions: Iterable[str]) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _role_permissions.delete().where(
                    (_role_permissions.c.role_id == role_id) & (_role_permissions.c.permission.in_(list(permissions)))
                )
            )

    def set_permissions(self, role_id: int, permissions: Iterable[str]) -> None:
        with self.engine.begin() as conn:
            conn.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role_id))
            _insert_links(conn, _role_permissions, "role_id", role_id, "permission", set(permissions))

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Link-table helper and row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _insert_links(conn: Connection, table: Table, owner_col: str, owner_id: int, value_col: str, values) -> None:
    rows = [{owner_col: owner_id, value_col: v} for v in values]
    if rows:
        conn.execute(table.insert(), rows)


def _row_to_user(row, role_ids: set[int], permissions: set[str]) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        hashed_password=row.hashed_password,
        role=LegacyRole(row.role),
        role_ids=role_ids,
        permissions=permissions,
        refresh_token_hash=row.refresh_token_hash,
        refresh_token_expires=_from_iso(row.refresh_token_expires),
        link_token_hash=row.link_token_hash,
        link_purpose=LinkPurpose(row.link_purpose) if row.link_purpose else None,
        link_expires=_from_iso(row.link_expires),
        is_active=bool(row.is_active),
        is_email_verified=bool(row.is_email_verified),
        created_at=row.created_at,
    )


def _row_to_role(row, permissions: set[str]) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        key=row.key,
        description=row.description,
        permissions=permissions,
        is_default=bool(row.is_default),
        is_system=bool(row.is_system),
        created_at=row.created_at,
    )
