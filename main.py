#!/usr/bin/env python3
"""
Gatehouse admin CLI -- maintenance tasks that should not need the API running.

Usage:
  python main.py seed-roles
  python main.py create-user admin@example.com --role admin --password 'S3cret!pass'
  python main.py create-user reader@example.com --passwordless --grant read:users
  python main.py grant alice@example.com read:roles update:roles
  python main.py assign-role alice@example.com editor
  python main.py permissions alice@example.com
  python main.py revoke-sessions alice@example.com --reason "Subscription cancelled"
  python main.py sweep

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the auth database (default: ./gatehouse.db)
  SECRET_KEY    Required unless DEBUG=true (see core/config.py)
"""

import argparse
import getpass
import logging
import sys

from sqlalchemy.exc import IntegrityError

from auth.errors import WeakPassword
from auth.models import LegacyRole
from auth.revocation import RevocationStore
from auth.service import AuthService
from auth.store import RoleStore, UserStore
from core.config import get_settings
from core.mailer import build_sender


def _build_service() -> AuthService:
    settings = get_settings()
    roles = RoleStore(settings.database_url)
    roles.ensure_default_roles()
    return AuthService(
        users=UserStore(settings.database_url),
        roles=roles,
        revocations=RevocationStore(settings.database_url, secret_key=settings.secret_key),
        mailer=build_sender(settings),
        settings=settings,
    )


def _require_user(service: AuthService, email: str):
    user = service.users.get_by_email(email)
    if user is None:
        print(f"  [!] No user with email '{email}'.")
        sys.exit(1)
    return user


def cmd_seed_roles(service: AuthService, args: argparse.Namespace) -> int:
    # _build_service() already seeded; report what exists
    for role in service.roles.list_roles():
        marker = " (default)" if role.is_default else ""
        print(f"  {role.key:<12} {len(role.permissions):>3} permissions{marker}")
    return 0


def cmd_create_user(service: AuthService, args: argparse.Namespace) -> int:
    password = None
    if not args.passwordless:
        password = args.password or getpass.getpass("Password: ")
        try:
            service.check_password_policy(password)
        except WeakPassword as e:
            print(f"  [!] {e.message}")
            return 1
    role_ids = None
    if args.assign:
        role_ids = set()
        for key in args.assign:
            role = service.roles.get_by_key(key)
            if role is None:
                print(f"  [!] Unknown role '{key}'.")
                return 1
            role_ids.add(role.id)
    try:
        user = service.create_user(
            email=args.email,
            password=password,
            name=args.name,
            role=LegacyRole(args.role),
            role_ids=role_ids,
            permissions=args.grant or (),
            is_email_verified=True,
        )
    except IntegrityError:
        print(f"  [!] A user with email '{args.email}' already exists.")
        return 1
    print(f"  Created user {user.id} ({user.email}, role={user.role.value}).")
    return 0


def cmd_grant(service: AuthService, args: argparse.Namespace) -> int:
    user = _require_user(service, args.email)
    service.users.add_permissions(user.id, args.permissions)
    print(f"  Granted {', '.join(args.permissions)} to {user.email}.")
    return 0


def cmd_assign_role(service: AuthService, args: argparse.Namespace) -> int:
    user = _require_user(service, args.email)
    role = service.roles.get_by_key(args.role_key)
    if role is None:
        print(f"  [!] Unknown role '{args.role_key}'.")
        return 1
    service.users.add_roles(user.id, [role.id])
    print(f"  Assigned role '{role.key}' to {user.email}.")
    return 0


def cmd_permissions(service: AuthService, args: argparse.Namespace) -> int:
    user = _require_user(service, args.email)
    roles = service.resolver.assigned_roles(user)
    print(f"  {user.email}  legacy role: {user.role.value}")
    print(f"  assigned roles: {', '.join(sorted(r.key for r in roles)) or '(none)'}")
    for permission in sorted(service.resolver.effective_permissions(user)):
        print(f"    {permission}")
    return 0


def cmd_revoke_sessions(service: AuthService, args: argparse.Namespace) -> int:
    user = _require_user(service, args.email)
    count = service.revoke_all_sessions(user.id, args.reason)
    print(f"  Refresh token cleared for {user.email}; {count} revocation record(s) updated.")
    return 0


def cmd_sweep(service: AuthService, args: argparse.Namespace) -> int:
    removed = service.revocations.sweep_expired()
    print(f"  Removed {removed} expired revocation record(s).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gatehouse",
        description="Gatehouse admin CLI",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("seed-roles", help="Create the default roles if none exist and list roles")
    p.set_defaults(func=cmd_seed_roles)

    p = sub.add_parser("create-user", help="Create a user")
    p.add_argument("email")
    p.add_argument("--name", default="")
    p.add_argument("--password", help="Prompted for if omitted")
    p.add_argument("--passwordless", action="store_true", help="Magic-link only account")
    p.add_argument("--role", choices=[r.value for r in LegacyRole], default=LegacyRole.USER.value)
    p.add_argument("--assign", nargs="+", metavar="ROLE_KEY", help="Assigned roles (default: the default role)")
    p.add_argument("--grant", nargs="+", metavar="PERMISSION", help="Direct permissions")
    p.set_defaults(func=cmd_create_user)

    p = sub.add_parser("grant", help="Grant direct permissions to a user")
    p.add_argument("email")
    p.add_argument("permissions", nargs="+")
    p.set_defaults(func=cmd_grant)

    p = sub.add_parser("assign-role", help="Assign a role to a user")
    p.add_argument("email")
    p.add_argument("role_key")
    p.set_defaults(func=cmd_assign_role)

    p = sub.add_parser("permissions", help="Show a user's effective permissions")
    p.add_argument("email")
    p.set_defaults(func=cmd_permissions)

    p = sub.add_parser("revoke-sessions", help="Force a user to log in again")
    p.add_argument("email")
    p.add_argument("--reason", default="Security measure")
    p.set_defaults(func=cmd_revoke_sessions)

    p = sub.add_parser("sweep", help="Delete expired revocation records")
    p.set_defaults(func=cmd_sweep)

    return parser


def main(argv=None) -> int:
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    args = build_parser().parse_args(argv)
    service = _build_service()
    try:
        return args.func(service, args)
    finally:
        service.users.close()
        service.roles.close()
        service.revocations.close()


if __name__ == "__main__":
    sys.exit(main())
