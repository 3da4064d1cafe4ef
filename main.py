#!/usr/bin/env python3
"""
SupportDesk -- operator commands for the user directory.

Usage:
  python main.py init-db
  python main.py seed-fixture-user
  python main.py list-users
  python main.py revoke-credential someone@example.com

Every command reads DB_URL from the environment (or .env) unless --db-url is
given. None of them touch the coordination store or the identity provider.
"""

import argparse
from typing import Optional

from auth.models import User
from auth.oidc import FIXTURE_EMAIL, FIXTURE_NAME, FIXTURE_USER_ID
from auth.store import UserStore
from auth.vault import EncryptionVault
from core.config import get_settings


def _open_store(db_url: Optional[str]) -> UserStore:
    return UserStore(db_url or get_settings().db_url)


def cmd_init_db(store: UserStore, args: argparse.Namespace) -> int:
    # UserStore creates the schema on construction.
    print(f"  Schema ready ({store.count_users()} user(s)).")
    return 0


def cmd_seed_fixture_user(store: UserStore, args: argparse.Namespace) -> int:
    """Insert the fixture admin used by IDENTITY_MODE=fixture. Safe to re-run."""
    if store.get_by_email(FIXTURE_EMAIL) is not None:
        print(f"  {FIXTURE_EMAIL} already exists.")
        return 0
    store.create_user(
        User(
            user_id=FIXTURE_USER_ID,
            email=FIXTURE_EMAIL,
            display_name=FIXTURE_NAME,
            role="admin",
            salt=EncryptionVault.generate_salt(),
        )
    )
    print(f"  Created {FIXTURE_EMAIL} ({FIXTURE_USER_ID}).")
    return 0


def cmd_list_users(store: UserStore, args: argparse.Namespace) -> int:
    users = store.list_users()
    if not users:
        print("  No users.")
        return 0
    for user in users:
        credential = "yes" if user.encrypted_secret else "no"
        active = "" if user.is_active else "  (inactive)"
        print(f"  {user.user_id:<38} {user.email:<40} {user.role:<6} credential={credential}{active}")
    return 0


def cmd_revoke_credential(store: UserStore, args: argparse.Namespace) -> int:
    user = store.get_by_email(args.email)
    if user is None:
        print(f"  [!] No user with email '{args.email}'.")
        return 1
    if not user.encrypted_secret:
        print(f"  {user.email} has no stored credential.")
        return 0
    store.clear_encrypted_secret(user.user_id, clear_salt=args.strict)
    print(f"  Revoked stored credential for {user.email}.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="supportdesk",
        description="Operator commands for the SupportDesk user directory.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py init-db
  python main.py --db-url sqlite:///./dev.db seed-fixture-user
  python main.py list-users
  python main.py revoke-credential someone@example.com --strict
        """,
    )
    parser.add_argument(
        "--db-url",
        metavar="URL",
        default=None,
        help="SQLAlchemy URL of the user directory (default: DB_URL from settings)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("init-db", help="Create the users table if it does not exist")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("seed-fixture-user", help="Insert the fixture admin for local development")
    p.set_defaults(func=cmd_seed_fixture_user)

    p = sub.add_parser("list-users", help="Print every user with role and credential presence")
    p.set_defaults(func=cmd_list_users)

    p = sub.add_parser("revoke-credential", help="Clear a user's stored API token")
    p.add_argument("email", help="Email of the user whose credential is revoked")
    p.add_argument(
        "--strict",
        action="store_true",
        help="Also clear the user's salt; the next save generates a new one",
    )
    p.set_defaults(func=cmd_revoke_credential)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0

    store = _open_store(args.db_url)
    try:
        return args.func(store, args)
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
