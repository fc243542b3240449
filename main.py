#!/usr/bin/env python3
"""
Keyhold -- admin command line.

Operates directly on the credential store, so it works before any admin
account exists (first-run bootstrap) and while the API server is down.

Usage:
  python main.py create-user alice --permissions admin
  python main.py create-user bob --email bob@example.com --password 'correct horse'
  python main.py set-permissions bob editor viewer
  python main.py list-users
  python main.py purge-expired

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the credential store (default: auth/keyhold.db)
  SECRET_KEY    Required unless DEBUG=true (see core/config.py)
"""

import argparse
import getpass
import sys

from auth.accounts import AccountManager
from auth.oauth import OAuthProvider
from auth.store import CredentialStore
from cache.store import UserCache
from core.config import get_settings
from core.errors import IdentityError


def _open_store() -> CredentialStore:
    settings = get_settings()
    return CredentialStore(settings.database_url) if settings.database_url else CredentialStore()


def _create_user(args: argparse.Namespace, accounts: AccountManager) -> None:
    password = args.password
    if password is None:
        password = getpass.getpass("Password: ")
        if password != getpass.getpass("Confirm password: "):
            print("  [!] Passwords do not match.")
            sys.exit(1)
    user = accounts.create_account(
        args.username,
        password,
        email=args.email,
        display_name=args.display_name,
        permissions=args.permissions,
    )
    tags = ", ".join(sorted(user.permissions)) or "none"
    print(f"  Created user '{user.username}' (id={user.id}, permissions: {tags})")


def _set_permissions(args: argparse.Namespace, store: CredentialStore, accounts: AccountManager) -> None:
    user = store.get_user_by_username(args.username)
    if user is None:
        print(f"  [!] No user named '{args.username}'.")
        sys.exit(1)
    updated = accounts.update_permissions(user.id, args.permissions)
    tags = ", ".join(sorted(updated.permissions)) or "none"
    print(f"  Permissions for '{updated.username}': {tags}")


def _list_users(accounts: AccountManager) -> None:
    users = accounts.list_users()
    if not users:
        print("  No users.")
        return
    for user in users:
        tags = ", ".join(sorted(user.permissions)) or "-"
        print(f"  {user.id:>5}  {user.username:<30}  {tags}")


def _purge_expired(oauth: OAuthProvider) -> None:
    counts = oauth.purge_expired()
    print(f"  Purged {counts['codes_deleted']} authorization code(s), {counts['tokens_deleted']} access token(s).")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="keyhold",
        description="Administer Keyhold accounts and OAuth credentials.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user alice --permissions admin
  python main.py set-permissions bob editor
  python main.py purge-expired
        """,
    )
    sub = parser.add_subparsers(dest="command")

    create = sub.add_parser("create-user", help="Create an account (no username blocklist)")
    create.add_argument("username")
    create.add_argument("--password", help="Password (prompted for if omitted)")
    create.add_argument("--email")
    create.add_argument("--display-name", dest="display_name")
    create.add_argument("--permissions", nargs="*", default=[], metavar="TAG", help="Permission tags, e.g. admin")

    perms = sub.add_parser("set-permissions", help="Replace a user's permission tags")
    perms.add_argument("username")
    perms.add_argument("permissions", nargs="*", metavar="TAG")

    sub.add_parser("list-users", help="List accounts and their permission tags")
    sub.add_parser("purge-expired", help="Delete expired authorization codes and access tokens")

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return

    store = _open_store()
    users = UserCache(store.get_user_by_id)
    accounts = AccountManager(store, users)
    try:
        if args.command == "create-user":
            _create_user(args, accounts)
        elif args.command == "set-permissions":
            _set_permissions(args, store, accounts)
        elif args.command == "list-users":
            _list_users(accounts)
        elif args.command == "purge-expired":
            _purge_expired(OAuthProvider(store, users))
    except IdentityError as exc:
        print(f"  [!] {exc.message}")
        sys.exit(1)
    finally:
        store.close()


if __name__ == "__main__":
    main()
