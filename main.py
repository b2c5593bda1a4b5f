#!/usr/bin/env python3
"""
Storegate -- operator CLI for the admin access gateway.

Works directly against the configured database (DATABASE_URL), so it is the
recovery path when nobody can log in through the API.

Usage:
  python main.py create-admin ops@example.com
  python main.py create-admin ed@example.com --role editor --name "Ed Itor"
  python main.py list
  python main.py set-password ed@example.com
  python main.py unlock ops@example.com
  python main.py deactivate ed@example.com
  python main.py activate ed@example.com
  python main.py audit --identity ops@example.com --limit 20

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the account / audit database.
  SECRET_KEY    Required unless DEBUG=true (see core/config.py).
"""

import argparse
import getpass
import logging
import sys
from dataclasses import replace
from typing import Optional

from sqlalchemy.exc import IntegrityError

from audit.store import AuditLedger
from auth.identity import LocalIdentityProvider
from auth.lockout import LockoutManager
from auth.models import AdminAccount
from auth.permissions import ROLES
from auth.store import AccountDirectory, normalize_email

MIN_PASSWORD_LENGTH = 8


def _read_password() -> Optional[str]:
    """Prompt twice for a password. Returns None when the entries don't match."""
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Confirm:  ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    if len(first) < MIN_PASSWORD_LENGTH:
        print(f"  [!] Password must be at least {MIN_PASSWORD_LENGTH} characters.")
        return None
    return first


def _find(directory: AccountDirectory, email: str) -> Optional[AdminAccount]:
    account = directory.get_by_email(email)
    if account is None:
        print(f"  [!] No account for '{email}'.")
    return account


def _fmt(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value is not None else "-"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_create_admin(args: argparse.Namespace, directory: AccountDirectory) -> int:
    if directory.get_by_email(args.email) is not None:
        print(f"  [!] An account for '{args.email}' already exists.")
        return 1

    password = None if args.no_password else _read_password()
    if password is None and not args.no_password:
        return 1

    provider = LocalIdentityProvider()
    try:
        if password is not None:
            identity_id = provider.register(args.email, password, args.name).identity_id
        else:
            identity_id = f"pending:{normalize_email(args.email)}"
        account = directory.create(
            AdminAccount(identity_id=identity_id, email=args.email, display_name=args.name, role=args.role)
        )
    except IntegrityError:
        print(f"  [!] An account for '{args.email}' already exists.")
        return 1
    finally:
        provider.close()

    print(f"  Created {account.role} account {account.email} ({account.identity_id}).")
    return 0


def cmd_set_password(args: argparse.Namespace, directory: AccountDirectory) -> int:
    """Set or replace local credentials for an existing account.

    Accounts created with --no-password (or provisioned by a federated login)
    have no credential row yet; one is registered under the same email.
    """
    account = _find(directory, args.email)
    if account is None:
        return 1
    password = _read_password()
    if password is None:
        return 1

    provider = LocalIdentityProvider()
    try:
        if not provider.set_password(account.identity_id, password):
            provider.register(account.email, password, account.display_name)
    except IntegrityError:
        print(f"  [!] Credentials for '{account.email}' belong to another identity.")
        return 1
    finally:
        provider.close()

    print(f"  Password set for {account.email}.")
    return 0


def cmd_list(args: argparse.Namespace, directory: AccountDirectory) -> int:
    accounts = directory.list_accounts()
    if not accounts:
        print("  No accounts. Create one with: python main.py create-admin EMAIL")
        return 0
    print(f"  {'EMAIL':<32} {'ROLE':<8} {'ACTIVE':<7} {'LOCKED UNTIL':<17} {'FAILS':<6} LAST LOGIN")
    for a in accounts:
        locked = _fmt(a.locked_until) if a.is_locked else "-"
        print(
            f"  {a.email:<32} {a.role:<8} {'yes' if a.is_active else 'no':<7} "
            f"{locked:<17} {a.failed_attempts:<6} {_fmt(a.last_login_at)}"
        )
    return 0


def cmd_unlock(args: argparse.Namespace, directory: AccountDirectory) -> int:
    account = _find(directory, args.email)
    if account is None:
        return 1
    LockoutManager(directory).unlock(account.identity_id)
    print(f"  Unlocked {account.email}.")
    return 0


def cmd_set_active(args: argparse.Namespace, directory: AccountDirectory, active: bool) -> int:
    account = _find(directory, args.email)
    if account is None:
        return 1
    if not active and account.role == "admin" and account.is_active and directory.count_active_admins() <= 1:
        print("  [!] Cannot deactivate the last active admin account.")
        return 1
    directory.update(account.identity_id, lambda current: replace(current, is_active=active))
    print(f"  {'Activated' if active else 'Deactivated'} {account.email}.")
    return 0


def cmd_audit(args: argparse.Namespace, directory: AccountDirectory) -> int:
    ledger = AuditLedger()
    try:
        if args.identity:
            entries = ledger.for_identity(normalize_email(args.identity), limit=args.limit)
        else:
            entries = ledger.recent(limit=args.limit)
    finally:
        ledger.close()
    for e in entries:
        print(f"  {e.timestamp.isoformat(timespec='seconds')}  {e.action:<14} {e.status:<8} {e.identity_key:<32} {e.reason}")
    if not entries:
        print("  No audit entries.")
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Storegate -- admin account and audit maintenance.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug logging")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-admin", help="Create an account with local credentials")
    create.add_argument("email")
    create.add_argument("--role", choices=ROLES, default="admin")
    create.add_argument("--name", default="", help="Display name")
    create.add_argument(
        "--no-password",
        action="store_true",
        help="Pre-create the account for federated login only",
    )

    setpw = sub.add_parser("set-password", help="Set or replace local credentials")
    setpw.add_argument("email")

    sub.add_parser("list", help="List accounts with lock state")

    for name, text in (
        ("unlock", "Clear lockout state ahead of expiry"),
        ("deactivate", "Deactivate an account"),
        ("activate", "Reactivate an account"),
    ):
        p = sub.add_parser(name, help=text)
        p.add_argument("email")

    audit = sub.add_parser("audit", help="Show recent audit entries")
    audit.add_argument("--identity", help="Only entries for this email")
    audit.add_argument("--limit", type=int, default=50)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    directory = AccountDirectory()
    try:
        if args.command == "create-admin":
            return cmd_create_admin(args, directory)
        if args.command == "list":
            return cmd_list(args, directory)
        if args.command == "set-password":
            return cmd_set_password(args, directory)
        if args.command == "unlock":
            return cmd_unlock(args, directory)
        if args.command == "deactivate":
            return cmd_set_active(args, directory, active=False)
        if args.command == "activate":
            return cmd_set_active(args, directory, active=True)
        return cmd_audit(args, directory)
    finally:
        directory.close()


if __name__ == "__main__":
    sys.exit(main())
