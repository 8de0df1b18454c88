#!/usr/bin/env python3
"""
AuthGate -- administration CLI.

Usage:
  python main.py create-admin alice
  python main.py create-admin alice --password 'Passw0rd!'
  python main.py revoke alice

Registration through the API never creates admins; this CLI is the only way
to mint one. It talks to the same database as the API (DATABASE_URL) and
applies the same password policy.

Environment variables:
  SECRET_KEY     Token signing key (or DEBUG=true for a throwaway key).
  DATABASE_URL   SQLAlchemy URL of the auth database.
"""

import argparse
import getpass
import sys

from auth.errors import AuthError
from auth.service import AuthServices
from auth.store import StoreClient
from core.config import get_settings


def _create_admin(services: AuthServices, username: str, password: str | None) -> int:
    if password is None:
        password = getpass.getpass("Password: ")
        if password != getpass.getpass("Repeat password: "):
            print("  [!] Passwords do not match.")
            return 1
    account = services.authenticator.create_account(username, password, is_admin=True)
    print(f"  Created admin '{account.username}' (id {account.id}).")
    return 0


def _revoke(services: AuthServices, username: str) -> int:
    account = services.accounts.get_by_username(username.strip())
    if account is None:
        print(f"  [!] No account named '{username}'.")
        return 1
    version = services.authenticator.revoke_tokens(account.id)
    print(f"  Revoked all tokens for '{account.username}' (token_version now {version}).")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="authgate",
        description="AuthGate account administration.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-admin", help="Create an admin account")
    create.add_argument("username")
    create.add_argument(
        "--password",
        help="Password for the new account (prompted for when omitted)",
    )

    revoke = sub.add_parser("revoke", help="Invalidate every outstanding token of an account")
    revoke.add_argument("username")

    args = parser.parse_args(argv)

    settings = get_settings()
    services = AuthServices.from_settings(settings, StoreClient(settings.database_url))
    try:
        if args.command == "create-admin":
            return _create_admin(services, args.username, args.password)
        return _revoke(services, args.username)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1
    finally:
        services.close()


if __name__ == "__main__":
    sys.exit(main())
