#!/usr/bin/env python3
"""
Shepherd identity -- administration commands.

Usage:
  python main.py create-admin --email admin@church.org
  python main.py create-admin --email admin@church.org --first-name System --last-name Administrator
  python main.py purge-tokens

The HTTP service itself runs with:  uvicorn asgi:app

Environment variables:
  DATABASE_URL     Store location (default sqlite:///shepherd_identity.db).
  SECRET_KEY, REFRESH_SECRET_KEY, ENCRYPTION_KEY
                   Required unless DEBUG=true. See core/config.py.
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.errors import DuplicateIdentity, ValidationFailure
from auth.models import Identity, IdentityStatus, Role
from auth.notifier import LogNotifier
from auth.registration import RegistrationService
from auth.store import CredentialStore
from core.config import get_settings
from core.crypto import FieldCipher


def bootstrap_admin(
    store: CredentialStore,
    cipher: FieldCipher,
    email: str,
    password: str,
    first_name: str = "System",
    last_name: str = "Administrator",
) -> Identity:
    """Create an ACTIVE, verified SUPER_ADMIN.

    Raises DuplicateIdentity if the email is taken and ValidationFailure if
    the password is too weak.
    """
    registration = RegistrationService(store, LogNotifier(), cipher)
    return registration.create_identity(
        email,
        password,
        first_name,
        last_name,
        role=Role.SUPER_ADMIN,
        status=IdentityStatus.ACTIVE,
    )


def _read_password(supplied: Optional[str]) -> str:
    if supplied:
        return supplied
    password = getpass.getpass("  Password: ")
    confirm = getpass.getpass("  Confirm password: ")
    if password != confirm:
        print("  [!] Passwords do not match.")
        sys.exit(1)
    return password


def _create_admin(args: argparse.Namespace, store: CredentialStore) -> int:
    settings = get_settings()
    cipher = FieldCipher.from_secret(settings.encryption_key)
    password = _read_password(args.password)
    try:
        admin = bootstrap_admin(store, cipher, args.email, password, args.first_name, args.last_name)
    except (DuplicateIdentity, ValidationFailure) as exc:
        print(f"  [!] {exc.message}")
        return 1
    print(f"  Created super admin {admin.email} (id {admin.id}).")
    return 0


def _purge_tokens(args: argparse.Namespace, store: CredentialStore) -> int:
    removed = store.purge_expired_refresh_tokens()
    print(f"  Removed {removed} expired refresh token(s).")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="shepherd-identity",
        description="Administration commands for the Shepherd identity store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin --email admin@church.org
  DATABASE_URL=sqlite:///prod.db python main.py purge-tokens
        """,
    )
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = commands.add_parser("create-admin", help="Create the first super admin account")
    create.add_argument("--email", required=True, help="Login email of the new super admin")
    create.add_argument("--first-name", default="System", help="First name (default: System)")
    create.add_argument("--last-name", default="Administrator", help="Last name (default: Administrator)")
    create.add_argument(
        "--password",
        default=None,
        help="Password. Omit to be prompted (recommended; avoids shell history)",
    )
    create.set_defaults(handler=_create_admin)

    purge = commands.add_parser("purge-tokens", help="Delete expired refresh tokens")
    purge.set_defaults(handler=_purge_tokens)

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    settings = get_settings()
    store = CredentialStore(settings.database_url, timeout=settings.store_timeout_seconds)
    try:
        return args.handler(args, store)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
