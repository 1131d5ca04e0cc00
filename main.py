#!/usr/bin/env python3
"""
ComplianceAuth -- administration and maintenance CLI.

Operates directly on the configured stores (AUTH_DB_URL / AUDIT_DB_URL), so
it works before any admin account exists and while the API is down.

Usage:
  python main.py create-admin alice
  python main.py set-password alice
  python main.py unlock alice
  python main.py verify-audit
  python main.py purge-blacklist
  python main.py generate-key

Environment variables:
  SECRET_KEY        Required outside DEBUG. Signs tokens and keys backup-code digests.
  ENCRYPTION_KEYS   Comma-separated Fernet keys, primary first (or ENCRYPTION_KEYS_FILE).
"""

from __future__ import annotations

import argparse
import getpass
import sys

from cryptography.fernet import Fernet
from sqlalchemy.exc import IntegrityError

from audit.store import AuditTrail
from auth.orchestrator import AuthService
from auth.protection import PasswordPolicyError
from auth.store import IdentityStore
from core.config import Settings, get_settings
from core.crypto import SecretBox, SettingsKeyProvider
from core.errors import StoreUnavailable


def _open_service(settings: Settings) -> AuthService:
    """Build the same service graph the API lifespan builds."""
    kwargs = {"timeout": settings.db_timeout_seconds}
    store = IdentityStore(db_url=settings.auth_db_url, **kwargs) if settings.auth_db_url else IdentityStore(**kwargs)
    trail = (
        AuditTrail(db_url=settings.audit_db_url, max_attempts=settings.audit_append_attempts, **kwargs)
        if settings.audit_db_url
        else AuditTrail(max_attempts=settings.audit_append_attempts, **kwargs)
    )
    return AuthService(store, trail, settings, box=SecretBox(SettingsKeyProvider(settings)))


def _read_password(args: argparse.Namespace) -> str:
    """Password from stdin (--password-stdin) or an interactive double prompt."""
    if args.password_stdin:
        return sys.stdin.readline().rstrip("\n")
    first = getpass.getpass("Password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        raise SystemExit("  [!] Passwords do not match.")
    return first


def _cmd_create_admin(service: AuthService, args: argparse.Namespace) -> int:
    password = _read_password(args)
    try:
        identity = service.create_identity(
            args.username,
            password,
            role="admin",
            must_change_password=args.must_change,
        )
    except PasswordPolicyError as exc:
        for problem in exc.problems:
            print(f"  [!] {problem}")
        return 1
    except IntegrityError:
        print(f"  [!] Identity '{args.username}' already exists.")
        return 1
    print(f"Created admin '{identity.username}' (id {identity.id}).")
    return 0


def _cmd_set_password(service: AuthService, args: argparse.Namespace) -> int:
    identity = service.store.get_by_username(args.username)
    if identity is None:
        print(f"  [!] No identity named '{args.username}'.")
        return 1
    password = _read_password(args)
    try:
        service.protection.set_password(identity.id, password, actor_id=None, must_change=args.must_change)
    except PasswordPolicyError as exc:
        for problem in exc.problems:
            print(f"  [!] {problem}")
        return 1
    revoked = service.issuer.revoke_all(identity.id, "password_set_by_operator")
    print(f"Password set for '{identity.username}'; {revoked} session(s) revoked.")
    return 0


def _cmd_unlock(service: AuthService, args: argparse.Namespace) -> int:
    identity = service.store.get_by_username(args.username)
    if identity is None:
        print(f"  [!] No identity named '{args.username}'.")
        return 1
    if not service.unlock(identity.id, actor_id=None):
        print(f"Identity '{identity.username}' was not locked.")
        return 0
    print(f"Unlocked '{identity.username}'.")
    return 0


def _cmd_verify_audit(service: AuthService, args: argparse.Namespace) -> int:
    result = service.trail.verify()
    if result.valid:
        print(f"Audit chain intact ({result.checked} entries).")
        return 0
    print(f"  [!] Audit chain BROKEN at position {result.first_invalid} (seq {result.first_invalid_seq}): {result.reason}")
    return 2


def _cmd_purge_blacklist(service: AuthService, args: argparse.Namespace) -> int:
    purged = service.issuer.purge_expired_blacklist()
    print(f"Purged {purged} expired blacklist entr{'y' if purged == 1 else 'ies'}.")
    return 0


_COMMANDS = {
    "create-admin": _cmd_create_admin,
    "set-password": _cmd_set_password,
    "unlock": _cmd_unlock,
    "verify-audit": _cmd_verify_audit,
    "purge-blacklist": _cmd_purge_blacklist,
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="complianceauth",
        description="Administration and maintenance for the ComplianceAuth stores.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin alice
  echo 'S3cure-Passphrase!' | python main.py create-admin alice --password-stdin
  python main.py unlock bob
  python main.py verify-audit
  python main.py generate-key >> .env
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    for name, help_text in (
        ("create-admin", "Create an admin identity"),
        ("set-password", "Assign a new password to an identity and revoke its sessions"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("username", help="Identity username")
        cmd.add_argument(
            "--password-stdin",
            action="store_true",
            help="Read the password from the first line of stdin instead of prompting",
        )
        cmd.add_argument(
            "--must-change",
            action="store_true",
            help="Require a password change at next login",
        )

    unlock = sub.add_parser("unlock", help="Clear a lockout")
    unlock.add_argument("username", help="Identity username")

    sub.add_parser("verify-audit", help="Replay the audit hash chain and report the first break")
    sub.add_parser("purge-blacklist", help="Delete blacklist entries whose tokens have expired")
    sub.add_parser("generate-key", help="Print a new ENCRYPTION_KEYS value (Fernet key)")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    if args.command == "generate-key":
        # Needs no configuration, so it works before .env exists.
        print(f"ENCRYPTION_KEYS={Fernet.generate_key().decode()}")
        return 0

    service = _open_service(get_settings())
    try:
        return _COMMANDS[args.command](service, args)
    except StoreUnavailable as exc:
        print(f"  [!] Store unavailable during {exc.operation}. Retry shortly.")
        return 3
    finally:
        service.store.close()
        service.trail.close()


if __name__ == "__main__":
    sys.exit(main())
