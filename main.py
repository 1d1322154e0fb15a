#!/usr/bin/env python3
"""
Watchlist auth -- operator commands for credentials and session revocation.

Usage:
  python main.py hash-password
  python main.py create-user alice
  python main.py disable-user alice
  python main.py revoke-all 3f2c9a...
  python main.py revoke-global
  python main.py check-config

Passwords are read with getpass (never from argv, which ends up in shell
history and process listings). Pass --password-stdin to read one line from
stdin instead, for provisioning scripts.

Configuration comes from the same environment variables and .env file as the
API (see core/config.py). revoke-all and revoke-global write to the shared
Redis cache and have no effect with CACHE_BACKEND=memory.
"""

import argparse
import getpass
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import ConfigurationError, StoreUnavailable
from auth.passwords import PasswordHasher
from auth.session import SessionManager
from auth.store import CredentialStore
from auth.tokens import TokenCodec
from cache.store import CacheUnavailableError, store_from_settings
from core.config import Settings, get_settings


def _read_password(args: argparse.Namespace, *, confirm: bool) -> str:
    if args.password_stdin:
        return sys.stdin.readline().rstrip("\r\n")
    password = getpass.getpass("Password: ")
    if confirm and getpass.getpass("Repeat password: ") != password:
        raise SystemExit("  [!] Passwords do not match.")
    return password


@contextmanager
def _open_sessions(settings: Settings) -> Iterator[tuple[SessionManager, CredentialStore]]:
    """Yield a SessionManager over the shared cache; close the database and cache on exit."""
    if settings.cache_backend == "memory":
        raise SystemExit("  [!] CACHE_BACKEND=memory is per-process; revocations from the CLI would be lost.")
    store = CredentialStore(settings.database_url)
    cache = store_from_settings(settings)
    try:
        yield SessionManager.from_settings(settings, credentials=store, cache=cache), store
    finally:
        cache.close()
        store.close()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_hash_password(args: argparse.Namespace, settings: Settings) -> int:
    hasher = PasswordHasher.from_settings(settings)
    try:
        print(hasher.hash(_read_password(args, confirm=True)))
    except ValueError as e:
        print(f"  [!] {e}")
        return 1
    return 0


def cmd_create_user(args: argparse.Namespace, settings: Settings) -> int:
    hasher = PasswordHasher.from_settings(settings)
    try:
        password_hash = hasher.hash(_read_password(args, confirm=True))
    except ValueError as e:
        print(f"  [!] {e}")
        return 1
    store = CredentialStore(settings.database_url)
    try:
        principal_id = store.create_user(args.username, password_hash, hasher.algorithm)
    except IntegrityError:
        print(f"  [!] A user named '{args.username}' already exists.")
        return 1
    finally:
        store.close()
    print(f"Created '{args.username}' (principal {principal_id}).")
    return 0


def cmd_disable_user(args: argparse.Namespace, settings: Settings) -> int:
    with _open_sessions(settings) as (sessions, store):
        record = store.find_credential(args.username)
        if record is None:
            print(f"  [!] No user named '{args.username}'.")
            return 1
        store.set_active(record.principal_id, False)
        # Disabling blocks new logins; existing tokens need a revoke-all.
        sessions.revoke_all(record.principal_id)
    print(f"Disabled '{args.username}' and revoked all of its sessions.")
    return 0


def cmd_revoke_all(args: argparse.Namespace, settings: Settings) -> int:
    with _open_sessions(settings) as (sessions, _store):
        sessions.revoke_all(args.principal)
    print(f"Revoked every session of principal {args.principal} issued before now.")
    return 0


def cmd_revoke_global(args: argparse.Namespace, settings: Settings) -> int:
    if not args.yes:
        answer = input("This signs out every user. Type 'revoke' to continue: ")
        if answer.strip() != "revoke":
            print("Aborted.")
            return 1
    with _open_sessions(settings) as (sessions, _store):
        sessions.revoke_global()
    print("Revoked every session issued before now.")
    return 0


def cmd_check_config(args: argparse.Namespace, settings: Settings) -> int:
    """Build every component once and probe the database and cache."""
    ok = True
    codec = TokenCodec.from_settings(settings)
    hasher = PasswordHasher.from_settings(settings)
    print(f"  tokens:    {codec!r}")
    print(
        f"             access={settings.access_token_expire_seconds}s "
        f"refresh={settings.refresh_token_expire_seconds}s leeway={settings.jwt_leeway_seconds}s"
    )
    print(f"  passwords: {hasher.algorithm.value}")
    print(f"  policy:    {settings.revocation_failure_policy}")

    store = CredentialStore(settings.database_url)
    try:
        store.ping()
        print(f"  database:  ok ({store.count_users()} users)")
    except SQLAlchemyError as e:
        print(f"  database:  unavailable ({type(e).__name__})")
        ok = False
    finally:
        store.close()

    cache = store_from_settings(settings)
    try:
        cache.ping()
        print(f"  cache:     ok ({settings.cache_backend})")
    except CacheUnavailableError:
        print(f"  cache:     unavailable ({settings.cache_backend})")
        ok = False
    finally:
        cache.close()
    return 0 if ok else 1


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="watchlist-auth",
        description="Operator commands for watchlist credentials and sessions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user alice
  echo 's3cret-pass' | python main.py hash-password --password-stdin
  python main.py revoke-all 3f2c9a0d1b8e4f6a9c7d5e3b1a2f4c6d
  python main.py check-config
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    p = sub.add_parser("hash-password", help="Print a password hash for the configured algorithm")
    p.add_argument("--password-stdin", action="store_true", help="Read the password from stdin")
    p.set_defaults(func=cmd_hash_password)

    p = sub.add_parser("create-user", help="Create a login with a new principal id")
    p.add_argument("username")
    p.add_argument("--password-stdin", action="store_true", help="Read the password from stdin")
    p.set_defaults(func=cmd_create_user)

    p = sub.add_parser("disable-user", help="Block login for a user and revoke every session")
    p.add_argument("username")
    p.set_defaults(func=cmd_disable_user)

    p = sub.add_parser("revoke-all", help="Revoke every session of one principal")
    p.add_argument("principal", help="Principal id (not the username)")
    p.set_defaults(func=cmd_revoke_all)

    p = sub.add_parser("revoke-global", help="Revoke every session of every principal")
    p.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    p.set_defaults(func=cmd_revoke_global)

    p = sub.add_parser("check-config", help="Validate configuration and probe the database and cache")
    p.set_defaults(func=cmd_check_config)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    try:
        settings = get_settings()
        return args.func(args, settings)
    except (ValueError, ConfigurationError) as e:
        # pydantic's ValidationError is a ValueError subclass.
        print(f"  [!] Configuration error: {e}")
        return 2
    except StoreUnavailable:
        print("  [!] Revocation cache unavailable; nothing was revoked.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
