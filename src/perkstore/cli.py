"""
Perkstore command line.

    perkstore serve
    perkstore add-employee --first-name Ada --last-name Lovelace --email ada@corp.com --employee-id E1 --birth-year 1990
    perkstore unlock E1
    perkstore whitelist-domain corp.com
    perkstore purge-sessions
    perkstore login
    perkstore logout
"""

import argparse
import asyncio
import getpass
import sys
from datetime import timedelta
from typing import List, Optional

from aiohttp import web
from loguru import logger

from .auth import AccountLockedError, AuthError, AuthManager, EmployeeDatabase, InvalidCredentialError
from .api import create_app
from .client import AuthApiClient, ClientSessionTracker, SessionCache, SessionState, TransportError
from .config import PerkstoreConfig, load_config
from .logging_setup import configure_logging


def cmd_serve(config: PerkstoreConfig, args: argparse.Namespace) -> int:
    host = args.host or config.server.host
    port = args.port or config.server.port
    app = create_app(config)
    logger.info(f"Perkstore auth server on http://{host}:{port}")
    web.run_app(app, host=host, port=port, print=None)
    return 0


def cmd_add_employee(config: PerkstoreConfig, args: argparse.Namespace) -> int:
    db = EmployeeDatabase(config.database.path)
    employee = db.create_employee(
        first_name=args.first_name,
        last_name=args.last_name,
        email=args.email,
        employee_id=args.employee_id,
        birth_year=args.birth_year,
        points=args.points
    )
    print(f"Added {employee.first_name} {employee.last_name} ({employee.employee_id or employee.id})")
    return 0


def cmd_unlock(config: PerkstoreConfig, args: argparse.Namespace) -> int:
    try:
        employee = AuthManager(config).unlock(args.employee_id)
    except AuthError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    print(f"Unlocked {employee.first_name} {employee.last_name}")
    return 0


def cmd_whitelist_domain(config: PerkstoreConfig, args: argparse.Namespace) -> int:
    entry = EmployeeDatabase(config.database.path).add_whitelisted_domain(args.domain, not args.disable)
    state = "active" if entry.is_active else "inactive"
    print(f"Domain {entry.domain} is {state}")
    return 0


def cmd_purge_sessions(config: PerkstoreConfig, args: argparse.Namespace) -> int:
    removed = AuthManager(config).purge_expired_sessions()
    print(f"Removed {removed} expired session(s)")
    return 0


async def interactive_login(config: PerkstoreConfig) -> int:
    """Identify, confirm and verify at the terminal, then keep the session cached."""
    settings = config.client

    async with AuthApiClient(settings.base_url, timeout=settings.request_timeout) as api:
        tracker = ClientSessionTracker(
            api,
            SessionCache(settings.cache_path),
            warning_window=timedelta(minutes=settings.warning_minutes)
        )
        try:
            if await tracker.initialize() == SessionState.AUTHENTICATED:
                employee = tracker.employee
                print(f"Already logged in as {employee.get('firstName')} {employee.get('lastName')}")
                return 0

            employee_id = input("Employee ID: ").strip()
            try:
                identity = await tracker.identify(employee_id)
            except AuthError as e:
                print(e.message)
                return 1

            print(f"Hello {identity['firstName']} {identity['lastName']} ({identity['maskedEmployeeId']})")

            while True:
                answer = getpass.getpass("Year of birth: ").strip()
                if not answer.isdigit():
                    print("Please enter a four digit year")
                    continue
                try:
                    employee = await tracker.login(employee_id, int(answer))
                except InvalidCredentialError as e:
                    print(f"Incorrect. {e.remaining_attempts} attempt(s) remaining")
                    continue
                except AccountLockedError as e:
                    print(e.message)
                    return 1
                except AuthError as e:
                    print(e.message)
                    return 1
                break

            print(f"Welcome {employee.get('firstName')}, you have {employee.get('points', 0)} points")
            print(f"Session valid until {tracker.expires_at.isoformat()}")
            return 0
        finally:
            tracker.close()


def cmd_login(config: PerkstoreConfig, args: argparse.Namespace) -> int:
    if args.base_url:
        config.client.base_url = args.base_url
    return asyncio.run(interactive_login(config))


async def end_session(config: PerkstoreConfig) -> int:
    """Revoke the cached session on the server and clear it locally."""
    settings = config.client
    cache = SessionCache(settings.cache_path)
    cached = cache.load()
    if cached is None:
        print("Not logged in")
        return 0

    async with AuthApiClient(settings.base_url, timeout=settings.request_timeout) as api:
        tracker = ClientSessionTracker(api, cache)
        try:
            if await tracker.initialize() != SessionState.AUTHENTICATED:
                # unconfirmed token, still try to revoke it
                try:
                    await api.logout(cached.token)
                except (AuthError, TransportError) as e:
                    logger.warning(f"Server logout failed, clearing local session anyway: {e}")
            await tracker.logout()
        finally:
            tracker.close()

    print("Logged out")
    return 0


def cmd_logout(config: PerkstoreConfig, args: argparse.Namespace) -> int:
    if args.base_url:
        config.client.base_url = args.base_url
    return asyncio.run(end_session(config))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="perkstore", description="Perkstore employee authentication")
    parser.add_argument("--config", help="YAML config file (default: $PERKSTORE_CONFIG)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", help="Bind address")
    serve.add_argument("--port", type=int, help="Bind port")
    serve.set_defaults(func=cmd_serve)

    add = subparsers.add_parser("add-employee", help="Add an employee to the directory")
    add.add_argument("--first-name", required=True)
    add.add_argument("--last-name", required=True)
    add.add_argument("--email", required=True)
    add.add_argument("--employee-id")
    add.add_argument("--birth-year", type=int)
    add.add_argument("--points", type=int, default=0)
    add.set_defaults(func=cmd_add_employee)

    unlock = subparsers.add_parser("unlock", help="Clear an employee's lockout")
    unlock.add_argument("employee_id")
    unlock.set_defaults(func=cmd_unlock)

    whitelist = subparsers.add_parser("whitelist-domain", help="Allow OTP enrolment for an email domain")
    whitelist.add_argument("domain")
    whitelist.add_argument("--disable", action="store_true", help="Mark the domain inactive")
    whitelist.set_defaults(func=cmd_whitelist_domain)

    purge = subparsers.add_parser("purge-sessions", help="Delete expired sessions")
    purge.set_defaults(func=cmd_purge_sessions)

    login = subparsers.add_parser("login", help="Log in interactively")
    login.add_argument("--base-url", help="Server URL (default: client.base_url)")
    login.set_defaults(func=cmd_login)

    logout = subparsers.add_parser("logout", help="End the cached session")
    logout.add_argument("--base-url", help="Server URL (default: client.base_url)")
    logout.set_defaults(func=cmd_logout)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    configure_logging(config.logging)
    return args.func(config, args)


if __name__ == "__main__":
    sys.exit(main())
