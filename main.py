#!/usr/bin/env python3
"""
AccessGate -- passwordless email sessions, invites and access administration.

Usage:
  accessgate serve --host 0.0.0.0 --port 8000
  accessgate init-db
  accessgate add-users alice@example.com bob@example.com --role admin
  accessgate add-users --file roster.txt
  accessgate invite carol@example.com --role whitelisted --hours 48
  accessgate purge

Environment variables:
  AUTH_SECRET    Required. At least 32 characters; signs session tokens and
                 keys every stored hash.
  DATABASE_URL   SQLAlchemy async URL (default sqlite+aiosqlite:///./accessgate.db).
  See core/config.py for the full list.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from auth.audit import SecurityAuditLog
from auth.directory import UserDirectoryService
from auth.emails import parse_email_list
from auth.invites import InviteService, activation_url
from auth.ratelimit import RateLimiter, policies_from_settings
from auth.store import open_store
from auth.tokens import SessionTokenCodec
from core.config import get_settings


def _load_file(path: str) -> list[str]:
    """Read emails from a file -- one or more per line, # comments and blank lines ignored.

    Resolves symlinks and verifies the path is a regular file before reading.
    """
    file_path = Path(path).resolve()
    if not file_path.is_file():
        print(f"  [!] '{path}' is not a readable file.")
        return []
    try:
        lines = file_path.read_text().splitlines()
    except OSError as e:
        print(f"  [!] Could not read file '{path}': {e}")
        return []
    return [line.strip() for line in lines if line.strip() and not line.strip().startswith("#")]


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _init_db() -> int:
    settings = get_settings()
    async with open_store(settings.database_url, settings) as store:
        ok = await store.ping()
    print(f"  Schema ready on {settings.database_url.split('://', 1)[0]} ({'ok' if ok else 'unreachable'}).")
    return 0 if ok else 1


async def _add_users(emails: list[str], role: str) -> int:
    settings = get_settings()
    async with open_store(settings.database_url, settings) as store:
        result = await UserDirectoryService(store).upsert(emails, role)
    for email in result.invalid:
        print(f"  [!] Skipped invalid email: {email}")
    if not result.ok:
        print(f"  [!] Nothing written ({result.reason}).")
        return 1
    print(f"  {len(result.upserted)} user(s) added or updated as {role}.")
    return 0


async def _invite(emails: list[str], role: str, hours: int | None) -> int:
    settings = get_settings()
    secret = settings.auth_secret
    async with open_store(settings.database_url, settings) as store:
        audit = SecurityAuditLog(secret, store)
        service = InviteService(
            store,
            RateLimiter(store, secret, policies_from_settings(settings)),
            SessionTokenCodec(secret, settings.session_ttl_seconds),
            audit,
            default_hours=settings.invite_default_hours,
            max_hours=settings.invite_max_hours,
        )
        failures = 0
        for email in emails:
            result = await service.create(email, role, hours)
            if not result.ok:
                failures += 1
                print(f"  [!] {email}: {result.reason}")
                continue
            base_url = settings.public_base_url or "http://localhost:8000"
            print(f"  {result.email} ({result.role.value}, expires {result.expires_at:%Y-%m-%d %H:%M} UTC)")
            print(f"    {activation_url(base_url, result.token)}")
    return 1 if failures else 0


async def _purge() -> int:
    from api.main import purge_expired

    settings = get_settings()
    async with open_store(settings.database_url, settings) as store:
        counts = await purge_expired(store)
    print(
        f"  Purged {counts['buckets']} bucket(s), {counts['challenges']} challenge(s); "
        f"expired {counts['invites']} invite(s)."
    )
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="accessgate",
        description="Passwordless email sessions, invites and access administration.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  accessgate serve --reload
  accessgate add-users admin@example.com --role admin
  accessgate add-users --file roster.txt
  accessgate invite carol@example.com --hours 48
  AUTH_SECRET=... DATABASE_URL=postgresql+asyncpg://... accessgate init-db
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development only)")

    sub.add_parser("init-db", help="Create any missing tables and indexes")

    add_users = sub.add_parser("add-users", help="Add or reactivate roster users")
    add_users.add_argument("emails", nargs="*", metavar="EMAIL")
    add_users.add_argument("--file", metavar="PATH", help="File with emails (# comments supported)")
    add_users.add_argument("--role", choices=["whitelisted", "admin"], default="whitelisted")

    invite = sub.add_parser("invite", help="Create invites and print their activation URLs")
    invite.add_argument("emails", nargs="+", metavar="EMAIL")
    invite.add_argument("--role", choices=["whitelisted", "admin"], default="whitelisted")
    invite.add_argument("--hours", type=int, default=None, help="Hours until expiry (clamped to 1..INVITE_MAX_HOURS)")

    sub.add_parser("purge", help="Delete expired rate-limit buckets and challenges; expire stale invites")

    args = parser.parse_args()

    if args.command == "serve":
        import uvicorn

        uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)
        return

    if args.command == "init-db":
        sys.exit(asyncio.run(_init_db()))

    if args.command == "add-users":
        raw = list(args.emails)
        if args.file:
            raw.extend(_load_file(args.file))
        emails = parse_email_list(raw)
        if not emails:
            add_users.print_help()
            sys.exit(2)
        sys.exit(asyncio.run(_add_users(emails, args.role)))

    if args.command == "invite":
        sys.exit(asyncio.run(_invite(parse_email_list(args.emails), args.role, args.hours)))

    if args.command == "purge":
        sys.exit(asyncio.run(_purge()))

    parser.print_help()


if __name__ == "__main__":
    main()
