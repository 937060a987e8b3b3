#!/usr/bin/env python3
"""
authcore -- administrative command line.

Works directly against the configured database (DATABASE_URL); the API does
not need to be running.

Usage:
  python main.py cleanup
  python main.py unlock alice@example.com
  python main.py unlock alice@example.com --action login
  python main.py stats --hours 1
  python main.py stats --identifier alice@example.com --action login
  python main.py sessions alice@example.com
  python main.py revoke alice@example.com

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the authcore database.
  SECRET_KEY    Must match the API's key; token hashes depend on it.
"""

import argparse
import sys
from typing import Optional

from api.main import build_services, run_cleanup
from auth.tokens import normalize_email
from core.config import get_settings


def _find_user_id(service, email: str) -> Optional[str]:
    user = service.provider.get_user_by_email(email).user
    if user is None:
        print(f"  [!] No account found for '{email}'.")
        return None
    return user.id


def _cmd_cleanup(services, args) -> int:
    counts = run_cleanup(services.auth_service, services.rate_limiter)
    print(
        f"  Removed {counts['tokens']} token(s), {counts['sessions']} session(s), "
        f"{counts['rate_limits']} rate-limit row(s)."
    )
    return 0


def _cmd_unlock(services, args) -> int:
    # Limiter keys for email-based actions are normalized addresses.
    identifier = normalize_email(args.identifier) if "@" in args.identifier else args.identifier
    services.rate_limiter.clear_rate_limit(identifier, args.action)
    scope = f"'{args.action}'" if args.action else "all actions"
    print(f"  Cleared rate-limit state for {identifier} ({scope}).")
    return 0


def _cmd_stats(services, args) -> int:
    stats = services.rate_limiter.get_rate_limit_stats(args.identifier, args.action, hours=args.hours)
    print(f"\nAttempts in the last {args.hours}h")
    print("─" * 40)
    print(f"  Total        {stats.total}")
    print(f"  Successful   {stats.successful}")
    print(f"  Failed       {stats.failed}")
    print(f"  Unique IPs   {stats.unique_ips}\n")
    return 0


def _cmd_sessions(services, args) -> int:
    user_id = _find_user_id(services.auth_service, args.email)
    if user_id is None:
        return 1
    sessions = services.auth_service.list_sessions(user_id)
    if not sessions:
        print(f"  No active sessions for {args.email}.")
        return 0
    print(f"\nActive sessions for {args.email}")
    print("─" * 40)
    for s in sessions:
        print(
            f"  #{s.id}  created {s.created_at:%Y-%m-%d %H:%M}  "
            f"last seen {s.last_activity:%Y-%m-%d %H:%M}  {s.ip_address or '-'}  {s.user_agent or ''}"
        )
    print()
    return 0


def _cmd_revoke(services, args) -> int:
    user_id = _find_user_id(services.auth_service, args.email)
    if user_id is None:
        return 1
    ended = services.auth_service.sign_out_everywhere(user_id)
    print(f"  Ended {ended} session(s) for {args.email}.")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="authcore",
        description="Maintenance commands for the authcore database.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py cleanup
  python main.py unlock alice@example.com --action login
  python main.py stats --hours 1
  python main.py revoke alice@example.com
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("cleanup", help="Delete expired tokens, sessions and rate-limit state")
    p.set_defaults(func=_cmd_cleanup)

    p = sub.add_parser("unlock", help="Clear rate-limit counters and lockouts for an identifier")
    p.add_argument("identifier", help="Email address or IP the limiter keys on")
    p.add_argument("--action", default=None, help="Only clear this action (default: all)")
    p.set_defaults(func=_cmd_unlock)

    p = sub.add_parser("stats", help="Summarize recorded authentication attempts")
    p.add_argument("--identifier", default=None)
    p.add_argument("--action", default=None)
    p.add_argument("--hours", type=int, default=24, help="Look-back period (default: 24)")
    p.set_defaults(func=_cmd_stats)

    p = sub.add_parser("sessions", help="List a user's active sessions")
    p.add_argument("email")
    p.set_defaults(func=_cmd_sessions)

    p = sub.add_parser("revoke", help="End every session of a user")
    p.add_argument("email")
    p.set_defaults(func=_cmd_revoke)

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    services = build_services(get_settings())
    try:
        return args.func(services, args)
    finally:
        services.engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
