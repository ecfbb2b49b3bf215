#!/usr/bin/env python3
"""Operator commands for the login guard and token whitelist.

Usage:
    python scripts/security.py create-tables
    python scripts/security.py ratelimit-cleanup
    python scripts/security.py create-user --email ops@example.com --password '...'
    python scripts/security.py issue-cli-token --user-id <id>
    python scripts/security.py revoke-token --jti <jti>

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    JWT_SECRET: Signing secret (issue-cli-token, revoke-token --token)
    REPLAY_GUARD_BACKEND / REPLAY_GUARD_FILE / REDIS_URL: whitelist location
"""
from __future__ import annotations

import argparse
import getpass
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def create_tables() -> int:
    from bureauguard.config import get_settings
    from bureauguard.storage.postgres import SCHEMA_STATEMENTS, apply_schema, create_pool

    settings = get_settings()
    pool = create_pool(settings.database_url, min_size=1, max_size=1)
    try:
        apply_schema(pool)
    finally:
        pool.close()
    print(f"Applied {len(SCHEMA_STATEMENTS)} schema statements")
    return 0


def ratelimit_cleanup() -> int:
    from bureauguard.service.runtime import get_runtime

    removed = get_runtime().rate_limiter.cleanup()
    print(f"Removed {removed} expired rate limit rows")
    return 0


def create_user(email: str, password: Optional[str]) -> int:
    from bureauguard.service.runtime import get_runtime

    if not password:
        password = getpass.getpass("Password: ")
    user = get_runtime().login.register_user(email, password)
    print(f"Created user {user.email} (id: {user.user_id})")
    return 0


def issue_cli_token(user_id: str) -> int:
    from bureauguard.service.runtime import get_runtime
    from bureauguard.service.tokens import CLI

    grant = get_runtime().tokens.issue(user_id, CLI)
    print(f"jti: {grant.jti}")
    print(grant.token)
    return 0


def revoke_token(jti: Optional[str], token: Optional[str]) -> int:
    from bureauguard.service.runtime import get_runtime

    tokens = get_runtime().tokens
    removed = tokens.revoke(token) if token else tokens.revoke_jti(jti or "")
    print("Revoked" if removed else "Token was not whitelisted")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="BureauGuard security operations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("create-tables", help="Create rate limit, whitelist and user tables")
    sub.add_parser("ratelimit-cleanup", help="Delete expired failed attempts and blocks")

    create = sub.add_parser("create-user", help="Create a password login")
    create.add_argument("--email", required=True)
    create.add_argument(
        "--password",
        default=os.environ.get("BUREAUGUARD_PASSWORD"),
        help="Password (or set BUREAUGUARD_PASSWORD; prompted when absent)",
    )

    issue = sub.add_parser("issue-cli-token", help="Mint a non-expiring CLI token")
    issue.add_argument("--user-id", required=True)

    revoke = sub.add_parser("revoke-token", help="Remove a token from the whitelist")
    target = revoke.add_mutually_exclusive_group(required=True)
    target.add_argument("--jti")
    target.add_argument("--token")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        if args.command == "create-tables":
            return create_tables()
        if args.command == "ratelimit-cleanup":
            return ratelimit_cleanup()
        if args.command == "create-user":
            return create_user(args.email, args.password)
        if args.command == "issue-cli-token":
            return issue_cli_token(args.user_id)
        return revoke_token(args.jti, args.token)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
