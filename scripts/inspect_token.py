#!/usr/bin/env python3
"""Verify a token with the configured secret and print its claims.

Usage:
    # Token as argument:
    JWT_SECRET=... python scripts/inspect_token.py eyJhbGciOi...

    # Token on stdin, ignoring expiry (e.g. to see what a stale token was):
    echo "$TOKEN" | python scripts/inspect_token.py - --ignore-expiry

Environment Variables:
    JWT_SECRET: Signing secret the token was issued with
    JWT_ALGORITHM: Pinned algorithm (default HS256)
    CLOCK_SKEW_LEEWAY_SECONDS: Leeway applied to the exp check (default 0)

Exit status is 0 for a valid token and 1 otherwise; the failure reason is the
internal one, which is never shown to API callers.
"""
from __future__ import annotations

import argparse
import json
import sys
from datetime import timedelta
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def inspect_token(token: str, *, expected_type: str | None, ignore_expiry: bool) -> dict:
    """Return a report dict with ``valid`` plus either ``claims`` or ``reason``."""
    # Import here so settings are read after argument parsing
    from sessionguard.config import get_settings
    from sessionguard.service.codec import HmacSigner, TokenCodec, TokenType
    from sessionguard.service.errors import AuthError

    settings = get_settings()
    codec = TokenCodec(
        HmacSigner(settings.jwt_secret, settings.jwt_algorithm.value),
        leeway=timedelta(seconds=settings.clock_skew_leeway_seconds),
    )
    try:
        claims = codec.verify(
            token,
            TokenType(expected_type) if expected_type else None,
            verify_exp=not ignore_expiry,
        )
    except AuthError as exc:
        return {"valid": False, "reason": exc.reason, "message": exc.message}
    return {
        "valid": True,
        "claims": claims.to_payload(),
        "issued_at": claims.issued_at.isoformat(),
        "expires_at": claims.expires_at.isoformat(),
    }


def main():
    parser = argparse.ArgumentParser(
        description="Verify and decode a session token",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("token", help="Token string, or '-' to read from stdin")
    parser.add_argument(
        "--type",
        dest="expected_type",
        choices=["access", "refresh"],
        default=None,
        help="Require this token type",
    )
    parser.add_argument(
        "--ignore-expiry",
        action="store_true",
        help="Check signature and structure but not the exp claim",
    )
    parser.add_argument(
        "--correlation-id",
        default=None,
        help="Tag log lines from this run with the given id (generated if omitted)",
    )

    args = parser.parse_args()

    from sessionguard.logging import set_correlation_id

    set_correlation_id(args.correlation_id)
    token = sys.stdin.read().strip() if args.token == "-" else args.token.strip()
    if not token:
        print("Error: empty token")
        sys.exit(1)

    report = inspect_token(
        token, expected_type=args.expected_type, ignore_expiry=args.ignore_expiry
    )
    print(json.dumps(report, indent=2))
    if not report["valid"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
