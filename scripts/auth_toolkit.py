#!/usr/bin/env python3
"""Command-line helpers for exploring the authentication engine.

Usage:
    # Hash a password with the configured argon2id parameters:
    python scripts/auth_toolkit.py hash-password --password 'correct horse'

    # Print the current TOTP code for a base32 secret:
    python scripts/auth_toolkit.py totp --secret JBSWY3DPEHPK3PXP

    # Show a JWT's header and claims (no signature check):
    python scripts/auth_toolkit.py decode-token eyJhbGciOi...

    # Log a demo user in against a throwaway in-memory runtime:
    python scripts/auth_toolkit.py demo-login --username admin --password admin123

Environment Variables:
    JWT_SECRET: signing key (a random one is generated when unset)
    PASSWORD_HASH_TIME_COST / PASSWORD_HASH_MEMORY_KIB: argon2id parameters
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import secrets
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def cmd_hash_password(args) -> int:
    from authlab.config import get_settings
    from authlab.service.passwords import CredentialVerifier

    settings = get_settings()
    verifier = CredentialVerifier(
        time_cost=settings.password_hash_time_cost,
        memory_cost_kib=settings.password_hash_memory_kib,
    )
    print(verifier.hash(args.password))
    return 0


def cmd_totp(args) -> int:
    from authlab.service.runtime import get_runtime

    mfa = get_runtime().mfa
    _print_json(
        {
            "code": mfa.generate_code(args.secret),
            "seconds_remaining": mfa.seconds_until_next_code(),
        }
    )
    return 0


def cmd_decode_token(args) -> int:
    from authlab.service.token_inspection import inspect_unverified

    decoded = inspect_unverified(args.token)
    if decoded is None:
        print("Error: not a decodable JWT")
        return 1
    _print_json(decoded)
    return 0


async def _demo_login(username: str, password: str) -> dict:
    from authlab.service.runtime import get_runtime

    runtime = get_runtime()
    result = await runtime.auth.issue_tokens(username, password)
    claims = runtime.tokens.require(result.tokens.access_token)
    return {"user": result.user.public(), "tokens": result.tokens.to_dict(), "claims": claims}


def cmd_demo_login(args) -> int:
    from authlab.service.errors import ServiceError

    try:
        _print_json(asyncio.run(_demo_login(args.username, args.password)))
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        return 1
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Authentication engine toolkit",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    hash_cmd = sub.add_parser("hash-password", help="Hash a password with argon2id")
    hash_cmd.add_argument(
        "--password",
        default=os.environ.get("AUTHLAB_PASSWORD"),
        help="Password to hash (or set AUTHLAB_PASSWORD env var)",
    )
    hash_cmd.set_defaults(func=cmd_hash_password)

    totp_cmd = sub.add_parser("totp", help="Current TOTP code for a secret")
    totp_cmd.add_argument("--secret", required=True, help="Base32 shared secret")
    totp_cmd.set_defaults(func=cmd_totp)

    decode_cmd = sub.add_parser("decode-token", help="Decode a JWT without verifying it")
    decode_cmd.add_argument("token")
    decode_cmd.set_defaults(func=cmd_decode_token)

    login_cmd = sub.add_parser("demo-login", help="Issue a JWT pair for a demo user")
    login_cmd.add_argument("--username", default="demo")
    login_cmd.add_argument("--password", default="demo123")
    login_cmd.set_defaults(func=cmd_demo_login)

    args = parser.parse_args()

    if args.command == "hash-password" and not args.password:
        print("Error: --password or AUTHLAB_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    os.environ.setdefault("APP_ENV", "development")

    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
