#!/usr/bin/env python3
"""Operator helpers for the apexguard credential tools.

Usage:
    # Score a password against the configured policy (exit 1 when rejected):
    python scripts/security_tool.py password 'Tr1cky!Horse'

    # Print a random hex token (2 * length characters):
    python scripts/security_tool.py token --length 24

    # Hash a password, optionally with a known salt:
    python scripts/security_tool.py hash 'Tr1cky!Horse' --salt 0f1e2d...

Environment Variables:
    MIN_PASSWORD_LENGTH, REQUIRE_UPPERCASE, REQUIRE_LOWERCASE,
    REQUIRE_NUMBERS, REQUIRE_SPECIAL_CHARS: password policy switches
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from apexguard.config import Settings  # noqa: E402
from apexguard.service.credentials import (  # noqa: E402
    PasswordPolicy,
    generate_secure_token,
    hash_password,
    validate_password_strength,
)
from apexguard.service.errors import AppError  # noqa: E402


def _cmd_password(args: argparse.Namespace) -> int:
    policy = PasswordPolicy.from_settings(Settings.from_env())
    assessment = validate_password_strength(args.password, policy)
    print(json.dumps(assessment.to_dict(), indent=2))
    return 0 if assessment.is_valid else 1


def _cmd_token(args: argparse.Namespace) -> int:
    if args.length <= 0:
        print("Error: --length must be positive", file=sys.stderr)
        return 2
    print(generate_secure_token(args.length))
    return 0


def _cmd_hash(args: argparse.Namespace) -> int:
    hashed = hash_password(args.password, args.salt)
    print(json.dumps({"hash": hashed.hash, "salt": hashed.salt}, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Credential utilities for apexguard",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    password = commands.add_parser("password", help="Assess password strength")
    password.add_argument("password")
    password.set_defaults(handler=_cmd_password)

    token = commands.add_parser("token", help="Generate a secure random token")
    token.add_argument("--length", type=int, default=32, help="Number of random bytes")
    token.set_defaults(handler=_cmd_token)

    hashed = commands.add_parser("hash", help="Hash a password with a salt")
    hashed.add_argument("password")
    hashed.add_argument("--salt", default=None, help="Reuse an existing salt")
    hashed.set_defaults(handler=_cmd_hash)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.handler(args)
    except AppError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
