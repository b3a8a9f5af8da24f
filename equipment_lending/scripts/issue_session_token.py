#!/usr/bin/env python3
"""Issue a signed caller token for local testing without the identity provider."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from dotenv import load_dotenv

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

load_dotenv()

from services.session_service import KNOWN_ROLES, SESSION_TTL_SECONDS, create_session


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Print an X-Session-Token value signed with SESSION_SIGNING_SECRET.",
    )
    parser.add_argument("--user-id", required=True, help="Opaque user id from the identity provider")
    parser.add_argument("--role", choices=sorted(KNOWN_ROLES), default="student")
    parser.add_argument("--ttl", type=int, default=SESSION_TTL_SECONDS, help="Lifetime in seconds")
    return parser


def main() -> int:
    args = _build_parser().parse_args()
    if args.ttl <= 0:
        print("--ttl must be positive.", file=sys.stderr)
        return 2
    print(create_session(args.user_id, args.role, ttl_seconds=args.ttl))
    return 0


if __name__ == "__main__":
    sys.exit(main())
