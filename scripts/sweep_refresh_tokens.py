#!/usr/bin/env python3
"""Purge expired and long-revoked refresh tokens.

Safe to run repeatedly and while the service is serving traffic: only rows
that are already expired, or revoked longer ago than ``--revoked-days``, are
removed.

Usage:
    python scripts/sweep_refresh_tokens.py
    python scripts/sweep_refresh_tokens.py --revoked-days 7

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: sweep the local memory store instead (development only)
"""
from __future__ import annotations

import argparse
import sys
from typing import Optional

from hcen_auth.config import Settings, get_settings
from hcen_auth.logging import get_logger
from hcen_auth.service.runtime import build_store

logger = get_logger("hcen_auth.sweep")

DEFAULT_REVOKED_DAYS = 30


def sweep(revoked_days: int, settings: Optional[Settings] = None) -> dict:
    """Only the durable store is opened; OIDC and Redis settings are not needed."""
    store = build_store(settings or get_settings())
    try:
        expired = store.delete_expired()
        revoked = store.delete_old_revoked_tokens(revoked_days)
    finally:
        store.close()
    logger.info(
        "refresh_token_sweep_completed",
        expired_deleted=expired,
        revoked_deleted=revoked,
        revoked_days=revoked_days,
    )
    return {"expired": expired, "revoked": revoked}


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Sweep expired and revoked refresh tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--revoked-days",
        type=int,
        default=DEFAULT_REVOKED_DAYS,
        help=f"Delete revoked tokens older than this many days (default {DEFAULT_REVOKED_DAYS})",
    )
    args = parser.parse_args()

    if args.revoked_days < 0:
        print("Error: --revoked-days must be non-negative")
        return 1

    result = sweep(args.revoked_days)
    print(f"Deleted {result['expired']} expired and {result['revoked']} revoked refresh tokens")
    return 0


if __name__ == "__main__":
    sys.exit(main())
