#!/usr/bin/env python3
"""Register a clinic and print its API key, or change a clinic's status.

The API key is shown exactly once; only its SHA-256 hash is stored.

Usage:
    python scripts/register_clinic.py --clinic-id clinic-001 --name "Clinica Central"
    python scripts/register_clinic.py --clinic-id clinic-001 --status INACTIVE
"""
from __future__ import annotations

import argparse
import secrets
import sys

from hcen_auth.config import get_settings
from hcen_auth.service.registry import ClinicRegistry
from hcen_auth.service.runtime import build_store
from hcen_auth.storage.common import ConstraintViolation


def register(clinic_id: str, name: str) -> str:
    store = build_store(get_settings())
    api_key = secrets.token_urlsafe(32)
    try:
        ClinicRegistry(store).register(clinic_id, name, api_key)
    finally:
        store.close()
    return api_key


def set_status(clinic_id: str, status: str) -> bool:
    store = build_store(get_settings())
    try:
        return ClinicRegistry(store).set_status(clinic_id, status) is not None
    finally:
        store.close()


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Manage clinic API credentials",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--clinic-id", required=True, help="Clinic identifier (X-Clinic-Id)")
    parser.add_argument("--name", help="Display name, required when registering")
    parser.add_argument(
        "--status",
        choices=["ACTIVE", "INACTIVE"],
        help="Change the status of an existing clinic instead of registering",
    )
    args = parser.parse_args()

    if args.status:
        if not set_status(args.clinic_id, args.status):
            print(f"Error: clinic {args.clinic_id} not found")
            return 1
        print(f"Clinic {args.clinic_id} is now {args.status}")
        return 0

    if not args.name:
        print("Error: --name is required when registering a clinic")
        return 1
    try:
        api_key = register(args.clinic_id, args.name)
    except ConstraintViolation:
        print(f"Error: clinic {args.clinic_id} already exists")
        return 1
    print(f"Registered clinic {args.clinic_id}")
    print(f"  X-API-Key: {api_key}")
    print("Store this key now; it cannot be shown again.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
