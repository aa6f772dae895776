#!/usr/bin/env python3
"""Seed a user into the file-backed user store.

Usage:
    USER_STORE_PATH=/var/lib/cocoauth/users.json \\
        python scripts/bootstrap_user.py --cid alice --password 'S3cure-pass!' --email alice@example.com

    # Legacy SHA-256 digest instead of argon2id:
    python scripts/bootstrap_user.py --cid alice --password 'p@ss' --algo sha256

Environment Variables:
    USER_STORE_PATH: JSON file the auth service loads users from (required)
    BOOTSTRAP_CID / BOOTSTRAP_PASSWORD: defaults for --cid / --password
"""
from __future__ import annotations

import argparse
import hashlib
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_user(
    store_path: str,
    cid: str,
    password: str,
    *,
    email: str | None = None,
    phone: str | None = None,
    algo: str = "argon2id",
    dry_run: bool = False,
) -> dict:
    """Create ``cid`` in the store at ``store_path`` unless it already exists.

    Returns:
        dict with user_id, cid and status ('created', 'exists' or 'dry_run')
    """
    from cocoauth.service.credentials import ALGO_SHA256, CredentialVerifier
    from cocoauth.storage.memory import MemoryUserStore

    store = MemoryUserStore(state_path=store_path)
    existing = store.find_by_login_id(cid)
    if existing:
        print(f"User {cid} already exists (id: {existing.id})")
        return {"user_id": existing.id, "cid": cid, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create user: {cid}")
        return {"user_id": None, "cid": cid, "status": "dry_run"}

    if algo == ALGO_SHA256:
        digest = hashlib.sha256(password.encode()).hexdigest()
    else:
        digest, algo = CredentialVerifier(store).hash_secret(password)
    user = store.create_user(cid, digest, algo, email=email, phone=phone)
    print(f"Created user: {cid} (id: {user.id}, algo: {algo})")
    return {"user_id": user.id, "cid": cid, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Seed a user for the CocoTalk auth service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--cid", default=os.environ.get("BOOTSTRAP_CID"), help="Login id")
    parser.add_argument(
        "--password", default=os.environ.get("BOOTSTRAP_PASSWORD"), help="Login password"
    )
    parser.add_argument("--email", default=None)
    parser.add_argument("--phone", default=None)
    parser.add_argument("--algo", choices=("argon2id", "sha256"), default="argon2id")
    parser.add_argument(
        "--store",
        default=os.environ.get("USER_STORE_PATH"),
        help="User store JSON file (or set USER_STORE_PATH)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.store:
        print("Error: --store or USER_STORE_PATH environment variable required")
        sys.exit(1)
    if not args.cid or not args.password:
        print("Error: --cid and --password (or BOOTSTRAP_CID/BOOTSTRAP_PASSWORD) required")
        sys.exit(1)

    try:
        bootstrap_user(
            args.store,
            args.cid,
            args.password,
            email=args.email,
            phone=args.phone,
            algo=args.algo,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
