#!/usr/bin/env python3
"""Add a user to the identity seed file read at startup.

Usage:
    # Using environment variables:
    SEED_EMAIL=admin@example.com SEED_PASSWORD=SecurePassword123! python scripts/bootstrap_user.py --role admin

    # Or with command line args:
    python scripts/bootstrap_user.py --email ta@example.com --password SecurePassword123! --role teacher

Environment Variables:
    SEED_EMAIL: Email for the user
    SEED_PASSWORD: Password for the user (must meet complexity requirements)
    IDENTITY_SEED_FILE: Seed file to update (default: identities.json)
"""
from __future__ import annotations

import argparse
import json
import os
import sys
import uuid
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def add_seed_entry(
    seed_file: Path,
    email: str,
    password: str,
    *,
    roles: list[str],
    display_name: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Append a hashed identity to ``seed_file``.

    Returns:
        dict with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    from coursegate.service.identity import MemoryIdentityDirectory, normalize_email

    entries: list[dict] = []
    if seed_file.exists():
        entries = json.loads(seed_file.read_text())
    normalized = normalize_email(email)
    for entry in entries:
        if normalize_email(entry.get("email", "")) == normalized:
            print(f"User {normalized} already exists (id: {entry.get('id')})")
            return {"user_id": entry.get("id"), "email": normalized, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would add {normalized} with roles {roles}")
        return {"user_id": None, "email": normalized, "status": "dry_run"}

    user_id = str(uuid.uuid4())
    entries.append(
        {
            "id": user_id,
            "email": normalized,
            "password_hash": MemoryIdentityDirectory().hash_password(password),
            "roles": roles,
            "display_name": display_name,
        }
    )
    seed_file.parent.mkdir(parents=True, exist_ok=True)
    seed_file.write_text(json.dumps(entries, indent=2))
    os.chmod(seed_file, 0o600)
    return {"user_id": user_id, "email": normalized, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Add a user to the coursegate identity seed file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("SEED_EMAIL"),
        help="User email (or set SEED_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("SEED_PASSWORD"),
        help="User password (or set SEED_PASSWORD env var)",
    )
    parser.add_argument(
        "--role",
        action="append",
        dest="roles",
        help="Role tag; repeat for several (default: student)",
    )
    parser.add_argument("--display-name", default=None)
    parser.add_argument(
        "--seed-file",
        default=os.environ.get("IDENTITY_SEED_FILE", "identities.json"),
        help="Seed file to update (or set IDENTITY_SEED_FILE env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or SEED_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or SEED_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    try:
        result = add_seed_entry(
            Path(args.seed_file),
            args.email,
            args.password,
            roles=args.roles or ["student"],
            display_name=args.display_name,
            dry_run=args.dry_run,
        )
    except (OSError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser added to seed file!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Seed file: {args.seed_file}")


if __name__ == "__main__":
    main()
