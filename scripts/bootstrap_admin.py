#!/usr/bin/env python3
"""Create an admin identity, or reset the password of an existing one.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Pass1' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure#Pass1' --name "Site Admin"

    # Reset the password of an existing admin:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'N3w#Password' --reset

Environment Variables:
    ADMIN_EMAIL: Email for the admin identity
    ADMIN_PASSWORD: Password (8+ chars with upper, lower, digit and special character)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys

from showcase.storage.models import ADMIN_ROLE


def bootstrap_admin(
    email: str,
    password: str,
    *,
    name: str | None = None,
    reset: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create or update an admin identity.

    Returns:
        dict with user_id, email, and status ('created', 'reset', 'promoted',
        'exists' or 'dry_run')
    """
    # Import here so config is read after the env defaults below are applied
    from showcase.service.runtime import get_runtime

    runtime = get_runtime()
    email = email.strip().lower()
    existing = runtime.store.get_identity_by_email(email)

    if existing:
        if dry_run:
            print(f"[DRY RUN] Would update existing identity {email}")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        status = "exists"
        if existing.role != ADMIN_ROLE:
            runtime.store.update_role(existing.id, ADMIN_ROLE)
            status = "promoted"
        if reset:
            runtime.store.update_password(existing.id, runtime.auth.hash_password(password))
            status = "reset"
        print(f"Identity {email} ({status}, id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": status}

    if dry_run:
        print(f"[DRY RUN] Would create admin identity: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    identity = runtime.auth.create_identity(email, password, name=name, role=ADMIN_ROLE)
    print(f"Created admin identity: {email} (id: {identity.id})")
    return {"user_id": identity.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin identity for the showcase admin panel",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--name", default=os.environ.get("ADMIN_NAME"), help="Display name")
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Reset the password when the identity already exists",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    from showcase.service.auth import password_problems

    problems = password_problems(args.password)
    if problems:
        print("Error: password does not meet requirements:")
        for problem in problems:
            print(f"       - {problem}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using the file-backed memory store (set DATABASE_URL for Postgres)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(
            args.email,
            args.password,
            name=args.name,
            reset=args.reset,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin identity created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "reset":
        print("\nPassword reset.")
    elif result["status"] == "promoted":
        print("\nExisting identity promoted to admin.")
    elif result["status"] == "exists":
        print("\nNo changes needed; pass --reset to change the password.")


if __name__ == "__main__":
    main()
