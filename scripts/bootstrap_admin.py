#!/usr/bin/env python3
"""Create the first admin account, or promote an existing one.

Registration through the API always creates ``user`` accounts, so the first
admin has to come from here.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Pass123' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure#Pass123' \
        --username admin --first-name Site --last-name Admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password (8+ chars with lower, upper, digit and one of @$!%*?&)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys

_SPECIALS = "@$!%*?&"


def validate_password(password: str) -> bool:
    return (
        len(password) >= 8
        and any(c.islower() for c in password)
        and any(c.isupper() for c in password)
        and any(c.isdigit() for c in password)
        and any(c in _SPECIALS for c in password)
    )


async def bootstrap_admin(
    email: str,
    password: str,
    *,
    username: str,
    first_name: str,
    last_name: str,
    dry_run: bool = False,
) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, email and status ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # imported late so the env defaults set in main() are seen by the settings
    from asphaltworks.service.auth import normalize_email
    from asphaltworks.service.runtime import get_runtime

    runtime = get_runtime()
    email = normalize_email(email)
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.role == "admin":
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_user(existing.id, role="admin")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    password_hash, algo = await runtime.credentials.hash_async(password)
    user = runtime.store.create_user(
        username,
        email,
        role="admin",
        is_email_verified=True,
        first_name=first_name,
        last_name=last_name,
    )
    runtime.store.save_password(user.id, password_hash, algo)
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Asphalt Works",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME", "admin"))
    parser.add_argument("--first-name", default="Site")
    parser.add_argument("--last-name", default="Admin")
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
    if not validate_password(args.password):
        print("Error: password needs 8+ characters with a lowercase letter, an uppercase")
        print(f"       letter, a digit and one of {_SPECIALS}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email,
                args.password,
                username=args.username,
                first_name=args.first_name,
                last_name=args.last_name,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    status = result["status"]
    if status == "created":
        print(f"Admin user created: {result['email']} (id: {result['user_id']})")
    elif status == "promoted":
        print(f"Existing user promoted to admin: {result['email']}")
    elif status == "already_admin":
        print(f"No changes needed, {result['email']} is already an admin.")
    else:
        print(f"[DRY RUN] {result['email']}: nothing written")


if __name__ == "__main__":
    main()
