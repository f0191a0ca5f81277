#!/usr/bin/env python3
"""Create the first super_admin for the operations console.

Usage:
    # Using environment variables:
    STATE_PATH=./state.json ADMIN_EMAIL=ops@example.com ADMIN_PASSWORD=changeme123 \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --state-path ./state.json \
        --email ops@example.com --password changeme123

Environment Variables:
    ADMIN_EMAIL: Email for the super_admin
    ADMIN_PASSWORD: Password (at least MIN_PASSWORD_LENGTH characters)
    STATE_PATH: JSON state file shared with the API server
    MFA_SECRET_KEY: Fernet key; must match the server's so factors stay readable

The new account has no MFA factor yet, so its first console login goes
straight to forced enrollment.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    email: str, password: str, *, phone_number: str | None = None, dry_run: bool = False
) -> dict:
    """Create or promote a super_admin in the persisted store.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here so --state-path lands in the environment before settings load
    from bookingdesk.config import get_settings
    from bookingdesk.service.auth import AuthService
    from bookingdesk.storage.models import ROLE_SUPER_ADMIN
    from bookingdesk.storage.memory import MemoryStore

    settings = get_settings()
    if len(password) < settings.min_password_length:
        raise ValueError(
            f"password must be at least {settings.min_password_length} characters"
        )
    store = MemoryStore(
        mfa_encryption_key=settings.mfa_secret_key, state_path=settings.state_path
    )
    auth = AuthService(store, None, settings)

    email = email.strip().lower()
    existing = store.get_user_by_email(email)
    if existing:
        roles = store.get_roles(existing.id)
        if ROLE_SUPER_ADMIN in roles:
            print(f"User {email} is already a super_admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to super_admin")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        store.remove_roles(existing.id)
        store.add_role(existing.id, ROLE_SUPER_ADMIN)
        store.upsert_admin_profile(existing.id, phone_number=phone_number)
        print(f"Promoted existing user {email} to super_admin (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create super_admin: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = auth.create_identity(email, password)
    store.add_role(user.id, ROLE_SUPER_ADMIN)
    store.upsert_admin_profile(user.id, phone_number=phone_number)
    print(f"Created super_admin: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a super_admin for BookingDesk",
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
    parser.add_argument("--phone", default=None, help="Optional contact phone number")
    parser.add_argument(
        "--state-path",
        default=os.environ.get("STATE_PATH"),
        help="State file shared with the server (or set STATE_PATH env var)",
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

    if args.state_path:
        os.environ["STATE_PATH"] = args.state_path
    else:
        print("Note: no STATE_PATH set; the account will not outlive this process")

    try:
        result = bootstrap_admin(
            args.email, args.password, phone_number=args.phone, dry_run=args.dry_run
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nsuper_admin created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print("  MFA enrollment will be required on first login.")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to super_admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already a super_admin.")


if __name__ == "__main__":
    main()
