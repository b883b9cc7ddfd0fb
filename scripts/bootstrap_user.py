#!/usr/bin/env python3
"""Create or update a user with a password, home company and company grants.

Usage:
    # Using environment variables:
    BOOTSTRAP_EMAIL=ops@example.com BOOTSTRAP_PASSWORD='Secure-Passw0rd' \
        python scripts/bootstrap_user.py --company Acme

    # Or with command line args:
    python scripts/bootstrap_user.py --email ops@example.com --password 'Secure-Passw0rd' \
        --company Acme --grant Globex --grant Initech --enable-mfa

Companies are looked up by name among active companies and created when
missing. The home company is always granted and pinned.

Environment Variables:
    BOOTSTRAP_EMAIL: Email for the user
    BOOTSTRAP_PASSWORD: Password for the user
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def _company_by_name(store, name: str, *, dry_run: bool):
    for company in store.list_active_companies():
        if company.name.lower() == name.lower():
            return company, False
    if dry_run:
        return None, True
    return store.create_company(name), True


def bootstrap_user(
    email: str,
    password: str,
    *,
    company: str,
    grants: list[str],
    platform_role: str = "user",
    enable_mfa: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create or update the user.

    Returns:
        dict with user_id, email, status ('created', 'updated' or 'dry_run'),
        and recovery_codes when MFA was enabled.
    """
    # Import here to avoid loading config before env vars are set
    from tenantgate.service.runtime import get_runtime

    runtime = get_runtime()
    store = runtime.store

    home, home_created = _company_by_name(store, company, dry_run=dry_run)
    if home_created:
        print(f"{'[DRY RUN] Would create' if dry_run else 'Created'} company: {company}")

    existing = store.get_user_by_email(email)
    if dry_run:
        action = "update" if existing else "create"
        print(f"[DRY RUN] Would {action} user {email} with grants to {[company, *grants]}")
        return {"user_id": existing.id if existing else None, "email": email, "status": "dry_run"}

    if existing:
        user = existing
        status = "updated"
        if user.platform_role != platform_role:
            print(f"Note: platform role stays '{user.platform_role}' for existing users")
    else:
        user = store.create_user(email, home_company_id=home.id, platform_role=platform_role)
        status = "created"
    runtime.credentials.set_password(user.id, password)

    store.grant_company_access(user.id, home.id, pinned=True)
    for name in grants:
        granted, created = _company_by_name(store, name, dry_run=False)
        if created:
            print(f"Created company: {name}")
        store.grant_company_access(user.id, granted.id)

    result = {"user_id": user.id, "email": email, "status": status}
    if enable_mfa and not user.mfa_enabled:
        codes = runtime.mfa.enable(user.id)
        if isinstance(codes, list):
            result["recovery_codes"] = codes
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a TenantGate user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("BOOTSTRAP_EMAIL"),
        help="User email (or set BOOTSTRAP_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="User password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument("--company", required=True, help="Home company name")
    parser.add_argument(
        "--grant",
        action="append",
        default=[],
        help="Additional company the user may switch into (repeatable)",
    )
    parser.add_argument(
        "--platform-role",
        default="user",
        help="Platform role for new users; 'platform_admin' may enter any company",
    )
    parser.add_argument("--enable-mfa", action="store_true", help="Turn on MFA and print recovery codes")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or BOOTSTRAP_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or BOOTSTRAP_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/tenantgate-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store persisted under SHARED_FS_ROOT (set DATABASE_URL for Postgres)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_user(
            args.email.strip().lower(),
            args.password,
            company=args.company,
            grants=args.grant,
            platform_role=args.platform_role,
            enable_mfa=args.enable_mfa,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] in ("created", "updated"):
        print(f"\nUser {result['status']} successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    if result.get("recovery_codes"):
        print("\nRecovery codes (shown once):")
        for code in result["recovery_codes"]:
            print(f"  {code}")

    from tenantgate.service.runtime import get_runtime

    get_runtime().close()


if __name__ == "__main__":
    main()
