#!/usr/bin/env python3
"""Create an administrator account, or promote an existing one.

Usage:
    ADMIN_USERNAME=root ADMIN_PASSWORD='long passphrase' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --username root --password 'long passphrase' --email root@example.com
    python scripts/bootstrap_admin.py --username alice --revoke-sessions

Access tokens and sessions carry the scope captured at login, so a promoted
account only sees the ADMIN grants after signing in again. Pass
``--revoke-sessions`` to force that immediately.

Without DATABASE_URL the in-memory store is used, persisted under
SHARED_FS_ROOT.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from dataclasses import dataclass
from typing import Optional

MIN_ADMIN_PASSWORD_LENGTH = 12


@dataclass
class BootstrapResult:
    status: str  # created | promoted | already_admin | dry_run
    username: str
    user_id: Optional[str] = None
    sessions_revoked: int = 0


def bootstrap_admin(
    username: str,
    password: Optional[str],
    email: Optional[str] = None,
    *,
    revoke_sessions: bool = False,
    dry_run: bool = False,
) -> BootstrapResult:
    # Deferred so the environment tweaks in main() are seen by get_settings()
    from warden.service.roles import ADMIN_ROLE_ID
    from warden.service.runtime import get_runtime
    from warden.storage.models import Account, AccountStatus

    runtime = get_runtime()
    normalized = Account.normalize_username(username)
    existing = runtime.store.get_account_by_username(normalized)

    if existing is None:
        if not password:
            raise ValueError("a password is required to create a new admin account")
        if dry_run:
            return BootstrapResult("dry_run", normalized)
        account = runtime.accounts.register(normalized, password, email)
        runtime.accounts.activate(account.id)
        runtime.accounts.assign_role(account.id, "ADMIN")
        return BootstrapResult("created", normalized, account.id)

    if ADMIN_ROLE_ID in existing.role_ids():
        return BootstrapResult("already_admin", normalized, existing.id)
    if dry_run:
        return BootstrapResult("dry_run", normalized, existing.id)

    if existing.status is AccountStatus.PENDING_ACTIVATION:
        runtime.accounts.activate(existing.id)
    runtime.accounts.assign_role(existing.id, "ADMIN")
    revoked = 0
    if revoke_sessions:
        revoked = asyncio.run(runtime.auth.revoke_all_sessions(existing.id))
    return BootstrapResult("promoted", normalized, existing.id, revoked)


def _parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for Warden",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME"), help="or ADMIN_USERNAME")
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"), help="or ADMIN_PASSWORD")
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"), help="or ADMIN_EMAIL")
    parser.add_argument(
        "--revoke-sessions",
        action="store_true",
        help="when promoting, end the account's sessions so new grants apply at next login",
    )
    parser.add_argument("--dry-run", action="store_true", help="report what would change and exit")
    return parser.parse_args(argv)


def main(argv: Optional[list] = None) -> int:
    args = _parse_args(argv)
    if not args.username:
        print("error: --username or ADMIN_USERNAME is required", file=sys.stderr)
        return 2
    if args.password and len(args.password) < MIN_ADMIN_PASSWORD_LENGTH:
        print(
            f"error: admin passwords must be at least {MIN_ADMIN_PASSWORD_LENGTH} characters",
            file=sys.stderr,
        )
        return 2

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/warden-bootstrap")
        print("note: DATABASE_URL unset, using the file-backed memory store", file=sys.stderr)

    from warden.service.errors import ServiceError
    from warden.storage.errors import ConstraintViolation

    try:
        result = bootstrap_admin(
            args.username,
            args.password,
            args.email,
            revoke_sessions=args.revoke_sessions,
            dry_run=args.dry_run,
        )
    except (ServiceError, ConstraintViolation, ValueError) as exc:
        print(f"error: {getattr(exc, 'message', exc)}", file=sys.stderr)
        return 1

    messages = {
        "created": f"created admin {result.username} ({result.user_id})",
        "promoted": f"promoted {result.username} ({result.user_id}) to admin; "
        f"{result.sessions_revoked} session(s) revoked",
        "already_admin": f"{result.username} is already an admin; nothing to do",
        "dry_run": f"[dry run] would {'promote' if result.user_id else 'create'} {result.username}",
    }
    print(messages[result.status])
    return 0


if __name__ == "__main__":
    sys.exit(main())
