#!/usr/bin/env python3
"""Enable, inspect or clear the break-glass admin override.

Usage:
    # Grant a 2 hour override, recording who approved it:
    python scripts/enable_admin_override.py enable --email ops@example.com --hours 2 --approved-by lead@example.com

    # Show the current override and the recent audit trail:
    python scripts/enable_admin_override.py status

    # Remove the override:
    python scripts/enable_admin_override.py clear --actor lead@example.com

Environment Variables:
    ADMIN_OVERRIDE_APPROVERS: Comma separated identities allowed to approve
    ADMIN_OVERRIDE_MAX_HOURS: Upper bound for --hours (default 24)
    AUTHSYNC_STATE_DIR: Directory of the file-backed store (default /tmp/authsync-state)
    CACHE_ENCRYPTION_KEY: Key the state file is encrypted with, if any
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

DEFAULT_STATE_DIR = "/tmp/authsync-state"


async def run_command(args: argparse.Namespace) -> dict:
    """Execute one subcommand and return a summary dict."""
    # Import here to avoid loading config before env vars are set
    from authsync.config import get_settings
    from authsync.logging import redact_email
    from authsync.service.runtime import build_admin_override_manager, build_kv_store

    settings = get_settings()
    store = build_kv_store(settings)
    manager = build_admin_override_manager(settings, store.namespaced(settings.key_namespace))
    try:
        if args.command == "enable":
            override = await manager.enable_override(
                args.email, args.hours, approved_by=args.approved_by
            )
            print(
                f"Override enabled for {redact_email(override.email)} "
                f"until {override.expires_at.isoformat()} (approved by {override.approved_by})"
            )
            return {"status": "enabled", "expires_at": override.expires_at.isoformat()}

        if args.command == "clear":
            await manager.clear_override(actor=args.actor)
            print("Override cleared")
            return {"status": "cleared"}

        override = await manager.current_override()
        if override is None:
            print("No override recorded")
        else:
            valid = await manager.has_valid_override(override.email)
            print(
                f"Override for {redact_email(override.email)} expires {override.expires_at.isoformat()} "
                f"({'valid' if valid else 'expired'})"
            )
        trail = await manager.audit_trail()
        for event in trail[-args.audit_limit:]:
            print(f"  {event.get('at')} {event.get('action')} {event.get('reason') or ''}".rstrip())
        return {"status": "shown", "override": override.to_dict() if override else None}
    finally:
        close = getattr(store, "close", None)
        if close is not None:
            await close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage the break-glass admin override",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    enable = sub.add_parser("enable", help="Grant a time-boxed override")
    enable.add_argument("--email", required=True, help="Account to elevate")
    enable.add_argument("--hours", type=float, default=1.0, help="Override duration in hours")
    enable.add_argument(
        "--approved-by",
        default=os.environ.get("ADMIN_OVERRIDE_APPROVED_BY"),
        help="Approver identity (or set ADMIN_OVERRIDE_APPROVED_BY)",
    )

    clear = sub.add_parser("clear", help="Remove the override")
    clear.add_argument("--actor", default=None, help="Who is clearing the override")

    status = sub.add_parser("status", help="Show the override and recent audit events")
    status.add_argument("--audit-limit", type=int, default=10)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "enable" and not args.approved_by:
        print("Error: --approved-by or ADMIN_OVERRIDE_APPROVED_BY environment variable required")
        return 1

    os.environ.setdefault("AUTHSYNC_STATE_DIR", DEFAULT_STATE_DIR)

    from authsync.service.errors import AuthSyncError

    try:
        asyncio.run(run_command(args))
    except AuthSyncError as e:
        print(f"Error: {e.message} ({e.error_code}) {e.detail.get('reason', '')}".rstrip())
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
