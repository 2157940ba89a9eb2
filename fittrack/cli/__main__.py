"""
fittrack CLI - run and inspect sync from the command line.

Usage:
    fittrack sync [--account ID] [--json]
    fittrack status [--account ID] [--json]
    fittrack recalc-prs [--json]
"""

import argparse
import asyncio
import json
import logging
import sys

from fittrack.config import SyncSettings, get_settings
from fittrack.logging_config import setup_fittrack_logging
from fittrack.storage import HttpRemoteStore, SQLiteLocalStore
from fittrack.sync import ManualConnectivity, PersonalRecordEngine, StaticIdentity, SyncEngine
from fittrack.types import format_datetime, parse_datetime
from fittrack.utils import account_meta_key

logger = logging.getLogger(__name__)


def _open_store(settings: SyncSettings) -> SQLiteLocalStore:
    return SQLiteLocalStore(settings.resolved_db_path())


async def _run_sync(settings: SyncSettings, account_id: str) -> dict:
    local = _open_store(settings)
    remote = HttpRemoteStore(
        settings.backend_url, settings.auth_token, timeout=settings.request_timeout
    )
    try:
        engine = SyncEngine(
            local,
            remote,
            StaticIdentity(account_id),
            ManualConnectivity(True),
            PersonalRecordEngine(),
            settings=settings,
        )
        result = await engine.trigger_full_sync()
        await engine.stop()
        return result.as_dict()
    finally:
        await remote.aclose()


def cmd_sync(args, settings: SyncSettings):
    """Run one full sync against the configured backend."""
    account_id = args.account or settings.account_id
    if not settings.backend_url:
        print("✗ Backend not configured (set FITTRACK_BACKEND_URL)")
        sys.exit(1)
    if not account_id:
        print("✗ Not authenticated (set FITTRACK_ACCOUNT_ID or pass --account)")
        sys.exit(1)

    try:
        result = asyncio.run(_run_sync(settings, account_id))
    except ValueError as e:
        print(f"✗ {e}")
        sys.exit(1)

    if args.json:
        print(json.dumps(result, indent=2, default=str))
    elif result["success"]:
        print("✓ Sync complete")
        print(f"  Uploaded:   {result['uploaded_count']}")
        print(f"  Downloaded: {result['downloaded_count']}")
        print(f"  Conflicts:  {result['conflicts_resolved_count']}")
    else:
        print(f"✗ Sync failed: {result['error']}")
        if result["uploaded_count"]:
            print(f"  Uploaded before failure: {result['uploaded_count']}")
    for error in result["errors"][:5]:
        print(f"  ! {error}")
    if not result["success"]:
        sys.exit(1)


def cmd_status(args, settings: SyncSettings):
    """Show pending uploads and the last successful sync."""
    account_id = args.account or settings.account_id
    local = _open_store(settings)
    pending = local.pending_upload_count()
    last_synced = None
    if account_id:
        last_synced = parse_datetime(local.get_meta(account_meta_key("last_synced_at", account_id)))

    if args.json:
        print(
            json.dumps(
                {
                    "account_id": account_id,
                    "pending_uploads": pending,
                    "last_synced_at": format_datetime(last_synced),
                    "backend_url": settings.backend_url or "(not configured)",
                    "db_path": str(local.db_path),
                },
                indent=2,
            )
        )
        return

    print("Sync Status")
    print("=" * 40)
    print(f"Account:         {account_id or '(not signed in)'}")
    print(f"Pending uploads: {pending}")
    print(f"Last synced:     {format_datetime(last_synced) or 'never'}")
    print(f"Backend:         {settings.backend_url or '(not configured)'}")
    print(f"Database:        {local.db_path}")


def cmd_recalc_prs(args, settings: SyncSettings):
    """Recompute personal records from local workout history."""
    local = _open_store(settings)
    engine = SyncEngine(
        local,
        None,
        StaticIdentity(settings.account_id),
        ManualConnectivity(False),
        PersonalRecordEngine(),
        settings=settings,
    )
    summary = engine.recalculate_personal_records()
    if args.json:
        print(json.dumps(summary, indent=2))
        return
    print("✓ Personal records recalculated")
    print(f"  Updated:   {summary['updated']}")
    print(f"  Unchanged: {summary['unchanged']}")
    print(f"  Removed:   {summary['removed']}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="fittrack",
        description="Offline-first workout tracker sync",
    )
    parser.add_argument("--log-level", default=None, help="Log level (default from settings)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_sync = subparsers.add_parser("sync", help="Run a full sync now")
    p_sync.add_argument("--account", help="Account id (default: FITTRACK_ACCOUNT_ID)")
    p_sync.add_argument("--json", action="store_true", help="Output as JSON")

    p_status = subparsers.add_parser("status", help="Show sync status")
    p_status.add_argument("--account", help="Account id (default: FITTRACK_ACCOUNT_ID)")
    p_status.add_argument("--json", action="store_true", help="Output as JSON")

    p_recalc = subparsers.add_parser("recalc-prs", help="Recompute personal records")
    p_recalc.add_argument("--json", action="store_true", help="Output as JSON")

    args = parser.parse_args(argv)

    settings = get_settings()
    setup_fittrack_logging(
        account_id=getattr(args, "account", None) or settings.account_id or "default",
        level=args.log_level or settings.log_level,
    )

    try:
        if args.command == "sync":
            cmd_sync(args, settings)
        elif args.command == "status":
            cmd_status(args, settings)
        elif args.command == "recalc-prs":
            cmd_recalc_prs(args, settings)
    except KeyboardInterrupt:
        print("\nAborted.")
        sys.exit(130)


if __name__ == "__main__":
    main()
