#!/usr/bin/env python3
"""
Habit Tracker Sync - command line entry point.

Usage:
    python main.py push            # Push unsynced local trackers/observations
    python main.py pull            # Pull cloud trackers/observations
    python main.py sync            # Push then pull
    python main.py prefs-push      # Upload user preferences
    python main.py prefs-pull      # Download user preferences
    python main.py premium         # Show premium status
    python main.py cloud on|off    # Enable cloud storage / disable and wipe cloud data
    python main.py watch           # Pull on every realtime change until Ctrl-C
    python main.py wipe            # Delete this user's cloud data
"""

import argparse
import logging
import sys
import time

from database import TrackerDatabase
from supabase_rest import get_client, SupabaseConfigError
from user_config import get_current_user_id

logger = logging.getLogger(__name__)


def _print_report(report):
    print(report.summary())
    for result in report.results:
        if result.status == "failed":
            print(f"  FAILED {result.table} {result.local_id or result.cloud_id}: {result.error}")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Sync habit trackers with the cloud")
    parser.add_argument("command", choices=["push", "pull", "sync", "prefs-push", "prefs-pull",
                                            "premium", "cloud", "watch", "wipe"])
    parser.add_argument("state", nargs="?", choices=["on", "off"], help="for 'cloud'")
    parser.add_argument("--db", help="Path to the local database")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        client = get_client()
    except SupabaseConfigError as e:
        print(f"ERROR: {e}")
        return 2

    user_id = get_current_user_id() or client.auth.get_user_id()
    if not user_id:
        print("Not signed in: cloud sync is only available for signed-in users.")
        return 1

    db = TrackerDatabase(args.db)
    try:
        return _run(args, db, client, user_id)
    finally:
        db.close()


def _run(args, db, client, user_id: str) -> int:
    from cloud_sync import sync_to_cloud, sync_from_cloud, delete_cloud_data, set_cloud_enabled
    from preferences_sync import push_preferences, pull_preferences
    from premium import check_premium_status

    if args.command in ("push", "sync"):
        _print_report(sync_to_cloud(db, client, user_id))
    if args.command in ("pull", "sync"):
        _print_report(sync_from_cloud(db, client, user_id))

    if args.command == "prefs-push":
        return 0 if push_preferences(db, client, user_id) else 1
    if args.command == "prefs-pull":
        applied = pull_preferences(db, client, user_id)
        print("Preferences updated from cloud." if applied else "No cloud preferences applied.")

    if args.command == "premium":
        active = check_premium_status(db, client, user_id)
        print(f"Premium: {'active' if active else 'inactive'}")

    if args.command == "cloud":
        if args.state is None:
            print("ERROR: 'cloud' needs 'on' or 'off'")
            return 2
        reports = set_cloud_enabled(db, client, user_id, args.state == "on")
        for report in reports or ():
            _print_report(report)
        if reports is None:
            print("Cloud storage disabled and cloud data removed.")

    if args.command == "wipe":
        return 0 if delete_cloud_data(client, user_id) else 1

    if args.command == "watch":
        from realtime import setup_realtime_listeners

        unsubscribe = setup_realtime_listeners(
            db, client, user_id, lambda: print(f"Trackers refreshed: {db.get_tracker_count(user_id)}"))
        print("Listening for cloud changes (Ctrl-C to stop)...")
        try:
            while True:
                time.sleep(1.0)
        except KeyboardInterrupt:
            pass
        finally:
            unsubscribe()

    return 0


if __name__ == "__main__":
    sys.exit(main())
