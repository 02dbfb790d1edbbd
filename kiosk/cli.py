"""Command line front end for a check-in kiosk."""

import argparse
import logging
import os
import sys

from kiosk.api_client import ApiError, ApiOfflineError, KioskApiClient
from kiosk.offline_store import OfflineCheckInStore

logger = logging.getLogger("kiosk")

DEFAULT_QUEUE_FILE = os.path.join(os.path.expanduser("~"), ".matlinks", "offline_checkins.json")


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="MatLinks check-in kiosk.")
    parser.add_argument("--queue-file", default=os.getenv("KIOSK_QUEUE_FILE", DEFAULT_QUEUE_FILE))
    parser.add_argument("--settings", default=None, help="Path to app_settings.json")
    sub = parser.add_subparsers(dest="command", required=True)

    check_in = sub.add_parser("check-in", help="Check a member in, queueing it if the API is offline.")
    check_in.add_argument("--profile", type=int, required=True)
    check_in.add_argument("--location", type=int, required=True)
    check_in.add_argument("--class-id", type=int, default=None)
    check_in.add_argument("--name", default=None)

    sub.add_parser("sync", help="Send queued check-ins.")
    sub.add_parser("pending", help="List queued and permanently failed check-ins.")

    retry = sub.add_parser("retry", help="Re-queue a permanently failed check-in.")
    retry.add_argument("item_id")
    return parser.parse_args(argv)


def _client(args) -> KioskApiClient:
    if args.settings:
        return KioskApiClient.from_settings(args.settings)
    return KioskApiClient.from_settings()


def check_in(client, store: OfflineCheckInStore, profile_id, location_id, class_id=None, member_name=None) -> str:
    """Returns ``"online"`` or ``"queued"``."""
    item = store.save(profile_id, location_id, class_id=class_id, member_name=member_name)
    try:
        client.record_check_in(item.to_payload())
    except ApiOfflineError:
        logger.warning("API offline, check-in %s kept for later sync", item.id)
        return "queued"
    except ApiError:
        store.discard(item.id)
        raise
    store.mark_synced(item.id)
    return "online"


def main(argv=None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"), format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    store = OfflineCheckInStore(args.queue_file)

    if args.command == "pending":
        for item in store.all():
            print(f"{item.id}\t{item.status}\tprofile={item.profile_id}\tretries={item.retry_count}\t{item.last_error or ''}")
        return 0
    if args.command == "retry":
        if not store.retry_failed(args.item_id):
            print(f"No failed check-in {args.item_id}", file=sys.stderr)
            return 1
        return 0

    try:
        client = _client(args)
        if args.command == "check-in":
            outcome = check_in(client, store, args.profile, args.location, args.class_id, args.name)
            print(f"Check-in {outcome}")
            return 0
        result = store.sync(client)
    except ApiError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    print(f"Synced {result.synced}/{result.total}, failed {result.failed}, gave up on {result.permanently_failed}")
    for item in store.permanently_failed():
        print(f"Needs attention: {item.id} ({item.member_name or item.profile_id}): {item.last_error}")
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
