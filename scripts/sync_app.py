#!/usr/bin/env python3
"""
Run a sync for one app and wait for it to finish.

Optionally registers the app and its platform connections first, reading
credentials from JSON files.

Usage:
    python scripts/sync_app.py my-app
    python scripts/sync_app.py my-app --historical
    python scripts/sync_app.py my-app --platform stripe
    python scripts/sync_app.py my-app --connect stripe=stripe.json --connect appstore=asc.json
"""
import asyncio
import argparse
import json
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from metrics_sync.credentials import CredentialProvider
from metrics_sync.exceptions import CredentialError
from metrics_sync.models import App, Platform
from metrics_sync.observability import setup_logging, get_logger
from metrics_sync.queries import get_latest_metrics, get_sync_logs
from metrics_sync.store import get_store, close_store
from metrics_sync.sync_service import get_sync_service

setup_logging(level="INFO")
logger = get_logger(__name__)


def parse_connection(value: str):
    """``platform=path.json`` -> (Platform, credentials dict)."""
    name, _, path = value.partition("=")
    if not path:
        raise argparse.ArgumentTypeError(f"Expected platform=path.json, got '{value}'")
    try:
        platform = Platform(name)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Unknown platform '{name}'")
    return platform, json.loads(Path(path).read_text())


async def main(args) -> int:
    store = await get_store()
    try:
        if args.name or args.connect:
            existing = await store.get_app(args.app_id)
            if existing is None or args.name:
                await store.upsert_app(App(id=args.app_id, name=args.name or args.app_id))
            provider = CredentialProvider(store)
            for platform, credentials in args.connect:
                try:
                    await provider.save_connection(args.app_id, platform, credentials)
                except CredentialError as e:
                    logger.error(f"Cannot save {platform.value} connection: {e}")
                    return 1

        platform = Platform(args.platform) if args.platform else None
        service = await get_sync_service()
        summary = await service.sync_app(args.app_id, force_historical=args.historical, platform=platform)

        for entry in await get_sync_logs(args.app_id, limit=200, session_id=summary["session_id"]):
            print(f"[{entry['level']:>7}] {entry['timestamp']} {entry['message']}")

        latest = await get_latest_metrics(args.app_id, store=store)
        print(json.dumps(latest, indent=2, default=str))
        return 0 if summary["status"] == "completed" else 2
    finally:
        await close_store()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Sync platform metrics for one app")
    parser.add_argument("app_id", help="App identifier")
    parser.add_argument("--historical", action="store_true", help="Refetch the full historical window")
    parser.add_argument(
        "--platform",
        choices=[p.value for p in Platform.sources()],
        help="Sync only this platform",
    )
    parser.add_argument("--name", help="Create or rename the app")
    parser.add_argument(
        "--connect",
        action="append",
        type=parse_connection,
        default=[],
        metavar="PLATFORM=FILE",
        help="Save a connection from a JSON credentials file (repeatable)",
    )
    args = parser.parse_args()

    exit_code = asyncio.run(main(args))
    sys.exit(exit_code)
