#!/usr/bin/env python3
"""
Run one catalog sync from the command line.

Pulls the upstream catalog, reconciles the local products table and
prints a summary. Exits 1 if the sync failed, 2 if another sync held
the lock.
"""

import asyncio
import json
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from catalog_mirror.config import settings
from catalog_mirror.ingest.meta_catalog import MetaCatalogClient
from catalog_mirror.logging_config import setup_logging
from catalog_mirror.sync.engine import ReconciliationEngine, SyncResult
from catalog_mirror.worker.tasks import task_runner


def print_summary(result: SyncResult) -> None:
    rows = [
        ("Fetched", result.fetched),
        ("Created", result.created),
        ("Updated", result.updated),
        ("Deleted", result.deleted),
        ("Errors", result.errors),
        ("Duplicates", result.duplicates),
    ]
    print("")
    print(f"{'Metric':<12} {'Count':>8}")
    print(f"{'-' * 12} {'-' * 8}")
    for label, count in rows:
        print(f"{label:<12} {count:>8}")
    print("")
    print(f"State: {result.state.value} ({result.duration_seconds:.1f}s)")

    if result.error_message:
        print(f"Error: {result.error_message}")
    for detail in result.error_details[:10]:
        print(f"  - {detail['external_id']}: {detail['error']}")


async def run_without_lock(timeout: float) -> SyncResult:
    client = MetaCatalogClient()
    try:
        engine = ReconciliationEngine(client)
        return await engine.run_sync(timeout=timeout)
    finally:
        await client.close()


async def main(no_lock: bool, timeout: float, as_json: bool = False) -> int:
    print("Starting catalog sync...")
    settings.sync_timeout_seconds = timeout

    try:
        if no_lock:
            result = await run_without_lock(timeout)
        else:
            result = await task_runner.sync_entrypoint(trigger="cli")
    finally:
        await task_runner.close()

    if result is None:
        print("Another sync is already running; nothing done.")
        return 2

    if as_json:
        print(json.dumps(result.as_dict(), indent=2))
    else:
        print_summary(result)
    if not result.succeeded:
        print("Sync failed.")
        return 1

    print("Sync completed successfully.")
    return 0


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Sync products from the upstream catalog")
    parser.add_argument(
        "--no-lock",
        action="store_true",
        help="Run the engine directly without the Redis sync lock or a SyncRun record",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=settings.sync_timeout_seconds,
        help=f"Deadline for the cycle in seconds (default: {settings.sync_timeout_seconds})",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the result as JSON instead of a table",
    )

    args = parser.parse_args()

    setup_logging()
    sys.exit(asyncio.run(main(no_lock=args.no_lock, timeout=args.timeout, as_json=args.json)))
