#!/usr/bin/env python3
"""
Diagnose sync lock state and optionally clear a stuck lock.
"""

import asyncio
from datetime import datetime
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from catalog_mirror.db.models import SyncRun
from catalog_mirror.db.session import AsyncSessionLocal
from catalog_mirror.worker.sync_lock import (
    SyncLockManager,
    LOCK_KEY,
    HEARTBEAT_KEY,
    PENDING_KEY,
)

STALE_HEARTBEAT_SECONDS = 300


async def diagnose(force_unlock: bool = False) -> None:
    lock_manager = SyncLockManager()
    try:
        redis_client = await lock_manager._get_redis()

        lock_info = await lock_manager.get_lock_info()
        heartbeat_age = await lock_manager.get_heartbeat_age()
        pending = await redis_client.get(PENDING_KEY)

        print("Sync Lock Diagnosis")
        print("===================")
        print(f"LOCK_KEY: {LOCK_KEY}")
        print(f"HEARTBEAT_KEY: {HEARTBEAT_KEY}")
        print(f"PENDING_KEY: {PENDING_KEY}")
        print("")

        if not lock_info:
            print("Lock: none")
        else:
            print("Lock: present")
            print(f"  run_id: {lock_info.get('run_id')}")
            print(f"  started_at: {lock_info.get('started_at')}")
            print(f"  ttl_seconds: {lock_info.get('ttl_seconds')}")

        print(f"Heartbeat age (seconds): {heartbeat_age}")
        print(f"Pending flag: {'set' if pending else 'not set'}")
        print("")

        async with AsyncSessionLocal() as db:
            result = await db.execute(
                select(SyncRun).where(SyncRun.status == "running").order_by(SyncRun.started_at.desc())
            )
            running_runs = result.scalars().all()

            if not running_runs:
                print("Running SyncRuns: none")
            else:
                print(f"Running SyncRuns: {len(running_runs)}")
                for run in running_runs:
                    age_s = (datetime.utcnow() - run.started_at).total_seconds()
                    print(
                        f"  - id={run.id} run_id={run.run_id} started_at={run.started_at} "
                        f"age_s={age_s:.0f} trigger={run.trigger}"
                    )

            stale = heartbeat_age is None or heartbeat_age > STALE_HEARTBEAT_SECONDS
            if force_unlock and lock_info and stale:
                await lock_manager.force_unlock()
                for run in running_runs:
                    run.status = "failed"
                    run.completed_at = datetime.utcnow()
                    run.error_message = "Lock force-cleared by operator"
                await db.commit()
                print("")
                print(f"Cleared lock and marked {len(running_runs)} running SyncRuns failed.")
                return

        print("")
        print("Recommendations")
        print("----------------")
        if lock_info and heartbeat_age is None:
            print("- Lock exists but heartbeat missing. Consider --force-unlock.")
        if heartbeat_age and heartbeat_age > STALE_HEARTBEAT_SECONDS:
            print(f"- Heartbeat is stale (> {STALE_HEARTBEAT_SECONDS}s). Lock likely stuck; rerun with --force-unlock.")
        if lock_info and heartbeat_age is not None and heartbeat_age <= STALE_HEARTBEAT_SECONDS:
            print("- Heartbeat appears healthy. A sync is in progress.")
        if not lock_info and running_runs:
            print("- Running SyncRun without lock present. The worker probably died mid-run.")
        if not lock_info and not running_runs:
            print("- No issues detected.")
    finally:
        await lock_manager.close()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Diagnose the catalog sync lock")
    parser.add_argument(
        "--force-unlock",
        action="store_true",
        help="Clear the lock if its heartbeat is stale and fail running SyncRuns",
    )
    args = parser.parse_args()

    asyncio.run(diagnose(force_unlock=args.force_unlock))
