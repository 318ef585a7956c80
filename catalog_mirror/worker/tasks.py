"""Background task runner for catalog reconciliation."""

import asyncio
import logging
from contextlib import suppress
from datetime import datetime
from typing import Callable, Optional
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from catalog_mirror.config import settings
from catalog_mirror.db.models import SyncRun
from catalog_mirror.db.session import AsyncSessionLocal
from catalog_mirror.ingest.base import BaseCatalogClient
from catalog_mirror.ingest.meta_catalog import MetaCatalogClient
from catalog_mirror.logging_config import get_logger
from catalog_mirror.sync.engine import ReconciliationEngine, SyncResult, SyncState
from catalog_mirror.worker.sync_lock import SyncLockManager, keep_lock_alive, sync_lock_manager
from catalog_mirror import metrics

logger = logging.getLogger(__name__)


class TaskRunner:
    """
    Runs reconciliation cycles for scheduled, manual and CLI triggers.

    The runner owns everything around a cycle that the engine does not:
    the single-flight lock, the deadline, retrying upstream failures,
    and the SyncRun bookkeeping row.
    """

    def __init__(
        self,
        lock_manager: Optional[SyncLockManager] = None,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        client_factory: Callable[[], BaseCatalogClient] = MetaCatalogClient,
    ):
        self.lock_manager = lock_manager or sync_lock_manager
        self.session_factory = session_factory
        self.client_factory = client_factory

    async def close(self):
        """Clean up resources."""
        await self.lock_manager.close()

    async def sync_catalog(self):
        """Scheduled trigger (called by APScheduler)."""
        await self.sync_entrypoint(trigger="scheduled")

    async def sync_entrypoint(self, trigger: str = "scheduled") -> Optional[SyncResult]:
        """
        Run one locked reconciliation cycle.

        1. Acquire the Redis sync lock (skip, or queue for manual triggers, if busy)
        2. Record a SyncRun row
        3. Keep the lock alive while the engine runs, retrying upstream failures
        4. Store the result on the SyncRun row
        5. Release the lock and run any queued request

        Args:
            trigger: "scheduled" | "manual" | "queued" | "cli"

        Returns:
            SyncResult of the cycle, or None if another run held the lock
        """
        run_id = uuid4().hex
        log = get_logger(__name__, run_id=run_id[:16], trigger=trigger)

        handle = await self.lock_manager.acquire(run_id)
        if handle is None:
            lock_info = await self.lock_manager.get_lock_info()
            holder = (lock_info or {}).get("run_id") or "unknown"
            if trigger == "manual":
                await self.lock_manager.request_run_after_current()
                metrics.record_sync_lock_skipped(trigger, "lock_held_queued")
                log.info(f"Sync already running (run_id: {holder[:16]}); queued manual run")
            else:
                metrics.record_sync_lock_skipped(trigger, "lock_held")
                log.info(f"Sync already running (run_id: {holder[:16]}); skipping {trigger} run")
            return None

        heartbeat = asyncio.create_task(keep_lock_alive(self.lock_manager, handle))
        result: Optional[SyncResult] = None
        sync_run_id: Optional[int] = None

        try:
            sync_run_id = await self._start_run(run_id, trigger)
            result = await self._run_while_locked(heartbeat, log)
            await self._finish_run(sync_run_id, result)
            metrics.record_sync_result(trigger, result)
        except Exception as e:
            log.error(f"Sync run bookkeeping failed: {e}", exc_info=True)
            if sync_run_id is not None:
                with suppress(Exception):
                    await self._mark_failed(sync_run_id, str(e))
            raise
        finally:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat

            released = False
            with suppress(Exception):
                released = await self.lock_manager.release(handle)
            if not released:
                log.warning("Failed to release sync lock")

        if released and await self.lock_manager.consume_pending():
            log.info("Processing queued sync request")
            await self.sync_entrypoint(trigger="queued")

        return result

    async def _run_while_locked(self, heartbeat: asyncio.Task, log) -> SyncResult:
        """
        Run the cycle, aborting it if the heartbeat loses the lock.

        Cancelling the cycle rolls back its open transaction.
        """
        work = asyncio.create_task(self._run_with_retries(log))
        try:
            await asyncio.wait({work, heartbeat}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        if work.done():
            return work.result()

        work.cancel()
        with suppress(asyncio.CancelledError):
            await work
        log.error("Sync lock lost while the cycle was running; cycle aborted and rolled back")
        return SyncResult(state=SyncState.FAILED, error_message="Sync lock lost; cycle aborted")

    async def _run_with_retries(self, log) -> SyncResult:
        attempts = max(1, settings.sync_max_attempts)
        client = self.client_factory()
        try:
            engine = ReconciliationEngine(client, session_factory=self.session_factory)
            for attempt in range(1, attempts + 1):
                result = await engine.run_sync(timeout=settings.sync_timeout_seconds)
                if result.succeeded or not result.retryable or attempt == attempts:
                    break
                delay = settings.sync_retry_backoff_seconds * (2 ** (attempt - 1))
                log.warning(
                    f"Sync attempt {attempt}/{attempts} failed ({result.error_message}); "
                    f"retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
        finally:
            await client.close()

        if result.succeeded:
            log.info(
                f"Sync done: {result.created} created, {result.updated} updated, "
                f"{result.deleted} deleted, {result.errors} errors"
            )
        else:
            log.error(f"Sync failed: {result.error_message}")
        return result

    async def _start_run(self, run_id: str, trigger: str) -> int:
        async with self.session_factory() as db:
            sync_run = SyncRun(
                run_id=run_id,
                trigger=trigger,
                status="running",
                started_at=datetime.utcnow(),
            )
            db.add(sync_run)
            await db.commit()
            await db.refresh(sync_run)
            return sync_run.id

    async def _finish_run(self, sync_run_id: int, result: SyncResult) -> None:
        async with self.session_factory() as db:
            sync_run = await db.get(SyncRun, sync_run_id)
            if sync_run is None:
                return
            sync_run.status = "completed" if result.succeeded else "failed"
            sync_run.completed_at = datetime.utcnow()
            sync_run.fetched = result.fetched
            sync_run.created = result.created
            sync_run.updated = result.updated
            sync_run.deleted = result.deleted
            sync_run.errors = result.errors
            sync_run.error_message = result.error_message
            await db.commit()

    async def _mark_failed(self, sync_run_id: int, message: str) -> None:
        async with self.session_factory() as db:
            sync_run = await db.get(SyncRun, sync_run_id)
            if sync_run is not None:
                sync_run.status = "failed"
                sync_run.completed_at = datetime.utcnow()
                sync_run.error_message = message[:500]
                await db.commit()


task_runner = TaskRunner()
