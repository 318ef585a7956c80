"""Catalog reconciliation engine.

One cycle pulls the full upstream catalog, normalizes it and makes the
local ``products`` table mirror it:

    IDLE -> FETCHING -> DIFFING -> COMMITTING -> DONE | FAILED

All writes of a cycle happen in one transaction. Each upsert runs in its
own SAVEPOINT so a storage error on one item is counted and skipped while
the rest of the batch commits. Products whose external id is missing from
the fetch are deleted after every upsert has been applied. Any other
failure rolls the whole transaction back and the cycle reports FAILED.
"""

import asyncio
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_mirror.db.repository import CatalogMirrorWriter, StorageError, StorageFatal
from catalog_mirror.db.session import AsyncSessionLocal
from catalog_mirror.ingest.base import BaseCatalogClient, UpstreamError
from catalog_mirror.normalize.processor import CanonicalProduct, ProductNormalizer, product_normalizer

logger = logging.getLogger(__name__)

MAX_ERROR_DETAILS = 50


class SyncState(str, Enum):
    """Phases of a reconciliation cycle."""

    IDLE = "idle"
    FETCHING = "fetching"
    DIFFING = "diffing"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class SyncResult:
    """Summary of one reconciliation cycle."""

    state: SyncState
    fetched: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: int = 0
    duplicates: int = 0
    error_message: Optional[str] = None
    error_details: list[dict[str, str]] = field(default_factory=list)
    duration_seconds: float = 0.0
    retryable: bool = False  # Failed before any commit on an upstream error or timeout

    @property
    def succeeded(self) -> bool:
        return self.state == SyncState.DONE

    def as_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "fetched": self.fetched,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "errors": self.errors,
            "duplicates": self.duplicates,
            "error_message": self.error_message,
            "error_details": list(self.error_details),
            "duration_seconds": round(self.duration_seconds, 3),
            "retryable": self.retryable,
        }


def fold_by_external_id(
    products: Iterable[CanonicalProduct],
) -> tuple[dict[str, CanonicalProduct], int]:
    """
    Collapse repeated external ids, last occurrence wins.

    Each id keeps the position of its first arrival, so applying the
    folded batch in order leaves the mirror exactly as applying every
    occurrence one after another would.

    Returns:
        (products keyed by external id in arrival order, number of repeats dropped)
    """
    folded: dict[str, CanonicalProduct] = {}
    duplicates = 0
    for product in products:
        if product.external_id in folded:
            duplicates += 1
        folded[product.external_id] = product
    return folded, duplicates


class ReconciliationEngine:
    """Drives fetch, diff, upsert and delete-by-absence for one catalog."""

    def __init__(
        self,
        client: BaseCatalogClient,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        normalizer: Optional[ProductNormalizer] = None,
    ):
        self.client = client
        self.session_factory = session_factory
        self.normalizer = normalizer or product_normalizer
        self._state = SyncState.IDLE

    @property
    def state(self) -> SyncState:
        """Phase of the current (or last) cycle."""
        return self._state

    async def run_sync(self, timeout: Optional[float] = None) -> SyncResult:
        """
        Run one reconciliation cycle.

        Never raises for fetch, storage or timeout failures: those come
        back as a FAILED result with zero counts and nothing committed.

        Args:
            timeout: Optional deadline in seconds for the whole cycle

        Returns:
            SyncResult with created/updated/deleted/errors counts
        """
        started = time.monotonic()
        self._state = SyncState.IDLE

        try:
            if timeout is not None:
                result = await asyncio.wait_for(self._run_cycle(), timeout=timeout)
            else:
                result = await self._run_cycle()
        except asyncio.TimeoutError:
            logger.error(f"Catalog sync timed out after {timeout} seconds (phase: {self._state.value})")
            result = self._failed(f"Sync timed out after {timeout} seconds", retryable=True)
        except UpstreamError as e:
            logger.error(f"Catalog fetch failed, local store left untouched: {e}")
            result = self._failed(f"{type(e).__name__}: {e}", retryable=True)
        except (StorageFatal, SQLAlchemyError) as e:
            logger.error(f"Catalog sync rolled back: {e}", exc_info=True)
            result = self._failed(f"Storage failure: {e}")
        except Exception as e:
            logger.error(f"Catalog sync aborted by unexpected error: {e}", exc_info=True)
            result = self._failed(f"{type(e).__name__}: {e}")

        result.duration_seconds = time.monotonic() - started
        return result

    def _failed(self, message: str, retryable: bool = False) -> SyncResult:
        self._state = SyncState.FAILED
        return SyncResult(state=SyncState.FAILED, error_message=message[:500], retryable=retryable)

    async def _run_cycle(self) -> SyncResult:
        self._state = SyncState.FETCHING
        logger.info("Fetching catalog from upstream...")
        external = await self.client.fetch_all()

        self._state = SyncState.DIFFING
        if not external:
            # An empty catalog would delete the whole mirror; treat it as a no-op
            logger.warning("Upstream catalog returned no products; skipping sync, mirror unchanged")
            self._state = SyncState.DONE
            return SyncResult(state=SyncState.DONE)

        canonical = [self.normalizer.normalize(item) for item in external]
        folded, duplicates = fold_by_external_id(canonical)
        if duplicates:
            logger.warning(
                f"Catalog returned {duplicates} repeated external ids; last occurrence wins"
            )

        result = SyncResult(
            state=SyncState.COMMITTING,
            fetched=len(external),
            duplicates=duplicates,
        )

        async with self.session_factory() as db:
            async with db.begin():
                mirror = CatalogMirrorWriter(db)

                existing = await mirror.existing_external_ids(folded.keys())
                logger.info(
                    f"Sync plan: {len(folded) - len(existing)} to create, "
                    f"{len(existing)} to update"
                )

                self._state = SyncState.COMMITTING
                await self._apply_upserts(db, mirror, folded, result)
                await self._delete_absent(mirror, folded.keys(), result)

        self._state = SyncState.DONE
        result.state = SyncState.DONE
        logger.info(
            f"Catalog sync complete: {result.created} created, {result.updated} updated, "
            f"{result.deleted} deleted, {result.errors} errors ({result.fetched} fetched)"
        )
        return result

    async def _apply_upserts(
        self,
        db: AsyncSession,
        mirror: CatalogMirrorWriter,
        folded: dict[str, CanonicalProduct],
        result: SyncResult,
    ) -> None:
        for external_id, product in folded.items():
            try:
                async with db.begin_nested():
                    _, created = await mirror.upsert_by_external_id(
                        external_id, product.mirrored_fields()
                    )
            except StorageError as e:
                result.errors += 1
                if len(result.error_details) < MAX_ERROR_DETAILS:
                    result.error_details.append({"external_id": external_id, "error": str(e)[:300]})
                logger.error(f"Error syncing product {external_id}: {e}")
                continue

            if created:
                result.created += 1
            else:
                result.updated += 1

    async def _delete_absent(
        self,
        mirror: CatalogMirrorWriter,
        fetched_ids: Iterable[str],
        result: SyncResult,
    ) -> None:
        stale = await mirror.list_external_ids_not_in(fetched_ids)
        for product_id, external_id in stale:
            if await mirror.delete_by_id(product_id):
                result.deleted += 1
                logger.debug(f"Deleted product {product_id} (external_id {external_id} no longer upstream)")
