"""Narrow write interfaces over the local product store.

The catalog sync and the order service share the ``products`` table but
own disjoint columns: ``CatalogMirrorWriter`` writes everything mirrored
from the upstream catalog and never ``stock``; ``InventoryWriter`` writes
``stock`` and nothing else. Both operate inside the caller's transaction.
"""

import logging
from collections.abc import Iterable
from typing import Any, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_mirror.db.models import Product

logger = logging.getLogger(__name__)

# Columns the catalog sync may write
MIRRORED_FIELDS = frozenset(
    {"retailer_id", "name", "description", "price", "image_urls", "is_active", "synced_at"}
)


class StorageError(RuntimeError):
    """A single item could not be written; the batch may continue."""
    pass


class StorageFatal(RuntimeError):
    """The transaction itself failed; the whole batch must roll back."""
    pass


class CatalogMirrorWriter:
    """Catalog-side writer: mirrored fields and delete-by-absence."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_external_id(self, external_id: str) -> Optional[Product]:
        """Return the mirrored product with this external id, if any."""
        result = await self.db.execute(
            select(Product).where(Product.external_id == external_id)
        )
        return result.scalar_one_or_none()

    async def existing_external_ids(self, external_ids: Iterable[str]) -> set[str]:
        """Return which of the given external ids already exist locally."""
        wanted = set(external_ids)
        if not wanted:
            return set()
        result = await self.db.execute(
            select(Product.external_id).where(Product.external_id.is_not(None))
        )
        return {row[0] for row in result.all() if row[0] in wanted}

    async def upsert_by_external_id(
        self, external_id: str, fields: dict[str, Any]
    ) -> tuple[Product, bool]:
        """
        Insert or overwrite the product keyed by external_id.

        Existing rows keep their id and stock; new rows start with stock 0.

        Args:
            external_id: Upstream catalog id
            fields: Mirrored column values (see MIRRORED_FIELDS)

        Returns:
            (product, created)

        Raises:
            ValueError: If fields contains a column the catalog does not own
            StorageError: If the row could not be written
        """
        foreign = set(fields) - MIRRORED_FIELDS
        if foreign:
            raise ValueError(f"Catalog sync cannot write columns: {sorted(foreign)}")

        try:
            product = await self.find_by_external_id(external_id)
            created = product is None
            if created:
                product = Product(external_id=external_id, stock=0, **fields)
                self.db.add(product)
            else:
                for column, value in fields.items():
                    setattr(product, column, value)
            await self.db.flush()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to upsert product {external_id}: {e}") from e

        return product, created

    async def list_external_ids_not_in(self, keep: Iterable[str]) -> list[tuple[int, str]]:
        """
        List mirrored products whose external id is not in ``keep``.

        Products with a null external_id were never sourced from the
        catalog and are never listed.

        Returns:
            (id, external_id) pairs ordered by id
        """
        keep_set = set(keep)
        try:
            result = await self.db.execute(
                select(Product.id, Product.external_id)
                .where(Product.external_id.is_not(None))
                .order_by(Product.id)
            )
        except SQLAlchemyError as e:
            raise StorageFatal(f"Failed to list mirrored products: {e}") from e
        return [(row[0], row[1]) for row in result.all() if row[1] not in keep_set]

    async def delete_by_id(self, product_id: int) -> bool:
        """Delete one product row. Returns False if it was already gone."""
        try:
            result = await self.db.execute(delete(Product).where(Product.id == product_id))
        except SQLAlchemyError as e:
            raise StorageFatal(f"Failed to delete product {product_id}: {e}") from e
        return (result.rowcount or 0) > 0


class InventoryWriter:
    """Order-side writer: row locks and stock deltas only."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def lock_products(self, product_ids: Iterable[int]) -> dict[int, Product]:
        """
        Lock the given product rows for the rest of the transaction.

        Rows are locked in ascending id order so concurrent orders touching
        the same products cannot deadlock. Missing ids are absent from the
        result.
        """
        ids = sorted(set(product_ids))
        if not ids:
            return {}
        result = await self.db.execute(
            select(Product)
            .where(Product.id.in_(ids))
            .order_by(Product.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return {product.id: product for product in result.scalars().all()}

    async def adjust_stock(self, product: Product, delta: int) -> int:
        """
        Apply a stock delta to a locked product.

        Returns:
            The new stock level

        Raises:
            ValueError: If the result would be negative
        """
        new_stock = product.stock + delta
        if new_stock < 0:
            raise ValueError(
                f"Stock for product {product.id} cannot go below zero "
                f"(stock={product.stock}, delta={delta})"
            )
        product.stock = new_stock
        return new_stock

    async def set_stock(self, product: Product, stock: int) -> int:
        """
        Overwrite the stock level of a locked product (restock or count).

        Returns:
            The previous stock level

        Raises:
            ValueError: If stock is negative
        """
        if stock < 0:
            raise ValueError(f"Stock for product {product.id} cannot be negative (got {stock})")
        previous = product.stock
        product.stock = stock
        return previous
