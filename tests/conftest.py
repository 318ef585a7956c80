"""Shared fixtures: a throwaway SQLite database per test."""

from decimal import Decimal
from typing import Optional

import pytest
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from catalog_mirror.db.models import Base, Product
from catalog_mirror.ingest.base import BaseCatalogClient, CatalogPage, ExternalProduct


@pytest.fixture
async def test_engine(tmp_path):
    """File-backed SQLite engine with SAVEPOINT and foreign key support."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)

    # pysqlite's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def make_product(session_factory):
    """Insert a product directly, bypassing the sync."""

    async def _make(
        name: str,
        price: str = "10.00",
        stock: int = 0,
        external_id: Optional[str] = None,
        retailer_id: Optional[str] = None,
    ) -> Product:
        async with session_factory() as db:
            product = Product(
                external_id=external_id,
                retailer_id=retailer_id,
                name=name,
                price=Decimal(price),
                stock=stock,
                image_urls=[],
                is_active=True,
            )
            db.add(product)
            await db.commit()
            await db.refresh(product)
            return product

    return _make


async def load_products(session_factory) -> dict[str, Product]:
    """All products keyed by name."""
    async with session_factory() as db:
        result = await db.execute(select(Product).order_by(Product.id))
        return {p.name: p for p in result.scalars().all()}


class FakeCatalogClient(BaseCatalogClient):
    """In-memory catalog serving pre-built pages; optionally fails on one page."""

    def __init__(self, pages: list[list[ExternalProduct]], fail_on_page: Optional[int] = None, error=None):
        self.pages = pages
        self.fail_on_page = fail_on_page
        self.error = error
        self.calls = 0
        self.closed = False

    async def fetch_page(self, cursor: Optional[str] = None) -> CatalogPage:
        index = int(cursor) if cursor else 0
        self.calls += 1
        if self.fail_on_page is not None and index == self.fail_on_page:
            raise self.error
        items = self.pages[index] if self.pages else []
        next_cursor = str(index + 1) if index + 1 < len(self.pages) else None
        return CatalogPage(items=items, next_cursor=next_cursor)

    async def close(self):
        self.closed = True


def external(external_id: str, name: Optional[str] = None, price="10.00", **kwargs) -> ExternalProduct:
    """Build an upstream product that is in stock unless told otherwise."""
    kwargs.setdefault("availability", "in stock")
    return ExternalProduct(
        external_id=external_id,
        name=name if name is not None else f"Product {external_id}",
        raw_price=price,
        **kwargs,
    )
