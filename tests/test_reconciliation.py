"""Tests for the reconciliation engine against a real (SQLite) store."""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from catalog_mirror.db.models import Order, OrderItem, Product
from catalog_mirror.db.repository import CatalogMirrorWriter, StorageFatal
from catalog_mirror.ingest.base import UpstreamUnavailable
from catalog_mirror.sync.engine import ReconciliationEngine, SyncState, fold_by_external_id
from catalog_mirror.normalize.processor import ProductNormalizer

from conftest import FakeCatalogClient, external, load_products


def _engine(session_factory, pages, **client_kwargs) -> ReconciliationEngine:
    return ReconciliationEngine(FakeCatalogClient(pages, **client_kwargs), session_factory=session_factory)


async def _snapshot(session_factory):
    products = await load_products(session_factory)
    return {
        name: (p.id, p.external_id, p.retailer_id, p.price, p.image_urls, p.is_active, p.stock)
        for name, p in products.items()
    }


@pytest.mark.asyncio
async def test_first_sync_creates_products(session_factory):
    engine = _engine(session_factory, [[
        external("A", name="Roses", price="$35.00", retailer_id="wc_1", image_url="https://cdn/a.jpg"),
        external("B", name="Lilies", price=20, availability="out of stock"),
    ]])

    result = await engine.run_sync()

    assert result.state == SyncState.DONE
    assert engine.state == SyncState.DONE
    assert (result.fetched, result.created, result.updated, result.deleted, result.errors) == (2, 2, 0, 0, 0)

    products = await load_products(session_factory)
    roses = products["Roses"]
    assert roses.external_id == "A"
    assert roses.retailer_id == "wc_1"
    assert roses.price == Decimal("35.00")
    assert roses.image_urls == ["https://cdn/a.jpg"]
    assert roses.is_active is True
    assert roses.stock == 0
    assert roses.synced_at is not None
    assert products["Lilies"].is_active is False


@pytest.mark.asyncio
async def test_sync_is_idempotent(session_factory):
    pages = [[external("A", name="Roses"), external("B", name="Lilies")], [external("C", name="Tulips")]]

    first = await _engine(session_factory, pages).run_sync()
    before = await _snapshot(session_factory)
    second = await _engine(session_factory, pages).run_sync()
    after = await _snapshot(session_factory)

    assert first.created == 3
    assert second.created == 0
    assert second.updated == 3
    assert second.deleted == 0
    assert before == after


@pytest.mark.asyncio
async def test_absent_products_are_deleted(session_factory):
    await _engine(session_factory, [[external("A"), external("B"), external("C")]]).run_sync()
    ids_before = {name: p.id for name, p in (await load_products(session_factory)).items()}

    result = await _engine(session_factory, [[external("A"), external("B")]]).run_sync()

    assert (result.created, result.updated, result.deleted) == (0, 2, 1)
    products = await load_products(session_factory)
    assert set(products) == {"Product A", "Product B"}
    assert products["Product A"].id == ids_before["Product A"]
    assert products["Product B"].id == ids_before["Product B"]


@pytest.mark.asyncio
async def test_local_only_products_survive_sync(session_factory, make_product):
    await make_product("Hand-made card", external_id=None, stock=4)

    result = await _engine(session_factory, [[external("A")]]).run_sync()

    assert result.deleted == 0
    assert "Hand-made card" in await load_products(session_factory)


@pytest.mark.asyncio
async def test_empty_fetch_leaves_store_unchanged(session_factory):
    await _engine(session_factory, [[external("A"), external("B")]]).run_sync()
    before = await _snapshot(session_factory)

    result = await _engine(session_factory, [[]]).run_sync()

    assert result.state == SyncState.DONE
    assert (result.fetched, result.created, result.updated, result.deleted, result.errors) == (0, 0, 0, 0, 0)
    assert await _snapshot(session_factory) == before


@pytest.mark.asyncio
async def test_sync_never_overwrites_stock(session_factory):
    await _engine(session_factory, [[external("A", price="10.00")]]).run_sync()

    async with session_factory() as db:
        product = (await db.execute(select(Product))).scalar_one()
        product.stock = 7
        await db.commit()

    await _engine(session_factory, [[external("A", price="12.50")]]).run_sync()

    product = (await load_products(session_factory))["Product A"]
    assert product.stock == 7
    assert product.price == Decimal("12.50")


@pytest.mark.asyncio
async def test_upstream_failure_mid_pagination_changes_nothing(session_factory):
    await _engine(session_factory, [[external("A"), external("B")]]).run_sync()
    before = await _snapshot(session_factory)

    engine = _engine(
        session_factory,
        [[external("A", price="99.00")], [external("C")]],
        fail_on_page=1,
        error=UpstreamUnavailable("HTTP 503"),
    )
    result = await engine.run_sync()

    assert result.state == SyncState.FAILED
    assert result.retryable is True
    assert "HTTP 503" in result.error_message
    assert (result.created, result.updated, result.deleted) == (0, 0, 0)
    assert await _snapshot(session_factory) == before


@pytest.mark.asyncio
async def test_item_storage_error_is_counted_and_rest_commits(session_factory):
    # B collides with A on the unique retailer_id
    pages = [[
        external("A", name="Roses", retailer_id="wc_1"),
        external("B", name="Lilies", retailer_id="wc_1"),
        external("C", name="Tulips", retailer_id="wc_3"),
    ]]

    result = await _engine(session_factory, pages).run_sync()

    assert result.state == SyncState.DONE
    assert result.created == 2
    assert result.errors == 1
    assert result.error_details[0]["external_id"] == "B"
    assert set(await load_products(session_factory)) == {"Roses", "Tulips"}


@pytest.mark.asyncio
async def test_repeated_external_id_last_occurrence_wins(session_factory):
    pages = [
        [external("A", name="Roses", price="10.00"), external("B", name="Lilies")],
        [external("A", name="Roses XL", price="15.00")],
    ]

    result = await _engine(session_factory, pages).run_sync()

    assert result.fetched == 3
    assert result.duplicates == 1
    assert result.created == 2
    products = await load_products(session_factory)
    assert set(products) == {"Roses XL", "Lilies"}
    assert products["Roses XL"].price == Decimal("15.00")


@pytest.mark.asyncio
async def test_deleted_product_keeps_order_history(session_factory, make_product):
    await _engine(session_factory, [[external("A", name="Roses"), external("B")]]).run_sync()
    roses = (await load_products(session_factory))["Roses"]

    async with session_factory() as db:
        db.add(Order(
            customer_name="Ana",
            customer_phone="3001234567",
            delivery_address="Calle 1",
            subtotal=Decimal("10.00"),
            total=Decimal("10.00"),
            items=[OrderItem(
                product_id=roses.id,
                product_name="Roses",
                quantity=1,
                unit_price=Decimal("10.00"),
                subtotal=Decimal("10.00"),
            )],
        ))
        await db.commit()

    result = await _engine(session_factory, [[external("B")]]).run_sync()

    assert result.deleted == 1
    async with session_factory() as db:
        item = (await db.execute(select(OrderItem))).scalar_one()
    assert item.product_id is None
    assert item.product_name == "Roses"


@pytest.mark.asyncio
async def test_timeout_fails_cycle(session_factory):
    class SlowClient(FakeCatalogClient):
        async def fetch_page(self, cursor=None):
            await asyncio.sleep(5)
            return await super().fetch_page(cursor)

    engine = ReconciliationEngine(SlowClient([[external("A")]]), session_factory=session_factory)
    result = await engine.run_sync(timeout=0.05)

    assert result.state == SyncState.FAILED
    assert result.retryable is True
    assert "timed out" in result.error_message
    assert await load_products(session_factory) == {}


@pytest.mark.asyncio
async def test_fatal_storage_error_rolls_back_everything(session_factory, monkeypatch):
    await _engine(session_factory, [[external("A"), external("B")]]).run_sync()
    before = await _snapshot(session_factory)

    async def broken_delete(self, product_id):
        raise StorageFatal("disk full")

    monkeypatch.setattr(CatalogMirrorWriter, "delete_by_id", broken_delete)
    result = await _engine(session_factory, [[external("A", price="50.00"), external("C")]]).run_sync()

    assert result.state == SyncState.FAILED
    assert result.retryable is False
    assert "disk full" in result.error_message
    assert await _snapshot(session_factory) == before


@pytest.mark.asyncio
async def test_unexpected_error_is_reported_not_raised(session_factory):
    class ExplodingNormalizer(ProductNormalizer):
        def normalize(self, raw):
            raise KeyError("boom")

    engine = ReconciliationEngine(
        FakeCatalogClient([[external("A")]]),
        session_factory=session_factory,
        normalizer=ExplodingNormalizer(),
    )
    result = await engine.run_sync()

    assert result.state == SyncState.FAILED
    assert "KeyError" in result.error_message
    assert await load_products(session_factory) == {}


class TestFoldByExternalId:

    def setup_method(self):
        self.normalizer = ProductNormalizer()

    def test_keeps_first_position_and_last_values(self):
        items = [self.normalizer.normalize(p) for p in (
            external("A", name="first"), external("B"), external("A", name="last"),
        )]
        folded, duplicates = fold_by_external_id(items)

        assert list(folded) == ["A", "B"]
        assert folded["A"].name == "last"
        assert duplicates == 1
