"""Tests for order placement, cancellation and editing."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from catalog_mirror.db.models import Order, Product
from catalog_mirror.orders.service import (
    CustomerInfo,
    DeliveryInfo,
    InsufficientStock,
    InvalidOrderRequest,
    InvalidState,
    OrderCosts,
    OrderLine,
    OrderNotFound,
    OrderService,
    ProductNotFound,
)
from catalog_mirror.sync.engine import ReconciliationEngine

from conftest import FakeCatalogClient, external, load_products

TOMORROW = datetime.utcnow().replace(microsecond=0) + timedelta(days=1)


def _customer():
    return CustomerInfo(name="Ana Gómez", phone="3001234567", email="ana@example.com")


def _delivery(when=TOMORROW):
    return DeliveryInfo(address="Calle 10 #20-30", delivery_datetime=when, gift_message="Feliz día")


async def _order_count(session_factory) -> int:
    async with session_factory() as db:
        return await db.scalar(select(func.count(Order.id)))


@pytest.fixture
def service(session_factory):
    return OrderService(session_factory=session_factory)


@pytest.mark.asyncio
async def test_place_order_prices_lines_and_decrements_stock(service, session_factory, make_product):
    roses = await make_product("Roses", price="35.00", stock=10)
    vase = await make_product("Vase", price="12.50", stock=3)

    order = await service.place_order(
        _customer(),
        _delivery(),
        OrderCosts(materials_cost=Decimal("5.00"), shipping_cost=Decimal("8.00"), internal_notes="ring bell"),
        [OrderLine(roses.id, 2), OrderLine(vase.id, 1)],
    )

    assert order.status == "pending"
    assert order.subtotal == Decimal("82.50")
    assert order.total == Decimal("95.50")
    assert order.internal_notes == "ring bell"
    assert [(i.product_name, i.quantity, i.unit_price, i.subtotal) for i in order.items] == [
        ("Roses", 2, Decimal("35.00"), Decimal("70.00")),
        ("Vase", 1, Decimal("12.50"), Decimal("12.50")),
    ]

    products = await load_products(session_factory)
    assert products["Roses"].stock == 8
    assert products["Vase"].stock == 2


@pytest.mark.asyncio
async def test_over_stock_line_rejects_whole_order(service, session_factory, make_product):
    roses = await make_product("Roses", stock=10)
    vase = await make_product("Vase", stock=1)

    with pytest.raises(InsufficientStock) as exc_info:
        await service.place_order(
            _customer(), _delivery(), OrderCosts(),
            [OrderLine(roses.id, 2), OrderLine(vase.id, 5)],
        )

    assert exc_info.value.product_name == "Vase"
    assert exc_info.value.available == 1
    assert "Insufficient stock for Vase. Available: 1" in str(exc_info.value)

    products = await load_products(session_factory)
    assert products["Roses"].stock == 10
    assert products["Vase"].stock == 1
    assert await _order_count(session_factory) == 0


@pytest.mark.asyncio
async def test_repeated_product_lines_are_checked_together(service, session_factory, make_product):
    roses = await make_product("Roses", stock=3)

    with pytest.raises(InsufficientStock):
        await service.place_order(
            _customer(), _delivery(), OrderCosts(),
            [OrderLine(roses.id, 2), OrderLine(roses.id, 2)],
        )

    assert (await load_products(session_factory))["Roses"].stock == 3


@pytest.mark.asyncio
async def test_unknown_product_rejected(service, session_factory, make_product):
    roses = await make_product("Roses", stock=3)

    with pytest.raises(ProductNotFound) as exc_info:
        await service.place_order(
            _customer(), _delivery(), OrderCosts(),
            [OrderLine(roses.id, 1), OrderLine(9999, 1)],
        )

    assert exc_info.value.product_id == 9999
    assert (await load_products(session_factory))["Roses"].stock == 3
    assert await _order_count(session_factory) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "lines, costs",
    [
        ([], OrderCosts()),
        ([OrderLine(1, 0)], OrderCosts()),
        ([OrderLine(1, 1)], OrderCosts(materials_cost=Decimal("-1"))),
    ],
)
async def test_invalid_requests(service, make_product, lines, costs):
    await make_product("Roses", stock=3)

    with pytest.raises(InvalidOrderRequest):
        await service.place_order(_customer(), _delivery(), costs, lines)


@pytest.mark.asyncio
async def test_price_is_frozen_at_order_time(service, session_factory, make_product):
    roses = await make_product("Roses", price="35.00", stock=5)
    order = await service.place_order(_customer(), _delivery(), OrderCosts(), [OrderLine(roses.id, 1)])

    async with session_factory() as db:
        product = await db.get(Product, roses.id)
        product.price = Decimal("99.00")
        await db.commit()

    reloaded = await service.get_order(order.id)
    assert reloaded.items[0].unit_price == Decimal("35.00")
    assert reloaded.total == Decimal("35.00")


@pytest.mark.asyncio
async def test_cancel_restores_stock_and_deletes_order(service, session_factory, make_product):
    roses = await make_product("Roses", stock=10)
    vase = await make_product("Vase", stock=4)
    order = await service.place_order(
        _customer(), _delivery(), OrderCosts(),
        [OrderLine(roses.id, 3), OrderLine(vase.id, 1), OrderLine(roses.id, 2)],
    )
    assert (await load_products(session_factory))["Roses"].stock == 5

    await service.cancel_order(order.id)

    products = await load_products(session_factory)
    assert products["Roses"].stock == 10
    assert products["Vase"].stock == 4
    assert await _order_count(session_factory) == 0
    with pytest.raises(OrderNotFound):
        await service.get_order(order.id)


@pytest.mark.asyncio
async def test_cancel_non_pending_order_is_rejected(service, session_factory, make_product):
    roses = await make_product("Roses", stock=10)
    order = await service.place_order(_customer(), _delivery(), OrderCosts(), [OrderLine(roses.id, 4)])
    await service.update_order(order.id, {"status": "processing"})

    with pytest.raises(InvalidState) as exc_info:
        await service.cancel_order(order.id)

    assert exc_info.value.status == "processing"
    assert (await load_products(session_factory))["Roses"].stock == 6
    assert await _order_count(session_factory) == 1


@pytest.mark.asyncio
async def test_cancel_unknown_order(service):
    with pytest.raises(OrderNotFound):
        await service.cancel_order(12345)


@pytest.mark.asyncio
async def test_cancel_after_product_left_catalog(service, session_factory, make_product):
    roses = await make_product("Roses", stock=10)
    vase = await make_product("Vase", stock=4)
    order = await service.place_order(
        _customer(), _delivery(), OrderCosts(), [OrderLine(roses.id, 1), OrderLine(vase.id, 1)]
    )

    async with session_factory() as db:
        await db.delete(await db.get(Product, roses.id))
        await db.commit()

    await service.cancel_order(order.id)

    products = await load_products(session_factory)
    assert "Roses" not in products
    assert products["Vase"].stock == 4


@pytest.mark.asyncio
async def test_restocked_synced_product_can_be_ordered(service, session_factory):
    engine = ReconciliationEngine(FakeCatalogClient([[external("A", name="Roses")]]), session_factory=session_factory)
    await engine.run_sync()
    roses = (await load_products(session_factory))["Roses"]
    assert roses.stock == 0

    updated = await service.set_stock(roses.id, 5)
    assert updated.stock == 5

    await service.place_order(_customer(), _delivery(), OrderCosts(), [OrderLine(roses.id, 2)])
    await engine.run_sync()

    assert (await load_products(session_factory))["Roses"].stock == 3


@pytest.mark.asyncio
async def test_set_stock_rejects_negative_and_unknown(service, session_factory, make_product):
    roses = await make_product("Roses", stock=4)

    with pytest.raises(InvalidOrderRequest):
        await service.set_stock(roses.id, -1)
    with pytest.raises(ProductNotFound):
        await service.set_stock(9999, 3)

    assert (await load_products(session_factory))["Roses"].stock == 4


@pytest.mark.asyncio
async def test_update_order_recomputes_total(service, make_product):
    roses = await make_product("Roses", price="20.00", stock=10)
    order = await service.place_order(
        _customer(), _delivery(),
        OrderCosts(materials_cost=Decimal("2.00"), shipping_cost=Decimal("3.00")),
        [OrderLine(roses.id, 2)],
    )
    assert order.total == Decimal("45.00")

    updated = await service.update_order(
        order.id, {"shipping_cost": 10, "gift_message": "Happy birthday", "status": "processing"}
    )

    assert updated.shipping_cost == Decimal("10.00")
    assert updated.total == Decimal("52.00")
    assert updated.gift_message == "Happy birthday"
    assert updated.status == "processing"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "changes",
    [
        {"status": "shipped"},
        {"subtotal": 1},
        {"materials_cost": -3},
        {"materials_cost": None},
        {"shipping_cost": "free"},
        {"customer_name": None},
        {"delivery_address": None},
        {"status": None},
    ],
)
async def test_update_order_rejects_bad_changes(service, make_product, changes):
    roses = await make_product("Roses", stock=10)
    order = await service.place_order(_customer(), _delivery(), OrderCosts(), [OrderLine(roses.id, 1)])

    with pytest.raises(InvalidOrderRequest):
        await service.update_order(order.id, changes)

    assert (await service.get_order(order.id)).total == order.total


@pytest.mark.asyncio
async def test_list_orders_filters_and_paginates(service, make_product):
    roses = await make_product("Roses", stock=50)
    for i, name in enumerate(["Ana", "Bruno", "Ana María"]):
        await service.place_order(
            CustomerInfo(name=name, phone="300"),
            _delivery(TOMORROW + timedelta(hours=i)),
            OrderCosts(),
            [OrderLine(roses.id, 1)],
        )

    orders, total = await service.list_orders(customer_name="ana")
    assert total == 2
    assert [o.customer_name for o in orders] == ["Ana", "Ana María"]

    orders, total = await service.list_orders(page=2, per_page=2)
    assert total == 3
    assert [o.customer_name for o in orders] == ["Ana María"]

    orders, total = await service.list_orders(delivery_date=TOMORROW.date() + timedelta(days=3))
    assert (orders, total) == ([], 0)


@pytest.mark.asyncio
async def test_order_stats(service, make_product):
    roses = await make_product("Roses", stock=50)
    today = datetime.utcnow().replace(hour=23, minute=0, second=0, microsecond=0)
    first = await service.place_order(_customer(), _delivery(today), OrderCosts(), [OrderLine(roses.id, 1)])
    await service.place_order(_customer(), _delivery(TOMORROW + timedelta(days=1)), OrderCosts(), [OrderLine(roses.id, 1)])
    await service.update_order(first.id, {"status": "completed"})

    stats = await service.order_stats()

    assert stats.total_orders == 2
    assert stats.by_status == {"pending": 1, "processing": 0, "completed": 1, "cancelled": 0}
    assert stats.today_deliveries == 1
