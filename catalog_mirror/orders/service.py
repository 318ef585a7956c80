"""Inventory-aware order placement and cancellation."""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from catalog_mirror.db.models import ORDER_STATUSES, Order, OrderItem, Product
from catalog_mirror.db.repository import InventoryWriter
from catalog_mirror.db.session import AsyncSessionLocal
from catalog_mirror.logging_config import get_logger
from catalog_mirror import metrics

logger = logging.getLogger(__name__)

_CENTS = Decimal("0.01")

# Fields update_order may change directly
EDITABLE_FIELDS = frozenset({
    "customer_name",
    "customer_phone",
    "customer_email",
    "delivery_address",
    "delivery_datetime",
    "gift_message",
    "internal_notes",
    "status",
    "materials_cost",
    "shipping_cost",
})

# Editable fields backed by NOT NULL columns
REQUIRED_FIELDS = frozenset({
    "customer_name",
    "customer_phone",
    "delivery_address",
    "status",
    "materials_cost",
    "shipping_cost",
})


class OrderError(Exception):
    """Base class for order validation failures."""
    pass


class InvalidOrderRequest(OrderError):
    """Raised when the request itself is malformed."""
    pass


class ProductNotFound(OrderError):
    """Raised when an order line references a product that does not exist."""

    def __init__(self, product_id: int):
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id


class InsufficientStock(OrderError):
    """Raised when a product cannot cover the requested quantity."""

    def __init__(self, product_name: str, available: int, requested: int):
        super().__init__(
            f"Insufficient stock for {product_name}. Available: {available}"
        )
        self.product_name = product_name
        self.available = available
        self.requested = requested


class OrderNotFound(OrderError):
    """Raised when an order id does not exist."""

    def __init__(self, order_id: int):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class InvalidState(OrderError):
    """Raised when an operation is not allowed in the order's current status."""

    def __init__(self, order_id: int, status: str, message: Optional[str] = None):
        super().__init__(message or f"Order {order_id} is {status}; only pending orders can be cancelled")
        self.order_id = order_id
        self.status = status


@dataclass
class CustomerInfo:
    name: str
    phone: str
    email: Optional[str] = None


@dataclass
class DeliveryInfo:
    address: str
    delivery_datetime: Optional[datetime] = None
    gift_message: Optional[str] = None


@dataclass
class OrderCosts:
    materials_cost: Decimal = Decimal("0.00")
    shipping_cost: Decimal = Decimal("0.00")
    internal_notes: Optional[str] = None


@dataclass
class OrderLine:
    product_id: int
    quantity: int


@dataclass
class OrderStats:
    total_orders: int
    by_status: dict[str, int] = field(default_factory=dict)
    today_deliveries: int = 0


def _money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(_CENTS, rounding=ROUND_HALF_UP)


def _cost(name: str, value: Any) -> Decimal:
    try:
        return _money(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidOrderRequest(f"{name} must be a number, got {value!r}")


def _validate_costs(materials_cost: Decimal, shipping_cost: Decimal) -> None:
    if materials_cost < 0 or shipping_cost < 0:
        raise InvalidOrderRequest("materials_cost and shipping_cost must be >= 0")


class OrderService:
    """
    Places and cancels orders against locally owned stock.

    Every operation runs in its own transaction. Product rows are locked
    before stock is read, so concurrent orders for the same product
    serialize instead of losing updates.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession] = AsyncSessionLocal):
        self.session_factory = session_factory

    async def place_order(
        self,
        customer: CustomerInfo,
        delivery: DeliveryInfo,
        costs: OrderCosts,
        items: list[OrderLine],
    ) -> Order:
        """
        Validate stock, price the lines, and persist a pending order.

        All stock checks happen before any write; a failure leaves every
        product and the order table untouched.

        Returns:
            The created Order with its items loaded

        Raises:
            InvalidOrderRequest: Empty item list, quantity < 1 or negative costs
            ProductNotFound: A line references a missing product
            InsufficientStock: A product cannot cover its requested quantity
        """
        if not items:
            raise InvalidOrderRequest("An order needs at least one item")
        for line in items:
            if line.quantity < 1:
                raise InvalidOrderRequest(
                    f"Quantity for product {line.product_id} must be at least 1"
                )
        materials_cost = _cost("materials_cost", costs.materials_cost)
        shipping_cost = _cost("shipping_cost", costs.shipping_cost)
        _validate_costs(materials_cost, shipping_cost)

        # Same product on several lines is checked against its summed quantity
        requested: OrderedDict[int, int] = OrderedDict()
        for line in items:
            requested[line.product_id] = requested.get(line.product_id, 0) + line.quantity

        async with self.session_factory() as db:
            async with db.begin():
                inventory = InventoryWriter(db)
                products = await inventory.lock_products(requested.keys())

                for product_id, quantity in requested.items():
                    product = products.get(product_id)
                    if product is None:
                        metrics.record_order_rejected("product_not_found")
                        raise ProductNotFound(product_id)
                    if product.stock < quantity:
                        metrics.record_order_rejected("insufficient_stock")
                        raise InsufficientStock(product.name, product.stock, quantity)

                order_items = []
                subtotal = Decimal("0.00")
                for line in items:
                    product = products[line.product_id]
                    unit_price = _money(product.price)
                    line_subtotal = _money(unit_price * line.quantity)
                    subtotal += line_subtotal
                    order_items.append(
                        OrderItem(
                            product_id=product.id,
                            product_name=product.name,
                            quantity=line.quantity,
                            unit_price=unit_price,
                            subtotal=line_subtotal,
                        )
                    )

                order = Order(
                    customer_name=customer.name,
                    customer_phone=customer.phone,
                    customer_email=customer.email,
                    delivery_address=delivery.address,
                    delivery_datetime=delivery.delivery_datetime,
                    gift_message=delivery.gift_message,
                    subtotal=subtotal,
                    materials_cost=materials_cost,
                    shipping_cost=shipping_cost,
                    total=subtotal + materials_cost + shipping_cost,
                    status="pending",
                    internal_notes=costs.internal_notes,
                    items=order_items,
                )
                db.add(order)

                for product_id, quantity in requested.items():
                    await inventory.adjust_stock(products[product_id], -quantity)

                await db.flush()

        metrics.record_order_placed()
        logger.info(
            f"Placed order {order.id} for {customer.name}: {len(order_items)} items, total {order.total}"
        )
        return order

    async def cancel_order(self, order_id: int) -> None:
        """
        Cancel a pending order: restore its stock and delete it.

        Raises:
            OrderNotFound: No order with this id
            InvalidState: The order is not pending
        """
        log = get_logger(__name__, order_id=order_id)
        async with self.session_factory() as db:
            async with db.begin():
                order = await self._load_order(db, order_id, for_update=True)
                if order.status != "pending":
                    raise InvalidState(order_id, order.status)

                inventory = InventoryWriter(db)
                restore: OrderedDict[int, int] = OrderedDict()
                for item in order.items:
                    if item.product_id is None:
                        log.warning(
                            f"Order {order_id}: product for '{item.product_name}' no longer exists, "
                            f"{item.quantity} units not restored"
                        )
                        continue
                    restore[item.product_id] = restore.get(item.product_id, 0) + item.quantity

                products = await inventory.lock_products(restore.keys())
                for product_id, quantity in restore.items():
                    product = products.get(product_id)
                    if product is None:
                        log.warning(f"Order {order_id}: product {product_id} vanished, stock not restored")
                        continue
                    await inventory.adjust_stock(product, quantity)

                await db.delete(order)

        metrics.record_order_cancelled()
        log.info(f"Cancelled order {order_id}, stock restored for {len(restore)} products")

    async def set_stock(self, product_id: int, stock: int) -> Product:
        """
        Set the on-hand stock of a product.

        The row is locked the same way place_order locks it.

        Raises:
            InvalidOrderRequest: Negative stock
            ProductNotFound: No product with this id
        """
        if stock < 0:
            raise InvalidOrderRequest("stock must be >= 0")

        async with self.session_factory() as db:
            async with db.begin():
                inventory = InventoryWriter(db)
                product = (await inventory.lock_products([product_id])).get(product_id)
                if product is None:
                    raise ProductNotFound(product_id)
                previous = await inventory.set_stock(product, stock)

        log = get_logger(__name__, product_id=product_id)
        log.info(f"Stock for product {product_id} ({product.name}) set: {previous} -> {stock}")
        return product

    async def get_order(self, order_id: int) -> Order:
        """Return one order with its items."""
        async with self.session_factory() as db:
            return await self._load_order(db, order_id)

    async def list_orders(
        self,
        status: Optional[str] = None,
        customer_name: Optional[str] = None,
        delivery_date: Optional[date] = None,
        page: int = 1,
        per_page: int = 15,
    ) -> tuple[list[Order], int]:
        """
        List orders by delivery time, optionally filtered.

        Returns:
            (orders on this page, total matching orders)
        """
        conditions = []
        if status:
            conditions.append(Order.status == status)
        if customer_name:
            conditions.append(Order.customer_name.ilike(f"%{customer_name}%"))
        if delivery_date:
            start = datetime.combine(delivery_date, datetime.min.time())
            conditions.append(Order.delivery_datetime >= start)
            conditions.append(Order.delivery_datetime < start + timedelta(days=1))

        page = max(1, page)
        async with self.session_factory() as db:
            total = await db.scalar(select(func.count(Order.id)).where(*conditions))
            result = await db.execute(
                select(Order)
                .where(*conditions)
                .options(selectinload(Order.items))
                .order_by(Order.delivery_datetime.asc(), Order.id.asc())
                .offset((page - 1) * per_page)
                .limit(per_page)
            )
            return list(result.scalars().all()), total or 0

    async def update_order(self, order_id: int, changes: dict[str, Any]) -> Order:
        """
        Edit customer, delivery, notes, costs or status of an order.

        Cost changes recompute the total from the stored subtotal. Stock is
        never touched here; use cancel_order to give stock back.

        Raises:
            OrderNotFound: No order with this id
            InvalidOrderRequest: Unknown field, null required field, bad status
                or a negative or non-numeric cost
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise InvalidOrderRequest(f"Fields cannot be updated: {sorted(unknown)}")
        cleared = sorted(f for f in REQUIRED_FIELDS & set(changes) if changes[f] is None)
        if cleared:
            raise InvalidOrderRequest(f"Fields cannot be null: {cleared}")
        if "status" in changes and changes["status"] not in ORDER_STATUSES:
            raise InvalidOrderRequest(
                f"Invalid status '{changes['status']}'. Allowed: {', '.join(ORDER_STATUSES)}"
            )
        values = dict(changes)
        for column in ("materials_cost", "shipping_cost"):
            if column in values:
                values[column] = _cost(column, values[column])

        async with self.session_factory() as db:
            async with db.begin():
                order = await self._load_order(db, order_id, for_update=True)

                for column, value in values.items():
                    setattr(order, column, value)

                _validate_costs(order.materials_cost, order.shipping_cost)
                order.total = _money(order.subtotal) + _money(order.materials_cost) + _money(order.shipping_cost)
                await db.flush()
                await db.refresh(order, attribute_names=["updated_at"])

        logger.info(f"Updated order {order_id}: {', '.join(sorted(changes)) or 'no changes'}")
        return order

    async def order_stats(self) -> OrderStats:
        """Order counts by status plus deliveries scheduled for today."""
        today_start = datetime.combine(datetime.utcnow().date(), datetime.min.time())
        async with self.session_factory() as db:
            rows = await db.execute(
                select(Order.status, func.count(Order.id)).group_by(Order.status)
            )
            by_status = {status: 0 for status in ORDER_STATUSES}
            for status, count in rows.all():
                by_status[status] = count

            today = await db.scalar(
                select(func.count(Order.id)).where(
                    Order.delivery_datetime >= today_start,
                    Order.delivery_datetime < today_start + timedelta(days=1),
                )
            )

        return OrderStats(
            total_orders=sum(by_status.values()),
            by_status=by_status,
            today_deliveries=today or 0,
        )

    async def _load_order(self, db: AsyncSession, order_id: int, for_update: bool = False) -> Order:
        query = select(Order).where(Order.id == order_id).options(selectinload(Order.items))
        if for_update:
            query = query.with_for_update()
        result = await db.execute(query)
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFound(order_id)
        return order


order_service = OrderService()
