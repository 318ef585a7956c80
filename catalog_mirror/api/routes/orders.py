"""Order API endpoints."""

import logging
from datetime import date, datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, field_validator

from catalog_mirror.api.deps import get_order_service
from catalog_mirror.config import settings
from catalog_mirror.db.models import ORDER_STATUSES
from catalog_mirror.orders.service import (
    CustomerInfo,
    DeliveryInfo,
    InsufficientStock,
    InvalidState,
    OrderCosts,
    OrderError,
    OrderLine,
    OrderNotFound,
    OrderService,
    ProductNotFound,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders", tags=["orders"])


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _http_error(e: OrderError) -> HTTPException:
    if isinstance(e, (ProductNotFound, OrderNotFound)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (InsufficientStock, InvalidState)):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


# Request models
class OrderLineRequest(BaseModel):
    """One requested order line."""
    product_id: int
    quantity: int = Field(..., ge=1)


class CreateOrderRequest(BaseModel):
    """Request model for placing an order."""
    customer_name: str = Field(..., min_length=1, max_length=255)
    customer_phone: str = Field(..., min_length=1, max_length=20)
    customer_email: Optional[str] = Field(None, max_length=255)
    delivery_address: str = Field(..., min_length=1, max_length=500)
    delivery_datetime: datetime
    gift_message: Optional[str] = None
    materials_cost: float = Field(0, ge=0)
    shipping_cost: float = Field(0, ge=0)
    internal_notes: Optional[str] = None
    items: List[OrderLineRequest] = Field(..., min_length=1)

    @field_validator("delivery_datetime")
    @classmethod
    def delivery_in_future(cls, v: datetime) -> datetime:
        v = _as_naive_utc(v)
        if v <= datetime.utcnow():
            raise ValueError("delivery_datetime must be in the future")
        return v


class UpdateOrderRequest(BaseModel):
    """Request model for editing an order. Only sent fields are changed."""
    customer_name: Optional[str] = Field(None, min_length=1, max_length=255)
    customer_phone: Optional[str] = Field(None, min_length=1, max_length=20)
    customer_email: Optional[str] = Field(None, max_length=255)
    delivery_address: Optional[str] = Field(None, min_length=1, max_length=500)
    delivery_datetime: Optional[datetime] = None
    gift_message: Optional[str] = None
    internal_notes: Optional[str] = None
    status: Optional[str] = None
    materials_cost: Optional[float] = Field(None, ge=0)
    shipping_cost: Optional[float] = Field(None, ge=0)

    @field_validator(
        "customer_name",
        "customer_phone",
        "delivery_address",
        "status",
        "materials_cost",
        "shipping_cost",
    )
    @classmethod
    def not_null(cls, v):
        # Omit a field to leave it unchanged; these columns cannot be cleared
        if v is None:
            raise ValueError("field cannot be null")
        return v

    @field_validator("status")
    @classmethod
    def status_known(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in ORDER_STATUSES:
            raise ValueError(f"status must be one of: {', '.join(ORDER_STATUSES)}")
        return v

    @field_validator("delivery_datetime")
    @classmethod
    def delivery_naive(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_naive_utc(v) if v is not None else v


# Response models
class OrderItemResponse(BaseModel):
    """Response model for an order line."""
    id: int
    product_id: Optional[int]
    product_name: str
    quantity: int
    unit_price: float
    subtotal: float

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    """Response model for an order."""
    id: int
    customer_name: str
    customer_phone: str
    customer_email: Optional[str]
    delivery_address: str
    delivery_datetime: Optional[datetime]
    gift_message: Optional[str]
    subtotal: float
    materials_cost: float
    shipping_cost: float
    total: float
    status: str
    internal_notes: Optional[str]
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemResponse]

    class Config:
        from_attributes = True


class OrderPage(BaseModel):
    items: List[OrderResponse]
    total: int
    page: int
    per_page: int


class OrderStatsResponse(BaseModel):
    total_orders: int
    by_status: dict[str, int]
    today_deliveries: int


@router.get("", response_model=OrderPage)
async def list_orders(
    status: Optional[str] = None,
    customer_name: Optional[str] = None,
    delivery_date: Optional[date] = None,
    page: int = Query(1, ge=1),
    service: OrderService = Depends(get_order_service),
):
    """List orders by delivery time."""
    per_page = settings.orders_page_size
    orders, total = await service.list_orders(
        status=status,
        customer_name=customer_name,
        delivery_date=delivery_date,
        page=page,
        per_page=per_page,
    )
    return OrderPage(
        items=[OrderResponse.model_validate(o) for o in orders],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.post("", response_model=OrderResponse, status_code=201)
async def create_order(
    request: CreateOrderRequest,
    service: OrderService = Depends(get_order_service),
):
    """Place an order, reserving stock for every line."""
    try:
        order = await service.place_order(
            customer=CustomerInfo(
                name=request.customer_name,
                phone=request.customer_phone,
                email=request.customer_email,
            ),
            delivery=DeliveryInfo(
                address=request.delivery_address,
                delivery_datetime=request.delivery_datetime,
                gift_message=request.gift_message,
            ),
            costs=OrderCosts(
                materials_cost=request.materials_cost,
                shipping_cost=request.shipping_cost,
                internal_notes=request.internal_notes,
            ),
            items=[OrderLine(product_id=i.product_id, quantity=i.quantity) for i in request.items],
        )
    except OrderError as e:
        logger.info(f"Order rejected: {e}")
        raise _http_error(e)
    return order


@router.get("/stats", response_model=OrderStatsResponse)
async def get_order_stats(service: OrderService = Depends(get_order_service)):
    """Order counts by status and today's deliveries."""
    stats = await service.order_stats()
    return OrderStatsResponse(
        total_orders=stats.total_orders,
        by_status=stats.by_status,
        today_deliveries=stats.today_deliveries,
    )


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(order_id: int, service: OrderService = Depends(get_order_service)):
    """Get a specific order."""
    try:
        return await service.get_order(order_id)
    except OrderError as e:
        raise _http_error(e)


@router.patch("/{order_id}", response_model=OrderResponse)
async def update_order(
    order_id: int,
    request: UpdateOrderRequest,
    service: OrderService = Depends(get_order_service),
):
    """Edit an order. Stock is not touched."""
    try:
        return await service.update_order(order_id, request.model_dump(exclude_unset=True))
    except OrderError as e:
        raise _http_error(e)


@router.delete("/{order_id}")
async def cancel_order(order_id: int, service: OrderService = Depends(get_order_service)):
    """Cancel a pending order and give its stock back."""
    try:
        await service.cancel_order(order_id)
    except OrderError as e:
        raise _http_error(e)
    return {"status": "cancelled", "order_id": order_id}
