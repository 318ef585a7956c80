"""Product mirror routes: browsing, stock, manual sync, catalog connectivity."""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_mirror.api.deps import get_database, get_order_service, get_task_runner, require_admin_api_key
from catalog_mirror.db.models import Product
from catalog_mirror.ingest.meta_catalog import MetaCatalogClient
from catalog_mirror.orders.service import InvalidOrderRequest, OrderService, ProductNotFound
from catalog_mirror.worker.tasks import TaskRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/products", tags=["products"])


class ProductResponse(BaseModel):
    """Response model for a mirrored product."""
    id: int
    external_id: Optional[str]
    retailer_id: Optional[str]
    name: str
    description: Optional[str]
    price: float
    image_urls: List[str]
    stock: int
    is_active: bool
    synced_at: Optional[datetime]

    class Config:
        from_attributes = True


class ProductPage(BaseModel):
    items: List[ProductResponse]
    total: int
    page: int
    per_page: int


class StockUpdateRequest(BaseModel):
    """Request model for setting on-hand stock."""
    stock: int = Field(..., ge=0)


class SyncResponse(BaseModel):
    status: str  # done | failed | queued
    fetched: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: int = 0
    duplicates: int = 0
    error_message: Optional[str] = None
    error_details: List[dict] = []


@router.get("", response_model=ProductPage)
async def list_products(
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_database),
):
    """List mirrored products ordered by name."""
    conditions = []
    if is_active is not None:
        conditions.append(Product.is_active == is_active)
    if search:
        conditions.append(Product.name.ilike(f"%{search}%"))

    total = await db.scalar(select(func.count(Product.id)).where(*conditions))
    result = await db.execute(
        select(Product)
        .where(*conditions)
        .order_by(Product.name)
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    return ProductPage(
        items=[ProductResponse.model_validate(p) for p in result.scalars().all()],
        total=total or 0,
        page=page,
        per_page=per_page,
    )


@router.post("/sync", response_model=SyncResponse, dependencies=[Depends(require_admin_api_key)])
async def sync_products(runner: TaskRunner = Depends(get_task_runner)):
    """Run a catalog sync now (queued if one is already running)."""
    result = await runner.sync_entrypoint(trigger="manual")
    if result is None:
        return SyncResponse(status="queued")

    return SyncResponse(
        status=result.state.value,
        fetched=result.fetched,
        created=result.created,
        updated=result.updated,
        deleted=result.deleted,
        errors=result.errors,
        duplicates=result.duplicates,
        error_message=result.error_message,
        error_details=result.error_details,
    )


@router.get("/catalog/test-connection")
async def test_catalog_connection():
    """Check the upstream catalog credentials and return catalog info."""
    client = MetaCatalogClient()
    try:
        if not await client.test_connection():
            raise HTTPException(status_code=502, detail="Could not connect to the catalog API")
        return {"status": "connected", "catalog": await client.get_catalog_info()}
    finally:
        await client.close()


@router.get("/{product_id}", response_model=ProductResponse)
async def get_product(product_id: int, db: AsyncSession = Depends(get_database)):
    """Get one mirrored product."""
    product = await db.get(Product, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@router.patch(
    "/{product_id}/stock",
    response_model=ProductResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def set_product_stock(
    product_id: int,
    request: StockUpdateRequest,
    service: OrderService = Depends(get_order_service),
):
    """Set the locally owned stock of a product. Sync never changes it."""
    try:
        return await service.set_stock(product_id, request.stock)
    except ProductNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidOrderRequest as e:
        raise HTTPException(status_code=400, detail=str(e))
