"""FastAPI dependencies."""

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_mirror.config import settings
from catalog_mirror.db.session import get_db
from catalog_mirror.orders.service import OrderService, order_service
from catalog_mirror.worker.tasks import TaskRunner, task_runner


async def get_database() -> AsyncSession:
    """Dependency for database session."""
    async for session in get_db():
        yield session
        break  # Only yield once, as FastAPI handles the session lifecycle


def get_order_service() -> OrderService:
    return order_service


def get_task_runner() -> TaskRunner:
    return task_runner


async def require_admin_api_key(
    x_admin_api_key: str = Header(..., alias="X-Admin-API-Key")
) -> None:
    """
    Dependency to require admin API key for protected endpoints.

    Raises:
        HTTPException: 503 if no key is configured, 403 if the key is wrong
    """
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key not configured"
        )

    if x_admin_api_key != settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key"
        )
