"""Sync run history endpoints."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_mirror.api.deps import get_database
from catalog_mirror.db.models import SyncRun

router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncRunResponse(BaseModel):
    """Response model for a sync run."""
    id: int
    run_id: str
    trigger: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime]
    fetched: int
    created: int
    updated: int
    deleted: int
    errors: int
    error_message: Optional[str]
    duration_seconds: Optional[float]

    class Config:
        from_attributes = True


@router.get("/runs", response_model=List[SyncRunResponse])
async def list_sync_runs(
    status: Optional[str] = None,
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_database),
):
    """List recent sync runs, newest first."""
    query = select(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(limit)
    if status:
        query = query.where(SyncRun.status == status)

    result = await db.execute(query)
    return result.scalars().all()


@router.get("/runs/{sync_run_id}", response_model=SyncRunResponse)
async def get_sync_run(sync_run_id: int, db: AsyncSession = Depends(get_database)):
    """Get a specific sync run."""
    sync_run = await db.get(SyncRun, sync_run_id)
    if not sync_run:
        raise HTTPException(status_code=404, detail="Sync run not found")
    return sync_run
