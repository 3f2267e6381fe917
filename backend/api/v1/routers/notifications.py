"""
Notifications Router — operator view of the notification queue.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_db, require_admin
from notifications import queue

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class QueueCounts(BaseModel):
    pending: int
    processing: int
    completed_24h: int
    failed: int


class FailureResponse(BaseModel):
    job_id: UUID
    kind: str
    error: str | None
    attempts: int
    last_attempt_at: datetime | None
    next_attempt_at: datetime | None
    created_at: datetime


class QueueStatusResponse(BaseModel):
    status: QueueCounts
    recent_failures: list[FailureResponse]


class RetryRequest(BaseModel):
    job_ids: list[UUID] = Field(..., min_length=1)


class CountResponse(BaseModel):
    count: int


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/status", response_model=QueueStatusResponse)
async def get_queue_status(db: AsyncSession = Depends(get_db), user: dict = Depends(require_admin)):
    return await queue.queue_status(db)


@router.post("/retry", response_model=CountResponse)
async def retry_failed(body: RetryRequest, db: AsyncSession = Depends(get_db), user: dict = Depends(require_admin)):
    """Put failed jobs back to pending with a fresh attempt budget."""
    return CountResponse(count=await queue.reset_failed(db, body.job_ids))


@router.post("/cleanup", response_model=CountResponse)
async def cleanup(
    days: int = Query(30, ge=1),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_admin),
):
    """Delete completed jobs processed more than ``days`` ago."""
    return CountResponse(count=await queue.cleanup_completed(db, days))


@router.delete("/", response_model=CountResponse)
async def purge_all(db: AsyncSession = Depends(get_db), user: dict = Depends(require_admin)):
    return CountResponse(count=await queue.purge_all(db))
