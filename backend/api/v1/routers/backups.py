"""
Backups Router — backup history and on-demand runs.
"""

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_db, require_admin
from core.config import get_settings
from workers.backups import check_backup_freshness, list_backups

router = APIRouter(prefix="/api/v1/backups", tags=["backups"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class BackupResponse(BaseModel):
    backup_id: int
    filename: str
    backup_type: str
    size_bytes: int | None
    status: str
    error: str | None
    created_at: datetime
    completed_at: datetime | None

    model_config = {"from_attributes": True}


class BackupHealthResponse(BaseModel):
    healthy: bool
    latest: str | None
    age_hours: float | None


class BackupRunRequest(BaseModel):
    backup_type: Literal["full", "database", "images"] = "full"


class BackupRunResponse(BaseModel):
    task_id: str
    backup_type: str


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[BackupResponse])
async def get_backups(db: AsyncSession = Depends(get_db), user: dict = Depends(require_admin)):
    return await list_backups(db)


@router.get("/health", response_model=BackupHealthResponse)
async def backup_health(db: AsyncSession = Depends(get_db), user: dict = Depends(require_admin)):
    return await check_backup_freshness(db, get_settings().backup_max_age_hours)


@router.post("/run", response_model=BackupRunResponse, status_code=202)
async def trigger_backup(body: BackupRunRequest, user: dict = Depends(require_admin)):
    """Queue a backup on the Celery backups queue."""
    from workers.backups import run_backup

    task = run_backup.apply_async(kwargs={"backup_type": body.backup_type}, queue="backups")
    return BackupRunResponse(task_id=task.id, backup_type=body.backup_type)
