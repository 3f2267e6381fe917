"""
Bulletins Router — announcements broadcast to clients.

Publishing a bulletin with send_notification enabled queues one bulletin
notification; notified_at guards against queueing it twice.
"""

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_db, is_admin, require_admin
from core.errors import NotFoundError
from db.models import Bulletin, BulletinStatus, NotificationKind
from db.session import transactional
from notifications.payloads import BulletinPayload
from notifications.queue import notify_safely

router = APIRouter(prefix="/api/v1/bulletins", tags=["bulletins"])

BulletinType = Literal["news", "announcement", "promotion", "maintenance", "new_stock"]
Priority = Literal["low", "medium", "high"]


# ─── Schemas ────────────────────────────────────────────────────────────────


class BulletinCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., min_length=1)
    bulletin_type: BulletinType
    priority: Priority = "low"
    status: BulletinStatus = BulletinStatus.DRAFT
    publish_date: datetime | None = None
    expiry_date: datetime | None = None
    send_notification: bool = True
    attachments: list[str] = []


class BulletinUpdate(BaseModel):
    title: str | None = Field(None, min_length=1, max_length=255)
    content: str | None = Field(None, min_length=1)
    bulletin_type: BulletinType | None = None
    priority: Priority | None = None
    status: BulletinStatus | None = None
    publish_date: datetime | None = None
    expiry_date: datetime | None = None
    send_notification: bool | None = None
    attachments: list[str] | None = None


class BulletinResponse(BaseModel):
    bulletin_id: int
    title: str
    content: str
    bulletin_type: str
    priority: str
    status: str
    publish_date: datetime
    expiry_date: datetime | None
    send_notification: bool
    notified_at: datetime | None
    attachments: list[str] | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


async def _get_bulletin(db: AsyncSession, bulletin_id: int) -> Bulletin:
    bulletin = await db.get(Bulletin, bulletin_id, populate_existing=True)
    if bulletin is None:
        raise NotFoundError("Bulletin not found")
    return bulletin


def _should_notify(bulletin: Bulletin) -> bool:
    return (
        bulletin.status == BulletinStatus.PUBLISHED.value
        and bulletin.send_notification
        and bulletin.notified_at is None
    )


async def _publish_notification(db: AsyncSession, bulletin: Bulletin) -> None:
    payload = BulletinPayload(
        bulletin_id=bulletin.bulletin_id,
        title=bulletin.title,
        priority=bulletin.priority,
        bulletin_type=bulletin.bulletin_type,
        content=bulletin.content,
    )
    job = await notify_safely(db, NotificationKind.BULLETIN, payload)
    if job is not None:
        async with transactional(db):
            bulletin.notified_at = datetime.utcnow()


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[BulletinResponse])
async def list_bulletins(db: AsyncSession = Depends(get_db), user: dict = Depends(get_current_user)):
    """Admins see everything; clients see published, unexpired bulletins."""
    query = select(Bulletin)
    if not is_admin(user):
        now = datetime.utcnow()
        query = query.where(
            Bulletin.status == BulletinStatus.PUBLISHED.value,
            Bulletin.publish_date <= now,
            or_(Bulletin.expiry_date.is_(None), Bulletin.expiry_date > now),
        )
    result = await db.execute(query.order_by(Bulletin.publish_date.desc()))
    return result.scalars().all()


@router.get("/{bulletin_id}", response_model=BulletinResponse)
async def get_bulletin(bulletin_id: int, db: AsyncSession = Depends(get_db), user: dict = Depends(get_current_user)):
    bulletin = await _get_bulletin(db, bulletin_id)
    if not is_admin(user) and bulletin.status != BulletinStatus.PUBLISHED.value:
        raise NotFoundError("Bulletin not found")
    return bulletin


@router.post("/", response_model=BulletinResponse, status_code=201)
async def create_bulletin(
    body: BulletinCreate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_admin),
):
    values = body.model_dump()
    values["status"] = body.status.value
    values["publish_date"] = body.publish_date or datetime.utcnow()
    bulletin = Bulletin(**values)
    if str(user.get("sub", "")).isdigit() and int(user["sub"]) > 0:
        bulletin.created_by = int(user["sub"])
    async with transactional(db):
        db.add(bulletin)

    bulletin_id = bulletin.bulletin_id
    if _should_notify(bulletin):
        await _publish_notification(db, bulletin)
    return await _get_bulletin(db, bulletin_id)


@router.patch("/{bulletin_id}", response_model=BulletinResponse)
async def update_bulletin(
    bulletin_id: int,
    body: BulletinUpdate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_admin),
):
    bulletin = await _get_bulletin(db, bulletin_id)
    updates = body.model_dump(exclude_unset=True)
    if "status" in updates and updates["status"] is not None:
        updates["status"] = BulletinStatus(updates["status"]).value
    async with transactional(db):
        for field, value in updates.items():
            setattr(bulletin, field, value)

    if _should_notify(bulletin):
        await _publish_notification(db, bulletin)
    return await _get_bulletin(db, bulletin_id)


@router.delete("/{bulletin_id}", status_code=204)
async def delete_bulletin(bulletin_id: int, db: AsyncSession = Depends(get_db), user: dict = Depends(require_admin)):
    bulletin = await _get_bulletin(db, bulletin_id)
    async with transactional(db):
        await db.delete(bulletin)
