"""
Images Router — list and move coral images between category folders.

Images referenced by a coral cannot be moved or deleted.
"""

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_db, require_admin
from core.config import get_settings
from core.errors import ValidationError
from db.models import Coral
from storage.images import ImageStore

router = APIRouter(prefix="/api/v1/images", tags=["images"])


def get_image_store() -> ImageStore:
    return ImageStore(get_settings().uploads_dir)


# ─── Schemas ────────────────────────────────────────────────────────────────


class ImageResponse(BaseModel):
    filename: str
    category: str
    relative_path: str
    size: int
    type: str
    created_at: datetime
    in_use: bool


class MoveRequest(BaseModel):
    target_category: str = Field(..., min_length=1, max_length=100)


class MoveResponse(BaseModel):
    message: str
    new_path: str


async def _images_in_use(db: AsyncSession) -> set[str]:
    result = await db.execute(select(Coral.image_url).where(Coral.image_url.is_not(None)))
    return {row[0] for row in result.all()}


async def _ensure_not_in_use(db: AsyncSession, relative_path: str) -> None:
    if relative_path in await _images_in_use(db):
        raise ValidationError("Image is currently in use by a coral")


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[ImageResponse])
async def list_images(
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_admin),
    store: ImageStore = Depends(get_image_store),
):
    return store.list_images(in_use=await _images_in_use(db))


@router.post("/{category}/{filename}/move", response_model=MoveResponse)
async def move_image(
    category: str,
    filename: str,
    body: MoveRequest,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_admin),
    store: ImageStore = Depends(get_image_store),
):
    await _ensure_not_in_use(db, store.relative_path(category, filename))
    new_path = store.move_image(filename, category, body.target_category)
    return MoveResponse(message="Image moved successfully", new_path=new_path)


@router.delete("/{category}/{filename}", status_code=204)
async def delete_image(
    category: str,
    filename: str,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_admin),
    store: ImageStore = Depends(get_image_store),
):
    await _ensure_not_in_use(db, store.relative_path(category, filename))
    store.delete_image(filename, category)
