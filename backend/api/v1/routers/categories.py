"""
Categories Router — CRUD for coral categories.

Names are unique case-insensitively.
"""

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_db, require_admin
from core.errors import ConflictError, NotFoundError, ValidationError
from db.models import Category, Coral
from db.session import transactional

router = APIRouter(prefix="/api/v1/categories", tags=["categories"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = None


class CategoryUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=100)
    description: str | None = None


class CategoryResponse(BaseModel):
    category_id: int
    name: str
    description: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


async def _ensure_unique_name(db: AsyncSession, name: str, exclude_id: int | None = None) -> None:
    query = select(Category.category_id).where(func.lower(Category.name) == name.strip().lower())
    if exclude_id is not None:
        query = query.where(Category.category_id != exclude_id)
    if (await db.execute(query)).first() is not None:
        raise ConflictError(f"Category '{name.strip()}' already exists")


async def _get_category(db: AsyncSession, category_id: int) -> Category:
    category = await db.get(Category, category_id)
    if category is None:
        raise NotFoundError("Category not found")
    return category


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[CategoryResponse])
async def list_categories(db: AsyncSession = Depends(get_db), user: dict = Depends(get_current_user)):
    result = await db.execute(select(Category).order_by(Category.name))
    return result.scalars().all()


@router.get("/{category_id}", response_model=CategoryResponse)
async def get_category(category_id: int, db: AsyncSession = Depends(get_db), user: dict = Depends(get_current_user)):
    return await _get_category(db, category_id)


@router.post("/", response_model=CategoryResponse, status_code=201)
async def create_category(
    body: CategoryCreate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_admin),
):
    await _ensure_unique_name(db, body.name)
    category = Category(name=body.name.strip(), description=body.description)
    async with transactional(db):
        db.add(category)
    return category


@router.patch("/{category_id}", response_model=CategoryResponse)
async def update_category(
    category_id: int,
    body: CategoryUpdate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_admin),
):
    category = await _get_category(db, category_id)
    updates = body.model_dump(exclude_unset=True)
    if updates.get("name"):
        await _ensure_unique_name(db, updates["name"], exclude_id=category_id)
        updates["name"] = updates["name"].strip()
    async with transactional(db):
        for field, value in updates.items():
            setattr(category, field, value)
    return category


@router.delete("/{category_id}", status_code=204)
async def delete_category(
    category_id: int,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_admin),
):
    category = await _get_category(db, category_id)
    in_use = await db.execute(select(Coral.coral_id).where(Coral.category_id == category_id).limit(1))
    if in_use.first() is not None:
        raise ValidationError("Cannot delete a category that still has corals")
    async with transactional(db):
        await db.delete(category)
