"""
Corals Router — stock items.

Stock status is recomputed from quantity and minimum_stock on every write.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_db, require_admin
from core.errors import NotFoundError, ValidationError
from db.models import Category, Coral, OrderItem
from db.session import transactional
from inventory.stock import apply_stock_status

router = APIRouter(prefix="/api/v1/corals", tags=["corals"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class Range(BaseModel):
    min: float
    max: float


class CoralCreate(BaseModel):
    category_id: int
    species_name: str = Field(..., min_length=1, max_length=255)
    scientific_name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    care_level: str | None = Field(None, pattern="^(easy|moderate|expert)$")
    growth_rate: str | None = Field(None, pattern="^(slow|moderate|fast)$")
    lighting_requirements: str | None = None
    water_flow: str | None = Field(None, pattern="^(low|medium|high)$")
    temperature: Range | None = None
    ph: Range | None = None
    salinity: Range | None = None
    image_url: str | None = None
    quantity: int = Field(0, ge=0)
    price: float = Field(..., ge=0)
    minimum_stock: int = Field(5, ge=0)


class CoralUpdate(BaseModel):
    category_id: int | None = None
    species_name: str | None = Field(None, min_length=1, max_length=255)
    scientific_name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = None
    care_level: str | None = Field(None, pattern="^(easy|moderate|expert)$")
    growth_rate: str | None = Field(None, pattern="^(slow|moderate|fast)$")
    lighting_requirements: str | None = None
    water_flow: str | None = Field(None, pattern="^(low|medium|high)$")
    temperature: Range | None = None
    ph: Range | None = None
    salinity: Range | None = None
    image_url: str | None = None
    quantity: int | None = Field(None, ge=0)
    price: float | None = Field(None, ge=0)
    minimum_stock: int | None = Field(None, ge=0)


class CoralResponse(BaseModel):
    coral_id: int
    category_id: int
    species_name: str
    scientific_name: str
    description: str | None
    care_level: str | None
    growth_rate: str | None
    lighting_requirements: str | None
    water_flow: str | None
    temperature: dict | None
    ph: dict | None
    salinity: dict | None
    image_url: str | None
    quantity: int
    price: float
    minimum_stock: int
    status: str
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


async def _get_coral(db: AsyncSession, coral_id: int) -> Coral:
    coral = await db.get(Coral, coral_id)
    if coral is None:
        raise NotFoundError("Coral not found")
    return coral


async def _ensure_category(db: AsyncSession, category_id: int) -> None:
    if await db.get(Category, category_id) is None:
        raise ValidationError("Category does not exist", errors=[{"field": "category_id", "message": "not found"}])


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[CoralResponse])
async def list_corals(
    category_id: int | None = None,
    status: str | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    query = select(Coral)
    if category_id is not None:
        query = query.where(Coral.category_id == category_id)
    if status:
        query = query.where(Coral.status == status)
    result = await db.execute(query.order_by(Coral.species_name).offset(skip).limit(limit))
    return result.scalars().all()


@router.get("/low-stock", response_model=list[CoralResponse])
async def list_low_stock(db: AsyncSession = Depends(get_db), user: dict = Depends(require_admin)):
    """Corals at or below their minimum stock threshold."""
    result = await db.execute(
        select(Coral).where(Coral.quantity <= Coral.minimum_stock).order_by(Coral.quantity.asc())
    )
    return result.scalars().all()


@router.get("/{coral_id}", response_model=CoralResponse)
async def get_coral(coral_id: int, db: AsyncSession = Depends(get_db), user: dict = Depends(get_current_user)):
    return await _get_coral(db, coral_id)


@router.post("/", response_model=CoralResponse, status_code=201)
async def create_coral(
    body: CoralCreate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_admin),
):
    await _ensure_category(db, body.category_id)
    coral = Coral(**body.model_dump())
    if str(user.get("sub", "")).isdigit() and int(user["sub"]) > 0:
        coral.created_by = int(user["sub"])
    apply_stock_status(coral)
    async with transactional(db):
        db.add(coral)
    return coral


@router.patch("/{coral_id}", response_model=CoralResponse)
async def update_coral(
    coral_id: int,
    body: CoralUpdate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_admin),
):
    coral = await _get_coral(db, coral_id)
    updates = body.model_dump(exclude_unset=True)
    if "category_id" in updates:
        await _ensure_category(db, updates["category_id"])
    async with transactional(db):
        for field, value in updates.items():
            setattr(coral, field, value)
        apply_stock_status(coral)
    return coral


@router.delete("/{coral_id}", status_code=204)
async def delete_coral(
    coral_id: int,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_admin),
):
    coral = await _get_coral(db, coral_id)
    ordered = await db.execute(select(OrderItem.order_item_id).where(OrderItem.coral_id == coral_id).limit(1))
    if ordered.first() is not None:
        raise ValidationError("Cannot delete a coral that appears on existing orders")
    async with transactional(db):
        await db.delete(coral)
