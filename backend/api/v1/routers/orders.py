"""
Orders Router — order lifecycle, payment flags, archive and invoicing.

Clients see and cancel only their own orders; every other mutation is
admin-only. Archived orders are served from their frozen snapshots.
"""

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_client_for_user, get_current_user, get_db, is_admin, require_admin
from core.errors import ForbiddenError, NotFoundError, ValidationError
from db.models import Client, OrderStatus
from db.session import transactional
from integrations.xero import XeroService, get_xero_service
from orders import service
from orders.service import OrderLine

router = APIRouter(prefix="/api/v1/orders", tags=["orders"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class OrderItemCreate(BaseModel):
    coral_id: int
    quantity: int = Field(..., ge=1)
    price: float | None = Field(None, ge=0, description="Unit price shown to the client")


class OrderCreate(BaseModel):
    items: list[OrderItemCreate] = Field(..., min_length=1)
    preferred_pickup_date: datetime | None = None
    notes: str | None = None
    client_id: int | None = Field(None, description="Admins may place orders for a client")


class StatusUpdate(BaseModel):
    status: OrderStatus


class OrderItemResponse(BaseModel):
    coral_id: int | None
    species_name: str | None
    scientific_name: str | None = None
    quantity: int
    price_at_order: float
    subtotal: float


class OrderClientResponse(BaseModel):
    client_id: int | None = None
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    address: str | None = None


class OrderResponse(BaseModel):
    order_id: int
    client_id: int | None
    status: str
    total_amount: float
    paid: bool
    archived: bool
    stock_restored: bool
    notes: str | None
    preferred_pickup_date: datetime | None
    invoice_id: str | None
    invoice_status: str | None
    created_at: datetime
    updated_at: datetime
    client: OrderClientResponse | None
    items: list[OrderItemResponse]


class InvoiceResponse(BaseModel):
    order_id: int
    invoice_id: str | None
    invoice_number: str | None = None
    status: str | None = None
    total: float | None = None
    url: str | None = None


class PurgeResponse(BaseModel):
    deleted: int


# ─── Helpers ────────────────────────────────────────────────────────────────


async def _load_visible_order(db: AsyncSession, order_id: int, user: dict):
    order = await service.get_order(db, order_id)
    if is_admin(user):
        return order
    client = await get_client_for_user(db, user)
    if client is None or not service.client_owns_order(order, client):
        raise NotFoundError("Order not found")
    return order


def _view(order) -> OrderResponse:
    return OrderResponse.model_validate(service.order_view(order))


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[OrderResponse])
async def list_orders(
    include_archived: bool = True,
    client_id: int | None = None,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    if not is_admin(user):
        client = await get_client_for_user(db, user)
        if client is None:
            raise ForbiddenError("No client account linked to this user")
        client_id = client.client_id
    orders = await service.list_orders(db, client_id=client_id, include_archived=include_archived)
    return [_view(order) for order in orders]


@router.post("/", response_model=OrderResponse, status_code=201)
async def create_order(
    body: OrderCreate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    if is_admin(user) and body.client_id is not None:
        client = await db.get(Client, body.client_id)
        if client is None:
            raise NotFoundError("Client not found")
    else:
        client = await get_client_for_user(db, user)
        if client is None:
            raise ValidationError("Orders must be placed for a client", errors=[{"field": "client_id", "message": "required"}])

    lines = [OrderLine(coral_id=item.coral_id, quantity=item.quantity, expected_price=item.price) for item in body.items]
    order = await service.create_order(
        db,
        client,
        lines,
        preferred_pickup_date=body.preferred_pickup_date,
        notes=body.notes,
    )
    return _view(order)


@router.post("/purge-archived", response_model=PurgeResponse)
async def purge_archived(db: AsyncSession = Depends(get_db), user: dict = Depends(require_admin)):
    return PurgeResponse(deleted=await service.purge_archived(db))


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(order_id: int, db: AsyncSession = Depends(get_db), user: dict = Depends(get_current_user)):
    return _view(await _load_visible_order(db, order_id, user))


@router.patch("/{order_id}/status", response_model=OrderResponse)
async def update_status(
    order_id: int,
    body: StatusUpdate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_admin),
):
    order = await service.get_order(db, order_id)
    order = await service.update_order_status(db, order, body.status)
    return _view(order)


@router.post("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(order_id: int, db: AsyncSession = Depends(get_db), user: dict = Depends(get_current_user)):
    order = await _load_visible_order(db, order_id, user)
    order = await service.cancel_order(db, order)
    return _view(order)


@router.delete("/{order_id}", status_code=204)
async def delete_order(order_id: int, db: AsyncSession = Depends(get_db), user: dict = Depends(require_admin)):
    order = await service.get_order(db, order_id)
    await service.delete_order(db, order)


@router.post("/{order_id}/archive", response_model=OrderResponse)
async def archive_order(order_id: int, db: AsyncSession = Depends(get_db), user: dict = Depends(require_admin)):
    order = await service.get_order(db, order_id)
    order = await service.archive_order(db, order)
    return _view(await service.get_order(db, order.order_id))


@router.post("/{order_id}/paid", response_model=OrderResponse)
async def mark_paid(order_id: int, db: AsyncSession = Depends(get_db), user: dict = Depends(require_admin)):
    order = await service.get_order(db, order_id)
    return _view(await service.mark_paid(db, order))


@router.post("/{order_id}/unpaid", response_model=OrderResponse)
async def mark_unpaid(order_id: int, db: AsyncSession = Depends(get_db), user: dict = Depends(require_admin)):
    order = await service.get_order(db, order_id)
    return _view(await service.mark_unpaid(db, order))


@router.post("/{order_id}/invoice", response_model=InvoiceResponse)
async def generate_invoice(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_admin),
    xero: XeroService = Depends(get_xero_service),
):
    """Raise a DRAFT Xero invoice for the order and remember its id."""
    order = await service.get_order(db, order_id)
    if order.status == OrderStatus.CANCELLED.value:
        raise ValidationError("Cannot invoice a cancelled order")

    invoice = await xero.generate_invoice(service.order_view(order))
    async with transactional(db):
        order.invoice_id = invoice["id"]
        order.invoice_status = invoice["status"]
    return InvoiceResponse(
        order_id=order_id,
        invoice_id=invoice["id"],
        invoice_number=invoice.get("invoice_number"),
        status=invoice.get("status"),
        total=invoice.get("total"),
        url=invoice.get("url"),
    )
