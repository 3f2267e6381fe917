"""
Order Lifecycle — order/stock state machine.

  pending → confirmed → processing → ready_for_pickup → completed
  pending | confirmed → cancelled

Rules:
  - Any status may be written except on cancelled or archived orders;
    cancelling is allowed only from pending or confirmed.
  - Cancelling restores every line item's quantity and sets stock_restored.
  - Only cancelled or completed orders can be deleted; deleting a cancelled
    order restores stock unless it was already restored.
  - Only completed, paid orders can be archived. Archiving freezes client and
    line-item data into JSON snapshots and severs the live relations.

Every stock mutation runs in the same transaction as the order change that
causes it. Notifications are queued after commit and never fail the request.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from core.errors import InvalidTransitionError, NotFoundError, ValidationError
from db.models import Client, Coral, NotificationKind, Order, OrderItem, OrderStatus
from db.session import transactional
from inventory.stock import decrement_stock, is_low_stock, restore_stock
from notifications.payloads import LowStockPayload, OrderConfirmationPayload, StatusUpdatePayload
from notifications.queue import notify_safely

logger = structlog.get_logger()

ORDER_FLOW = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.READY_FOR_PICKUP,
    OrderStatus.COMPLETED,
)
CANCELLABLE_STATUSES = {OrderStatus.PENDING, OrderStatus.CONFIRMED}
DELETABLE_STATUSES = {OrderStatus.CANCELLED, OrderStatus.COMPLETED}
PAYABLE_STATUSES = set(ORDER_FLOW)

CENT = Decimal("0.01")
PRICE_TOLERANCE = Decimal("0.01")


@dataclass
class OrderLine:
    """A requested line item; expected_price is the client-side unit price."""

    coral_id: int
    quantity: int
    expected_price: Decimal | None = None


# ──────────────────────────────────────────────────────────────────────────
# Pricing & transition rules
# ──────────────────────────────────────────────────────────────────────────


def discounted_price(price: Any, discount_rate: Any) -> Decimal:
    """Unit price after the client's percentage discount, rounded half-up to cents."""
    unit = Decimal(str(price))
    rate = Decimal(str(discount_rate or 0))
    if rate > 0:
        unit = unit * (Decimal(100) - rate) / Decimal(100)
    return unit.quantize(CENT, rounding=ROUND_HALF_UP)


def check_transition(order: Order, new_status: OrderStatus) -> None:
    """Raise InvalidTransitionError unless ``order`` may move to ``new_status``."""
    current = OrderStatus(order.status)
    if order.archived:
        raise InvalidTransitionError("Cannot modify archived orders")
    if current == OrderStatus.CANCELLED:
        raise InvalidTransitionError("Cannot change status of cancelled orders. Only deletion is allowed.")
    if new_status == OrderStatus.CANCELLED:
        if current not in CANCELLABLE_STATUSES:
            raise InvalidTransitionError("Order cannot be cancelled in its current status")


# ──────────────────────────────────────────────────────────────────────────
# Reads
# ──────────────────────────────────────────────────────────────────────────


async def get_order(db: AsyncSession, order_id: int) -> Order:
    result = await db.execute(
        select(Order).where(Order.order_id == order_id).execution_options(populate_existing=True)
    )
    order = result.scalar_one_or_none()
    if order is None:
        raise NotFoundError("Order not found")
    return order


async def list_orders(
    db: AsyncSession,
    *,
    client_id: int | None = None,
    include_archived: bool = True,
) -> list[Order]:
    query = select(Order)
    if client_id is not None:
        query = query.where(Order.client_id == client_id)
    if not include_archived:
        query = query.where(Order.archived.is_(False))
    result = await db.execute(query.order_by(Order.created_at.desc(), Order.order_id.desc()))
    return list(result.scalars().all())


def client_owns_order(order: Order, client: Client) -> bool:
    if order.client_id is not None:
        return order.client_id == client.client_id
    snapshot = order.archived_client_data or {}
    return snapshot.get("client_id") == client.client_id


def snapshot_client(client: Client | None) -> dict[str, Any] | None:
    if client is None:
        return None
    return {
        "client_id": client.client_id,
        "name": client.name,
        "email": client.email,
        "phone": client.phone,
        "address": client.address,
    }


def snapshot_items(order: Order) -> list[dict[str, Any]]:
    return [
        {
            "coral_id": item.coral_id,
            "species_name": item.coral.species_name if item.coral else None,
            "scientific_name": item.coral.scientific_name if item.coral else None,
            "quantity": item.quantity,
            "price_at_order": float(item.price_at_order),
            "subtotal": float(item.subtotal),
        }
        for item in order.items
    ]


def order_view(order: Order) -> dict[str, Any]:
    """Serializable order; archived orders read client and items from their snapshots."""
    if order.archived:
        client = order.archived_client_data
        items = order.archived_items_data or []
    else:
        client = snapshot_client(order.client)
        items = snapshot_items(order)
    return {
        "order_id": order.order_id,
        "client_id": order.client_id,
        "status": order.status,
        "total_amount": float(order.total_amount),
        "paid": order.paid,
        "archived": order.archived,
        "stock_restored": order.stock_restored,
        "notes": order.notes,
        "preferred_pickup_date": order.preferred_pickup_date,
        "invoice_id": order.invoice_id,
        "invoice_status": order.invoice_status,
        "created_at": order.created_at,
        "updated_at": order.updated_at,
        "client": client,
        "items": items,
    }


# ──────────────────────────────────────────────────────────────────────────
# Stock helpers
# ──────────────────────────────────────────────────────────────────────────


async def _lock_corals(db: AsyncSession, coral_ids: list[int]) -> dict[int, Coral]:
    """Fetch fresh coral rows, row-locked where the store supports it."""
    if not coral_ids:
        return {}
    result = await db.execute(
        select(Coral)
        .where(Coral.coral_id.in_(coral_ids))
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return {coral.coral_id: coral for coral in result.scalars().all()}


async def _lock_order(db: AsyncSession, order_id: int) -> Order:
    """Re-read an order under a row lock so guards see the committed state."""
    result = await db.execute(
        select(Order)
        .where(Order.order_id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    order = result.scalar_one_or_none()
    if order is None:
        raise NotFoundError("Order not found")
    return order


async def _restore_order_stock(db: AsyncSession, order: Order) -> None:
    corals = await _lock_corals(db, [item.coral_id for item in order.items])
    for item in order.items:
        coral = corals.get(item.coral_id)
        if coral is None:
            logger.warning("orders.restore_missing_coral", order_id=order.order_id, coral_id=item.coral_id)
            continue
        restore_stock(coral, item.quantity)
    order.stock_restored = True


async def _queue_status_update(db: AsyncSession, order: Order) -> None:
    await notify_safely(
        db,
        NotificationKind.STATUS_UPDATE,
        StatusUpdatePayload(order_id=order.order_id, status_at_queue=order.status),
        delay=get_settings().status_update_delay_seconds,
    )


# ──────────────────────────────────────────────────────────────────────────
# Commands
# ──────────────────────────────────────────────────────────────────────────


async def create_order(
    db: AsyncSession,
    client: Client,
    lines: list[OrderLine],
    *,
    preferred_pickup_date: datetime | None = None,
    notes: str | None = None,
) -> Order:
    """
    Validate stock and pricing for every line, then insert the order and
    decrement stock in one transaction.

    Raises:
      ValidationError — empty order, duplicate coral, insufficient stock, tampered price
      NotFoundError   — unknown coral
    """
    if not lines:
        raise ValidationError("Order must contain at least one item")
    coral_ids = [line.coral_id for line in lines]
    if len(set(coral_ids)) != len(coral_ids):
        raise ValidationError("Each coral may appear only once per order")

    low_stock: list[LowStockPayload] = []
    async with transactional(db):
        corals = await _lock_corals(db, coral_ids)
        if len(corals) != len(coral_ids):
            raise NotFoundError("One or more corals not found")

        total = Decimal("0")
        items: list[OrderItem] = []
        for line in lines:
            coral = corals[line.coral_id]
            if coral.quantity < line.quantity:
                raise ValidationError(f"Insufficient stock for {coral.species_name}")

            unit_price = discounted_price(coral.price, client.discount_rate)
            if line.expected_price is not None:
                if abs(Decimal(str(line.expected_price)) - unit_price) > PRICE_TOLERANCE:
                    raise ValidationError(f"Invalid price submitted for {coral.species_name}")

            subtotal = (unit_price * line.quantity).quantize(CENT)
            total += subtotal
            items.append(
                OrderItem(
                    coral_id=coral.coral_id,
                    coral=coral,
                    quantity=line.quantity,
                    price_at_order=unit_price,
                    subtotal=subtotal,
                )
            )
            decrement_stock(coral, line.quantity)
            if is_low_stock(coral):
                low_stock.append(
                    LowStockPayload(
                        coral_id=coral.coral_id,
                        species_name=coral.species_name,
                        quantity=coral.quantity,
                        minimum_stock=coral.minimum_stock,
                    )
                )

        order = Order(
            client_id=client.client_id,
            status=OrderStatus.PENDING.value,
            total_amount=total,
            preferred_pickup_date=preferred_pickup_date,
            notes=notes,
            items=items,
        )
        db.add(order)

    order_id = order.order_id
    logger.info("orders.created", order_id=order_id, client_id=order.client_id, total=str(total))

    confirmation = OrderConfirmationPayload(
        order_id=order_id,
        total_amount=float(order.total_amount),
        status=order.status,
        preferred_pickup_date=order.preferred_pickup_date,
    )
    await notify_safely(db, NotificationKind.ORDER_CONFIRMATION, confirmation)
    for payload in low_stock:
        await notify_safely(db, NotificationKind.LOW_STOCK, payload)
    return await get_order(db, order_id)


async def update_order_status(db: AsyncSession, order: Order, new_status: OrderStatus) -> Order:
    """Move an order along the lifecycle; cancelling restores stock."""
    new_status = OrderStatus(new_status)
    if new_status == OrderStatus.CANCELLED:
        return await cancel_order(db, order)

    order_id = order.order_id
    check_transition(order, new_status)
    async with transactional(db):
        order = await _lock_order(db, order_id)
        check_transition(order, new_status)
        previous = order.status
        order.status = new_status.value

    logger.info("orders.status_changed", order_id=order_id, from_status=previous, to_status=order.status)
    await _queue_status_update(db, order)
    return await get_order(db, order_id)


async def cancel_order(db: AsyncSession, order: Order) -> Order:
    """Cancel a pending/confirmed order and return its stock in one transaction.

    The order row is locked and re-checked so concurrent cancels restore
    stock once.
    """
    order_id = order.order_id
    check_transition(order, OrderStatus.CANCELLED)
    async with transactional(db):
        order = await _lock_order(db, order_id)
        check_transition(order, OrderStatus.CANCELLED)
        await _restore_order_stock(db, order)
        order.status = OrderStatus.CANCELLED.value

    logger.info("orders.cancelled", order_id=order_id)
    await _queue_status_update(db, order)
    return await get_order(db, order_id)


async def delete_order(db: AsyncSession, order: Order) -> None:
    """Delete a cancelled or completed order. Completed orders keep stock deducted."""
    if OrderStatus(order.status) not in DELETABLE_STATUSES:
        raise InvalidTransitionError("Only cancelled or completed orders can be deleted")

    order_id = order.order_id
    async with transactional(db):
        order = await _lock_order(db, order_id)
        if OrderStatus(order.status) not in DELETABLE_STATUSES:
            raise InvalidTransitionError("Only cancelled or completed orders can be deleted")
        if order.status == OrderStatus.CANCELLED.value and not order.stock_restored:
            await _restore_order_stock(db, order)
        await db.delete(order)

    logger.info("orders.deleted", order_id=order_id)


async def archive_order(db: AsyncSession, order: Order) -> Order:
    """Freeze a completed, paid order into snapshots. Irreversible."""
    if order.archived:
        raise InvalidTransitionError("Order is already archived")
    if order.status != OrderStatus.COMPLETED.value:
        raise InvalidTransitionError("Only completed orders can be archived")
    if not order.paid:
        raise InvalidTransitionError("Cannot archive unpaid orders")

    async with transactional(db):
        order.archived_client_data = snapshot_client(order.client)
        order.archived_items_data = snapshot_items(order)
        order.client = None
        order.client_id = None
        order.items.clear()
        order.archived = True

    logger.info("orders.archived", order_id=order.order_id)
    return order


async def mark_paid(db: AsyncSession, order: Order) -> Order:
    if OrderStatus(order.status) not in PAYABLE_STATUSES:
        raise InvalidTransitionError("Cannot mark order as paid in its current status")
    async with transactional(db):
        order.paid = True
    return order


async def mark_unpaid(db: AsyncSession, order: Order) -> Order:
    if order.archived:
        raise InvalidTransitionError("Cannot modify payment status of archived orders")
    async with transactional(db):
        order.paid = False
    return order


async def purge_archived(db: AsyncSession) -> int:
    """Delete every archived order. Archived orders own no line items."""
    async with transactional(db):
        result = await db.execute(
            delete(Order).where(Order.archived.is_(True)).execution_options(synchronize_session="fetch")
        )
    count = result.rowcount or 0
    logger.info("orders.purged_archived", count=count)
    return count
