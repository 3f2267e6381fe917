"""
Notification Dispatcher — turns a queued payload into outbound messages.

Every job is rendered against a fresh read of its domain rows:

  order_confirmation / status_update → the order's client
  bulletin                            → every active client user
  low_stock                           → every active admin
  client_registration                 → the new client (welcome + temporary password)

A job whose order, client or coral no longer exists is skipped and the
worker completes it without sending.
"""

from html import escape
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from core.security import decrypt
from db.models import Coral, Order, User, UserRole, UserStatus
from notifications.channels import EmailChannel, WhatsAppChannel
from notifications.payloads import (
    BulletinPayload,
    ClientRegistrationPayload,
    LowStockPayload,
    NotificationPayload,
    OrderConfirmationPayload,
    StatusUpdatePayload,
)
from orders.service import order_view

logger = structlog.get_logger()

ADMIN_ROLES = (UserRole.ADMIN.value, UserRole.SUPERADMIN.value)


class UnknownNotificationError(Exception):
    """Raised for a payload kind the dispatcher has no renderer for."""


def _label(status: str) -> str:
    return status.replace("_", " ")


def _items_html(items: list[dict[str, Any]]) -> str:
    if not items:
        return "<li>No items found</li>"
    return "\n".join(
        f"<li>{item['quantity']}x {escape(item.get('species_name') or 'Unknown coral')}</li>" for item in items
    )


def _signature() -> str:
    return f"<p>Thanks,</p><p>{escape(get_settings().business_name)}</p>"


class NotificationDispatcher:
    def __init__(self, email: EmailChannel | None = None, whatsapp: WhatsAppChannel | None = None):
        self.email = email or EmailChannel()
        self.whatsapp = whatsapp or WhatsAppChannel()

    async def dispatch(
        self,
        db: AsyncSession,
        payload: NotificationPayload,
        *,
        progression: list[str] | None = None,
        batch_size: int | None = None,
    ) -> bool:
        """
        Send the messages for one job.

        ``progression`` carries the collapsed statuses of a batched
        status-update group and ``batch_size`` the number of jobs merged into
        it. Returns False when the job's target no longer exists and nothing
        was sent.
        """
        if isinstance(payload, OrderConfirmationPayload):
            return await self._order_confirmation(db, payload)
        if isinstance(payload, StatusUpdatePayload):
            return await self._status_update(db, payload, progression, batch_size)
        if isinstance(payload, BulletinPayload):
            return await self._bulletin(db, payload)
        if isinstance(payload, LowStockPayload):
            return await self._low_stock(db, payload)
        if isinstance(payload, ClientRegistrationPayload):
            return await self._client_registration(payload)
        raise UnknownNotificationError(f"Unknown notification kind: {getattr(payload, 'kind', payload)!r}")

    async def _deliver(self, email: str | None, phone: str | None, subject: str, html: str, text: str) -> None:
        if email:
            await self.email.send(email, subject, html)
        if phone:
            await self.whatsapp.send(phone, text)

    # ─── Orders ────────────────────────────────────────────────────────────

    async def _load_order(self, db: AsyncSession, order_id: int) -> dict[str, Any] | None:
        result = await db.execute(
            select(Order).where(Order.order_id == order_id).execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            logger.info("notifications.order_missing", order_id=order_id)
            return None
        view = order_view(order)
        if not view["client"]:
            logger.info("notifications.client_missing", order_id=order_id)
            return None
        return view

    async def _order_confirmation(self, db: AsyncSession, payload: OrderConfirmationPayload) -> bool:
        order = await self._load_order(db, payload.order_id)
        if order is None:
            return False
        client = order["client"]

        text = (
            f"Thank you for your order #{order['order_id']}! "
            "Your order has been received and is being processed."
        )
        pickup = ""
        if payload.preferred_pickup_date:
            pickup = f"<li>Preferred Pickup Date: {payload.preferred_pickup_date:%d %b %Y}</li>"
        html = f"""
        <h2>Order Confirmation</h2>
        <p>{escape(text)}</p>
        <p>Order Details:</p>
        <ul>
          <li>Total Amount: ${payload.total_amount:.2f}</li>
          <li>Status: {escape(_label(payload.status))}</li>
          {pickup}
        </ul>
        <h3>Items:</h3>
        <ul>{_items_html(order["items"])}</ul>
        <p>We'll notify you when your order status changes.</p>
        {_signature()}
        """
        await self._deliver(client.get("email"), client.get("phone"), "Order Confirmation", html, text)
        return True

    async def _status_update(
        self,
        db: AsyncSession,
        payload: StatusUpdatePayload,
        progression: list[str] | None,
        batch_size: int | None = None,
    ) -> bool:
        order = await self._load_order(db, payload.order_id)
        if order is None:
            return False
        client = order["client"]
        order_id = order["order_id"]

        if progression and len(progression) > 1:
            text = (
                f"Your order #{order_id} progressed from {_label(progression[0])} "
                f"to {_label(progression[-1])}"
            )
            detail = (
                f"<p>{escape(' → '.join(_label(status) for status in progression))}</p>"
                f"<p><small>({batch_size or len(progression)} status updates were batched into this notification)</small></p>"
            )
        else:
            text = f"Your order #{order_id} status has been updated to: {_label(order['status'])}"
            detail = ""

        html = f"""
        <h2>Order Status Update</h2>
        <p>Dear {escape(client.get('name') or '')},</p>
        <p>{escape(text)}</p>
        {detail}
        <h3>Order Summary:</h3>
        <ul>{_items_html(order["items"])}</ul>
        {_signature()}
        """
        subject = f"Order #{order_id} Status Update for {client.get('name')}"
        await self._deliver(client.get("email"), client.get("phone"), subject, html, text)
        return True

    # ─── Broadcasts ────────────────────────────────────────────────────────

    async def _bulletin(self, db: AsyncSession, payload: BulletinPayload) -> bool:
        result = await db.execute(
            select(User).where(
                User.role == UserRole.CLIENT.value,
                User.status == UserStatus.ACTIVE.value,
            )
        )
        users = list(result.scalars().all())
        if not users:
            logger.info("notifications.bulletin_no_recipients", bulletin_id=payload.bulletin_id)
            return False

        subject = f"{payload.priority.title()} Bulletin: {payload.title}"
        text = f"{payload.title}\n\n{payload.content}"
        html = f"<h2>{escape(payload.title)}</h2><p>{escape(payload.content)}</p>{_signature()}"
        for user in users:
            await self._deliver(user.email, user.phone, subject, html, text)
        logger.info("notifications.bulletin_sent", bulletin_id=payload.bulletin_id, recipients=len(users))
        return True

    async def _low_stock(self, db: AsyncSession, payload: LowStockPayload) -> bool:
        coral = await db.get(Coral, payload.coral_id, populate_existing=True)
        if coral is None:
            logger.info("notifications.coral_missing", coral_id=payload.coral_id)
            return False

        result = await db.execute(
            select(User).where(User.role.in_(ADMIN_ROLES), User.status == UserStatus.ACTIVE.value)
        )
        admins = list(result.scalars().all())
        if not admins:
            logger.warning("notifications.no_admins", coral_id=coral.coral_id)
            return False

        text = (
            f"Low stock alert for {coral.species_name}. "
            f"Current quantity: {coral.quantity} (Minimum: {coral.minimum_stock})"
        )
        html = f"<h2>Low Stock Alert</h2><p>{escape(text)}</p>"
        for admin in admins:
            await self._deliver(admin.email, admin.phone, "Low Stock Alert", html, text)
        return True

    async def _client_registration(self, payload: ClientRegistrationPayload) -> bool:
        settings = get_settings()
        password = decrypt(payload.temporary_password_encrypted) if payload.temporary_password_encrypted else None
        login_url = f"{settings.frontend_url.rstrip('/')}/login"

        credentials = ""
        if password:
            credentials = (
                f"<p>Your temporary password is: <strong>{escape(password)}</strong></p>"
                "<p>Please change it after your first login.</p>"
            )
        html = f"""
        <h2>Welcome to {escape(settings.business_name)}</h2>
        <p>Dear {escape(payload.name)},</p>
        <p>An account has been created for you. Sign in with your email address {escape(payload.email)}.</p>
        {credentials}
        <p><a href="{escape(login_url)}">Log in</a></p>
        {_signature()}
        """
        await self.email.send(payload.email, f"Welcome to {settings.business_name}", html)
        return True
