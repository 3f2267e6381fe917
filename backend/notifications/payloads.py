"""
Notification payloads — one shape per notification kind.

Payloads form a tagged union discriminated on ``kind`` so every job can be
validated on enqueue and matched exhaustively on dispatch.
"""

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from db.models import NotificationKind


class OrderConfirmationPayload(BaseModel):
    kind: Literal["order_confirmation"] = "order_confirmation"
    order_id: int
    total_amount: float
    status: str
    preferred_pickup_date: datetime | None = None


class StatusUpdatePayload(BaseModel):
    kind: Literal["status_update"] = "status_update"
    order_id: int
    status_at_queue: str


class BulletinPayload(BaseModel):
    kind: Literal["bulletin"] = "bulletin"
    bulletin_id: int
    title: str
    priority: str
    bulletin_type: str
    content: str


class LowStockPayload(BaseModel):
    kind: Literal["low_stock"] = "low_stock"
    coral_id: int
    species_name: str
    quantity: int
    minimum_stock: int


class ClientRegistrationPayload(BaseModel):
    kind: Literal["client_registration"] = "client_registration"
    client_id: int
    email: str
    name: str
    temporary_password_encrypted: str | None = None


NotificationPayload = Annotated[
    Union[
        OrderConfirmationPayload,
        StatusUpdatePayload,
        BulletinPayload,
        LowStockPayload,
        ClientRegistrationPayload,
    ],
    Field(discriminator="kind"),
]

_payload_adapter = TypeAdapter(NotificationPayload)


def parse_payload(kind: NotificationKind | str, data: dict | BaseModel) -> NotificationPayload:
    """Validate raw payload data against the shape registered for ``kind``."""
    kind_value = kind.value if isinstance(kind, NotificationKind) else str(kind)
    raw = data.model_dump() if isinstance(data, BaseModel) else dict(data or {})
    if raw.get("kind", kind_value) != kind_value:
        raise ValueError(f"Payload kind {raw.get('kind')!r} does not match job kind {kind_value!r}")
    raw["kind"] = kind_value
    return _payload_adapter.validate_python(raw)
