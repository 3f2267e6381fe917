"""
Clients Router — client accounts and their logins.

Creating a client also creates its login with a temporary password, which is
delivered by a queued client_registration notification.
"""

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_client, get_db, require_admin
from core.errors import ConflictError, NotFoundError
from core.security import encrypt, generate_temporary_password, hash_password
from db.models import Client, NotificationKind, Order, User, UserRole, UserStatus
from db.session import transactional
from notifications.payloads import ClientRegistrationPayload
from notifications.queue import notify_safely

router = APIRouter(prefix="/api/v1/clients", tags=["clients"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class ClientCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=255)
    phone: str | None = Field(None, max_length=50)
    address: str | None = None
    discount_rate: float = Field(0, ge=0, le=100)


class ClientUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=255)
    email: str | None = Field(None, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=255)
    phone: str | None = Field(None, max_length=50)
    address: str | None = None
    discount_rate: float | None = Field(None, ge=0, le=100)


class ClientResponse(BaseModel):
    client_id: int
    user_id: int | None
    name: str
    email: str
    phone: str | None
    address: str | None
    discount_rate: float
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ClientCreatedResponse(ClientResponse):
    temporary_password: str


class PasswordResetResponse(BaseModel):
    client_id: int
    temporary_password: str


async def _get_client(db: AsyncSession, client_id: int) -> Client:
    client = await db.get(Client, client_id, populate_existing=True)
    if client is None:
        raise NotFoundError("Client not found")
    return client


async def _ensure_unique_email(db: AsyncSession, email: str, exclude_client_id: int | None = None) -> None:
    normalized = email.strip().lower()
    query = select(Client.client_id).where(func.lower(Client.email) == normalized)
    if exclude_client_id is not None:
        query = query.where(Client.client_id != exclude_client_id)
    taken = (await db.execute(query)).first() is not None
    if not taken and exclude_client_id is None:
        taken = (await db.execute(select(User.user_id).where(func.lower(User.email) == normalized))).first() is not None
    if taken:
        raise ConflictError("A client with this email already exists")


async def _queue_registration(db: AsyncSession, client: Client, password: str) -> None:
    await notify_safely(
        db,
        NotificationKind.CLIENT_REGISTRATION,
        ClientRegistrationPayload(
            client_id=client.client_id,
            email=client.email,
            name=client.name,
            temporary_password_encrypted=encrypt(password),
        ),
    )


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[ClientResponse])
async def list_clients(db: AsyncSession = Depends(get_db), user: dict = Depends(require_admin)):
    result = await db.execute(select(Client).order_by(Client.name))
    return result.scalars().all()


@router.get("/me", response_model=ClientResponse)
async def get_my_client(client: Client = Depends(get_current_client)):
    return client


@router.get("/{client_id}", response_model=ClientResponse)
async def get_client(client_id: int, db: AsyncSession = Depends(get_db), user: dict = Depends(require_admin)):
    return await _get_client(db, client_id)


@router.post("/", response_model=ClientCreatedResponse, status_code=201)
async def create_client(
    body: ClientCreate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_admin),
):
    email = body.email.strip()
    await _ensure_unique_email(db, email)
    password = generate_temporary_password()

    async with transactional(db):
        account = User(
            email=email,
            name=body.name,
            phone=body.phone,
            password_hash=hash_password(password),
            role=UserRole.CLIENT.value,
            status=UserStatus.ACTIVE.value,
        )
        db.add(account)
        await db.flush()
        client = Client(
            user_id=account.user_id,
            name=body.name,
            email=email,
            phone=body.phone,
            address=body.address,
            discount_rate=body.discount_rate,
        )
        db.add(client)

    client_id = client.client_id
    await _queue_registration(db, client, password)
    client = await _get_client(db, client_id)
    return ClientCreatedResponse(
        **ClientResponse.model_validate(client).model_dump(),
        temporary_password=password,
    )


@router.patch("/{client_id}", response_model=ClientResponse)
async def update_client(
    client_id: int,
    body: ClientUpdate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_admin),
):
    client = await _get_client(db, client_id)
    updates = body.model_dump(exclude_unset=True)
    if updates.get("email"):
        updates["email"] = updates["email"].strip()
        await _ensure_unique_email(db, updates["email"], exclude_client_id=client_id)

    async with transactional(db):
        for field, value in updates.items():
            setattr(client, field, value)
        if client.user is not None:
            for field in ("name", "email", "phone"):
                if field in updates:
                    setattr(client.user, field, updates[field])
    return client


@router.post("/{client_id}/regenerate-password", response_model=PasswordResetResponse)
async def regenerate_password(
    client_id: int,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_admin),
):
    client = await _get_client(db, client_id)
    if client.user is None:
        raise NotFoundError("Client has no login account")
    password = generate_temporary_password()
    async with transactional(db):
        client.user.password_hash = hash_password(password)
    await _queue_registration(db, client, password)
    return PasswordResetResponse(client_id=client_id, temporary_password=password)


@router.delete("/{client_id}", status_code=204)
async def delete_client(
    client_id: int,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_admin),
):
    """Remove a client and its login. Their orders keep existing without a client."""
    client = await _get_client(db, client_id)
    async with transactional(db):
        account = client.user
        await db.execute(update(Order).where(Order.client_id == client_id).values(client_id=None))
        await db.delete(client)
        if account is not None:
            await db.delete(account)
