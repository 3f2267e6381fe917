"""
Coral Manager API Dependencies

Dependency injection for DB sessions, auth and role checks.
"""

from collections.abc import AsyncGenerator

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from core.errors import AuthError, ForbiddenError
from db.models import Client, UserRole
from db.session import AsyncSessionLocal

settings = get_settings()
security = HTTPBearer(auto_error=False)

ADMIN_ROLES = {UserRole.ADMIN.value, UserRole.SUPERADMIN.value}


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict:
    """Decode JWT and return user payload. Bypassed in debug mode."""
    if settings.debug:
        return {
            "sub": "0",
            "email": "dev@coralmanager.local",
            "role": UserRole.SUPERADMIN.value,
        }

    if credentials is None:
        raise AuthError("Not authenticated")

    from core.security import decode_access_token

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise AuthError("Invalid or expired token")
    return payload


def is_admin(user: dict) -> bool:
    return user.get("role") in ADMIN_ROLES


async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if not is_admin(user):
        raise ForbiddenError("Admin access required")
    return user


async def get_client_for_user(db: AsyncSession, user: dict) -> Client | None:
    """The client account linked to a login, if any."""
    try:
        user_id = int(user.get("sub"))
    except (TypeError, ValueError):
        return None
    result = await db.execute(select(Client).where(Client.user_id == user_id))
    return result.scalar_one_or_none()


async def get_current_client(
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
) -> Client:
    client = await get_client_for_user(db, user)
    if client is None:
        raise ForbiddenError("No client account linked to this user")
    return client
