"""
Startup bootstrap: create missing tables and the initial admin account.
"""

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from core.security import hash_password
from db.models import User, UserRole, UserStatus
from db.session import Base

logger = structlog.get_logger()


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def ensure_admin(db: AsyncSession, email: str, password: str, name: str = "Administrator") -> User | None:
    """Create the admin user if no account uses ``email`` yet.

    Returns the new user, or None when nothing was created.
    """
    if not email or not password:
        return None

    result = await db.execute(select(User).where(func.lower(User.email) == email.lower()))
    if result.scalar_one_or_none() is not None:
        return None

    user = User(
        email=email.lower(),
        name=name,
        password_hash=hash_password(password),
        role=UserRole.ADMIN.value,
        status=UserStatus.ACTIVE.value,
    )
    db.add(user)
    await db.commit()
    logger.info("bootstrap.admin_created", email=user.email)
    return user
