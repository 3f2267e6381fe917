"""
Auth Router — password login and current-user lookup.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_db
from core.errors import AuthError, NotFoundError
from core.security import create_access_token, verify_password
from db.models import User, UserStatus

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1)


class UserResponse(BaseModel):
    user_id: int
    email: str
    name: str
    phone: str | None
    role: str
    status: str

    model_config = {"from_attributes": True}


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/login", response_model=LoginResponse)
async def login(body: LoginRequest, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(User).where(func.lower(User.email) == body.email.strip().lower()))
    user = result.scalar_one_or_none()
    if user is None or not user.password_hash or not verify_password(body.password, user.password_hash):
        raise AuthError("Invalid email or password")
    if user.status != UserStatus.ACTIVE.value:
        raise AuthError("Account is inactive")

    token = create_access_token({"sub": str(user.user_id), "email": user.email, "role": user.role})
    return LoginResponse(access_token=token, user=UserResponse.model_validate(user))


@router.get("/me", response_model=UserResponse)
async def me(db: AsyncSession = Depends(get_db), user: dict = Depends(get_current_user)):
    try:
        user_id = int(user.get("sub"))
    except (TypeError, ValueError):
        raise NotFoundError("User not found")
    account = await db.get(User, user_id)
    if account is None:
        raise NotFoundError("User not found")
    return account
