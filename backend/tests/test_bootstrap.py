import pytest
from sqlalchemy import select

from core.security import verify_password
from db.bootstrap import create_schema, ensure_admin
from db.models import User


@pytest.mark.asyncio
class TestBootstrap:
    async def test_create_schema_is_idempotent(self, test_engine):
        await create_schema(test_engine)
        await create_schema(test_engine)

    async def test_admin_created_once(self, test_db):
        user = await ensure_admin(test_db, "Owner@Reef.test", "OwnerPass1!")
        assert user is not None
        assert user.role == "admin"
        assert user.email == "owner@reef.test"
        assert verify_password("OwnerPass1!", user.password_hash)

        assert await ensure_admin(test_db, "owner@reef.test", "another") is None
        result = await test_db.execute(select(User))
        assert len(result.scalars().all()) == 1

    async def test_missing_credentials_skip(self, test_db):
        assert await ensure_admin(test_db, "", "") is None
        assert await ensure_admin(test_db, "owner@reef.test", "") is None
