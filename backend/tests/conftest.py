"""
Test Configuration — Fixtures for async DB, test client, and seeded data.

Each test gets its own SQLite database file so the API, services and the
notification worker can open independent sessions against the same data.
"""

from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from api.deps import get_current_user, get_db
from api.main import app
from db.session import Base


@pytest.fixture
async def test_engine(tmp_path):
    """Create a per-test database engine and build all tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def seeded_db(test_db):
    """Seed an admin, one client with a 10% discount, a category and two corals."""
    from core.security import hash_password
    from db.models import Category, Client, Coral, User
    from inventory.stock import apply_stock_status

    admin = User(
        email="admin@fragglerock.test",
        name="Reef Admin",
        phone="+15550000001",
        password_hash=hash_password("AdminPass1!"),
        role="admin",
    )
    client_user = User(
        email="marina@example.com",
        name="Marina Reef",
        phone="+15550000002",
        password_hash=hash_password("ClientPass1!"),
        role="client",
    )
    test_db.add_all([admin, client_user])
    await test_db.flush()

    client = Client(
        user_id=client_user.user_id,
        name="Marina Reef",
        email="marina@example.com",
        phone="+15550000002",
        address="1 Lagoon Way",
        discount_rate=Decimal("10.00"),
    )
    category = Category(name="SPS", description="Small polyp stony corals")
    test_db.add_all([client, category])
    await test_db.flush()

    acropora = apply_stock_status(
        Coral(
            category_id=category.category_id,
            species_name="Acropora Millepora",
            scientific_name="Acropora millepora",
            quantity=10,
            price=Decimal("50.00"),
            minimum_stock=2,
        )
    )
    montipora = apply_stock_status(
        Coral(
            category_id=category.category_id,
            species_name="Montipora Cap",
            scientific_name="Montipora capricornis",
            quantity=3,
            price=Decimal("19.99"),
            minimum_stock=2,
        )
    )
    test_db.add_all([acropora, montipora])
    await test_db.commit()

    return {
        "admin": admin,
        "client_user": client_user,
        "client": client,
        "category": category,
        "acropora": acropora,
        "montipora": montipora,
        "admin_claims": {"sub": str(admin.user_id), "email": admin.email, "role": "admin"},
        "client_claims": {"sub": str(client_user.user_id), "email": client_user.email, "role": "client"},
    }


@pytest.fixture
def mock_user():
    """Authenticated user for API calls; tests may swap the claims in place."""
    return {"sub": "0", "email": "admin@fragglerock.test", "role": "admin"}


@pytest.fixture
async def client(test_db, mock_user):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    def override_get_current_user():
        return mock_user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
