"""
Test configuration and fixtures
"""

import os
import tempfile
import pytest
import pytest_asyncio
from typing import AsyncGenerator
from unittest.mock import AsyncMock

# Set test environment before anything imports the settings
_db_dir = tempfile.mkdtemp(prefix="tourpay-tests-")
os.environ["APP_ENV"] = "testing"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_db_dir, 'tourpay.db')}"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-that-is-at-least-32-characters"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_PUBLISHABLE_KEY"] = "pk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["CHAPA_SECRET_KEY"] = "CHASECK_TEST-dummy"
os.environ["CHAPA_WEBHOOK_SECRET"] = "chapa_test_secret"
os.environ["LOG_LEVEL"] = "WARNING"

from sqlalchemy.ext.asyncio import AsyncSession
from httpx import AsyncClient, ASGITransport

# Import all models BEFORE creating tables
from tourpay.core.database import Base, engine, async_session
from tourpay.core.redis import redis_manager
from tourpay.core.security import create_access_token
from tourpay.models import User, UserRole, Tour, TourStatus
from tourpay.services.notification_service import notification_service

from tests.factories import create_user, create_tour


@pytest_asyncio.fixture(autouse=True)
async def database():
    """Fresh schema per test"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Outstanding fire-and-forget notifications must land before the tables go
    await notification_service.drain()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def rate_limiter(monkeypatch):
    """Redis is not available in tests; the limiter always lets requests through"""
    mock = AsyncMock(return_value=(False, 1))
    monkeypatch.setattr(redis_manager, "is_rate_limited", mock)
    return mock


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        yield session


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from tourpay.main import app

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac


@pytest_asyncio.fixture
async def test_user() -> User:
    return await create_user("traveller")


@pytest_asyncio.fixture
async def other_user() -> User:
    return await create_user("stranger")


@pytest_asyncio.fixture
async def test_admin() -> User:
    return await create_user("admin", role=UserRole.ADMIN)


@pytest_asyncio.fixture
async def test_tour() -> Tour:
    return await create_tour(max_group_size=10)


@pytest_asyncio.fixture
async def draft_tour() -> Tour:
    return await create_tour(title="Unreleased Tour", status=TourStatus.DRAFT)


def auth_headers(user: User) -> dict:
    token = create_access_token(data={"sub": str(user.id), "role": user.role.value})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers_user(test_user):
    return auth_headers(test_user)


@pytest.fixture
def auth_headers_other(other_user):
    return auth_headers(other_user)


@pytest.fixture
def auth_headers_admin(test_admin):
    return auth_headers(test_admin)
