"""
NutriSaath Backend: Test Configuration (conftest.py)
======================================================

What:  Shared pytest fixtures for the whole suite.
How:   The environment is pointed at SQLite and test secrets BEFORE the
       nutrisaath package is imported, since settings and module singletons
       are built at import time.

Fixtures:
    mock_db_session      AsyncMock standing in for an AsyncSession
    db_session           Real AsyncSession on in-memory SQLite (tables created)
    fresh_throttle_store Empty in-process throttle store for each test (autouse)
    identity / auth_header
                         A verified caller and a valid bearer header for it
    test_client          httpx AsyncClient bound to the app via ASGITransport
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET"] = "test-secret-that-is-at-least-32-characters-long"
os.environ["GEMINI_API_KEY"] = "test-key-not-real"
os.environ["THROTTLE_BACKEND"] = "memory"
os.environ["LOG_LEVEL"] = "WARNING"

from typing import AsyncGenerator, Dict  # noqa: E402
from unittest.mock import AsyncMock, MagicMock  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from nutrisaath.database import Base  # noqa: E402
from nutrisaath.models import ChatSession, Product  # noqa: E402,F401
from nutrisaath.schemas.auth import Identity  # noqa: E402
from nutrisaath.services.throttle import MemoryThrottleStore  # noqa: E402
from nutrisaath.services.token_service import TokenService  # noqa: E402


@pytest.fixture
def mock_db_session():
    """
    A mock async session.

    Usage:
        mock_db_session.execute.return_value.scalar_one_or_none.return_value = row
    """
    session = AsyncMock()
    session.execute = AsyncMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    session.add = MagicMock()
    return session


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """An AsyncSession on a private in-memory SQLite database."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session

    await engine.dispose()


@pytest.fixture(autouse=True)
def fresh_throttle_store(monkeypatch) -> MemoryThrottleStore:
    """Route throttles read the module-level store at call time; swap in an empty one."""
    store = MemoryThrottleStore()
    monkeypatch.setattr("nutrisaath.services.throttle.throttle_store", store)
    return store


@pytest.fixture
def identity() -> Identity:
    return Identity(subject_id="user-123", email="asha@example.com")


@pytest.fixture
def auth_header(identity) -> Dict[str, str]:
    token = TokenService().issue(identity)
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def test_client():
    """
    Async HTTP client talking to the app in-process.

    Usage:
        async def test_health(test_client):
            response = await test_client.get("/health")
    """
    from nutrisaath.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
