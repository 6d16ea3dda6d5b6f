"""
BuzzSync Backend — Test Configuration (conftest.py)
=====================================================

What:  Shared pytest fixtures for the whole suite.
How:   Storage-backed properties (atomicity, polling, radius boundary, pool
       bound) run against a real SQLite file through aiosqlite; pure logic
       runs against AsyncMock pools and connections.

Fixture Hierarchy (all function-scoped):
    ├── pool:             ConnectionPoolManager on a fresh SQLite file, schema created
    ├── seed:             async helper inserting a row into any core table
    ├── mock_connection:  AsyncMock connection with a MagicMock transaction
    ├── mock_pool:        MagicMock pool handing out mock_connection
    ├── test_app:         create_app(pool=pool) with identity overridden to an admin
    └── test_client:      HTTPX AsyncClient over ASGITransport
"""

import os

# Override settings for testing BEFORE any app imports
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test.db"
os.environ["AUTH_BASE_URL"] = "http://auth.test"
os.environ["LOG_LEVEL"] = "WARNING"

from typing import Any, Dict
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from buzzsync.database import Base, ConnectionPoolManager
from buzzsync.dependencies import get_current_identity, get_transaction_identity
from buzzsync.services.identity_service import Identity

# Registers every table on Base.metadata
from buzzsync.models.venue import Venue  # noqa: F401
from buzzsync.models.vibe_check import VibeCheck  # noqa: F401
from buzzsync.models.promotion import Promotion  # noqa: F401
from buzzsync.models.notification import Notification  # noqa: F401


def sqlite_url(path) -> str:
    return f"sqlite+aiosqlite:///{path}"


# ══════════════════════════════════════════════════════════════════════════
# Storage Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def pool(tmp_path):
    """
    A real pool on a throwaway SQLite file with the schema created.

    Usage:
        async def test_something(pool):
            async with pool.connection() as conn:
                ...
    """
    manager = ConnectionPoolManager(
        sqlite_url(tmp_path / "buzzsync.db"),
        pool_size=5,
        max_overflow=0,
        pool_timeout=2.0,
        idle_timeout=300,
        pre_ping=False,
    )
    await manager.init()
    async with manager.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield manager
    await manager.shutdown()


@pytest_asyncio.fixture
async def seed(pool):
    """
    Insert one row and return the values used (id included).

    Usage:
        venue = await seed("venues", name="Aurora", venue_type="bar")
    """

    async def _seed(table: str, **values: Any) -> Dict[str, Any]:
        values.setdefault("id", uuid4())
        async with pool.connection() as conn:
            await conn.execute(Base.metadata.tables[table].insert().values(**values))
            await conn.commit()
        return values

    return _seed


@pytest.fixture
def mock_connection():
    """
    AsyncMock connection whose begin() hands back `conn.trans`.

    Usage:
        mock_connection.execute.side_effect = ...
        mock_connection.trans.rollback.assert_awaited_once()
    """
    trans = MagicMock()
    trans.is_active = True
    trans.commit = AsyncMock()
    trans.rollback = AsyncMock()

    conn = AsyncMock()
    conn.begin = AsyncMock(return_value=trans)
    conn.execute = AsyncMock()
    conn.invalidate = AsyncMock()
    conn.trans = trans
    return conn


@pytest.fixture
def mock_pool(mock_connection):
    pool = MagicMock()
    pool.acquire = AsyncMock(return_value=mock_connection)
    pool.release = AsyncMock()
    return pool


# ══════════════════════════════════════════════════════════════════════════
# API Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def admin_identity():
    return Identity(user_id="user-admin", role="admin")


@pytest_asyncio.fixture
async def test_app(pool, admin_identity):
    from buzzsync.main import create_app

    app = create_app(pool=pool)
    app.dependency_overrides[get_current_identity] = lambda: admin_identity
    app.dependency_overrides[get_transaction_identity] = lambda: admin_identity
    yield app
    await app.state.identity_service.aclose()


@pytest_asyncio.fixture
async def test_client(test_app):
    """
    Usage:
        async def test_health(test_client):
            response = await test_client.get("/health")
            assert response.status_code == 200
    """
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
