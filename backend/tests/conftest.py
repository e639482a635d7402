"""
Test fixtures for the credit engine test suite.

Each test gets its own SQLite file built from the ORM metadata, so services
can commit and roll back for real. Postgres-only behaviour (row locks,
SQLSTATE codes) is covered by the unit tests that mock the session.
"""

import uuid
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from credit_engine.core.cache import InMemoryBalanceCache, get_balance_cache
from credit_engine.core.config import settings
from credit_engine.core.database import get_db
from credit_engine.main import create_app
from credit_engine.models import Base
from credit_engine.services import config_resolver
from credit_engine.services.allocation_service import allocate_credits

# ---------------------------------------------------------------------------
# Per-test database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'credits.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    """Session the code under test works with."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def fresh_db(session_factory):
    """Independent session for asserting on committed state."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def cache():
    return InMemoryBalanceCache()


@pytest.fixture(autouse=True)
def _no_redis(monkeypatch):
    monkeypatch.setattr(settings, "BALANCE_CACHE_ENABLED", False)


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def app(session_factory, cache):
    """FastAPI app with the test database and an in-memory cache injected."""
    application = create_app()

    async def override_get_db():
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_db] = override_get_db
    application.dependency_overrides[get_balance_cache] = lambda: cache
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncClient:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def caller_headers(tenant_id: uuid.UUID, role: str = "member", user_id: uuid.UUID | None = None) -> dict:
    return {
        "X-Tenant-ID": str(tenant_id),
        "X-User-ID": str(user_id or uuid.uuid4()),
        "X-User-Role": role,
    }


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def tenant_id() -> uuid.UUID:
    return uuid.uuid4()


async def fund(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    amount,
    entity_id: uuid.UUID | None = None,
    **kwargs,
):
    """Allocate credits and fail loudly if the allocation is rejected."""
    result = await allocate_credits(db, tenant_id, Decimal(str(amount)), entity_id=entity_id, **kwargs)
    assert result.ok, result.details
    return result


async def add_config(
    db: AsyncSession,
    level: str,
    code: str,
    tenant_id: uuid.UUID | None = None,
    **fields,
):
    config = await config_resolver.set_config(db, level, code, fields, tenant_id=tenant_id)
    await db.commit()
    return config
