"""Pytest configuration."""

import os
import uuid

SELF_WEBSITE_ID = "00000000-0000-4000-8000-000000000001"

# Ensure test environment
os.environ.setdefault("TM_IDENTITY_SECRET", "test-identity-secret")
os.environ.setdefault("TM_DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("TM_DEBUG", "false")
os.environ.setdefault("TM_ADMIN_SETUP_KEY", "test-setup-key")
os.environ.setdefault("TM_MAINTENANCE_ENABLED", "false")
os.environ.setdefault("TM_SELF_WEBSITE_ID", SELF_WEBSITE_ID)
os.environ.setdefault("TM_BOT_VELOCITY_THRESHOLD_PER_MINUTE", "600")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.background import drain
from app.main import app as application
from app.middleware.auth import APIKey, generate_api_key
from app.models import database
from app.models.database import get_db
from app.models.tables import Base, Website

CHROME_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@pytest.fixture
async def session_maker():
    """Fresh in-memory database per test, also used by background work."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    previous = database._async_session
    database._async_session = maker
    yield maker
    database._async_session = previous
    await engine.dispose()


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
async def client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    application.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(
        transport=ASGITransport(app=application),
        base_url="http://testserver",
        headers={"User-Agent": CHROME_UA},
    ) as c:
        yield c
    await drain()
    application.dependency_overrides.clear()


@pytest.fixture
async def website(db):
    site = Website(
        website_id=uuid.uuid4(),
        domain="example.com",
        name="Example",
        allowed_domains=["example.com"],
        proxy_mode="none",
        api_rate_limit_per_minute=5000,
    )
    db.add(site)
    await db.commit()
    return site


@pytest.fixture
def make_api_key(db):
    """Insert an API key; returns (raw_key, row)."""

    async def _make(website_id, scopes=("ingest",), rate_limit=1000, **columns):
        raw_key, key_hash, key_prefix = generate_api_key()
        row = APIKey(
            website_id=website_id,
            key_hash=key_hash,
            key_prefix=key_prefix,
            name="test",
            scopes=list(scopes),
            rate_limit_per_minute=rate_limit,
            **columns,
        )
        db.add(row)
        await db.commit()
        return raw_key, row

    return _make


async def count_rows(db: AsyncSession, model, *where) -> int:
    stmt = select(func.count()).select_from(model)
    if where:
        stmt = stmt.where(*where)
    return (await db.execute(stmt)).scalar_one()
