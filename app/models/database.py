"""Async database engine and session management."""

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from app.config import get_settings

# Lazy initialization: engine created on first use, not at import time.
# This prevents alembic (which runs synchronously) from crashing when
# other modules import from here at the module level.
_engine = None
_async_session = None


def _get_engine():
    global _engine
    if _engine is None:
        settings = get_settings()
        options = {"echo": settings.debug, "pool_pre_ping": True}
        if settings.database_url.startswith("postgresql"):
            # Every beacon holds a connection for the session upsert + event insert
            options.update(pool_size=20, max_overflow=10, pool_recycle=1800)
        _engine = create_async_engine(settings.database_url, **options)
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Session factory for work that outlives a request (background tasks, maintenance)."""
    global _async_session
    if _async_session is None:
        _async_session = async_sessionmaker(
            _get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session


async def get_db() -> AsyncSession:
    """FastAPI dependency, yields an async session."""
    session_maker = get_session_maker()
    async with session_maker() as session:
        yield session


async def dispose_engine():
    global _engine, _async_session
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _async_session = None


def dialect_name(db: AsyncSession) -> str:
    return db.get_bind().dialect.name


def upsert(db: AsyncSession, table):
    """INSERT construct with ON CONFLICT support for the session's dialect.

    Production runs on PostgreSQL; the test-suite runs on SQLite. Both
    dialects expose on_conflict_do_nothing / on_conflict_do_update / excluded.
    """
    if dialect_name(db) == "postgresql":
        return postgresql.insert(table)
    return sqlite.insert(table)
