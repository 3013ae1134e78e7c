"""
Session store configuration.
Uses SQLAlchemy async with SQLModel for ORM.

SQLite (aiosqlite) is the default for development and tests; any async
SQLAlchemy URL works in production, where the pool is health-checked so a
dropped connection surfaces as a retriable store error instead of a hang.
"""
import logging
from typing import AsyncGenerator, Dict, Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlmodel import SQLModel

from sessionguard.config import settings

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> Dict[str, Any]:
    """Pool options per backend. SQLite keeps SQLAlchemy's defaults."""
    options: Dict[str, Any] = {"echo": settings.DATABASE_ECHO}
    if make_url(url).get_backend_name() == "sqlite":
        return options

    options.update(
        pool_pre_ping=True,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_recycle=settings.DATABASE_POOL_RECYCLE_SECONDS,
    )
    return options


engine = create_async_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

# Session factory; objects stay readable after commit
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def init_db() -> None:
    """Create the session, tenant, user and audit tables if missing."""
    async with engine.begin() as conn:
        # Import all models to register them with SQLModel
        from sessionguard.models import user, session, audit  # noqa: F401
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info(f"Session store ready ({make_url(settings.DATABASE_URL).get_backend_name()})")


async def close_db() -> None:
    """Dispose the engine so pooled connections close immediately."""
    await engine.dispose()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency that provides an async database session.

    Services commit their own units of work; anything left pending when
    the request finishes is committed here, and rolled back on error.
    """
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
