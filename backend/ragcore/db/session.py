"""
Database Session Management

Engine and session factory for the PostgreSQL catalog and indexes.

Lifecycle:
----------
RagCore.create() -> init_db()   connection verified, pgvector extension ensured
components       -> get_session_factory()() per unit of work
RagCore.health() -> check_db_health()
shutdown         -> close_db()  engine disposed, factory reset

Nothing here runs for STORAGE_BACKEND=memory, so the in-memory backend never
loads the database driver.
"""

from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool

from ragcore.core.config import settings
from ragcore.core.logging import get_logger

logger = get_logger(__name__)


def get_engine_config() -> dict[str, Any]:
    """
    Engine keyword arguments for the current APP_ENV.

    Development and production keep a queue pool of DB_POOL_SIZE connections
    (plus DB_MAX_OVERFLOW); every other environment uses NullPool so tests
    never share a connection.
    """
    config: dict[str, Any] = {
        "echo": settings.DB_ECHO,
        "pool_pre_ping": True,
        "connect_args": {"server_settings": {"application_name": settings.APP_NAME}},
    }

    if settings.is_development or settings.is_production:
        config.update({
            "poolclass": AsyncAdaptedQueuePool,
            "pool_size": settings.DB_POOL_SIZE,
            "max_overflow": settings.DB_MAX_OVERFLOW,
            "pool_timeout": 30,
            "pool_recycle": 7200 if settings.is_production else 3600,
        })
    else:
        config["poolclass"] = NullPool

    logger.info(
        "configuring_database_engine",
        environment=settings.APP_ENV,
        pool=config["poolclass"].__name__,
        pool_size=config.get("pool_size"),
    )
    return config


_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    """Process-wide engine for DATABASE_URL (postgresql+asyncpg://...)."""
    global _engine
    if _engine is None:
        _engine = create_async_engine(settings.DATABASE_URL, **get_engine_config())
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Session factory bound to the global engine.

    expire_on_commit=False keeps rows readable after commit; the catalog
    converts them to schemas outside the transaction.
    """
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            autoflush=False,
            expire_on_commit=False,
        )
    return _session_factory


async def init_db(create_tables: Optional[bool] = None) -> None:
    """
    Verify the connection and make sure the vector extension exists.

    Tables are created only in development (or when ``create_tables`` is
    True); deployed schemas come from the alembic migrations.
    """
    engine = get_engine()
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))

        if create_tables if create_tables is not None else settings.is_development:
            # registers the tables on Base.metadata
            from ragcore.db.base import Base
            import ragcore.models  # noqa: F401

            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("database_tables_created")

    except Exception as e:
        logger.error("database_initialization_failed", error=str(e), error_type=type(e).__name__)
        raise

    logger.info("database_initialized")


async def close_db() -> None:
    """Dispose of the engine; safe to call when it was never created."""
    global _engine, _session_factory
    if _engine is None:
        return

    try:
        await _engine.dispose()
        logger.info("database_connections_closed")
    except Exception as e:
        # shutting down anyway
        logger.error("database_closure_failed", error=str(e), error_type=type(e).__name__)
    finally:
        _engine = None
        _session_factory = None


async def check_db_health() -> bool:
    """True when a trivial query round-trips; failures are logged, not raised."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e), error_type=type(e).__name__)
        return False
