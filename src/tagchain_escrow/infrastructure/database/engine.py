"""Async engine and session factory.

The services never share a session. They take the factory built here and
open one short transaction per step (commit the transition, attach the
proof), so no connection is held while the ledger is being waited on.

Lifecycle (driven by the FastAPI lifespan, the reconcile job and the
simulation script):
    await init_db()
    factory = get_session_factory()
    ...
    await close_db()
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tagchain_escrow.config import get_settings
from tagchain_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from tagchain_escrow.config import Settings

logger = get_logger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Factory used by every service.

    expire_on_commit is off because records are read after their
    transaction closes (the orchestrator builds messages from them).
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def _engine_options(settings: Settings) -> dict[str, Any]:
    options: dict[str, Any] = {"echo": settings.db_echo_sql}
    if settings.database_url.startswith("sqlite"):
        return options
    options.update(
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
    )
    return options


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(settings.database_url, **_engine_options(settings))
        logger.info("database.engine_created", dialect=_engine.dialect.name)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(get_engine())
    return _session_factory


async def init_db() -> None:
    """Create the engine; in development also create missing tables.

    Staging and production schemas are managed by Alembic
    (`alembic upgrade head`).
    """
    from tagchain_escrow.infrastructure.database.orm_models import Base

    engine = get_engine()
    if not get_settings().is_development:
        logger.info("database.schema_managed_by_migrations")
        return
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database.tables_ensured", tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    logger.info("database.engine_disposed")
    _engine = None
    _session_factory = None
