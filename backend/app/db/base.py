"""Declarative base, async engine and the session factory the reconciler writes through.

The deployed schema comes from the Alembic revisions under backend/alembic.
Outside production init_db also creates any missing tables from the models so
a local Postgres (or SQLite) works without running migrations first.
"""

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.core.config import get_settings

logger = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


async def init_db(url: str | None = None, create_tables: bool | None = None) -> None:
    """Open the engine and session factory once per process.

    Args:
        url: Database URL; defaults to settings.database_url.
        create_tables: Run create_all for the webhook ledger and reconciliation
            tables. Defaults to True everywhere except production.
    """
    global _engine, _session_factory

    if _engine is not None:
        return

    settings = get_settings()
    if create_tables is None:
        create_tables = not settings.is_production

    _engine = create_async_engine(url or settings.database_url, echo=settings.debug, pool_pre_ping=True)
    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)

    if create_tables:
        import app.db.models  # noqa: F401

        async with _engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("db_tables_ensured", tables=sorted(Base.metadata.tables))
    else:
        logger.info("db_schema_managed_by_migrations", environment=settings.environment)


async def close_db() -> None:
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for the ledger and reconciler; requires init_db() first."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory
