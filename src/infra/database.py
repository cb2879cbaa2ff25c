"""Async database engine and session factory.

PostgreSQL (asyncpg) in production; SQLite (aiosqlite) for local runs and tests.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

# Registers memory tables in Base.metadata.
import src.memory.models  # noqa: F401
from src.constants import DB_SCHEMA
from src.conversation.models import Base
from src.infra.errors import StorageError

if TYPE_CHECKING:
    from src.config.settings import DatabaseSettings

logger = structlog.get_logger()


async def create_db_engine(settings: DatabaseSettings) -> AsyncEngine:
    """Create an async SQLAlchemy engine from DatabaseSettings."""
    url = settings.async_url
    if url.startswith("postgresql"):
        engine = create_async_engine(
            url,
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
            connect_args={"server_settings": {"search_path": f"{settings.schema_}, public"}},
        )
    else:
        engine = create_async_engine(url)
    logger.info("db_engine_created", dialect=engine.dialect.name, database=engine.url.database)
    return engine


async def ensure_schema(engine: AsyncEngine, schema: str = DB_SCHEMA) -> None:
    """Ensure the target schema exists (PostgreSQL), then create all tables."""
    async with engine.begin() as conn:
        if engine.dialect.name == "postgresql":
            await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {schema}"))
        await conn.run_sync(Base.metadata.create_all)

    logger.info("db_schema_ensured", schema=schema, dialect=engine.dialect.name)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to the engine."""
    return async_sessionmaker(engine, expire_on_commit=False)


def upsert_for(db: AsyncSession, table: Any) -> Any:
    """Return a dialect-specific INSERT supporting ON CONFLICT DO UPDATE ... RETURNING."""
    dialect = db.bind.dialect.name if db.bind is not None else ""
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as pg_insert

        return pg_insert(table)
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as sqlite_insert

        return sqlite_insert(table)
    raise StorageError(f"Atomic upsert is not supported on dialect '{dialect}'")
