"""Shared pytest fixtures for Lorekeeper tests.

Storage-backed tests run against one of:
1. TEST_DATABASE_* env vars present → external PostgreSQL (CI scenario)
2. TEST_PG_CONTAINER=1 → testcontainers starts a temporary PostgreSQL
3. Otherwise → a throwaway SQLite file per test (aiosqlite)

Safety: refuses to run against any PostgreSQL database whose name doesn't contain '_test'.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

import src.memory.models  # noqa: F401
from src.config.settings import ConversationSettings, ContextSettings, MemorySettings
from src.constants import DB_SCHEMA
from src.conversation.models import Base
from src.infra.retry import RetryPolicy
from src.providers.embedding import HashEmbeddingProvider

TEST_DIMENSION = 64


def _validate_test_db_name(name: str) -> None:
    """Safety: refuse to drop tables in a database whose name doesn't contain '_test'."""
    if "_test" not in name.lower():
        raise RuntimeError(
            f"Refusing to run tests against database '{name}': "
            "name must contain '_test' to prevent accidental data loss. "
            "Set TEST_DATABASE_NAME to a test-specific database."
        )


def _build_pg_url_from_env() -> str | None:
    host = os.getenv("TEST_DATABASE_HOST")
    if host is None:
        return None
    port = os.getenv("TEST_DATABASE_PORT", "5432")
    user = os.getenv("TEST_DATABASE_USER", "postgres")
    password = os.getenv("TEST_DATABASE_PASSWORD", "")
    name = os.getenv("TEST_DATABASE_NAME", "lorekeeper_test")
    _validate_test_db_name(name)
    return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{name}"


@pytest.fixture(scope="session")
def pg_url():
    """Async PostgreSQL URL, or None when tests should use SQLite."""
    url = _build_pg_url_from_env()
    if url is not None:
        yield url
        return
    if os.getenv("TEST_PG_CONTAINER") != "1":
        yield None
        return

    from testcontainers.postgres import PostgresContainer

    container = PostgresContainer("postgres:16", dbname="lorekeeper_test")
    container.start()
    _validate_test_db_name(container.dbname)
    host = container.get_container_host_ip()
    port = container.get_exposed_port(5432)
    yield (
        f"postgresql+asyncpg://{container.username}:{container.password}"
        f"@{host}:{port}/{container.dbname}"
    )
    container.stop()


@pytest_asyncio.fixture
async def db_engine(pg_url: str | None, tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh schema per test. Tables are dropped on teardown."""
    if pg_url is None:
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'lorekeeper.db'}")
    else:
        engine = create_async_engine(
            pg_url,
            connect_args={"server_settings": {"search_path": f"{DB_SCHEMA}, public"}},
        )

    async with engine.begin() as conn:
        if engine.dialect.name == "postgresql":
            await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {DB_SCHEMA}"))
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(timeout_s=2.0, max_retries=1, base_delay_s=0.0, max_delay_s=0.0)


@pytest.fixture
def embedder() -> HashEmbeddingProvider:
    return HashEmbeddingProvider(TEST_DIMENSION)


@pytest.fixture
def memory_settings() -> MemorySettings:
    return MemorySettings(
        default_importance=5,
        estimate_importance=True,
        max_content_chars=8192,
        list_default_limit=20,
        search_default_limit=10,
        search_min_similarity=0.0,
        retention_keep_count=200,
        retention_min_importance=3,
        backfill_batch_size=50,
    )


@pytest.fixture
def conversation_settings() -> ConversationSettings:
    return ConversationSettings(
        history_default_limit=50,
        search_default_limit=10,
        search_context_size=3,
        summary_max_messages=100,
        keep_days=30,
        keep_count=500,
    )


@pytest.fixture
def context_settings() -> ContextSettings:
    # Unknown model name → deterministic chars/4 estimate mode.
    return ContextSettings(
        recent_window=10,
        memory_limit=10,
        max_tokens=2000,
        tokenizer_model="lorekeeper-test-tokenizer",
        memory_max_chars=300,
    )


@pytest_asyncio.fixture
async def store(db_session_factory, embedder, memory_settings, fast_retry):
    from src.memory.store import MemoryStore

    return MemoryStore(db_session_factory, embedder, memory_settings, retry_policy=fast_retry)


@pytest_asyncio.fixture
async def conversations(db_session_factory, conversation_settings, fast_retry):
    from src.conversation.manager import ConversationHistoryManager

    return ConversationHistoryManager(
        db_session_factory, conversation_settings, retry_policy=fast_retry
    )
